import asyncio
import threading

import pytest
import pytest_asyncio

from app.core.config import settings
from app.core.errors import BackendError, ValidationError
from app.schemas.onboarding import (
    CheckoutLaunchAction,
    CheckoutRequest,
    CheckoutState,
    CreateRestaurantRequest,
    ExistingOrganization,
    OnboardingRole,
    OptionalSetupRequest,
    PlanId,
    RecoveryAction,
    SkipSetupRequest,
    StaffDraftRow,
)
from app.services.configuration import ConfigurationBatch, uniform_hours
from app.services.controller import SETUP_WARNING, OnboardingController
from app.services.reconciler import STILL_CONFIRMING
from app.services.session_store import SessionStore
from conftest import ACTIVE, INACTIVE, wait_until

SESSION_KEY = "user-1:tab-1"


class SpyBatch(ConfigurationBatch):

    def __init__(self):
        self.calls = 0

    async def save_all(self, gateway, organization_id, data):
        self.calls += 1
        return await super().save_all(gateway, organization_id, data)


class ThreadRecordingStore(SessionStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.threads = set()

    def load(self, session_key):
        self.threads.add(threading.get_ident())
        return super().load(session_key)

    def save(self, session_key, **fields):
        self.threads.add(threading.get_ident())
        return super().save(session_key, **fields)


@pytest.fixture
def batch():
    return SpyBatch()


@pytest_asyncio.fixture
async def make_controller(gateway, ui_lock, timings, store, drafts, batch):
    created = []

    def factory(session_key=SESSION_KEY):
        controller = OnboardingController(
            session_key,
            gateway,
            ui_lock,
            timings=timings,
            store=store,
            drafts=drafts,
            configuration=batch,
        )
        created.append(controller)
        return controller

    yield factory
    for controller in created:
        await controller.unmount()


@pytest.fixture
def seed_organization(store):
    def seed(step=2, session_key=SESSION_KEY):
        store.save(
            session_key,
            role=OnboardingRole.MANAGER,
            step=step,
            organization_id="org_1",
            restaurant_code="RST-ABC",
        )
    return seed


class TestMount:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("step", ["2", "3", "billing", "hours"])
    async def test_later_step_without_organization_resets(self, make_controller, step):
        controller = make_controller()

        view = await controller.mount({"role": "manager", "step": step})
        assert view.step == 1

        view = await controller.mount({"role": "manager", "step": step})
        assert view.step == 1
        assert view.location == "role=manager"

    @pytest.mark.asyncio
    async def test_later_step_with_organization_is_kept(self, make_controller, seed_organization):
        seed_organization(step=2)
        controller = make_controller()

        view = await controller.mount({"role": "manager", "step": "core"})

        assert view.step == 2
        assert view.organization_id == "org_1"
        assert view.location == "role=manager&step=2"

    @pytest.mark.asyncio
    async def test_bare_location_resumes_session(self, make_controller, seed_organization):
        seed_organization(step=3)
        controller = make_controller()

        view = await controller.mount({})

        assert view.role == OnboardingRole.MANAGER
        assert view.step == 3

    @pytest.mark.asyncio
    async def test_no_role_shows_role_selection(self, make_controller, seed_organization):
        seed_organization(step=2)
        controller = make_controller()

        view = await controller.mount({"step": "2"})

        assert view.role is None
        assert view.step == 1

    @pytest.mark.asyncio
    async def test_mount_reads_back_staff_drafts(self, make_controller, seed_organization, drafts):
        seed_organization(step=2)
        drafts.persist_drafts("org_1", [StaffDraftRow(name="Ana", email="ana@example.com")])
        controller = make_controller()

        view = await controller.mount({"role": "manager", "step": "2"})

        assert [row.name for row in view.staff_drafts] == ["Ana"]

    @pytest.mark.asyncio
    async def test_setup_mode_starts_at_step_two(self, make_controller, gateway):
        controller = make_controller()

        view = await controller.mount({}, existing_organization=ExistingOrganization(
            organization_id="org_9",
            restaurant_code="RST-999",
        ))

        assert view.role == OnboardingRole.MANAGER
        assert view.step == 2
        assert view.organization_id == "org_9"
        assert view.location == "step=2"

        view = await controller.create_restaurant(CreateRestaurantRequest(
            owner_name="Mario",
            restaurant_name="Ignored",
        ))
        assert view.step == 2
        assert gateway.count("create_intent") == 0

    @pytest.mark.asyncio
    async def test_store_io_runs_off_the_event_loop(self, gateway, ui_lock, timings, session_factory, drafts):
        store = ThreadRecordingStore(session_factory)
        controller = OnboardingController(SESSION_KEY, gateway, ui_lock, timings=timings, store=store, drafts=drafts)
        try:
            await controller.mount({"role": "manager"})
            await controller.update_owner_name("Mario")
        finally:
            await controller.unmount()

        assert store.threads
        assert threading.get_ident() not in store.threads

    @pytest.mark.asyncio
    async def test_setup_mode_uses_recorded_organization(self, make_controller, seed_organization, gateway):
        seed_organization(step=1)
        controller = make_controller()

        view = await controller.mount({}, setup_mode=True)

        assert view.step == 2
        assert view.role == OnboardingRole.MANAGER
        assert view.organization_id == "org_1"
        assert gateway.count("create_intent") == 0


class TestUiLock:

    @pytest.mark.asyncio
    async def test_lock_held_while_mounted(self, make_controller, ui_lock):
        controller = make_controller()

        view = await controller.mount({})
        assert view.ui_locked
        assert ui_lock.is_held_by(SESSION_KEY)

        await controller.unmount()
        assert not ui_lock.is_held_by(SESSION_KEY)
        assert not controller.view().ui_locked

    @pytest.mark.asyncio
    async def test_lock_released_when_teardown_fails(self, make_controller, ui_lock):
        controller = make_controller()
        await controller.mount({})

        async def broken_close():
            raise RuntimeError("teardown failed")

        controller.reconciler.aclose = broken_close
        with pytest.raises(RuntimeError):
            await controller.unmount()

        assert not ui_lock.is_held_by(SESSION_KEY)
        del controller.reconciler.aclose

    @pytest.mark.asyncio
    async def test_other_users_do_not_hold_the_lock_for_you(self, make_controller, ui_lock):
        other = make_controller("user-2:tab-1")
        mine = make_controller("user-1:tab-1")
        await other.mount({})
        await mine.mount({})

        await mine.unmount()

        assert mine.view().ui_locked is False
        assert other.view().ui_locked is True
        assert len(ui_lock) == 1

    @pytest.mark.asyncio
    async def test_each_tab_holds_its_own_lock(self, make_controller, ui_lock):
        first = make_controller("user-1:tab-1")
        second = make_controller("user-1:tab-2")
        await first.mount({})
        await second.mount({})

        await first.unmount()

        assert not ui_lock.is_held_by("user-1:tab-1")
        assert ui_lock.is_held_by("user-1:tab-2")


class TestRestaurantStep:

    @pytest.mark.asyncio
    async def test_create_restaurant_advances_after_store_write(self, make_controller, store):
        controller = make_controller()
        await controller.mount({})
        await controller.select_role(OnboardingRole.MANAGER)

        view = await controller.create_restaurant(CreateRestaurantRequest(
            owner_name="Mario Rossi",
            restaurant_name="Mario's Kitchen",
            timezone="America/New_York",
        ))

        assert view.step == 2
        assert view.organization_id == "org_1"
        assert view.restaurant_code == "RST-ABC"
        state = store.load(SESSION_KEY)
        assert state.step == 2
        assert state.organization_id == "org_1"
        assert state.restaurant_code == "RST-ABC"
        assert state.owner_name == "Mario Rossi"

    @pytest.mark.asyncio
    async def test_failure_stays_on_step_one(self, make_controller, gateway, store):
        gateway.errors["commit_intent"] = BackendError("Commit failed")
        controller = make_controller()
        await controller.mount({"role": "manager"})

        with pytest.raises(BackendError):
            await controller.create_restaurant(CreateRestaurantRequest(
                owner_name="Mario",
                restaurant_name="Mario's Kitchen",
            ))

        assert controller.view().step == 1
        assert store.load(SESSION_KEY).organization_id is None

    @pytest.mark.asyncio
    async def test_second_submit_does_not_create_again(self, make_controller, gateway):
        controller = make_controller()
        await controller.mount({"role": "manager"})
        request = CreateRestaurantRequest(owner_name="Mario", restaurant_name="Mario's Kitchen")

        await controller.create_restaurant(request)
        await controller.go_back()
        view = await controller.create_restaurant(request)

        assert view.step == 2
        assert gateway.count("create_intent") == 1

    @pytest.mark.asyncio
    async def test_concurrent_submits_create_one_restaurant(self, make_controller, gateway, store):
        gateway.intent_delay = 0.05
        controller = make_controller()
        await controller.mount({"role": "manager"})
        request = CreateRestaurantRequest(owner_name="Mario", restaurant_name="Mario's Kitchen")

        first, second = await asyncio.gather(
            controller.create_restaurant(request),
            controller.create_restaurant(request),
        )

        assert gateway.count("create_intent") == 1
        assert gateway.count("commit_intent") == 1
        assert first.step == second.step == 2
        assert store.load(SESSION_KEY).organization_id == "org_1"

    @pytest.mark.asyncio
    async def test_owner_name_is_kept_as_typed(self, make_controller, store):
        controller = make_controller()
        await controller.mount({"role": "manager"})

        await controller.update_owner_name("Mar")

        assert store.load(SESSION_KEY).owner_name == "Mar"

    @pytest.mark.asyncio
    async def test_back_from_step_one_returns_to_role_selection(self, make_controller):
        controller = make_controller()
        await controller.mount({"role": "manager"})

        view = await controller.go_back()

        assert view.role is None
        assert view.location == ""


class TestSetupStep:

    @pytest.mark.asyncio
    async def test_skip_persists_empty_drafts_without_saving(self, make_controller, seed_organization, drafts, gateway, batch):
        seed_organization(step=2)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "2"})

        view = await controller.skip_optional_setup(SkipSetupRequest())

        assert view.step == 3
        assert batch.calls == 0
        assert gateway.count("save_schedule_view_settings") == 0
        snapshot = drafts.load_drafts("org_1")
        assert snapshot is not None
        assert snapshot.rows == []

    @pytest.mark.asyncio
    async def test_partial_failure_warns_and_advances(self, make_controller, seed_organization, drafts, gateway):
        seed_organization(step=2)
        gateway.errors["save_business_hours"] = BackendError("Hours rejected")
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "2"})

        view = await controller.save_optional_setup(OptionalSetupRequest(
            hours=uniform_hours("09:00", "17:00"),
            staff_drafts=[
                StaffDraftRow(name="Ana", email="ana@example.com"),
                StaffDraftRow(name="Ben"),
            ],
        ))

        assert view.step == 3
        assert view.warning == SETUP_WARNING
        assert [row.name for row in drafts.load_drafts("org_1").rows] == ["Ana", "Ben"]
        assert gateway.count("create_staff_account") == 1

    @pytest.mark.asyncio
    async def test_setup_requires_organization(self, make_controller):
        controller = make_controller()
        await controller.mount({"role": "manager"})

        with pytest.raises(ValidationError):
            await controller.save_optional_setup(OptionalSetupRequest())


class TestCheckoutStep:

    @pytest.mark.asyncio
    async def test_polling_activation_finishes_setup(self, make_controller, seed_organization, gateway, store, ui_lock):
        seed_organization(step=3)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "3"})
        gateway.subscription_sequence = [INACTIVE, INACTIVE]
        gateway.subscription = ACTIVE

        view = await controller.start_checkout(CheckoutRequest(plan=PlanId.MONTHLY))
        assert view.launch.action == CheckoutLaunchAction.OPEN_NEW_TAB
        assert view.checkout.state == CheckoutState.POLLING

        await wait_until(lambda: controller.completion is not None)

        assert controller.completion.organization_id == "org_1"
        assert controller.view().redirect == settings.DASHBOARD_PATH
        assert store.load(SESSION_KEY).organization_id is None
        assert controller.reconciler.active_timers() == []
        assert gateway.count("finalize_checkout") == 0
        assert not ui_lock.is_held_by(SESSION_KEY)

    @pytest.mark.asyncio
    async def test_return_without_role_is_handled_at_step_three(self, make_controller, seed_organization, gateway):
        seed_organization(step=3)
        gateway.subscription = ACTIVE
        controller = make_controller()

        view = await controller.mount({"step": "3", "checkout": "success", "session_id": "cs_9"})

        assert view.step == 3
        assert view.role == OnboardingRole.MANAGER
        assert view.checkout.state == CheckoutState.ACTIVATED
        assert gateway.args("finalize_checkout") == [("cs_9", None)]
        await wait_until(lambda: controller.completion is not None)

    @pytest.mark.asyncio
    async def test_finalize_timeout_then_retry(self, make_controller, seed_organization, gateway):
        seed_organization(step=3)
        gateway.finalize_delay = 0.5
        controller = make_controller()

        view = await controller.mount({
            "role": "manager",
            "step": "3",
            "checkout": "success",
            "session_id": "cs_1",
        })

        assert view.checkout.state == CheckoutState.ERROR
        assert view.checkout.error == STILL_CONFIRMING
        assert view.checkout.recovery_action == RecoveryAction.RETRY_FINALIZE

        gateway.finalize_delay = 0
        gateway.subscription = ACTIVE
        view = await controller.retry_checkout()

        assert view.checkout.state == CheckoutState.ACTIVATED
        assert gateway.args("finalize_checkout") == [("cs_1", None), ("cs_1", None)]
        await wait_until(lambda: controller.completion is not None)

    @pytest.mark.asyncio
    async def test_reload_with_handled_return_does_not_finalize_again(self, make_controller, seed_organization, gateway):
        seed_organization(step=3)
        gateway.errors["finalize_checkout"] = BackendError("Session not paid")
        params = {"role": "manager", "step": "3", "checkout": "success", "session_id": "cs_1"}

        await make_controller().mount(params)
        view = await make_controller().mount(params)

        assert gateway.count("finalize_checkout") == 1
        assert view.location == "role=manager&step=3"

    @pytest.mark.asyncio
    async def test_cancel_return(self, make_controller, seed_organization):
        seed_organization(step=3)
        controller = make_controller()

        view = await controller.mount({"role": "manager", "step": "3", "checkout": "cancel"})

        assert view.checkout.state == CheckoutState.CANCELED
        assert view.checkout.error is None

    @pytest.mark.asyncio
    async def test_checkout_requires_step_three(self, make_controller, seed_organization):
        seed_organization(step=2)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "2"})

        with pytest.raises(ValidationError):
            await controller.start_checkout(CheckoutRequest(plan=PlanId.MONTHLY))

    @pytest.mark.asyncio
    async def test_leaving_step_three_stops_polling(self, make_controller, seed_organization):
        seed_organization(step=3)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "3"})
        await controller.start_checkout(CheckoutRequest(plan=PlanId.ANNUAL))

        view = await controller.go_back()

        assert view.step == 2
        assert controller.reconciler.active_timers() == []
        assert view.checkout.recovery_action == RecoveryAction.REFRESH_STATUS


class TestExit:

    @pytest.mark.asyncio
    async def test_finish_is_idempotent(self, make_controller, seed_organization, store):
        seed_organization(step=3)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "3"})

        first = await controller.finish_setup()
        second = await controller.finish_setup()

        assert first == second
        assert first.redirect == settings.DASHBOARD_PATH
        assert first.restaurant_code == "RST-ABC"
        assert store.load(SESSION_KEY).organization_id is None

    @pytest.mark.asyncio
    async def test_skip_clears_session(self, make_controller, seed_organization, store, ui_lock):
        seed_organization(step=2)
        controller = make_controller()
        await controller.mount({"role": "manager", "step": "2"})

        view = await controller.skip_setup()

        assert view.redirect == settings.SETUP_EXIT_PATH
        assert view.completion is None
        assert store.load(SESSION_KEY).organization_id is None
        assert not ui_lock.is_held_by(SESSION_KEY)
