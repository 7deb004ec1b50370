"""
Step controller for restaurant onboarding.

Sequences role selection, restaurant creation (step 1), optional setup
(step 2) and subscription checkout (step 3). Progress is mirrored into
shareable location parameters and into the session store, so a reload
reconstructs the same view.
"""

import asyncio
import time
from typing import List, Mapping, Optional
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from app.core.config import settings
from app.core.errors import ValidationError
from app.core.logging_config import logger
from app.schemas.onboarding import (
    CheckoutLaunch,
    CheckoutRequest,
    CheckoutState,
    Completion,
    CreateRestaurantRequest,
    ExistingOrganization,
    OnboardingRole,
    OnboardingSessionState,
    OnboardingView,
    OptionalSetupRequest,
    SkipSetupRequest,
    StaffDraftRow,
)
from app.services.backend_gateway import BackendGateway
from app.services.configuration import ConfigurationBatch, configuration_batch
from app.services.location_params import MAX_STEP, MIN_STEP, build_location, parse_location
from app.services.organization import OrganizationService, organization_service
from app.services.reconciler import CheckoutReconciler, CheckoutTimings
from app.services.session_store import SessionStore, session_store
from app.services.staff_drafts import StaffDraftService, staff_draft_service
from app.services.ui_lock import UiLock

SETUP_WARNING = "Some setup details could not be saved. You can finish them later."
ORGANIZATION_REQUIRED = "Create your restaurant first."


class OnboardingController:
    """
    State machine for one onboarding session (one browser tab).

    The controller holds the UI lock from mount until unmount, and every
    unmount path releases it. Session store and draft I/O runs in the
    threadpool so checkout timers of other sessions keep running.
    """

    def __init__(
        self,
        session_key: str,
        gateway: BackendGateway,
        ui_lock: UiLock,
        *,
        timings: Optional[CheckoutTimings] = None,
        store: SessionStore = session_store,
        drafts: StaffDraftService = staff_draft_service,
        organizations: OrganizationService = organization_service,
        configuration: ConfigurationBatch = configuration_batch
    ):
        self.session_key = session_key
        self.gateway = gateway
        self.ui_lock = ui_lock
        self.timings = timings or CheckoutTimings.from_settings()
        self.store = store
        self.drafts = drafts
        self.organizations = organizations
        self.configuration = configuration

        self.state = OnboardingSessionState()
        self.setup_mode = False
        self.mounted = False
        self.intent_id: Optional[str] = None
        self.warning: Optional[str] = None
        self.launch: Optional[CheckoutLaunch] = None
        self.staff_rows: List[StaffDraftRow] = []
        self.completion: Optional[Completion] = None
        self.redirect: Optional[str] = None
        self.last_seen = time.monotonic()
        self._create_lock = asyncio.Lock()
        self.reconciler = self._new_reconciler()

    @property
    def completed(self) -> bool:
        return self.redirect is not None

    def _new_reconciler(self) -> CheckoutReconciler:
        return CheckoutReconciler(
            self.gateway,
            self.timings,
            self._on_subscription_active,
            organization_id=self.state.organization_id,
            manage_billing_url=settings.MANAGE_BILLING_PATH,
            handled_token=self.state.handled_checkout_token,
            on_token_handled=self._remember_token,
        )

    def bind_gateway(self, gateway: BackendGateway) -> None:
        """Act for the newest bearer token of the user."""
        self.gateway = gateway
        self.reconciler.gateway = gateway

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def _save(self, **fields) -> OnboardingSessionState:
        self.state = await run_in_threadpool(self.store.save, self.session_key, **fields)
        return self.state

    def _require_organization(self) -> str:
        if not self.state.organization_id:
            raise ValidationError(ORGANIZATION_REQUIRED)
        return self.state.organization_id

    # Mount / unmount

    async def mount(
        self,
        params: Mapping[str, Optional[str]],
        existing_organization: Optional[ExistingOrganization] = None,
        setup_mode: bool = False
    ) -> OnboardingView:
        """
        Mount (or re-mount after a reload) from location parameters.

        Args:
            params: Location parameters (role, step, checkout, session_id, intent_id)
            existing_organization: Tenant that already exists when setup is re-entered
            setup_mode: Re-enter setup for the organization the session already records

        Returns:
            The view to render
        """
        self.ui_lock.acquire(self.session_key)
        self.mounted = True
        self.touch()
        location = parse_location(params)
        state = await run_in_threadpool(self.store.load, self.session_key)
        self.state = state

        if existing_organization is not None:
            self.setup_mode = True
            state = await self._save(
                role=OnboardingRole.MANAGER,
                organization_id=existing_organization.organization_id,
                restaurant_code=existing_organization.restaurant_code or state.restaurant_code,
            )
        elif setup_mode:
            self.setup_mode = True

        if location.role is None and location.requested_step is None:
            # Bare location: resume where the session left off
            role, step = state.role, state.step
        else:
            role, step = location.role, location.step
            if role is None and location.checkout:
                # Checkout return URLs carry no role
                role = state.role

        if self.setup_mode:
            role = OnboardingRole.MANAGER
            step = max(step, MIN_STEP + 1)
        elif role is None:
            step = MIN_STEP

        if step > MIN_STEP and not state.organization_id:
            logger.info(f"Session {self.session_key} requested step {step} without an organization; resetting to step 1")
            step = MIN_STEP

        await self._save(role=role, step=step)
        self.intent_id = location.intent_id or self.intent_id

        if self.reconciler.closed:
            self.reconciler = self._new_reconciler()
        self.reconciler.organization_id = self.state.organization_id
        if self.reconciler.handled_token is None:
            self.reconciler.handled_token = self.state.handled_checkout_token

        if self.state.organization_id and step > MIN_STEP:
            snapshot = await run_in_threadpool(self.drafts.load_drafts, self.state.organization_id)
            self.staff_rows = snapshot.rows if snapshot else []

        logger.info(
            f"Mounted onboarding session {self.session_key}: role={role.value if role else None}, "
            f"step={step}, setup_mode={self.setup_mode}"
        )

        if step == MAX_STEP:
            if location.checkout:
                await self.handle_checkout_return(location.checkout, location.session_id, location.intent_id)
            elif self.reconciler.view.state == CheckoutState.IDLE:
                await self.reconciler.check_status()

        return self.view()

    async def unmount(self) -> None:
        """Cancel every checkout timer and release the UI lock."""
        try:
            await self.reconciler.aclose()
        finally:
            self.ui_lock.release(self.session_key)
            self.mounted = False
            logger.info(f"Unmounted onboarding session {self.session_key}")

    # Navigation

    async def advance(self, step: int) -> OnboardingView:
        """Move forward. Only called after the triggering step succeeded."""
        step = min(max(step, MIN_STEP), MAX_STEP)
        if step > MIN_STEP:
            self._require_organization()
        self.warning = None
        await self._save(step=step)
        logger.info(f"Session {self.session_key} advanced to step {step}")
        return self.view()

    async def retreat(self, step: int) -> OnboardingView:
        step = min(max(step, MIN_STEP), MAX_STEP)
        if self.state.step == MAX_STEP and step < MAX_STEP:
            self.reconciler.stop_polling()
            self.launch = None
        self.warning = None
        await self._save(step=step)
        logger.info(f"Session {self.session_key} went back to step {step}")
        return self.view()

    async def select_role(self, role: OnboardingRole) -> OnboardingView:
        await self._save(role=role, step=MIN_STEP)
        return self.view()

    async def go_back(self) -> OnboardingView:
        """One step back; from step 1 back to role selection."""
        if self.setup_mode and self.state.step <= MIN_STEP + 1:
            return self.view()
        if self.state.step > MIN_STEP:
            return await self.retreat(self.state.step - 1)
        await self._save(role=None, step=MIN_STEP)
        return self.view()

    async def update_owner_name(self, owner_name: str) -> OnboardingView:
        await self._save(owner_name=owner_name)
        return self.view()

    # Step 1

    async def create_restaurant(self, data: CreateRestaurantRequest) -> OnboardingView:
        """
        Create the organization, record it, then advance to step 2.

        A session that already has an organization never creates a second
        one. Concurrent submits wait for the first and then see its
        organization.
        """
        async with self._create_lock:
            if self.state.organization_id:
                logger.info(f"Session {self.session_key} already has organization {self.state.organization_id}")
                return await self.advance(MIN_STEP + 1)

            provisioned = await self.organizations.create_restaurant(self.gateway, data)
            self.intent_id = provisioned.intent.intent_id
            await self._save(
                role=OnboardingRole.MANAGER,
                owner_name=data.owner_name.strip(),
                organization_id=provisioned.organization.organization_id,
                restaurant_code=provisioned.organization.restaurant_code,
            )
            self.reconciler.organization_id = self.state.organization_id
            return await self.advance(MIN_STEP + 1)

    # Step 2

    async def _persist_drafts(self, organization_id: str, rows: List[StaffDraftRow]) -> None:
        snapshot = await run_in_threadpool(self.drafts.persist_drafts, organization_id, rows)
        self.staff_rows = snapshot.rows

    async def save_optional_setup(self, data: OptionalSetupRequest) -> OnboardingView:
        """Best-effort save of the optional details; always advances."""
        organization_id = self._require_organization()
        report = await self.configuration.save_all(self.gateway, organization_id, data)
        await self._persist_drafts(organization_id, data.staff_drafts)
        view = await self.advance(MAX_STEP)
        if report.had_error:
            self.warning = SETUP_WARNING
            view = self.view()
        return view

    async def skip_optional_setup(self, data: SkipSetupRequest) -> OnboardingView:
        organization_id = self._require_organization()
        await self._persist_drafts(organization_id, data.staff_drafts)
        return await self.advance(MAX_STEP)

    # Step 3

    async def start_checkout(self, data: CheckoutRequest) -> OnboardingView:
        self._require_organization()
        if self.state.step != MAX_STEP:
            raise ValidationError("Finish the earlier steps before starting checkout.")
        self.launch = await self.reconciler.launch(
            data.plan,
            intent_id=self.intent_id,
            new_tab_allowed=data.new_tab_allowed,
        )
        return self.view()

    async def handle_checkout_return(
        self,
        outcome: str,
        session_id: Optional[str] = None,
        intent_id: Optional[str] = None
    ) -> OnboardingView:
        self.launch = None
        await self.reconciler.handle_return(outcome, session_id, intent_id)
        return self.view()

    async def retry_checkout(self) -> OnboardingView:
        self.launch = None
        await self.reconciler.retry()
        return self.view()

    async def refresh_checkout(self) -> OnboardingView:
        await self.reconciler.refresh_status()
        return self.view()

    async def _remember_token(self, token: str) -> None:
        try:
            await self._save(handled_checkout_token=token)
        except SQLAlchemyError as e:
            logger.warning(f"Could not record checkout token for session {self.session_key}: {str(e)}")

    async def _on_subscription_active(self) -> None:
        await self.finish_setup()

    # Exit

    async def finish_setup(self) -> Completion:
        """
        Leave onboarding for the dashboard.

        Clears the session and unmounts. Calling it again returns the same
        completion.
        """
        if self.completion is not None:
            return self.completion
        organization_id = self._require_organization()
        await run_in_threadpool(self.store.clear, self.session_key)
        self.completion = Completion(
            organization_id=organization_id,
            restaurant_code=self.state.restaurant_code,
            redirect=settings.DASHBOARD_PATH,
        )
        self.redirect = settings.DASHBOARD_PATH
        logger.info(f"Onboarding finished for organization {organization_id} (session {self.session_key})")
        await self.unmount()
        return self.completion

    async def skip_setup(self) -> OnboardingView:
        """Abandon onboarding."""
        await run_in_threadpool(self.store.clear, self.session_key)
        self.redirect = settings.SETUP_EXIT_PATH
        logger.info(f"Onboarding skipped for session {self.session_key}")
        await self.unmount()
        return self.view()

    def view(self) -> OnboardingView:
        return OnboardingView(
            role=self.state.role,
            step=self.state.step,
            organization_id=self.state.organization_id,
            restaurant_code=self.state.restaurant_code,
            owner_name=self.state.owner_name,
            ui_locked=self.ui_lock.is_held_by(self.session_key),
            location=build_location(self.state.role, self.state.step, setup_mode=self.setup_mode),
            warning=self.warning,
            checkout=self.reconciler.view,
            launch=self.launch,
            staff_drafts=self.staff_rows,
            completion=self.completion,
            redirect=self.redirect,
        )
