import asyncio

import pytest
import pytest_asyncio

from app.schemas.onboarding import OnboardingRole
from app.services.registry import ControllerRegistry


@pytest_asyncio.fixture
async def registry(gateway, timings, ui_lock, store, drafts):
    registry = ControllerRegistry(
        gateway,
        timings=timings,
        ui_lock=ui_lock,
        idle_timeout=0.05,
        store=store,
        drafts=drafts,
    )
    yield registry
    await registry.shutdown()


class TestControllerRegistry:

    @pytest.mark.asyncio
    async def test_same_session_reuses_controller(self, registry):
        first = await registry.get_or_mount("user-1:tab-1", "token")
        second = await registry.get_or_mount("user-1:tab-1", "token")

        assert first is second
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_finished_controller_is_evicted_once_delivered(self, registry, store):
        store.save("user-1:tab-1", role=OnboardingRole.MANAGER, step=3, organization_id="org_1")
        controller = await registry.get_or_mount("user-1:tab-1", "token", params={"role": "manager", "step": "3"})

        assert registry.discard_completed("user-1:tab-1") is False

        await controller.finish_setup()

        assert registry.discard_completed("user-1:tab-1") is True
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_idle_controllers_are_unmounted(self, registry, ui_lock):
        await registry.get_or_mount("user-1:tab-1", "token")
        await asyncio.sleep(0.1)

        await registry.get_or_mount("user-2:tab-1", "token")

        assert len(registry) == 1
        assert registry.get("user-1:tab-1") is None
        assert not ui_lock.is_held_by("user-1:tab-1")
        assert ui_lock.is_held_by("user-2:tab-1")

    @pytest.mark.asyncio
    async def test_unmount_releases_only_that_session(self, registry):
        other = await registry.get_or_mount("user-2:tab-1", "token")
        mine = await registry.get_or_mount("user-1:tab-1", "token")

        assert await registry.unmount("user-1:tab-1") is True

        assert mine.view().ui_locked is False
        assert other.view().ui_locked is True
        assert await registry.unmount("user-1:tab-1") is False

    @pytest.mark.asyncio
    async def test_shutdown_unmounts_everything(self, registry, ui_lock):
        await registry.get_or_mount("user-1:tab-1", "token")
        await registry.get_or_mount("user-1:tab-2", "token")

        await registry.shutdown()

        assert len(registry) == 0
        assert len(ui_lock) == 0
