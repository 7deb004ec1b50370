import asyncio
import time
from typing import Any, Dict, Mapping, Optional
from app.core.config import settings
from app.core.logging_config import logger
from app.schemas.onboarding import ExistingOrganization
from app.services.backend_gateway import BackendGateway
from app.services.controller import OnboardingController
from app.services.reconciler import CheckoutTimings
from app.services.ui_lock import UiLock


class ControllerRegistry:
    """
    Live onboarding controllers of this process, keyed by session key.

    A controller outlives the request that mounted it because its checkout
    timers keep running between requests. Finished controllers are evicted
    once their completion has been delivered, and idle ones are unmounted
    by a sweep on each lookup.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        *,
        timings: Optional[CheckoutTimings] = None,
        ui_lock: Optional[UiLock] = None,
        idle_timeout: Optional[float] = None,
        **controller_options: Any
    ):
        """
        Args:
            gateway: Unbound gateway; each controller gets a copy bound to its user
            timings: Checkout timings handed to every controller
            ui_lock: Lock passed to every controller; each holds it for its own session
            idle_timeout: Seconds without a request before a controller is unmounted
            controller_options: Extra keyword arguments for OnboardingController
        """
        self.gateway = gateway
        self.timings = timings or CheckoutTimings.from_settings()
        self.ui_lock = ui_lock if ui_lock is not None else UiLock()
        self.idle_timeout = settings.ONBOARDING_IDLE_TIMEOUT_SECONDS if idle_timeout is None else idle_timeout
        self.controller_options = controller_options
        self._controllers: Dict[str, OnboardingController] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._controllers)

    def get(self, session_key: str) -> Optional[OnboardingController]:
        return self._controllers.get(session_key)

    async def get_or_mount(
        self,
        session_key: str,
        access_token: Optional[str],
        params: Optional[Mapping[str, Optional[str]]] = None,
        existing_organization: Optional[ExistingOrganization] = None,
        setup_mode: bool = False
    ) -> OnboardingController:
        """
        Return the live controller for a session, mounting it if needed.

        Passing location params re-mounts the controller as a reload would.
        A finished controller is kept until its completion is delivered
        (see discard_completed) or the next mount replaces it.
        """
        await self.sweep(exclude=session_key)
        gateway = self.gateway.bind(access_token)
        async with self._lock:
            controller = self._controllers.get(session_key)
            if controller is not None and controller.completed and params is not None:
                logger.info(f"Replacing finished controller for session {session_key}")
                controller = None

            if controller is None:
                controller = OnboardingController(
                    session_key,
                    gateway,
                    self.ui_lock,
                    timings=self.timings,
                    **self.controller_options
                )
                self._controllers[session_key] = controller
            else:
                controller.bind_gateway(gateway)
            controller.touch()

        if params is not None or existing_organization is not None or setup_mode:
            await controller.mount(
                params or {},
                existing_organization=existing_organization,
                setup_mode=setup_mode,
            )
        elif not controller.mounted and not controller.completed:
            await controller.mount({})
        return controller

    def discard_completed(self, session_key: str) -> bool:
        """Evict a finished controller after its completion went out."""
        controller = self._controllers.get(session_key)
        if controller is None or not controller.completed:
            return False
        del self._controllers[session_key]
        logger.info(f"Evicted finished controller for session {session_key}")
        return True

    async def sweep(self, exclude: Optional[str] = None) -> int:
        """
        Unmount controllers that have not seen a request within the idle
        timeout.

        Returns:
            Number of controllers removed
        """
        cutoff = time.monotonic() - self.idle_timeout
        idle = [
            key for key, controller in self._controllers.items()
            if key != exclude and controller.last_seen < cutoff
        ]
        for key in idle:
            controller = self._controllers.pop(key, None)
            if controller is None:
                continue
            logger.info(f"Unmounting idle onboarding session {key}")
            try:
                await controller.unmount()
            except Exception as e:
                logger.error(f"Unmounting idle session {key} failed: {str(e)}")
        return len(idle)

    async def unmount(self, session_key: str) -> bool:
        controller = self._controllers.pop(session_key, None)
        if controller is None:
            return False
        await controller.unmount()
        return True

    async def shutdown(self) -> None:
        """Unmount every controller."""
        controllers = list(self._controllers.values())
        self._controllers.clear()
        results = await asyncio.gather(*(c.unmount() for c in controllers), return_exceptions=True)
        for controller, result in zip(controllers, results):
            if isinstance(result, BaseException):
                logger.error(f"Unmounting session {controller.session_key} failed: {result}")
        logger.info(f"Controller registry shut down ({len(controllers)} controllers)")
