"""
Checkout confirmation reconciler.

Two producers report activation: a subscription-status poll (checkout
opened in a new tab) and the return callback carrying a checkout session
id (checkout in the same tab). The first one to observe an active
subscription settles the reconciler and the other producer is canceled.

Every timer is an asyncio task registered under a name so that teardown
can cancel all of them: poll_interval, poll_deadline, poll_tick,
finalize and auto_advance.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Coroutine, Dict, List, Optional
from app.core.config import settings
from app.core.errors import CanceledByUser, ConflictError, OnboardingError, RequestTimeoutError
from app.core.logging_config import logger
from app.schemas.billing import SubscriptionState
from app.schemas.onboarding import (
    CheckoutLaunch,
    CheckoutLaunchAction,
    CheckoutOutcome,
    CheckoutState,
    CheckoutView,
    PlanId,
    RecoveryAction,
)
from app.services.backend_gateway import BackendGateway
from app.services.checkout import CheckoutLauncher
from app.services.location_params import checkout_token

POLL_INTERVAL = "poll_interval"
POLL_DEADLINE = "poll_deadline"
POLL_TICK = "poll_tick"
FINALIZE = "finalize"
AUTO_ADVANCE = "auto_advance"

STILL_CONFIRMING = "We're still confirming your subscription. Please try again."
MISSING_SESSION = "Missing checkout session details. Please retry checkout."
ACTIVATED_NOTICE = "Payment received. Subscription active. Redirecting to your dashboard..."


@dataclass(frozen=True)
class CheckoutTimings:
    """Time budgets in seconds."""
    request_timeout: float
    finalize_timeout: float
    poll_interval: float
    poll_max: float
    auto_advance_delay: float

    @classmethod
    def from_settings(cls) -> "CheckoutTimings":
        return cls(
            request_timeout=settings.CHECKOUT_REQUEST_TIMEOUT_SECONDS,
            finalize_timeout=settings.FINALIZE_TIMEOUT_SECONDS,
            poll_interval=settings.CHECKOUT_POLL_INTERVAL_SECONDS,
            poll_max=settings.CHECKOUT_POLL_MAX_SECONDS,
            auto_advance_delay=settings.AUTO_ADVANCE_DELAY_SECONDS,
        )


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class CheckoutReconciler:
    """
    Drives step 3 from checkout launch to an activated subscription.

    States: idle -> awaiting_redirect -> (polling | awaiting_callback)
    -> finalizing -> activated, with canceled, manage_billing and error
    reachable from any non-terminal state.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        timings: CheckoutTimings,
        on_activated: Callable[[], Awaitable[None]],
        *,
        organization_id: Optional[str] = None,
        manage_billing_url: str = "/billing",
        handled_token: Optional[str] = None,
        on_token_handled: Optional[Callable[[str], Awaitable[None]]] = None
    ):
        """
        Args:
            gateway: Backend gateway bound to the current user
            timings: Request, finalize, polling and auto-advance budgets
            on_activated: Called once when the subscription is confirmed active
            organization_id: Organization being activated, once known
            manage_billing_url: Fallback link offered when finalize fails
            handled_token: Last checkout return token already consumed
            on_token_handled: Called when a new return token is consumed
        """
        self.gateway = gateway
        self.timings = timings
        self.organization_id = organization_id
        self.manage_billing_url = manage_billing_url
        self.launcher = CheckoutLauncher(timings.request_timeout)
        self.view = CheckoutView()

        self._on_activated = on_activated
        self._on_token_handled = on_token_handled
        self._handled_token = handled_token
        self._tasks: Dict[str, asyncio.Task] = {}
        self._poll_in_flight = False
        self._settled = False
        self._completed = False
        self._closed = False

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handled_token(self) -> Optional[str]:
        return self._handled_token

    @handled_token.setter
    def handled_token(self, token: Optional[str]) -> None:
        self._handled_token = token

    def active_timers(self) -> List[str]:
        """Names of timers that are still running."""
        return sorted(name for name, task in self._tasks.items() if not task.done())

    # Task bookkeeping

    def _update(self, **changes) -> None:
        previous = self.view.state
        self.view = self.view.model_copy(update=changes)
        if self.view.state != previous:
            logger.info(
                f"Checkout for organization {self.organization_id}: "
                f"{previous.value} -> {self.view.state.value}"
            )

    def _start_task(self, name: str, coro: Coroutine) -> Optional[asyncio.Task]:
        if self._closed:
            coro.close()
            return None
        self._cancel(name)
        task = asyncio.create_task(coro, name=f"checkout-{name}")
        self._tasks[name] = task
        return task

    def _cancel(self, *names: str) -> None:
        current = _current_task()
        for name in names:
            task = self._tasks.pop(name, None)
            if task is not None and not task.done() and task is not current:
                task.cancel()

    def _clear_polling(self) -> None:
        self._cancel(POLL_INTERVAL, POLL_DEADLINE, POLL_TICK)
        self._poll_in_flight = False

    def _settle(self) -> None:
        """Accept the first activation signal and cancel the other producer."""
        self._settled = True
        self._clear_polling()
        self._cancel(FINALIZE)

    # Launch

    async def launch(
        self,
        plan: PlanId,
        *,
        intent_id: Optional[str] = None,
        new_tab_allowed: bool = True
    ) -> Optional[CheckoutLaunch]:
        """
        Open a checkout session for the organization.

        Launch failures are recorded in the view with a recovery action
        rather than raised.

        Returns:
            What the client must do with the checkout URL, or None on failure
        """
        if self._settled:
            logger.info(f"Subscription already active for organization {self.organization_id}; not launching checkout")
            return None

        self._clear_polling()
        self._update(
            state=CheckoutState.AWAITING_REDIRECT,
            plan=plan,
            notice="Redirecting to secure checkout...",
            error=None,
            recovery_action=None,
            manage_billing_url=None,
            payment_received=False,
            session_id=None,
            intent_id=intent_id,
        )

        try:
            launch = await self.launcher.start_checkout(
                self.gateway,
                self.organization_id,
                plan,
                intent_id=intent_id,
                new_tab_allowed=new_tab_allowed,
            )
        except ConflictError as e:
            if e.redirect:
                self._update(
                    state=CheckoutState.MANAGE_BILLING,
                    notice="Manage billing, then retry checkout.",
                    error=e.message,
                    recovery_action=RecoveryAction.MANAGE_BILLING,
                    manage_billing_url=e.redirect,
                )
                return CheckoutLaunch(action=CheckoutLaunchAction.MANAGE_BILLING, url=e.redirect)
            self._fail_launch(e.message)
            return None
        except OnboardingError as e:
            self._fail_launch(e.message)
            return None

        if launch.action == CheckoutLaunchAction.OPEN_NEW_TAB:
            self._update(
                state=CheckoutState.POLLING,
                notice="Checkout opened in a new tab. Complete payment there, then come back here.",
            )
            self.start_polling()
        else:
            self._update(state=CheckoutState.AWAITING_CALLBACK)
        return launch

    def _fail_launch(self, message: str) -> None:
        self._update(
            state=CheckoutState.ERROR,
            notice=None,
            error=message or "Unable to start checkout. Please try again.",
            recovery_action=RecoveryAction.RETRY_CHECKOUT,
        )

    # Polling producer

    def start_polling(self) -> None:
        """
        Check the subscription now, then every poll interval until it is
        active or the maximum polling duration runs out.
        """
        if self._closed or self._settled:
            return
        self._clear_polling()
        logger.info(
            f"Polling subscription for organization {self.organization_id} every "
            f"{self.timings.poll_interval}s for up to {self.timings.poll_max}s"
        )
        self._spawn_poll_tick()
        self._start_task(POLL_INTERVAL, self._poll_interval_loop())
        self._start_task(POLL_DEADLINE, self._poll_deadline())

    def stop_polling(self) -> None:
        """Stop polling when the step 3 view is left; a manual check stays available."""
        self._clear_polling()
        if self.view.state == CheckoutState.POLLING:
            self._update(
                state=CheckoutState.AWAITING_CALLBACK,
                recovery_action=RecoveryAction.REFRESH_STATUS,
            )

    def _spawn_poll_tick(self) -> None:
        # A slow check must not overlap with the next tick
        if self._poll_in_flight:
            logger.debug("Previous subscription check still in flight; skipping tick")
            return
        self._poll_in_flight = True
        if self._start_task(POLL_TICK, self._poll_once()) is None:
            self._poll_in_flight = False

    async def _poll_interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.timings.poll_interval)
            self._spawn_poll_tick()

    async def _poll_deadline(self) -> None:
        await asyncio.sleep(self.timings.poll_max)
        logger.info(f"Stopped polling subscription for organization {self.organization_id}: time limit reached")
        self._clear_polling()
        if not self._settled and self.view.state == CheckoutState.POLLING:
            self._update(
                state=CheckoutState.AWAITING_CALLBACK,
                notice="We have not received your payment confirmation yet. Check again once payment is complete.",
                recovery_action=RecoveryAction.REFRESH_STATUS,
            )

    async def _poll_once(self) -> None:
        try:
            state = await self.check_status()
            if state.active:
                await self._activate_directly()
        finally:
            self._poll_in_flight = False

    async def check_status(self) -> SubscriptionState:
        """
        Read the subscription state and mirror it into the view.
        A failed read counts as not active.
        """
        if not self.organization_id:
            return SubscriptionState()
        try:
            state = await self.gateway.get_subscription_status(self.organization_id)
        except OnboardingError as e:
            logger.warning(f"Subscription status check failed for organization {self.organization_id}: {e.message}")
            state = SubscriptionState()
        self._update(subscription_status=state.status, subscription_active=state.active)
        return state

    async def refresh_status(self) -> None:
        """One manual check; completes setup right away if already active."""
        if self._settled:
            return
        state = await self.check_status()
        if state.active:
            await self._activate_directly()

    async def _activate_directly(self) -> None:
        if self._settled:
            return
        self._settle()
        self._update(
            state=CheckoutState.ACTIVATED,
            notice=ACTIVATED_NOTICE,
            error=None,
            recovery_action=None,
            subscription_active=True,
        )
        await self._complete()

    # Callback producer

    async def handle_return(
        self,
        outcome: str,
        session_id: Optional[str] = None,
        intent_id: Optional[str] = None
    ) -> None:
        """
        Consume checkout return parameters.

        Each distinct (outcome, session_id, intent_id) is handled once;
        re-delivery of the same token is ignored.
        """
        token = checkout_token(outcome, session_id, intent_id)
        if token == self._handled_token:
            logger.info(f"Checkout return {token} already handled")
            return
        self._handled_token = token
        if self._on_token_handled is not None:
            await self._on_token_handled(token)

        if self._settled:
            logger.info(f"Subscription already active; ignoring checkout return {token}")
            return

        if outcome == CheckoutOutcome.CANCEL.value:
            self._clear_polling()
            self._update(
                state=CheckoutState.CANCELED,
                notice=CanceledByUser.default_message,
                error=None,
                recovery_action=RecoveryAction.RETRY_CHECKOUT,
                manage_billing_url=None,
                payment_received=False,
                session_id=None,
                intent_id=None,
            )
            return

        if outcome != CheckoutOutcome.SUCCESS.value:
            logger.warning(f"Ignoring unknown checkout outcome '{outcome}'")
            return

        if not session_id:
            self._clear_polling()
            self._update(
                state=CheckoutState.ERROR,
                notice=None,
                error=MISSING_SESSION,
                recovery_action=RecoveryAction.RETRY_CHECKOUT,
                payment_received=False,
            )
            return

        await self.finalize(session_id, intent_id)

    async def finalize(self, session_id: str, intent_id: Optional[str] = None) -> None:
        """
        Finalize a completed checkout session.

        Safe to call repeatedly for the same session; a call made while
        another finalize is in flight waits for that one instead.
        """
        if self._settled or self._closed:
            return
        task = self._tasks.get(FINALIZE)
        if task is not None and not task.done():
            logger.info(f"Finalize already in flight for session {session_id}; waiting for it")
        else:
            task = self._start_task(FINALIZE, self._run_finalize(session_id, intent_id))
            if task is None:
                return
        await asyncio.wait({task})

    async def _run_finalize(self, session_id: str, intent_id: Optional[str]) -> None:
        self._update(
            state=CheckoutState.FINALIZING,
            session_id=session_id,
            intent_id=intent_id,
            payment_received=True,
            notice="Payment received. Finalizing your subscription...",
            error=None,
            recovery_action=None,
            manage_billing_url=None,
        )
        logger.info(f"Finalizing checkout session {session_id} for organization {self.organization_id}")

        try:
            await asyncio.wait_for(
                self.gateway.finalize_checkout(session_id, intent_id),
                timeout=self.timings.finalize_timeout,
            )
        except (asyncio.TimeoutError, RequestTimeoutError):
            logger.warning(f"Finalize timed out for session {session_id}")
            self._finalize_failed(STILL_CONFIRMING)
            return
        except OnboardingError as e:
            logger.error(f"Finalize failed for session {session_id}: {e.message}")
            self._finalize_failed(e.message or "Unable to finalize subscription.")
            return

        # Never trust the finalize response alone
        state = await self.check_status()
        if self._settled:
            return
        if not state.active:
            logger.warning(f"Finalize succeeded for session {session_id} but subscription is '{state.status}'")
            self._finalize_failed(STILL_CONFIRMING)
            return

        self._settle()
        self._update(
            state=CheckoutState.ACTIVATED,
            notice=ACTIVATED_NOTICE,
            error=None,
            recovery_action=None,
            subscription_active=True,
        )
        self._start_task(AUTO_ADVANCE, self._auto_advance())

    def _finalize_failed(self, message: str) -> None:
        self._clear_polling()
        self._update(
            state=CheckoutState.ERROR,
            payment_received=False,
            notice=None,
            error=message,
            recovery_action=RecoveryAction.RETRY_FINALIZE,
            manage_billing_url=self.manage_billing_url,
        )

    async def _auto_advance(self) -> None:
        # Leave the activated confirmation on screen briefly
        await asyncio.sleep(self.timings.auto_advance_delay)
        await self._complete()

    async def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        try:
            await self._on_activated()
        except Exception as e:
            # Subscription is active; the client can still finish explicitly
            logger.error(f"Completing setup for organization {self.organization_id} failed: {type(e).__name__}: {str(e)}")
            self._completed = False

    # Recovery

    async def retry(self) -> None:
        """
        Primary recovery action: re-issue finalize for the same session
        when one failed, otherwise reset to idle for a fresh checkout.
        """
        if self._settled:
            return
        if self.view.session_id and self.view.state in (CheckoutState.ERROR, CheckoutState.FINALIZING):
            await self.finalize(self.view.session_id, self.view.intent_id)
            return
        self._clear_polling()
        self._update(
            state=CheckoutState.IDLE,
            notice=None,
            error=None,
            recovery_action=None,
            manage_billing_url=None,
            payment_received=False,
            session_id=None,
            intent_id=None,
        )

    # Teardown

    def close(self) -> None:
        """Cancel every timer. The reconciler accepts no further work."""
        self._closed = True
        self._cancel(*list(self._tasks))
        self._poll_in_flight = False

    async def aclose(self) -> None:
        current = _current_task()
        pending = [task for task in self._tasks.values() if not task.done() and task is not current]
        self.close()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
