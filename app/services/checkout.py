import asyncio
import re
from typing import Optional
from app.core.errors import BackendError, RequestTimeoutError
from app.core.logging_config import logger
from app.schemas.onboarding import CheckoutLaunch, CheckoutLaunchAction, PlanId
from app.services.backend_gateway import BackendGateway

_EXTERNAL_URL = re.compile(r"^https?://", re.IGNORECASE)


class CheckoutLauncher:
    """
    Opens an external checkout session.

    The browser decides whether a new tab can be opened; the launcher
    only chooses the action that matches. A redirect in the same tab comes
    back through the return callback, a new tab needs self-polling.
    """

    def __init__(self, request_timeout: float):
        self.request_timeout = request_timeout

    async def start_checkout(
        self,
        gateway: BackendGateway,
        organization_id: str,
        plan: PlanId,
        *,
        intent_id: Optional[str] = None,
        new_tab_allowed: bool = True
    ) -> CheckoutLaunch:
        """
        Request a checkout URL and decide how to open it.

        Returns:
            CheckoutLaunch with action open_new_tab or redirect

        Raises:
            ConflictError: With `redirect` set when billing must be managed elsewhere
            RequestTimeoutError: If the checkout URL did not arrive in time
            BackendError: If the backend failed or returned no usable URL
        """
        logger.info(f"Starting {plan.value} checkout for organization {organization_id}")
        try:
            result = await asyncio.wait_for(
                gateway.create_checkout_session(
                    organization_id,
                    plan,
                    intent_id=intent_id,
                    timeout=self.request_timeout,
                ),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Checkout session request timed out for organization {organization_id}")
            raise RequestTimeoutError("Unable to start checkout. Please try again.")

        checkout_url = (result.checkout_url or "").strip()
        if not checkout_url or not _EXTERNAL_URL.match(checkout_url):
            logger.error(f"Invalid checkout URL for organization {organization_id}: {checkout_url!r}")
            raise BackendError("Unable to start checkout. We did not receive a valid checkout URL.")

        action = CheckoutLaunchAction.OPEN_NEW_TAB if new_tab_allowed else CheckoutLaunchAction.REDIRECT
        logger.info(f"Checkout session ready for organization {organization_id}: action={action.value}")
        return CheckoutLaunch(action=action, url=checkout_url)
