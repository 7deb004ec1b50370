"""
Backend gateway client.

Handles communication with the application backend: tenant creation
intents, setup settings, staff accounts and billing.
"""

import httpx
from typing import Any, Dict, List, Optional
from app.core.config import settings
from app.core.errors import (
    BackendError,
    ConflictError,
    OnboardingError,
    RequestTimeoutError,
    ValidationError,
)
from app.core.logging_config import logger
from app.schemas.billing import (
    CheckoutSessionResult,
    CommitIntentResult,
    CreateIntentResult,
    FinalizeResult,
    SubscriptionState,
)
from app.schemas.onboarding import DayHours, PlanId, WeekStartDay


def _parse_json_safe(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def error_from_response(status_code: int, data: Dict[str, Any], fallback: str) -> OnboardingError:
    """
    Translate a non-2xx backend response into the onboarding error taxonomy.
    """
    message = str(data.get("message") or data.get("error") or "").strip() or fallback
    code = data.get("code") or data.get("error_code")

    if status_code in (400, 422):
        return ValidationError(message, code=code)
    if status_code == 409:
        return ConflictError(message, code=code, redirect=data.get("redirect"))
    if status_code in (408, 504):
        return RequestTimeoutError(message, code=code)
    return BackendError(message, status=status_code, code=code)


def hours_payload(hours: List[DayHours]) -> List[Dict[str, Any]]:
    return [
        {
            "dayOfWeek": hour.day_of_week,
            "openTime": hour.open_time,
            "closeTime": hour.close_time,
            "enabled": hour.enabled,
            "sortOrder": index,
        }
        for index, hour in enumerate(hours)
    ]


class BackendGateway:
    """Client for the application backend."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize the gateway.

        Args:
            client: Shared AsyncClient with base_url pointing at the backend
            access_token: Bearer token of the user the calls are made for
            timeout: Default per-request timeout in seconds
        """
        self.client = client
        self.access_token = access_token
        self.timeout = timeout or settings.BACKEND_REQUEST_TIMEOUT_SECONDS

    def bind(self, access_token: Optional[str]) -> "BackendGateway":
        """Return a gateway sharing this client but acting for another token."""
        return BackendGateway(self.client, access_token=access_token, timeout=self.timeout)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        fallback: str = "The server could not complete the request.",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            response = await self.client.request(
                method,
                path,
                json=json,
                params=params,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException:
            logger.error(f"Backend {method} {path} timed out")
            raise RequestTimeoutError()
        except httpx.HTTPError as e:
            logger.error(f"Backend {method} {path} failed: {type(e).__name__}: {str(e)}")
            raise BackendError("Unable to reach the server. Please try again.")

        data = _parse_json_safe(response)
        if response.is_success:
            return data

        logger.warning(f"Backend {method} {path} returned {response.status_code}: {data}")
        raise error_from_response(response.status_code, data, fallback)

    # Tenant creation

    async def create_intent(
        self,
        restaurant_name: str,
        location_name: str,
        timezone: str
    ) -> CreateIntentResult:
        """
        Validate and reserve a new organization.

        Raises:
            ValidationError: If the restaurant name is empty
            BackendError: If the backend rejects the intent
        """
        if not restaurant_name.strip():
            raise ValidationError("Restaurant name is required.", fields={"restaurant_name": "Restaurant name is required."})

        data = await self._request(
            "POST",
            "/api/orgs/create-intent",
            json={
                "restaurantName": restaurant_name.strip(),
                "locationName": location_name.strip() or restaurant_name.strip(),
                "timezone": timezone,
            },
            fallback="Unable to create restaurant.",
        )
        if not data.get("intentId"):
            raise BackendError("Unable to create restaurant.")
        return CreateIntentResult.model_validate(data)

    async def commit_intent(self, intent_id: str, defer_billing_check: bool = True) -> CommitIntentResult:
        """
        Materialize the organization reserved by an intent.
        Intents are not assumed idempotent; call once per intent.
        """
        data = await self._request(
            "POST",
            "/api/orgs/commit-intent",
            json={"intentId": intent_id, "deferBillingCheck": defer_billing_check},
            fallback="Unable to create restaurant.",
        )
        if not data.get("organizationId"):
            raise BackendError("Unable to create restaurant.")
        return CommitIntentResult.model_validate(data)

    async def cancel_intent(self, intent_id: str) -> None:
        await self._request(
            "POST",
            "/api/orgs/cancel-intent",
            json={"intentId": intent_id},
            fallback="Unable to cancel intent.",
        )

    # Optional setup

    async def save_schedule_view_settings(self, organization_id: str, week_start_day: WeekStartDay) -> None:
        await self._request(
            "POST",
            "/api/schedule-view-settings/save",
            json={"organizationId": organization_id, "weekStartDay": week_start_day.value},
        )

    async def save_business_hours(self, organization_id: str, hours: List[DayHours]) -> None:
        await self._request(
            "POST",
            "/api/business-hours/save",
            json={"organizationId": organization_id, "hours": hours_payload(hours)},
        )

    async def save_core_hours(self, organization_id: str, hours: List[DayHours]) -> None:
        await self._request(
            "POST",
            "/api/core-hours/save",
            json={"organizationId": organization_id, "hours": hours_payload(hours)},
        )

    async def create_staff_account(
        self,
        organization_id: str,
        *,
        full_name: str,
        email: str,
        role: str,
        employee_number: int,
        hourly_pay: Optional[float] = None
    ) -> None:
        """
        Create an employee account.

        Raises:
            ConflictError: If an account with this email already exists
        """
        payload = {
            "organizationId": organization_id,
            "fullName": full_name,
            "email": email,
            "accountType": "EMPLOYEE",
            "jobs": [role],
            "employeeNumber": employee_number,
        }
        if hourly_pay is not None:
            payload["hourlyPay"] = hourly_pay
        await self._request("POST", "/api/admin/create-user", json=payload)

    # Billing

    async def create_checkout_session(
        self,
        organization_id: str,
        plan: PlanId,
        intent_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> CheckoutSessionResult:
        """
        Request an external checkout session for the organization.

        Raises:
            ConflictError: With `redirect` set when billing is already managed elsewhere
        """
        payload = {"organizationId": organization_id, "priceType": plan.value, "flow": "setup"}
        if intent_id:
            payload["intentId"] = intent_id
        data = await self._request(
            "POST",
            "/api/billing/create-checkout-session",
            json=payload,
            fallback="Unable to start checkout. Please try again.",
            timeout=timeout,
        )
        return CheckoutSessionResult.model_validate(data)

    async def finalize_checkout(self, session_id: str, intent_id: Optional[str] = None) -> FinalizeResult:
        """
        Reconcile a completed checkout session with the subscription record.
        The backend is idempotent on session_id.
        """
        payload = {"session_id": session_id}
        if intent_id:
            payload["intent_id"] = intent_id
        data = await self._request(
            "POST",
            "/api/billing/finalize-checkout",
            json=payload,
            fallback="Unable to finalize subscription.",
        )
        result = FinalizeResult.model_validate(data)
        if not result.ok:
            raise BackendError(result.error or "Unable to finalize subscription.")
        return result

    async def get_subscription_status(self, organization_id: str) -> SubscriptionState:
        data = await self._request(
            "GET",
            "/api/billing/subscription-status",
            params={"organizationId": organization_id},
            fallback="Unable to check subscription status.",
        )
        return SubscriptionState.from_payload(data)


def create_http_client() -> httpx.AsyncClient:
    """Create the process-wide client used by every gateway."""
    headers = {"Accept": "application/json"}
    if settings.BACKEND_API_KEY:
        headers["X-Api-Key"] = settings.BACKEND_API_KEY
    return httpx.AsyncClient(
        base_url=settings.BACKEND_BASE_URL,
        headers=headers,
        timeout=settings.BACKEND_REQUEST_TIMEOUT_SECONDS,
    )
