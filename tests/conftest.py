import asyncio
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Any, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import ConflictError
from app.database import Base
from app.models import OnboardingSession, StaffDraft  # noqa: F401
from app.schemas.billing import (
    CheckoutSessionResult,
    CommitIntentResult,
    CreateIntentResult,
    FinalizeResult,
    SubscriptionState,
)
from app.services.reconciler import CheckoutTimings
from app.services.session_store import SessionStore
from app.services.staff_drafts import StaffDraftService
from app.services.ui_lock import UiLock

INACTIVE = SubscriptionState(status="none", active=False)
ACTIVE = SubscriptionState(status="active", active=True)


class FakeGateway:
    """In-memory backend gateway recording every call."""

    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []
        self.access_token: Optional[str] = None

        self.intent_id = "int_1"
        self.organization_id = "org_1"
        self.restaurant_code = "RST-ABC"
        self.checkout_url = "https://checkout.example.com/c/cs_1"

        # Errors raised by operation name
        self.errors: dict = {}
        # Staff emails that already have an account
        self.existing_emails: set = set()

        self.subscription = INACTIVE
        self.subscription_sequence: List[SubscriptionState] = []
        self.intent_delay = 0.0
        self.status_delay = 0.0
        self.finalize_delay = 0.0

    def bind(self, access_token):
        self.access_token = access_token
        return self

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def args(self, name: str) -> List[Any]:
        return [args for call, args in self.calls if call == name]

    def _record(self, name: str, args: Any) -> None:
        self.calls.append((name, args))
        error = self.errors.get(name)
        if error is not None:
            raise error

    async def create_intent(self, restaurant_name, location_name, timezone):
        self._record("create_intent", (restaurant_name, location_name, timezone))
        if self.intent_delay:
            await asyncio.sleep(self.intent_delay)
        return CreateIntentResult(intent_id=self.intent_id)

    async def commit_intent(self, intent_id, defer_billing_check=True):
        self._record("commit_intent", (intent_id, defer_billing_check))
        return CommitIntentResult(
            organization_id=self.organization_id,
            restaurant_code=self.restaurant_code,
        )

    async def cancel_intent(self, intent_id):
        self._record("cancel_intent", intent_id)

    async def save_schedule_view_settings(self, organization_id, week_start_day):
        self._record("save_schedule_view_settings", (organization_id, week_start_day))

    async def save_business_hours(self, organization_id, hours):
        self._record("save_business_hours", (organization_id, hours))

    async def save_core_hours(self, organization_id, hours):
        self._record("save_core_hours", (organization_id, hours))

    async def create_staff_account(self, organization_id, *, full_name, email, role, employee_number, hourly_pay=None):
        self._record("create_staff_account", {
            "organization_id": organization_id,
            "full_name": full_name,
            "email": email,
            "role": role,
            "employee_number": employee_number,
            "hourly_pay": hourly_pay,
        })
        if email in self.existing_emails:
            raise ConflictError("An account with this email already exists.")

    async def create_checkout_session(self, organization_id, plan, intent_id=None, timeout=None):
        self._record("create_checkout_session", (organization_id, plan, intent_id))
        return CheckoutSessionResult(checkout_url=self.checkout_url, session_id="cs_1")

    async def finalize_checkout(self, session_id, intent_id=None):
        self.calls.append(("finalize_checkout", (session_id, intent_id)))
        if self.finalize_delay:
            await asyncio.sleep(self.finalize_delay)
        error = self.errors.get("finalize_checkout")
        if error is not None:
            raise error
        return FinalizeResult(ok=True, active=True, status="active")

    async def get_subscription_status(self, organization_id):
        self.calls.append(("get_subscription_status", organization_id))
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        error = self.errors.get("get_subscription_status")
        if error is not None:
            raise error
        if self.subscription_sequence:
            return self.subscription_sequence.pop(0)
        return self.subscription


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def drafts(session_factory):
    return StaffDraftService(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def timings():
    return CheckoutTimings(
        request_timeout=0.5,
        finalize_timeout=0.1,
        poll_interval=0.02,
        poll_max=0.5,
        auto_advance_delay=0.01,
    )


@pytest.fixture
def ui_lock():
    return UiLock()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Let the event loop run until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)
