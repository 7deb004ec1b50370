from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum


class OnboardingRole(str, Enum):
    MANAGER = "manager"


class PlanId(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class CheckoutOutcome(str, Enum):
    SUCCESS = "success"
    CANCEL = "cancel"


class WeekStartDay(str, Enum):
    SUNDAY = "sunday"
    MONDAY = "monday"


class CheckoutState(str, Enum):
    IDLE = "idle"
    AWAITING_REDIRECT = "awaiting_redirect"
    POLLING = "polling"
    AWAITING_CALLBACK = "awaiting_callback"
    FINALIZING = "finalizing"
    ACTIVATED = "activated"
    CANCELED = "canceled"
    MANAGE_BILLING = "manage_billing"
    ERROR = "error"


class RecoveryAction(str, Enum):
    RETRY_FINALIZE = "retry_finalize"
    RETRY_CHECKOUT = "retry_checkout"
    MANAGE_BILLING = "manage_billing"
    REFRESH_STATUS = "refresh_status"


class CheckoutLaunchAction(str, Enum):
    OPEN_NEW_TAB = "open_new_tab"
    REDIRECT = "redirect"
    MANAGE_BILLING = "manage_billing"


class LocationParams(BaseModel):
    """Onboarding state as carried by shareable location parameters"""
    role: Optional[OnboardingRole] = None
    step: int = 1
    requested_step: Optional[int] = None  # None when the location has no step
    checkout: Optional[str] = None
    session_id: Optional[str] = None
    intent_id: Optional[str] = None


class OnboardingSessionState(BaseModel):
    """Snapshot of the persisted onboarding session"""
    role: Optional[OnboardingRole] = None
    step: int = 1
    organization_id: Optional[str] = None
    restaurant_code: Optional[str] = None
    owner_name: Optional[str] = None
    handled_checkout_token: Optional[str] = None

    class Config:
        from_attributes = True


class ExistingOrganization(BaseModel):
    """A tenant that already exists when setup is re-entered"""
    organization_id: str
    restaurant_code: Optional[str] = None


class DayHours(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    open_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    close_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    enabled: bool = True


class CoreHours(BaseModel):
    open_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    close_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class StaffDraftRow(BaseModel):
    name: str = ""
    email: str = ""
    role: str = "Server"
    hourly_pay: str = Field("", alias="hourlyPay")

    class Config:
        populate_by_name = True


class StaffDraftSnapshot(BaseModel):
    saved_at: datetime
    rows: List[StaffDraftRow] = Field(default_factory=list)


class RoleRequest(BaseModel):
    role: OnboardingRole


class OwnerNameRequest(BaseModel):
    owner_name: str


class CreateRestaurantRequest(BaseModel):
    """Request schema for creating the restaurant (step 1)"""
    owner_name: str = ""
    restaurant_name: str = ""
    location_name: str = ""
    timezone: str = "America/New_York"


class OptionalSetupRequest(BaseModel):
    """Request schema for the optional setup details (step 2)"""
    week_start_day: WeekStartDay = WeekStartDay.MONDAY
    hours: Optional[List[DayHours]] = None
    core_hours: Optional[CoreHours] = None
    staff_drafts: List[StaffDraftRow] = Field(default_factory=list)


class SkipSetupRequest(BaseModel):
    staff_drafts: List[StaffDraftRow] = Field(default_factory=list)


class ConfigurationReport(BaseModel):
    """Outcome of the best-effort setup batch"""
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)

    @property
    def had_error(self) -> bool:
        return bool(self.failed)


class CheckoutRequest(BaseModel):
    plan: PlanId
    new_tab_allowed: bool = True


class CheckoutLaunch(BaseModel):
    action: CheckoutLaunchAction
    url: str


class CheckoutView(BaseModel):
    state: CheckoutState = CheckoutState.IDLE
    plan: Optional[PlanId] = None
    notice: Optional[str] = None
    error: Optional[str] = None
    recovery_action: Optional[RecoveryAction] = None
    manage_billing_url: Optional[str] = None
    session_id: Optional[str] = None
    intent_id: Optional[str] = None
    payment_received: bool = False
    subscription_status: str = "none"
    subscription_active: bool = False


class Completion(BaseModel):
    organization_id: str
    restaurant_code: Optional[str] = None
    redirect: str


class OnboardingView(BaseModel):
    """Everything the client needs to render the current onboarding screen"""
    role: Optional[OnboardingRole] = None
    step: int = 1
    organization_id: Optional[str] = None
    restaurant_code: Optional[str] = None
    owner_name: Optional[str] = None
    ui_locked: bool = False
    location: str = ""
    warning: Optional[str] = None
    checkout: CheckoutView = Field(default_factory=CheckoutView)
    launch: Optional[CheckoutLaunch] = None
    staff_drafts: List[StaffDraftRow] = Field(default_factory=list)
    completion: Optional[Completion] = None
    redirect: Optional[str] = None  # Set once the client must leave onboarding
