"""
Mapping between onboarding state and shareable location parameters.

Pure functions only, so a bookmarked or reloaded URL can be resolved
without touching the controller.
"""

from typing import Mapping, Optional
from urllib.parse import urlencode

from app.schemas.onboarding import LocationParams, OnboardingRole

MIN_STEP = 1
MAX_STEP = 3

# Legacy step names still found in bookmarks and emails
STEP_ALIASES = {
    "staff": 3,
    "subscription": 3,
    "billing": 3,
    "hours": 2,
    "core": 2,
    "settings": 2,
}


def _clean(value: Optional[str]) -> str:
    return str(value or "").strip()


def resolve_step(raw: Optional[str]) -> int:
    """
    Resolve a raw `step` parameter to a step number.

    Accepts "1"-"3" and the legacy aliases. Anything else resolves to step 1.
    """
    normalized = _clean(raw).lower()
    if normalized in STEP_ALIASES:
        return STEP_ALIASES[normalized]
    if normalized in ("2", "3"):
        return int(normalized)
    return MIN_STEP


def resolve_role(raw: Optional[str]) -> Optional[OnboardingRole]:
    normalized = _clean(raw).lower()
    for role in OnboardingRole:
        if role.value == normalized:
            return role
    return None


def parse_location(params: Mapping[str, Optional[str]]) -> LocationParams:
    """
    Parse location parameters into a LocationParams.

    Args:
        params: Query parameters (role, step, checkout, session_id, intent_id)

    Returns:
        LocationParams with the step resolved and empty values dropped
    """
    raw_step = _clean(params.get("step"))
    return LocationParams(
        role=resolve_role(params.get("role")),
        step=resolve_step(raw_step),
        requested_step=resolve_step(raw_step) if raw_step else None,
        checkout=_clean(params.get("checkout")).lower() or None,
        session_id=_clean(params.get("session_id")) or None,
        intent_id=_clean(params.get("intent_id")) or None,
    )


def build_location(
    role: Optional[OnboardingRole],
    step: int,
    *,
    checkout: Optional[str] = None,
    session_id: Optional[str] = None,
    intent_id: Optional[str] = None,
    setup_mode: bool = False
) -> str:
    """
    Build the query string that reconstructs the given state on reload.

    Step 1 is implied and never written. In setup mode the role is implied too.
    """
    params = {}
    if role and not setup_mode:
        params["role"] = role.value
    if step > MIN_STEP and (setup_mode or role == OnboardingRole.MANAGER):
        params["step"] = str(step)
    if checkout:
        params["checkout"] = checkout
    if session_id:
        params["session_id"] = session_id
    if intent_id:
        params["intent_id"] = intent_id
    return urlencode(params)


def checkout_token(outcome: str, session_id: Optional[str], intent_id: Optional[str]) -> str:
    """Identity of one delivery of checkout return parameters."""
    return f"{outcome}:{session_id or 'none'}:{intent_id or 'none'}"
