from fastapi import Depends, Header, HTTPException, status
from app.dependencies import CurrentUser, get_current_user

SESSION_HEADER = "X-Onboarding-Session"


def get_session_key(
    onboarding_session: str = Header(None, alias=SESSION_HEADER),
    current_user: CurrentUser = Depends(get_current_user)
) -> str:
    """
    FastAPI dependency that scopes the per-tab onboarding session to the user.

    The client sends one id per browser tab. Prefixing it with the user id
    keeps two users from ever sharing a session.

    Args:
        onboarding_session: Tab id from the X-Onboarding-Session header
        current_user: Authenticated user from JWT token

    Returns:
        Session key used by the store and the controller registry
    """
    tab_id = (onboarding_session or "").strip()
    if not tab_id or len(tab_id) > 128:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing or invalid {SESSION_HEADER} header",
        )
    return f"{current_user.id}:{tab_id}"
