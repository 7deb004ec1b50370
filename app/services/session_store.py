from typing import Any, Callable
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.crud.onboarding_session import onboarding_session as onboarding_session_crud
from app.schemas.onboarding import OnboardingSessionState
from app.core.errors import ConflictError
from app.core.logging_config import logger


class SessionStore:
    """
    Durable per-tab record of onboarding progress.

    The store opens a short-lived database session for every operation
    because a controller outlives the request that created it.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.crud = onboarding_session_crud

    def load(self, session_key: str) -> OnboardingSessionState:
        """
        Load the session, or an empty state if none was recorded.
        """
        with self.session_factory() as db:
            db_obj = self.crud.get(db, session_key)
            if db_obj is None:
                return OnboardingSessionState()
            return OnboardingSessionState.model_validate(db_obj)

    def save(self, session_key: str, **fields: Any) -> OnboardingSessionState:
        """
        Merge fields into the session.

        Raises:
            ConflictError: If the session already belongs to a different organization
        """
        data = {
            field: value.value if hasattr(value, "value") else value
            for field, value in fields.items()
        }
        with self.session_factory() as db:
            existing = self.crud.get(db, session_key)
            new_org = data.get("organization_id")
            if existing is not None and existing.organization_id and new_org and new_org != existing.organization_id:
                logger.error(
                    f"Refusing to replace organization {existing.organization_id} "
                    f"with {new_org} in session {session_key}"
                )
                raise ConflictError("This onboarding session already created a restaurant.")

            db_obj = self.crud.upsert(db, session_key, data)
            return OnboardingSessionState.model_validate(db_obj)

    def clear(self, session_key: str) -> None:
        with self.session_factory() as db:
            if self.crud.delete(db, session_key):
                logger.info(f"Cleared onboarding session {session_key}")


# Create singleton instance
session_store = SessionStore()
