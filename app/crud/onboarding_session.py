from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from app.models.onboarding_session import OnboardingSession


class CRUDOnboardingSession:
    """
    CRUD operations for OnboardingSession model.

    Rows are keyed by session key, one per user and browser tab.
    """

    def __init__(self):
        self.model = OnboardingSession

    def get(self, db: Session, session_key: str) -> Optional[OnboardingSession]:
        """
        Retrieve a session by key.

        Args:
            db: Database session
            session_key: "<user id>:<tab session id>"

        Returns:
            OnboardingSession instance or None if not found
        """
        stmt = select(OnboardingSession).where(OnboardingSession.session_key == session_key)
        result = db.execute(stmt)
        return result.scalar_one_or_none()

    def upsert(self, db: Session, session_key: str, data: Dict[str, Any]) -> OnboardingSession:
        """
        Create the session if needed and merge the given fields into it.
        Fields not present in data are left untouched.
        """
        db_obj = self.get(db, session_key)
        if db_obj is None:
            db_obj = OnboardingSession(session_key=session_key, step=1)
            db.add(db_obj)

        for field, value in data.items():
            setattr(db_obj, field, value)

        db.commit()
        db.refresh(db_obj)
        return db_obj

    def delete(self, db: Session, session_key: str) -> bool:
        """
        Delete a session by key.

        Returns:
            True if a row was deleted
        """
        db_obj = self.get(db, session_key)
        if not db_obj:
            return False
        db.delete(db_obj)
        db.commit()
        return True


# Create singleton instance
onboarding_session = CRUDOnboardingSession()
