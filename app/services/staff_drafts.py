from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.crud.staff_draft import staff_draft as staff_draft_crud
from app.schemas.onboarding import StaffDraftRow, StaffDraftSnapshot
from app.core.logging_config import logger


def normalize_rows(rows: Iterable[StaffDraftRow]) -> List[StaffDraftRow]:
    """Drop unnamed rows, trim fields and lower-case emails."""
    normalized = []
    for row in rows:
        name = row.name.strip()
        if not name:
            continue
        normalized.append(StaffDraftRow(
            name=name,
            role=row.role.strip(),
            hourly_pay=row.hourly_pay.strip(),
            email=row.email.strip().lower(),
        ))
    return normalized


class StaffDraftService:
    """
    Tenant-scoped snapshot of the staff rows typed during setup.

    Best-effort storage: losing a snapshot is acceptable, so failures are
    logged and never raised to the caller.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.crud = staff_draft_crud

    def persist_drafts(self, organization_id: str, rows: Iterable[StaffDraftRow]) -> StaffDraftSnapshot:
        """
        Write a timestamped snapshot of the rows for the organization.

        Args:
            organization_id: Organization the drafts belong to
            rows: Staff rows as typed, with or without email

        Returns:
            The snapshot that was written (or attempted)
        """
        snapshot = StaffDraftSnapshot(
            saved_at=datetime.now(timezone.utc),
            rows=normalize_rows(rows),
        )
        try:
            with self.session_factory() as db:
                self.crud.replace(
                    db,
                    organization_id,
                    snapshot.saved_at,
                    [row.model_dump(by_alias=True) for row in snapshot.rows],
                )
            logger.info(f"Saved {len(snapshot.rows)} staff drafts for organization {organization_id}")
        except SQLAlchemyError as e:
            logger.warning(f"Could not save staff drafts for organization {organization_id}: {str(e)}")
        return snapshot

    def load_drafts(self, organization_id: str) -> Optional[StaffDraftSnapshot]:
        try:
            with self.session_factory() as db:
                db_obj = self.crud.get(db, organization_id)
                if db_obj is None:
                    return None
                return StaffDraftSnapshot(
                    saved_at=db_obj.saved_at,
                    rows=[StaffDraftRow.model_validate(row) for row in db_obj.rows or []],
                )
        except SQLAlchemyError as e:
            logger.warning(f"Could not load staff drafts for organization {organization_id}: {str(e)}")
            return None


# Create singleton instance
staff_draft_service = StaffDraftService()
