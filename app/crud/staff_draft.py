from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from app.models.staff_draft import StaffDraft


class CRUDStaffDraft:
    """CRUD operations for StaffDraft model."""

    def get(self, db: Session, organization_id: str) -> Optional[StaffDraft]:
        stmt = select(StaffDraft).where(StaffDraft.organization_id == organization_id)
        return db.execute(stmt).scalar_one_or_none()

    def replace(
        self,
        db: Session,
        organization_id: str,
        saved_at: datetime,
        rows: List[Dict[str, Any]]
    ) -> StaffDraft:
        """
        Replace the organization's snapshot. Only the latest one is kept.
        """
        db_obj = self.get(db, organization_id)
        if db_obj is None:
            db_obj = StaffDraft(organization_id=organization_id)
            db.add(db_obj)
        db_obj.saved_at = saved_at
        db_obj.rows = rows
        db.commit()
        db.refresh(db_obj)
        return db_obj


# Create singleton instance
staff_draft = CRUDStaffDraft()
