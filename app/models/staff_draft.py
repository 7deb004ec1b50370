from sqlalchemy import Column, String, DateTime, JSON
from app.database import Base, TimestampMixin


class StaffDraft(Base, TimestampMixin):
    """
    Latest snapshot of the staff rows typed during setup, one per organization.
    This is the only record of rows that were never created remotely.
    """
    __tablename__ = "staff_draft"

    organization_id = Column(String, primary_key=True)
    saved_at = Column(DateTime(timezone=True), nullable=False)
    rows = Column(JSON, nullable=False, default=list)
