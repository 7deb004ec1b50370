from .session_store import session_store
from .staff_drafts import staff_draft_service
from .organization import organization_service
from .configuration import configuration_batch

__all__ = ["session_store", "staff_draft_service", "organization_service", "configuration_batch"]
