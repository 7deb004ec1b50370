from .onboarding_session import onboarding_session
from .staff_draft import staff_draft

__all__ = ["onboarding_session", "staff_draft"]
