from sqlalchemy import Column, Integer, String
from app.database import Base, TimestampMixin


class OnboardingSession(Base, TimestampMixin):
    """
    Onboarding progress for one browser tab.
    Keyed by "<user id>:<tab session id>", cleared on completion or skip.
    """
    __tablename__ = "onboarding_session"

    session_key = Column(String, primary_key=True)
    role = Column(String, nullable=True)  # None=unset, "manager"
    step = Column(Integer, default=1, nullable=False)  # 1=restaurant, 2=setup, 3=subscription
    organization_id = Column(String, nullable=True, index=True)
    restaurant_code = Column(String, nullable=True)
    owner_name = Column(String, nullable=True)
    handled_checkout_token = Column(String, nullable=True)
