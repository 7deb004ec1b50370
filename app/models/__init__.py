from .onboarding_session import OnboardingSession
from .staff_draft import StaffDraft
