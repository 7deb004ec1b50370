from typing import Dict, Optional


class OnboardingError(Exception):
    """
    Base class for errors surfaced by the onboarding orchestrator.

    Every error carries a user-facing message. Routers translate these into
    HTTP responses through the handler registered in main.py.
    """

    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None):
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)


class ValidationError(OnboardingError):
    """A required field is empty or malformed. Recovered locally on the form."""

    status_code = 400
    default_message = "Please fill in the required fields."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        fields: Optional[Dict[str, str]] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, code=code)
        self.fields = fields or {}


class ConflictError(OnboardingError):
    """Duplicate or already-existing resource."""

    status_code = 409
    default_message = "This already exists."

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, redirect: Optional[str] = None):
        super().__init__(message, code=code)
        self.redirect = redirect


class RequestTimeoutError(OnboardingError):
    """A network call exceeded its time budget."""

    status_code = 504
    default_message = "The request took too long. Please try again."


class BackendError(OnboardingError):
    """Any other failure reported by the backend collaborator."""

    status_code = 502
    default_message = "The server could not complete the request."

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status = status


class CanceledByUser(OnboardingError):
    """The user canceled payment on the external checkout page. Not a failure."""

    status_code = 200
    default_message = "Payment canceled. You can retry checkout whenever you are ready."
