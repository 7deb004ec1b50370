from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    DATABASE_URL: str = "sqlite:///./onboarding.db"

    COOKIE_NAME: str = "active_organization"
    ENVIRONMENT: str = "development"  # "development" or "production"

    @property
    def cookie_secure(self):
        return self.ENVIRONMENT == "production"

    @property
    def cookie_samesite(self):
        return "none" if self.ENVIRONMENT == "production" else "lax"

    @property
    def cookie_domain(self):
        return ".crewshyft.com" if self.ENVIRONMENT == "production" else None

    @property
    def cookie_max_age(self):
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "https://app.crewshyft.com"]

    # Backend collaborator (intents, settings, staff, billing)
    BACKEND_BASE_URL: str = "http://localhost:3000"
    BACKEND_API_KEY: Optional[str] = None
    BACKEND_REQUEST_TIMEOUT_SECONDS: float = 15.0

    # Checkout reconciliation timings
    CHECKOUT_REQUEST_TIMEOUT_SECONDS: float = 10.0
    FINALIZE_TIMEOUT_SECONDS: float = 12.0
    CHECKOUT_POLL_INTERVAL_SECONDS: float = 1.5
    CHECKOUT_POLL_MAX_SECONDS: float = 120.0
    AUTO_ADVANCE_DELAY_SECONDS: float = 0.9

    # Live onboarding controllers untouched for this long are unmounted
    ONBOARDING_IDLE_TIMEOUT_SECONDS: float = 1800.0

    MANAGE_BILLING_PATH: str = "/billing"
    DASHBOARD_PATH: str = "/dashboard"
    SETUP_EXIT_PATH: str = "/restaurants"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

settings = Settings()
