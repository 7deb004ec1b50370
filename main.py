from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from app.database import get_db
from app.core.config import settings
from app.core.errors import OnboardingError, ValidationError
from app.core.logging_config import logger, setup_logging
from app.routers import onboarding
from app.services.backend_gateway import BackendGateway, create_http_client
from app.services.registry import ControllerRegistry

# Schema is managed by Alembic: run `alembic upgrade head` before starting


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    client = create_http_client()
    app.state.registry = ControllerRegistry(BackendGateway(client))
    logger.info(f"Onboarding service started (environment={settings.ENVIRONMENT})")
    try:
        yield
    finally:
        await app.state.registry.shutdown()
        await client.aclose()
        logger.info("Onboarding service stopped")


app = FastAPI(
    title="CrewShyft Onboarding API",
    version="1.0.0",
    redirect_slashes=False,  # Disable automatic redirects to prevent POST data loss
    lifespan=lifespan,
)

# Configure CORS for frontend applications
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,  # Required for the active organization cookie
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OnboardingError)
async def onboarding_error_handler(request: Request, exc: OnboardingError):
    content = {"detail": exc.message}
    if exc.code:
        content["code"] = exc.code
    if isinstance(exc, ValidationError) and exc.fields:
        content["fields"] = exc.fields
    if getattr(exc, "redirect", None):
        content["redirect"] = exc.redirect
    return JSONResponse(status_code=exc.status_code, content=content)


# Include routers
app.include_router(onboarding.router, prefix="/api/onboarding", tags=["Onboarding"])


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected"
        }
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unhealthy"
        )
