import logging
import sys

def setup_logging():
    """
    Configure structured logging for the onboarding service.

    Sets up logging to stdout with timestamps, log levels, and module names.
    Works the same under uvicorn, Docker and Kubernetes.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    # Reduce SQLAlchemy and httpx noise in logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logging.getLogger("crewshyft")


# Create global logger instance
logger = setup_logging()
