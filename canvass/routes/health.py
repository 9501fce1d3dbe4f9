"""Health check endpoint for monitoring and deployment verification.

This module provides a health check endpoint that verifies the application
is running and can connect to the database.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from canvass.models.database import get_db
from canvass.services.rate_limiter import RateLimiterUnavailableError, get_rate_limiter
from canvass.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health_check(
    db: Session = Depends(get_db),
    rate_limiter=Depends(get_rate_limiter),
) -> dict:
    """Health check endpoint.

    Verifies that:
    1. The application is running
    2. Database connection is working

    The rate limiter state is reported but never fails the check: the
    pipeline keeps accepting submissions when it is down.

    Returns:
        dict: Health check status with database and rate limiter info

    Raises:
        HTTPException: If database connection fails (503 Service Unavailable)

    Example response:
        {
            "status": "healthy",
            "database": "connected",
            "rate_limiter": {"backend": "memory", "active_keys": 3, ...}
        }
    """
    try:
        # Test database connection with simple query
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(
            status_code=503,
            detail="Service unavailable - database connection failed"
        )

    try:
        limiter_stats = rate_limiter.get_stats()
    except RateLimiterUnavailableError as e:
        logger.warning(f"Rate limiter unavailable during health check: {e}")
        limiter_stats = {"status": "unavailable"}

    logger.debug("Health check passed")

    return {
        "status": "healthy",
        "database": "connected",
        "rate_limiter": limiter_stats,
    }
