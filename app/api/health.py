"""
Health check and readiness probe endpoints.
Provides liveness and readiness checks for Kubernetes and monitoring systems.
"""
import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from api.dependencies import get_db
from core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Args:
        db: Database session

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {e}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    """
    Liveness probe endpoint.

    Returns basic service status without checking dependencies, plus the
    live connection counts of this process.

    Example Response:
        {
            "status": "healthy",
            "service": "taskhub-realtime",
            "connections": 3,
            "users_online": 2
        }
    """
    manager = getattr(request.app.state, "connection_manager", None)
    return {
        "status": "healthy",
        "service": settings.service_name,
        "connections": manager.get_connection_count() if manager else 0,
        "users_online": manager.get_user_count() if manager else 0
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe endpoint.

    Returns 200 only when the database answers, 503 otherwise.

    Example Response (degraded):
        {
            "detail": {
                "status": "not_ready",
                "checks": {
                    "database": {"healthy": false, "message": "Database connection failed: ..."}
                }
            }
        }
    """
    checks = {"database": check_database(db)}

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    logger.warning("Readiness check failed for services: database")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
