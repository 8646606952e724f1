"""Health check endpoints for the EPTW API.

- /health: Basic health check
- /health/ready: Readiness check (database and Redis reachable)
"""

from typing import Dict, Any

import redis
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from eptw import __version__
from eptw.api.deps import get_db
from eptw.core.config import get_settings
from eptw.utils import utcnow

router = APIRouter(tags=["health"])


def check_database(db: Session) -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"status": "healthy"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_redis() -> Dict[str, Any]:
    """Check connectivity to the Celery broker's Redis."""
    try:
        r = redis.from_url(
            get_settings().redis_url,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        r.ping()
        info = r.info("server")
        r.close()
        return {"status": "healthy", "version": info.get("redis_version", "unknown")}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


@router.get("/health")
async def health_check():
    """Returns 200 if the application is running."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/health/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check.

    Checks database and Redis connectivity; without Redis the expiry
    monitor cannot be scheduled.
    """
    checks = {
        "database": check_database(db),
        "redis": check_redis(),
    }
    unhealthy = [name for name, check in checks.items() if check["status"] == "unhealthy"]

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE if unhealthy else status.HTTP_200_OK,
        content={
            "status": "not_ready" if unhealthy else "ready",
            "checks": checks,
            "failed": unhealthy,
            "timestamp": utcnow().isoformat(),
        },
    )
