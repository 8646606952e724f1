"""Celery workers for the EPTW core."""

from eptw.workers.expiry_tasks import (
    celery_app,
    sweep_expired_permits,
    warn_expiring_permits,
    evaluate_permit,
)

__all__ = [
    "celery_app",
    "sweep_expired_permits",
    "warn_expiring_permits",
    "evaluate_permit",
]
