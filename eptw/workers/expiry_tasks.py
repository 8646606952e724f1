"""Celery tasks for time-driven permit transitions.

Provides periodic processing for:
- Expiry sweeps closing Active permits past their window
- Expiry warnings ahead of ``valid_to``
- On-demand evaluation of a single permit
"""

from typing import Any, Dict, Optional
from uuid import UUID
import logging

from celery import Celery, shared_task, signals

from eptw.common.logger import configure_from_settings
from eptw.db.session import SessionLocal
from eptw.core.config import get_settings
from eptw.core.permit.expiry import ExpiryMonitor
from eptw.core.permit.service import PermitService

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Celery
celery_app = Celery(
    'eptw',
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'eptw.workers.expiry_tasks.sweep_expired_permits': {'queue': 'expiry'},
        'eptw.workers.expiry_tasks.warn_expiring_permits': {'queue': 'expiry'},
        'eptw.workers.expiry_tasks.evaluate_permit': {'queue': 'expiry'},
    },
    task_default_queue='default',
    beat_schedule={
        'sweep-expired-permits': {
            'task': 'eptw.workers.expiry_tasks.sweep_expired_permits',
            'schedule': float(settings.expiry_sweep_interval_seconds),
        },
        'warn-expiring-permits': {
            'task': 'eptw.workers.expiry_tasks.warn_expiring_permits',
            'schedule': float(settings.expiry_sweep_interval_seconds),
        },
    },
)


@signals.setup_logging.connect
def _configure_logging(**kwargs):
    """Keep Celery from replacing the package's log handlers."""
    configure_from_settings(settings)


def _build_monitor(db) -> ExpiryMonitor:
    return ExpiryMonitor(PermitService(db))


@shared_task(name='eptw.workers.expiry_tasks.sweep_expired_permits')
def sweep_expired_permits() -> Dict[str, Any]:
    """
    Periodic task closing every Active permit whose window has elapsed.

    Returns:
        Sweep summary (expired serials, failures, whether the sweep was skipped)
    """
    db = SessionLocal()
    try:
        result = _build_monitor(db).sweep()
        if result.skipped:
            logger.warning("Expiry sweep skipped: clock not trusted")
        return result.to_dict()

    except Exception:
        logger.exception("Expiry sweep failed")
        raise

    finally:
        db.close()


@shared_task(name='eptw.workers.expiry_tasks.warn_expiring_permits')
def warn_expiring_permits() -> Dict[str, Any]:
    """Periodic task publishing reminders for permits about to expire."""
    db = SessionLocal()
    try:
        events = _build_monitor(db).warn_expiring()
        return {
            "warnings": [
                {"serial": e.serial, "minutes_before_expiry": e.data["minutes_before_expiry"]}
                for e in events
            ],
        }

    except Exception:
        logger.exception("Expiry warnings failed")
        raise

    finally:
        db.close()


@shared_task(name='eptw.workers.expiry_tasks.evaluate_permit', bind=True, max_retries=3, default_retry_delay=30)
def evaluate_permit(self, permit_id: str) -> Dict[str, Optional[str]]:
    """
    Expire a single permit if it is overdue.

    Args:
        permit_id: Permit ID

    Returns:
        The permit id and its status after evaluation
    """
    db = SessionLocal()
    try:
        service = PermitService(db)
        ExpiryMonitor(service).evaluate(UUID(permit_id))
        permit = service.get_permit(UUID(permit_id))
        return {"permit_id": permit_id, "status": permit.status, "closure_reason": permit.closure_reason}

    except Exception as e:
        logger.exception(f"Evaluation failed for permit {permit_id}")
        # Retry on transient errors
        if "connection" in str(e).lower() or "timeout" in str(e).lower():
            raise self.retry(exc=e)
        raise

    finally:
        db.close()
