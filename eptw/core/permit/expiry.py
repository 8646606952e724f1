"""Extension and expiry monitor.

Drives the time-based transitions nobody triggers by hand:

- ``sweep()`` closes every Active permit whose window (plus grace) elapsed
- ``evaluate()`` does the same for one permit, on demand
- ``warn_expiring()`` announces permits that are about to expire

Extension_Requested permits are never expired automatically: the request
stays open until a human decides it, even past the original ``valid_to``.
When the clock cannot be trusted nothing is expired; doing nothing is always
safer than a false expiry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from eptw.db.models import Permit
from eptw.services.notifications import PermitEvent, PermitEventType
from eptw.utils import as_naive_utc

from .service import PermitService
from .states import PermitStatus

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep."""

    evaluated_at: Optional[datetime] = None
    skipped: bool = False
    expired: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
            "skipped": self.skipped,
            "expired": self.expired,
            "failed": self.failed,
        }


class ExpiryMonitor:
    """Evaluates validity windows of Active permits."""

    def __init__(self, service: PermitService, clock: Optional[Callable[[], Optional[datetime]]] = None):
        self.service = service
        self.clock = clock or service.clock
        self.settings = service.settings

    @property
    def grace(self) -> timedelta:
        return timedelta(seconds=self.settings.expiry_grace_seconds)

    def read_clock(self) -> Optional[datetime]:
        """
        Current time, or None when it cannot be trusted.

        The clock is distrusted when it returns nothing, or when it reads
        earlier than the newest ledger entry by more than the skew tolerance.
        """
        try:
            now = self.clock()
        except Exception:
            logger.exception("Clock read failed; skipping expiry evaluation")
            return None
        if now is None:
            logger.warning("Clock returned no time; skipping expiry evaluation")
            return None

        now = as_naive_utc(now)
        latest = self.service.ledger.latest_timestamp()
        tolerance = timedelta(seconds=self.settings.clock_skew_tolerance_seconds)
        if latest is not None and now < latest - tolerance:
            logger.warning(
                f"Clock reads {now.isoformat()} but the ledger already has an entry at "
                f"{latest.isoformat()}; skipping expiry evaluation"
            )
            return None
        return now

    def due_permit_ids(self, now: datetime) -> List[UUID]:
        """Active permits whose ``valid_to`` plus grace is before ``now``."""
        rows = self.service.db.query(Permit.id).filter(
            Permit.status == PermitStatus.ACTIVE.value,
            Permit.valid_to.isnot(None),
            Permit.valid_to < now - self.grace,
        ).order_by(Permit.valid_to.asc()).all()
        # End the read transaction before taking per-permit locks
        self.service.db.rollback()
        return [row[0] for row in rows]

    def sweep(self) -> SweepResult:
        """Expire every overdue Active permit. Safe to run repeatedly."""
        now = self.read_clock()
        if now is None:
            return SweepResult(skipped=True)

        result = SweepResult(evaluated_at=now)
        for permit_id in self.due_permit_ids(now):
            try:
                permit = self.service.expire(permit_id, now, grace=self.grace)
            except Exception:
                logger.exception(f"Failed to expire permit {permit_id}; continuing sweep")
                result.failed.append(str(permit_id))
                continue
            if permit is not None:
                result.expired.append(permit.serial)

        if result.expired or result.failed:
            logger.info(
                f"Expiry sweep at {now.isoformat()}: {len(result.expired)} expired, "
                f"{len(result.failed)} failed"
            )
        return result

    def evaluate(self, permit_id: UUID) -> Optional[Permit]:
        """Expire one permit if it is overdue. Returns the permit only if it was expired."""
        now = self.read_clock()
        if now is None:
            return None
        return self.service.expire(permit_id, now, grace=self.grace)

    def warn_expiring(self) -> List[PermitEvent]:
        """
        Publish ``permit.expiry_warning`` for Active permits nearing ``valid_to``.

        Each configured threshold is announced at most once per permit. A
        permit first seen inside several thresholds gets one event, for the
        most urgent of them. Approving an extension re-arms the warnings.
        """
        thresholds = self.settings.expiry_warning_thresholds
        if not thresholds:
            return []
        now = self.read_clock()
        if now is None:
            return []

        horizon = now + timedelta(minutes=max(thresholds))
        permits = self.service.db.query(Permit).filter(
            Permit.status == PermitStatus.ACTIVE.value,
            Permit.valid_to > now,
            Permit.valid_to <= horizon,
        ).all()
        candidates = [(p.id, p.serial, p.valid_to, list(p.expiry_warnings_sent or [])) for p in permits]
        self.service.db.rollback()

        events = []
        most_urgent = min(thresholds)
        for permit_id, serial, valid_to, sent in candidates:
            remaining = valid_to - now
            due = [m for m in thresholds if remaining <= timedelta(minutes=m)]
            if not due or min(due) in sent:
                continue
            try:
                if not self.service.record_expiry_warning(permit_id, due):
                    continue
            except Exception:
                logger.exception(f"Failed to record expiry warning for permit {serial}")
                continue

            minutes = min(due)
            event = PermitEvent(
                event_type=PermitEventType.EXPIRY_WARNING,
                permit_id=permit_id,
                serial=serial,
                from_status=PermitStatus.ACTIVE.value,
                to_status=PermitStatus.ACTIVE.value,
                occurred_at=now,
                data={
                    "minutes_before_expiry": minutes,
                    "level": "critical" if minutes == most_urgent else "reminder",
                    "valid_to": valid_to.isoformat(),
                },
            )
            self.service.notifier.publish(event)
            events.append(event)

        if events:
            logger.info(f"Published {len(events)} expiry warnings")
        return events
