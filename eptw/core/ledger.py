"""Append-only audit ledger for permit transitions.

The ledger is the source of truth for who did what and when. A permit's
``status`` column is a cached projection that must always equal the
``to_status`` of the last entry returned by :meth:`AuditLedger.history`.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from eptw.core.permit.states import PermitStatus, PermitTrigger
from eptw.db.models import AuditEntry
from eptw.utils import utcnow

logger = logging.getLogger(__name__)


class PermitHistory:
    """
    Ordered view of one permit's audit entries.

    Entries come back in write order (``sequence``). Timestamps follow the
    same order because :meth:`AuditLedger.record` never lets them run
    backwards within a permit.

    Iterating runs a fresh query each time, so the sequence is restartable
    and reflects entries committed since the last pass. Rows are streamed in
    batches rather than loaded all at once.
    """

    def __init__(self, db: Session, permit_id: UUID, batch_size: int = 100):
        self.db = db
        self.permit_id = permit_id
        self.batch_size = batch_size

    def _query(self):
        return self.db.query(AuditEntry).filter(AuditEntry.permit_id == self.permit_id)

    def __iter__(self) -> Iterator[AuditEntry]:
        query = self._query().order_by(AuditEntry.sequence.asc())
        return iter(query.yield_per(self.batch_size))

    def __len__(self) -> int:
        return self._query().count()

    def last(self) -> Optional[AuditEntry]:
        return self._query().order_by(AuditEntry.sequence.desc()).first()


class AuditLedger:
    """Writes and reads the audit trail. Never updates or deletes entries."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        permit_id: UUID,
        from_status: Optional[PermitStatus],
        to_status: PermitStatus,
        trigger: PermitTrigger,
        *,
        actor_id: Optional[UUID] = None,
        role: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        comment: Optional[str] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Append one entry for a transition.

        Must be called inside the transaction that changes the permit, so the
        entry and the status change commit or roll back together.

        A timestamp earlier than the permit's newest entry (a clock running
        behind another host's) is raised to that entry's timestamp; the
        reading actually supplied is kept in ``extra_data["clock_reading"]``.
        """
        last_sequence, last_timestamp = self.db.query(
            func.max(AuditEntry.sequence), func.max(AuditEntry.timestamp)
        ).filter(AuditEntry.permit_id == permit_id).one()

        timestamp = timestamp or utcnow()
        extra_data = dict(extra_data or {})
        if last_timestamp is not None and timestamp < last_timestamp:
            logger.warning(
                f"Ledger: clock reading {timestamp.isoformat()} for permit {permit_id} is behind "
                f"its last entry ({last_timestamp.isoformat()}); recording at the later time"
            )
            extra_data["clock_reading"] = timestamp.isoformat()
            timestamp = last_timestamp

        entry = AuditEntry(
            permit_id=permit_id,
            sequence=(last_sequence or 0) + 1,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            trigger=trigger.value,
            actor_id=actor_id,
            role_at_action=role,
            comment=comment,
            extra_data=extra_data,
            timestamp=timestamp,
        )
        self.db.add(entry)
        self.db.flush()

        logger.debug(
            f"Ledger: permit {permit_id} {entry.from_status} -> {entry.to_status} "
            f"({entry.trigger}) by {actor_id or 'system'}"
        )
        return entry

    def history(self, permit_id: UUID) -> PermitHistory:
        return PermitHistory(self.db, permit_id)

    def replay_status(self, permit_id: UUID) -> Optional[PermitStatus]:
        """Fold the history into the status it implies. None if no entries exist."""
        status = None
        for entry in self.history(permit_id):
            if entry.from_status is not None and status is not None and entry.from_status != status.value:
                logger.warning(
                    f"Ledger for permit {permit_id} is discontinuous at sequence {entry.sequence}: "
                    f"expected from {status.value}, found {entry.from_status}"
                )
            status = PermitStatus(entry.to_status)
        return status

    def latest_timestamp(self) -> Optional[datetime]:
        """Newest entry timestamp across every permit."""
        return self.db.query(func.max(AuditEntry.timestamp)).scalar()
