"""Permit service for managing the permit-to-work lifecycle.

Provides the high-level API collaborators call: each operation validates its
input, serializes on the permit, evaluates the state machine, appends the
ledger entry, commits, and only then publishes a change notification.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from eptw.core.approval_chain.resolver import ApprovalChainResolver
from eptw.core.config import Settings, get_settings
from eptw.core.directory import Directory
from eptw.core.exceptions import (
    AuthorizationError,
    PermitNotFoundError,
    StaleTransitionError,
    ValidationError,
)
from eptw.core.ledger import AuditLedger, PermitHistory
from eptw.core.rbac import PermissionChecker, Role
from eptw.db.models import Permit
from eptw.services.notifications import (
    NotificationDispatcher,
    PermitEvent,
    PermitEventType,
    default_dispatcher,
)
from eptw.utils import as_naive_utc, utcnow

from .locks import PermitLocks, default_locks
from .machine import PermitStateMachine, TransitionRecord
from .serials import next_serial
from .states import PermitStatus, PermitTrigger, PermitType, comment_required

logger = logging.getLogger(__name__)

Clock = Callable[[], Optional[datetime]]

DECISION_PERMISSIONS = ["approvals:approve", "approvals:reject"]
EXTENSION_DECISION_PERMISSIONS = ["extensions:approve", "extensions:reject"]


def parse_timestamp(value: Union[str, datetime, None], name: str) -> Optional[datetime]:
    """Accept a datetime or ISO 8601 string and return naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, str):
        try:
            return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as e:
            raise ValidationError(f"{name} is not a valid ISO 8601 timestamp: {value!r}", guard=name) from e
    raise ValidationError(f"{name} must be a timestamp, got {type(value).__name__}", guard=name)


class PermitService:
    """
    High-level service for permits.

    Handles:
    - Creating permits with atomically assigned serials
    - Performing state transitions with locking and retry
    - Recording every transition in the audit ledger
    - Querying permit state, history and available actions
    """

    def __init__(
        self,
        db: Session,
        *,
        resolver: Optional[ApprovalChainResolver] = None,
        directory: Optional[Directory] = None,
        ledger: Optional[AuditLedger] = None,
        notifier: Optional[NotificationDispatcher] = None,
        locks: Optional[PermitLocks] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the permit service.

        Args:
            db: Database session; the service commits it after each operation
            resolver: Approval chain resolver
            directory: User and site directory
            ledger: Audit ledger
            notifier: Dispatcher for change notifications
            locks: Per-permit lock registry shared by services in this process
            clock: Returns the current naive UTC time
            settings: Application settings
        """
        self.db = db
        self.directory = directory or Directory(db)
        self.resolver = resolver or ApprovalChainResolver(db, self.directory)
        self.ledger = ledger or AuditLedger(db)
        self.notifier = notifier or default_dispatcher
        self.locks = locks or default_locks
        self.clock = clock or utcnow
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_permit(self, permit_id: UUID) -> Permit:
        permit = self.db.get(Permit, permit_id)
        if permit is None:
            raise PermitNotFoundError(permit_id)
        return permit

    def get_history(self, permit_id: UUID) -> PermitHistory:
        """Ordered, restartable ledger view for a permit."""
        self.get_permit(permit_id)
        return self.ledger.history(permit_id)

    def available_triggers(self, permit_id: UUID, actor_id: UUID) -> List[PermitTrigger]:
        """Triggers ``actor_id`` could perform on the permit right now."""
        permit = self.get_permit(permit_id)
        actor = self.directory.find_user(actor_id)
        if actor is None:
            return []
        return PermitStateMachine(permit, actor, now=self.clock()).get_available_transitions()

    def list_permits(self, *, status: Optional[PermitStatus] = None, site_id: Optional[UUID] = None) -> List[Permit]:
        query = self.db.query(Permit)
        if status is not None:
            query = query.filter(Permit.status == PermitStatus(status).value)
        if site_id is not None:
            query = query.filter(Permit.site_id == site_id)
        return query.order_by(Permit.created_at.asc(), Permit.serial.asc()).all()

    def pending_decisions(self, actor_id: UUID) -> List[Permit]:
        """
        Pending_Approval permits awaiting a decision the actor could make now.

        A permit is listed when at least one pending entry names a role the
        actor holds, at a site they are assigned to, and no earlier sequential
        step is still outstanding.
        """
        actor = self.directory.find_user(actor_id)
        if not PermissionChecker.for_user(actor).has_any_permission(DECISION_PERMISSIONS):
            return []
        now = self.clock()
        return [
            permit for permit in self.list_permits(status=PermitStatus.PENDING_APPROVAL)
            if PermitStateMachine(permit, actor, now=now).decidable_roles()
        ]

    def pending_extensions(self, actor_id: UUID) -> List[Permit]:
        """Extension_Requested permits whose pending extension the actor may decide."""
        actor = self.directory.find_user(actor_id)
        if not PermissionChecker.for_user(actor).has_any_permission(EXTENSION_DECISION_PERMISSIONS):
            return []
        now = self.clock()
        return [
            permit for permit in self.list_permits(status=PermitStatus.EXTENSION_REQUESTED)
            if PermitStateMachine(permit, actor, now=now).can_perform(PermitTrigger.APPROVE_EXTENSION)
        ]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_permit(
        self,
        requester_id: UUID,
        site_id: UUID,
        permit_type: Union[PermitType, str],
        fields: Optional[Dict[str, Any]] = None,
        risk_attributes: Optional[Dict[str, Any]] = None,
    ) -> Permit:
        """
        Create a Draft permit.

        Required fields are only enforced at submission, so a draft may be
        saved incomplete. A work window that is given must end after it starts.

        Raises:
            ValidationError: Unknown permit type, inactive site or bad window
            AuthorizationError: Requester unknown, inactive or not allowed to create
        """
        try:
            ptype = PermitType(permit_type)
        except ValueError as e:
            raise ValidationError(f"Unknown permit type: {permit_type}", guard="permit_type") from e

        fields = dict(fields or {})
        start = parse_timestamp(fields.get("start_time"), "start_time")
        end = parse_timestamp(fields.get("end_time"), "end_time")
        if start and end and end <= start:
            raise ValidationError("end_time must be after start_time", guard="work_window")
        if start:
            fields["start_time"] = start.isoformat()
        if end:
            fields["end_time"] = end.isoformat()

        requester = self.directory.get_actor(requester_id)
        checker = PermissionChecker.for_user(requester)
        if not checker.has_permission("permits:create"):
            raise AuthorizationError("Permission denied: requires permits:create", guard="permission")
        site = self.directory.get_site(site_id)

        now = self.clock() or utcnow()
        try:
            permit = Permit(
                serial=next_serial(self.db, self.settings.serial_prefix, now.year),
                permit_type=ptype.value,
                site_id=site.id,
                requester_id=requester.id,
                status=PermitStatus.DRAFT.value,
                fields=fields,
                risk_attributes=dict(risk_attributes or {}),
                requested_start=start,
                requested_end=end,
                created_at=now,
                updated_at=now,
            )
            self.db.add(permit)
            self.db.flush()

            record = TransitionRecord(
                None, PermitStatus.DRAFT, PermitTrigger.CREATE,
                checker.role_granting("permits:create"),
            )
            entry = self.ledger.record(
                permit.id, None, PermitStatus.DRAFT, PermitTrigger.CREATE,
                actor_id=requester.id, role=record.role, timestamp=now,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Created permit {permit.serial} ({ptype.value}) at site {site.code}")
        self._publish(permit, record, requester.id, entry.timestamp)
        return permit

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit_permit(self, permit_id: UUID, actor_id: UUID) -> Permit:
        """Resolve the approval chain and move a Draft to Pending_Approval."""
        def action(machine: PermitStateMachine) -> TransitionRecord:
            machine.check(PermitTrigger.SUBMIT)
            permit = machine.permit
            steps = self.resolver.resolve(permit.site_id, permit.permit_type, permit.risk_attributes)
            return machine.submit(steps)

        return self._transition(permit_id, actor_id, action)

    def decide(
        self,
        permit_id: UUID,
        role: Union[Role, str],
        actor_id: UUID,
        approve: bool,
        comment: Optional[str] = None,
    ) -> Permit:
        """
        Record ``role``'s decision on a Pending_Approval permit.

        Raises:
            StaleTransitionError: The role already decided, or the permit left Pending_Approval
            AuthorizationError: The actor does not hold ``role`` for this site
        """
        try:
            role = Role(role)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}", guard="role") from e

        return self._transition(
            permit_id, actor_id, lambda machine: machine.decide(role, bool(approve), comment)
        )

    def suspend(self, permit_id: UUID, actor_id: UUID, reason: str) -> Permit:
        if comment_required(PermitTrigger.SUSPEND) and not str(reason or "").strip():
            raise ValidationError("A comment is required to suspend a permit", guard="comment")
        return self._transition(permit_id, actor_id, lambda machine: machine.suspend(reason))

    def resume(self, permit_id: UUID, actor_id: UUID, comment: Optional[str] = None) -> Permit:
        return self._transition(permit_id, actor_id, lambda machine: machine.resume(comment))

    def request_extension(
        self,
        permit_id: UUID,
        actor_id: UUID,
        new_valid_to: Union[datetime, str],
        reason: Optional[str] = None,
    ) -> Permit:
        new_valid_to = parse_timestamp(new_valid_to, "new_valid_to")
        if new_valid_to is None:
            raise ValidationError("new_valid_to is required", guard="new_valid_to")
        return self._transition(
            permit_id, actor_id, lambda machine: machine.request_extension(new_valid_to, reason)
        )

    def decide_extension(
        self, permit_id: UUID, actor_id: UUID, approve: bool, comment: Optional[str] = None
    ) -> Permit:
        return self._transition(
            permit_id, actor_id, lambda machine: machine.decide_extension(bool(approve), comment)
        )

    def close(self, permit_id: UUID, actor_id: UUID, comment: Optional[str] = None) -> Permit:
        return self._transition(permit_id, actor_id, lambda machine: machine.close(comment))

    def cancel(self, permit_id: UUID, actor_id: UUID, comment: Optional[str] = None) -> Permit:
        return self._transition(permit_id, actor_id, lambda machine: machine.cancel(comment))

    def expire(
        self,
        permit_id: UUID,
        now: Optional[datetime] = None,
        *,
        grace: Optional[timedelta] = None,
    ) -> Optional[Permit]:
        """
        Close an Active permit whose window has elapsed.

        A no-op (returns None) for any permit that is not Active or is still
        within ``valid_to`` plus the grace period.
        """
        if grace is None:
            grace = timedelta(seconds=self.settings.expiry_grace_seconds)

        def action(machine: PermitStateMachine) -> Optional[TransitionRecord]:
            if not machine.is_expired(grace):
                return None
            return machine.expire(grace)

        permit, record = self._run(permit_id, None, action, now=now)
        return permit if record else None

    def record_expiry_warning(self, permit_id: UUID, thresholds: List[int]) -> bool:
        """
        Remember that expiry warnings for ``thresholds`` (minutes) went out.

        Returns True if the most urgent of them had not been recorded yet and
        the permit is still Active. This is bookkeeping, not a status change,
        so it is not written to the ledger.
        """
        with self.locks.hold(permit_id):
            try:
                self.db.expire_all()
                permit = self._load_for_update(permit_id)
                sent = list(permit.expiry_warnings_sent or [])
                if permit.status != PermitStatus.ACTIVE.value or min(thresholds) in sent:
                    self.db.rollback()
                    return False
                permit.expiry_warnings_sent = sorted(set(sent) | set(thresholds), reverse=True)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.info(f"Permit {permit_id} changed while recording an expiry warning")
                return False
            except Exception:
                self.db.rollback()
                raise
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_for_update(self, permit_id: UUID) -> Permit:
        permit = self.db.query(Permit).filter(
            Permit.id == permit_id
        ).with_for_update().populate_existing().first()
        if permit is None:
            raise PermitNotFoundError(permit_id)
        return permit

    def _transition(self, permit_id: UUID, actor_id: Optional[UUID], action) -> Permit:
        permit, _ = self._run(permit_id, actor_id, action)
        return permit

    def _run(
        self,
        permit_id: UUID,
        actor_id: Optional[UUID],
        action: Callable[[PermitStateMachine], Optional[TransitionRecord]],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[Permit, Optional[TransitionRecord]]:
        """
        Apply ``action`` to the permit under its lock, retrying on version conflicts.

        The action is re-evaluated from freshly loaded state on every attempt,
        so a retry never re-decides anything another writer already decided.
        """
        max_attempts = max(1, self.settings.transition_max_retries)

        with self.locks.hold(permit_id):
            for attempt in range(1, max_attempts + 1):
                try:
                    # Drop cached state so guards see what other sessions committed
                    self.db.expire_all()
                    actor = self.directory.get_actor(actor_id) if actor_id is not None else None
                    permit = self._load_for_update(permit_id)
                    at = as_naive_utc(now) if now else (self.clock() or utcnow())
                    machine = PermitStateMachine(permit, actor, now=at)

                    record = action(machine)
                    if record is None:
                        self.db.rollback()
                        return permit, None

                    entry = self.ledger.record(
                        permit.id,
                        record.from_status,
                        record.to_status,
                        record.trigger,
                        actor_id=actor.id if actor else None,
                        role=record.role,
                        timestamp=at,
                        comment=record.comment,
                        extra_data=record.extra_data,
                    )
                    self.db.commit()
                except StaleDataError:
                    self.db.rollback()
                    logger.warning(
                        f"Version conflict on permit {permit_id} (attempt {attempt}/{max_attempts}), retrying"
                    )
                    continue
                except Exception:
                    self.db.rollback()
                    raise

                logger.info(
                    f"Permit {permit.serial}: {record.from_status.value} -> {record.to_status.value} "
                    f"({record.trigger.value}) by {actor.email if actor else 'system'}"
                )
                self._publish(permit, record, actor.id if actor else None, entry.timestamp)
                return permit, record

        raise StaleTransitionError(
            f"Permit {permit_id} kept changing underneath this request; reload it and try again",
            guard="version",
        )

    def _publish(
        self,
        permit: Permit,
        record: TransitionRecord,
        actor_id: Optional[UUID],
        occurred_at: datetime,
    ) -> None:
        event = PermitEvent(
            event_type=PermitEventType.for_trigger(record.trigger.value),
            permit_id=permit.id,
            serial=permit.serial,
            from_status=record.from_status.value if record.from_status else None,
            to_status=record.to_status.value,
            actor_id=actor_id,
            role=record.role,
            occurred_at=occurred_at,
            data=dict(record.extra_data or {}),
        )
        self.notifier.publish(event)
