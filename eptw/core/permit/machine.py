"""Permit state machine implementation.

Evaluates the guards of a trigger against an already-loaded permit and actor,
and applies the resulting changes to the permit row. Persistence, locking,
ledger entries and notifications are the service's job.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union

from eptw.core.directory import Directory
from eptw.core.exceptions import AuthorizationError, StaleTransitionError, ValidationError
from eptw.core.rbac import PermissionChecker, Role
from eptw.db.models import Permit, PermitExtension, RequiredApproval, User
from eptw.utils import utcnow

from .states import (
    PermitStatus,
    PermitTrigger,
    ApprovalDecision,
    ExtensionStatus,
    ClosureReason,
    TransitionRule,
    VALID_TRANSITIONS,
    TERMINAL_STATES,
    get_transition_rule,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("work_description", "work_location", "start_time", "end_time")

# Permissions that may close a suspended permit in addition to the rule's own
SUSPENDED_CLOSE_PERMISSIONS = ("permits:suspend",)


class TransitionRecord(NamedTuple):
    """What a transition did, ready to be written to the ledger."""
    from_status: PermitStatus
    to_status: PermitStatus
    trigger: PermitTrigger
    role: Optional[str] = None
    comment: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


class PermitStateMachine:
    """
    State machine for a single permit.

    One instance evaluates one actor's action at one instant:
    - Validation of the trigger against the transition table
    - Authorization of the actor (permissions, role, ownership, site)
    - State guards (pending entries, sequential gates, work window)
    - Mutation of the permit row
    """

    def __init__(
        self,
        permit: Permit,
        actor: Optional[User] = None,
        *,
        checker: Optional[PermissionChecker] = None,
        now: Optional[datetime] = None,
    ):
        """
        Initialize the state machine.

        Args:
            permit: The permit row (locked by the caller when mutating)
            actor: Acting user, or None for system-triggered transitions
            checker: Permission checker for the actor; built from actor roles if omitted
            now: Evaluation time (naive UTC)
        """
        self.permit = permit
        self.actor = actor
        self.checker = checker or PermissionChecker.for_user(actor)
        self.now = now or utcnow()

    @property
    def state(self) -> PermitStatus:
        return PermitStatus(self.permit.status)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_owner(self) -> bool:
        return self.actor is not None and self.actor.id == self.permit.requester_id

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_rule(self, trigger: PermitTrigger) -> TransitionRule:
        rule = get_transition_rule(self.state, trigger)
        if rule is None:
            if self.is_terminal:
                message = f"Permit {self.permit.serial} is {self.state.value}; no further transitions are possible"
            else:
                message = f"Cannot {trigger.value} permit {self.permit.serial} while it is {self.state.value}"
            raise StaleTransitionError(message, guard="status")
        return rule

    def _require_comment(self, trigger: PermitTrigger, comment: Optional[str]) -> None:
        rule = get_transition_rule(self.state, trigger)
        if rule is not None and rule.requires_comment and not (comment and comment.strip()):
            raise ValidationError(f"A comment is required to {trigger.value} a permit", guard="comment")

    def _require_site_assignment(self) -> None:
        if self.checker.can_override:
            return
        if not Directory.is_assigned_to_site(self.actor, self.permit.site_id):
            raise AuthorizationError(
                f"You are not assigned to the site of permit {self.permit.serial}",
                guard="site_assignment",
            )

    def _authorize_by_permission(self, rule: TransitionRule, extra_permissions: Iterable[str] = ()) -> Optional[str]:
        if rule.owner_permission and self.is_owner and self.checker.has_permission(rule.owner_permission):
            return Role.REQUESTER.value

        permissions = [p for p in (rule.requires_permission, *extra_permissions) if p]
        for permission in permissions:
            if self.checker.has_permission(permission):
                self._require_site_assignment()
                return self.checker.role_granting(permission)

        if not permissions:
            raise AuthorizationError(
                f"Only the requester of permit {self.permit.serial} may {rule.trigger.value.replace('_', ' ')}",
                guard="requester_only",
            )
        raise AuthorizationError(
            f"Permission denied: {rule.trigger.value} requires {' or '.join(permissions)}"
            + (" or being the requester" if rule.owner_permission else ""),
            guard="permission",
        )

    def _entry_for(self, role: Role) -> RequiredApproval:
        for entry in self.permit.required_approvals:
            if entry.role == role.value:
                return entry
        raise ValidationError(
            f"Role {role.value} is not a required approver of permit {self.permit.serial}",
            guard="role_required",
        )

    def _check_decision(self, rule: TransitionRule, role: Union[Role, str]) -> str:
        try:
            role = Role(role)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {role}", guard="role") from e

        entry = self._entry_for(role)
        if not (self.checker.has_permission(rule.requires_permission) and self.checker.holds_role(role)):
            raise AuthorizationError(f"You do not hold the {role.value} role", guard="actor_holds_role")
        self._require_site_assignment()

        if entry.decision != ApprovalDecision.PENDING.value:
            raise StaleTransitionError(
                f"The {role.value} role has already made a decision on this permit ({entry.decision})",
                guard="entry_pending",
            )

        if entry.sequential:
            waiting = [
                e.role for e in self.permit.required_approvals
                if e.sequence < entry.sequence and e.decision != ApprovalDecision.APPROVED.value
            ]
            if waiting:
                raise StaleTransitionError(
                    f"{role.value} must wait for {', '.join(waiting)} to approve first",
                    guard="sequential_gate",
                )
        return role.value

    def _check_resume(self, rule: TransitionRule) -> str:
        if self.checker.can_override:
            return Role.ADMIN.value
        if self.checker.has_permission(rule.requires_permission) and self.permit.suspended_by == self.actor.id:
            self._require_site_assignment()
            return self.checker.role_granting(rule.requires_permission)
        raise AuthorizationError(
            "Only the safety officer who suspended this permit, or an administrator, may resume it",
            guard="resume_actor",
        )

    def _check_extension_decision(self, rule: TransitionRule) -> str:
        if self.pending_extension() is None:
            raise StaleTransitionError("No extension request is pending", guard="extension_pending")
        if self.checker.can_override:
            return Role.ADMIN.value
        if not self.checker.has_permission(rule.requires_permission):
            raise AuthorizationError(
                f"Permission denied: requires {rule.requires_permission}", guard="permission"
            )

        eligible = {Role.SITE_LEADER.value} | {e.role for e in self.permit.required_approvals}
        for role in Role:
            if role.value in eligible and self.checker.holds_role(role):
                self._require_site_assignment()
                return role.value
        raise AuthorizationError(
            "Extensions are decided by the site leader or one of the permit's original approvers",
            guard="extension_approver",
        )

    def check(self, trigger: PermitTrigger, *, role: Union[Role, str, None] = None) -> Optional[str]:
        """
        Evaluate every guard of ``trigger`` that does not depend on call input.

        Returns:
            The role the actor acts in (None for system transitions)

        Raises:
            StaleTransitionError: If the permit's state does not allow the trigger
            AuthorizationError: If the actor may not perform it
            ValidationError: If ``role`` is not a required approver
        """
        rule = self._require_rule(trigger)

        if rule.system_only:
            if self.actor is not None:
                raise AuthorizationError(f"{trigger.value} is performed by the system only", guard="system_only")
            return None

        if self.actor is None:
            raise AuthorizationError(f"{trigger.value} requires an acting user", guard="actor_known")
        if not self.actor.is_active:
            raise AuthorizationError(f"User {self.actor.email} is inactive", guard="actor_active")

        if trigger in (PermitTrigger.APPROVE, PermitTrigger.REJECT):
            if role is None:
                raise ValidationError(f"{trigger.value} requires a role", guard="role")
            return self._check_decision(rule, role)
        if trigger == PermitTrigger.RESUME:
            return self._check_resume(rule)
        if trigger in (PermitTrigger.APPROVE_EXTENSION, PermitTrigger.REJECT_EXTENSION):
            return self._check_extension_decision(rule)

        if trigger == PermitTrigger.REQUEST_EXTENSION and self.pending_extension() is not None:
            raise StaleTransitionError("An extension request is already pending", guard="extension_pending")

        if trigger == PermitTrigger.CLOSE and self.state == PermitStatus.SUSPENDED:
            acting_role = self._authorize_by_permission(rule, SUSPENDED_CLOSE_PERMISSIONS)
        else:
            acting_role = self._authorize_by_permission(rule)

        if trigger == PermitTrigger.CLOSE and self.state == PermitStatus.ACTIVE:
            if self.permit.valid_from and self.now < self.permit.valid_from:
                raise StaleTransitionError(
                    f"Work on permit {self.permit.serial} has not started yet "
                    f"(valid from {self.permit.valid_from.isoformat()})",
                    guard="work_window_started",
                )
        return acting_role

    def can_perform(self, trigger: PermitTrigger, *, role: Union[Role, str, None] = None) -> bool:
        try:
            self.check(trigger, role=role)
        except (StaleTransitionError, AuthorizationError, ValidationError):
            return False
        return True

    def decidable_roles(self) -> List[str]:
        """Required roles the actor could approve or reject right now."""
        return [
            entry.role for entry in self.permit.required_approvals
            if self.can_perform(PermitTrigger.APPROVE, role=entry.role)
        ]

    def get_available_transitions(self) -> List[PermitTrigger]:
        """Triggers the actor may perform from the current state."""
        available = []
        for trigger in sorted(VALID_TRANSITIONS.get(self.state, set()), key=lambda t: t.value):
            if trigger in (PermitTrigger.APPROVE, PermitTrigger.REJECT):
                if self.decidable_roles():
                    available.append(trigger)
            elif self.can_perform(trigger):
                available.append(trigger)
        return available

    def pending_extension(self) -> Optional[PermitExtension]:
        for extension in self.permit.extensions:
            if extension.status == ExtensionStatus.PENDING.value:
                return extension
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(self, to_status: PermitStatus) -> None:
        self.permit.status = to_status.value
        self.permit.updated_at = self.now

    def submit(self, steps: Iterable) -> TransitionRecord:
        """Draft -> Pending_Approval, persisting the resolved chain."""
        role = self.check(PermitTrigger.SUBMIT)
        missing = missing_fields(self.permit.fields)
        if missing:
            raise ValidationError(
                f"Permit {self.permit.serial} is missing required fields: {', '.join(missing)}",
                guard="required_fields",
            )
        steps = list(steps)
        if not steps:
            raise ValidationError("Cannot submit without a resolved approval chain", guard="approval_chain")

        for sequence, step in enumerate(steps, start=1):
            self.permit.required_approvals.append(RequiredApproval(
                sequence=sequence,
                role=Role(step.role).value,
                sequential=bool(step.sequential),
                decision=ApprovalDecision.PENDING.value,
            ))
        self.permit.submitted_at = self.now
        self._move(PermitStatus.PENDING_APPROVAL)

        return TransitionRecord(
            PermitStatus.DRAFT, PermitStatus.PENDING_APPROVAL, PermitTrigger.SUBMIT, role,
            extra_data={"required_roles": [Role(s.role).value for s in steps]},
        )

    def decide(self, role: Union[Role, str], approve: bool, comment: Optional[str] = None) -> TransitionRecord:
        """Record one required role's decision."""
        trigger = PermitTrigger.APPROVE if approve else PermitTrigger.REJECT
        role_value = self.check(trigger, role=role)
        self._require_comment(trigger, comment)
        entry = self._entry_for(Role(role_value))

        entry.decision = (ApprovalDecision.APPROVED if approve else ApprovalDecision.REJECTED).value
        entry.actor_id = self.actor.id
        entry.decided_at = self.now
        entry.comment = comment

        if not approve:
            to_status = PermitStatus.REJECTED
        elif all(e.decision == ApprovalDecision.APPROVED.value for e in self.permit.required_approvals):
            to_status = PermitStatus.ACTIVE
            self.permit.valid_from = self.permit.requested_start
            self.permit.valid_to = self.permit.requested_end
            self.permit.activated_at = self.now
        else:
            to_status = PermitStatus.PENDING_APPROVAL

        self._move(to_status)
        pending = [e.role for e in self.permit.required_approvals if e.decision == ApprovalDecision.PENDING.value]
        return TransitionRecord(
            PermitStatus.PENDING_APPROVAL, to_status, trigger, role_value, comment,
            {"decision": entry.decision, "pending_roles": pending},
        )

    def cancel(self, comment: Optional[str] = None) -> TransitionRecord:
        from_status = self.state
        role = self.check(PermitTrigger.CANCEL)
        self._require_comment(PermitTrigger.CANCEL, comment)
        self._move(PermitStatus.CANCELLED)
        return TransitionRecord(from_status, PermitStatus.CANCELLED, PermitTrigger.CANCEL, role, comment)

    def suspend(self, reason: str) -> TransitionRecord:
        role = self.check(PermitTrigger.SUSPEND)
        self._require_comment(PermitTrigger.SUSPEND, reason)
        self.permit.suspended_by = self.actor.id
        self.permit.suspension_reason = reason
        self._move(PermitStatus.SUSPENDED)
        return TransitionRecord(PermitStatus.ACTIVE, PermitStatus.SUSPENDED, PermitTrigger.SUSPEND, role, reason)

    def resume(self, comment: Optional[str] = None) -> TransitionRecord:
        role = self.check(PermitTrigger.RESUME)
        self._require_comment(PermitTrigger.RESUME, comment)
        suspended_by = self.permit.suspended_by
        self.permit.suspended_by = None
        self.permit.suspension_reason = None
        self._move(PermitStatus.ACTIVE)
        return TransitionRecord(
            PermitStatus.SUSPENDED, PermitStatus.ACTIVE, PermitTrigger.RESUME, role, comment,
            {"suspended_by": str(suspended_by) if suspended_by else None},
        )

    def request_extension(self, new_valid_to: datetime, reason: Optional[str] = None) -> TransitionRecord:
        role = self.check(PermitTrigger.REQUEST_EXTENSION)
        self._require_comment(PermitTrigger.REQUEST_EXTENSION, reason)
        if new_valid_to <= self.permit.valid_to:
            raise ValidationError(
                f"The new end time must be later than the current one ({self.permit.valid_to.isoformat()})",
                guard="new_valid_to",
            )
        self.permit.extensions.append(PermitExtension(
            requested_by=self.actor.id,
            requested_at=self.now,
            original_valid_to=self.permit.valid_to,
            new_valid_to=new_valid_to,
            reason=reason,
            status=ExtensionStatus.PENDING.value,
        ))
        self._move(PermitStatus.EXTENSION_REQUESTED)
        return TransitionRecord(
            PermitStatus.ACTIVE, PermitStatus.EXTENSION_REQUESTED, PermitTrigger.REQUEST_EXTENSION,
            role, reason,
            {"original_valid_to": self.permit.valid_to.isoformat(), "new_valid_to": new_valid_to.isoformat()},
        )

    def decide_extension(self, approve: bool, comment: Optional[str] = None) -> TransitionRecord:
        trigger = PermitTrigger.APPROVE_EXTENSION if approve else PermitTrigger.REJECT_EXTENSION
        role = self.check(trigger)
        self._require_comment(trigger, comment)
        extension = self.pending_extension()

        extension.status = (ExtensionStatus.APPROVED if approve else ExtensionStatus.REJECTED).value
        extension.decided_by = self.actor.id
        extension.decided_at = self.now
        extension.comment = comment

        previous_valid_to = self.permit.valid_to
        if approve:
            self.permit.valid_to = extension.new_valid_to
            self.permit.expiry_warnings_sent = []
        self._move(PermitStatus.ACTIVE)

        return TransitionRecord(
            PermitStatus.EXTENSION_REQUESTED, PermitStatus.ACTIVE, trigger, role, comment,
            {
                "extension_id": str(extension.id) if extension.id else None,
                "previous_valid_to": previous_valid_to.isoformat(),
                "valid_to": self.permit.valid_to.isoformat(),
            },
        )

    def close(self, comment: Optional[str] = None) -> TransitionRecord:
        from_status = self.state
        role = self.check(PermitTrigger.CLOSE)
        self._require_comment(PermitTrigger.CLOSE, comment)
        self.permit.closure_reason = ClosureReason.CLOSED.value
        self.permit.closed_at = self.now
        self._move(PermitStatus.CLOSED)
        return TransitionRecord(
            from_status, PermitStatus.CLOSED, PermitTrigger.CLOSE, role, comment,
            {"reason": ClosureReason.CLOSED.value},
        )

    def is_expired(self, grace: timedelta = timedelta(0)) -> bool:
        return (
            self.state == PermitStatus.ACTIVE
            and self.permit.valid_to is not None
            and self.now > self.permit.valid_to + grace
        )

    def expire(self, grace: timedelta = timedelta(0)) -> TransitionRecord:
        """Active -> Closed (expired). ``valid_to`` is left untouched."""
        self.check(PermitTrigger.EXPIRE)
        if not self.is_expired(grace):
            raise StaleTransitionError(
                f"Permit {self.permit.serial} is still within its work window", guard="window_elapsed"
            )
        self.permit.closure_reason = ClosureReason.EXPIRED.value
        self.permit.closed_at = self.now
        self._move(PermitStatus.CLOSED)
        return TransitionRecord(
            PermitStatus.ACTIVE, PermitStatus.CLOSED, PermitTrigger.EXPIRE, None,
            "Work window elapsed",
            {"reason": ClosureReason.EXPIRED.value, "valid_to": self.permit.valid_to.isoformat()},
        )


def missing_fields(fields: Optional[Dict[str, Any]]) -> List[str]:
    """Required permit fields that are absent or blank."""
    fields = fields or {}
    missing = []
    for name in REQUIRED_FIELDS:
        value = fields.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing
