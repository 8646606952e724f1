"""Integration tests for the permit lifecycle through PermitService.

Exercises the whole stack against a real database: chain resolution,
state machine guards, the audit ledger and change notifications.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from eptw.core.exceptions import (
    AuthorizationError,
    ConfigurationError,
    PermitNotFoundError,
    StaleTransitionError,
    ValidationError,
)
from eptw.core.permit.states import PermitStatus, PermitTrigger
from eptw.db.models import AuditEntry, Permit

from tests.factories import BASE_TIME, create_site, create_user, permit_fields

START = BASE_TIME + timedelta(hours=1)
END = START + timedelta(hours=8)


def new_permit(service, requester, site, permit_type="General", risk=None, fields=None):
    return service.create_permit(
        requester.id, site.id, permit_type,
        fields if fields is not None else permit_fields(START, END),
        risk,
    )


def assert_projection(service, permit_id):
    """The cached status equals the last ledger entry and the ledger is continuous."""
    entries = list(service.get_history(permit_id))
    assert entries, "permit has no ledger entries"
    assert entries[0].from_status is None
    for previous, entry in zip(entries, entries[1:]):
        assert entry.from_status == previous.to_status
    assert service.get_permit(permit_id).status == entries[-1].to_status
    assert service.ledger.replay_status(permit_id) == PermitStatus(entries[-1].to_status)
    return entries


def activate(service, permit, *approvers):
    """Submit and approve with each (user, role) pair in turn."""
    service.submit_permit(permit.id, permit.requester_id)
    for user, role in approvers:
        service.decide(permit.id, role, user.id, True)
    return service.get_permit(permit.id)


@pytest.mark.integration
class TestCreatePermit:
    """Tests for permit creation."""

    def test_create_draft(self, service, chains, site, requester, events):
        permit = new_permit(service, requester, site)

        assert permit.serial == "PTW-2026-0001"
        assert permit.status == "Draft"
        assert permit.requested_start == START
        assert permit.requested_end == END
        assert permit.version == 1

        entries = assert_projection(service, permit.id)
        assert len(entries) == 1
        assert entries[0].trigger == "create"
        assert entries[0].actor_id == requester.id
        assert entries[0].role_at_action == "Requester"
        assert [e.event_type for e in events] == ["permit.create"]

    def test_serials_are_sequential(self, service, chains, site, requester):
        serials = [new_permit(service, requester, site).serial for _ in range(3)]
        assert serials == ["PTW-2026-0001", "PTW-2026-0002", "PTW-2026-0003"]

    def test_serial_restarts_each_year(self, service, chains, site, requester, clock):
        new_permit(service, requester, site)
        clock.set(datetime(2027, 1, 1, 0, 5))
        permit = new_permit(service, requester, site, fields=permit_fields(
            datetime(2027, 1, 1, 6), datetime(2027, 1, 1, 14),
        ))
        assert permit.serial == "PTW-2027-0001"

    def test_serial_prefix_from_settings(self, db_session, make_service, settings, chains, site, requester):
        settings.serial_prefix = "NPW"
        permit = new_permit(make_service(db_session), requester, site)
        assert permit.serial == "NPW-2026-0001"

    def test_timestamps_normalized_to_utc(self, service, chains, site, requester):
        permit = new_permit(service, requester, site, fields=permit_fields(
            start_time="2026-03-02T10:00:00+01:00", end_time="2026-03-02T18:00:00Z",
        ))
        assert permit.requested_start == datetime(2026, 3, 2, 9, 0)
        assert permit.requested_end == datetime(2026, 3, 2, 18, 0)
        assert permit.fields["start_time"] == "2026-03-02T09:00:00"

    def test_window_must_end_after_start(self, db_session, service, chains, site, requester):
        with pytest.raises(ValidationError) as exc:
            new_permit(service, requester, site, fields=permit_fields(START, START))
        assert exc.value.guard == "work_window"
        assert db_session.query(Permit).count() == 0

    def test_bad_timestamp(self, service, chains, site, requester):
        with pytest.raises(ValidationError) as exc:
            new_permit(service, requester, site, fields=permit_fields(start_time="next tuesday"))
        assert exc.value.guard == "start_time"

    def test_unknown_permit_type(self, service, chains, site, requester):
        with pytest.raises(ValidationError) as exc:
            new_permit(service, requester, site, permit_type="Diving")
        assert exc.value.guard == "permit_type"

    def test_approver_cannot_create(self, service, chains, site, area_manager):
        with pytest.raises(AuthorizationError):
            new_permit(service, area_manager, site)

    def test_unknown_requester(self, service, chains, site):
        with pytest.raises(AuthorizationError) as exc:
            service.create_permit(uuid4(), site.id, "General", permit_fields())
        assert exc.value.guard == "actor_known"

    def test_inactive_site(self, db_session, service, chains, requester):
        closed = create_site(db_session, code="CLOSED", is_active=False)
        db_session.commit()
        with pytest.raises(ValidationError) as exc:
            new_permit(service, requester, closed)
        assert exc.value.guard == "site_active"

    def test_incomplete_draft(self, service, chains, site, requester):
        """Test that drafts may be saved incomplete but not submitted."""
        permit = new_permit(service, requester, site, fields={"work_description": "Paint tank roof"})
        assert permit.status == "Draft"

        with pytest.raises(ValidationError) as exc:
            service.submit_permit(permit.id, requester.id)
        assert exc.value.guard == "required_fields"

        permit = service.get_permit(permit.id)
        assert permit.status == "Draft"
        assert permit.required_approvals == []
        assert len(service.get_history(permit.id)) == 1


@pytest.mark.integration
class TestSubmitPermit:
    """Tests for submission and chain resolution."""

    def test_submit(self, service, chains, site, requester, events):
        permit = new_permit(service, requester, site, "Electrical")
        permit = service.submit_permit(permit.id, requester.id)

        assert permit.status == "Pending_Approval"
        assert [(e.role, e.decision) for e in permit.required_approvals] == [
            ("Approver_AreaManager", "pending"),
            ("Approver_Safety", "pending"),
        ]
        entries = assert_projection(service, permit.id)
        assert entries[-1].extra_data["required_roles"] == ["Approver_AreaManager", "Approver_Safety"]
        assert events[-1].event_type == "permit.submit"
        assert events[-1].to_status == "Pending_Approval"

    def test_risk_attributes_drive_chain(self, service, chains, site, requester):
        low = new_permit(service, requester, site, "Height", {"high_risk": False})
        high = new_permit(service, requester, site, "Height", {"high_risk": True})

        low = service.submit_permit(low.id, requester.id)
        high = service.submit_permit(high.id, requester.id)

        assert [e.role for e in low.required_approvals] == ["Approver_AreaManager"]
        assert [e.role for e in high.required_approvals] == ["Approver_AreaManager", "Approver_Safety"]

    def test_no_chain_configured(self, service, site, requester, events):
        """Test that a permit without a chain stays in Draft."""
        permit = new_permit(service, requester, site)

        with pytest.raises(ConfigurationError) as exc:
            service.submit_permit(permit.id, requester.id)
        assert exc.value.guard == "approval_chain"

        permit = service.get_permit(permit.id)
        assert permit.status == "Draft"
        assert permit.required_approvals == []
        assert len(assert_projection(service, permit.id)) == 1
        assert [e.event_type for e in events] == ["permit.create"]

    def test_only_requester_submits(self, service, chains, site, requester, other_requester):
        permit = new_permit(service, requester, site)
        with pytest.raises(AuthorizationError):
            service.submit_permit(permit.id, other_requester.id)

    def test_submit_twice(self, service, chains, site, requester):
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)
        with pytest.raises(StaleTransitionError) as exc:
            service.submit_permit(permit.id, requester.id)
        assert exc.value.guard == "status"

    def test_unknown_permit(self, service, requester):
        with pytest.raises(PermitNotFoundError):
            service.submit_permit(uuid4(), requester.id)


@pytest.mark.integration
class TestApprovalChain:
    """Tests for approvals and rejections."""

    @pytest.mark.parametrize("order", ["manager_first", "safety_first"])
    def test_electrical_either_order(self, service, chains, site, requester, area_manager, safety_officer,
                                     order, events):
        """Test that parallel approvals activate the permit in either order."""
        permit = new_permit(service, requester, site, "Electrical")
        service.submit_permit(permit.id, requester.id)

        decisions = [(area_manager, "Approver_AreaManager"), (safety_officer, "Approver_Safety")]
        if order == "safety_first":
            decisions.reverse()

        first = service.decide(permit.id, decisions[0][1], decisions[0][0].id, True)
        assert first.status == "Pending_Approval"
        second = service.decide(permit.id, decisions[1][1], decisions[1][0].id, True)
        assert second.status == "Active"
        assert second.valid_from == START
        assert second.valid_to == END

        entries = assert_projection(service, permit.id)
        assert [(e.from_status, e.to_status) for e in entries[2:]] == [
            ("Pending_Approval", "Pending_Approval"),
            ("Pending_Approval", "Active"),
        ]
        assert [e.role_at_action for e in entries[2:]] == [decisions[0][1], decisions[1][1]]
        assert events[-1].event_type == "permit.approve"
        assert events[-1].to_status == "Active"

        # A late third decision finds the permit already Active
        with pytest.raises(StaleTransitionError) as exc:
            service.decide(permit.id, "Approver_Safety", safety_officer.id, False)
        assert exc.value.guard == "status"
        assert len(service.get_history(permit.id)) == 4

    def test_hot_work_rejection(self, service, chains, site, requester, area_manager, safety_officer):
        """Test that one rejection ends the permit with exactly one Rejected entry."""
        permit = new_permit(service, requester, site, "Hot_Work", {"high_risk": True})
        service.submit_permit(permit.id, requester.id)

        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)
        rejected = service.decide(
            permit.id, "Approver_AreaManager", area_manager.id, False, "Fire watch not arranged",
        )

        assert rejected.status == "Rejected"
        entries = assert_projection(service, permit.id)
        assert [e.to_status for e in entries].count("Rejected") == 1
        assert entries[-1].comment == "Fire watch not arranged"
        assert entries[-1].actor_id == area_manager.id

        with pytest.raises(StaleTransitionError):
            service.decide(permit.id, "Approver_AreaManager", area_manager.id, True)

    def test_same_role_cannot_decide_twice(self, service, chains, site, requester,
                                           safety_officer, second_safety_officer):
        permit = new_permit(service, requester, site, "Electrical")
        service.submit_permit(permit.id, requester.id)
        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)

        with pytest.raises(StaleTransitionError) as exc:
            service.decide(permit.id, "Approver_Safety", second_safety_officer.id, False)
        assert exc.value.guard == "entry_pending"
        assert service.get_permit(permit.id).status == "Pending_Approval"

    def test_confined_space_sequence(self, service, chains, site, requester,
                                     area_manager, safety_officer, site_leader):
        permit = new_permit(service, requester, site, "Confined_Space")
        service.submit_permit(permit.id, requester.id)

        with pytest.raises(StaleTransitionError) as exc:
            service.decide(permit.id, "Approver_SiteLeader", site_leader.id, True)
        assert exc.value.guard == "sequential_gate"

        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)
        service.decide(permit.id, "Approver_AreaManager", area_manager.id, True)
        permit = service.decide(permit.id, "Approver_SiteLeader", site_leader.id, True)
        assert permit.status == "Active"

    def test_approver_from_other_site(self, db_session, service, chains, site, other_site, requester):
        outsider = create_user(db_session, roles=["Approver_AreaManager"], site_ids=[other_site.id])
        db_session.commit()
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)

        with pytest.raises(AuthorizationError) as exc:
            service.decide(permit.id, "Approver_AreaManager", outsider.id, True)
        assert exc.value.guard == "site_assignment"

    def test_inactive_approver(self, db_session, service, chains, site, requester, area_manager):
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)
        area_manager.is_active = False
        db_session.commit()

        with pytest.raises(AuthorizationError) as exc:
            service.decide(permit.id, "Approver_AreaManager", area_manager.id, True)
        assert exc.value.guard == "actor_active"

    def test_unknown_role_rejected_before_lock(self, service, chains, site, requester, area_manager):
        permit = new_permit(service, requester, site)
        with pytest.raises(ValidationError):
            service.decide(permit.id, "Approver_Janitor", area_manager.id, True)


@pytest.mark.integration
class TestActivePermit:
    """Tests for suspension, extension and closure."""

    @pytest.fixture
    def active(self, service, chains, site, requester, area_manager, safety_officer):
        permit = new_permit(service, requester, site, "Electrical")
        return activate(service, permit, (area_manager, "Approver_AreaManager"),
                        (safety_officer, "Approver_Safety"))

    def test_suspend_and_resume(self, service, active, safety_officer, second_safety_officer):
        suspended = service.suspend(active.id, safety_officer.id, "Gas alarm in pit")
        assert suspended.status == "Suspended"
        assert suspended.suspended_by == safety_officer.id

        with pytest.raises(AuthorizationError) as exc:
            service.resume(active.id, second_safety_officer.id)
        assert exc.value.guard == "resume_actor"

        resumed = service.resume(active.id, safety_officer.id, "Readings normal")
        assert resumed.status == "Active"

        entries = assert_projection(service, active.id)
        assert [e.trigger for e in entries[-2:]] == ["suspend", "resume"]
        assert entries[-2].comment == "Gas alarm in pit"

    def test_suspend_needs_reason(self, service, active, safety_officer):
        with pytest.raises(ValidationError):
            service.suspend(active.id, safety_officer.id, "")

    def test_area_manager_cannot_suspend(self, service, active, area_manager):
        with pytest.raises(AuthorizationError):
            service.suspend(active.id, area_manager.id, "Looks unsafe")

    def test_admin_resumes(self, service, active, safety_officer, admin):
        service.suspend(active.id, safety_officer.id, "Gas alarm in pit")
        permit = service.resume(active.id, admin.id)
        assert permit.status == "Active"
        assert service.get_history(active.id).last().role_at_action == "Admin"

    def test_extension_approved(self, service, active, requester, site_leader, clock, events):
        clock.set(START + timedelta(hours=2))
        new_end = END + timedelta(hours=3)

        requested = service.request_extension(active.id, requester.id, new_end.isoformat(), "Pump seized")
        assert requested.status == "Extension_Requested"
        assert requested.valid_to == END

        approved = service.decide_extension(active.id, site_leader.id, True, "OK")
        assert approved.status == "Active"
        assert approved.valid_to == new_end
        assert approved.extensions[0].status == "approved"
        assert approved.extensions[0].decided_by == site_leader.id

        entries = assert_projection(service, active.id)
        assert [e.trigger for e in entries[-2:]] == ["request_extension", "approve_extension"]
        assert events[-1].event_type == "permit.approve_extension"

    def test_extension_rejected(self, service, active, requester, area_manager):
        service.request_extension(active.id, requester.id, END + timedelta(hours=1))
        permit = service.decide_extension(active.id, area_manager.id, False, "Start a new permit")

        assert permit.status == "Active"
        assert permit.valid_to == END
        assert permit.extensions[0].status == "rejected"

    def test_extension_must_move_end_later(self, service, active, requester):
        with pytest.raises(ValidationError) as exc:
            service.request_extension(active.id, requester.id, END - timedelta(hours=1))
        assert exc.value.guard == "new_valid_to"

    def test_extension_bad_timestamp(self, service, active, requester):
        with pytest.raises(ValidationError):
            service.request_extension(active.id, requester.id, "tomorrow-ish")

    def test_close_before_start(self, service, active, requester):
        with pytest.raises(StaleTransitionError) as exc:
            service.close(active.id, requester.id)
        assert exc.value.guard == "work_window_started"

    def test_close(self, service, active, requester, clock, events):
        clock.set(START + timedelta(hours=4))
        permit = service.close(active.id, requester.id, "Job complete")

        assert permit.status == "Closed"
        assert permit.closure_reason == "closed"
        assert permit.closed_at == START + timedelta(hours=4)
        assert events[-1].event_type == "permit.close"

        for trigger in (lambda: service.close(active.id, requester.id),
                        lambda: service.cancel(active.id, requester.id)):
            with pytest.raises(StaleTransitionError):
                trigger()
        assert_projection(service, active.id)

    def test_close_suspended(self, service, active, safety_officer):
        service.suspend(active.id, safety_officer.id, "Scaffold failed inspection")
        permit = service.close(active.id, safety_officer.id)
        assert permit.status == "Closed"
        assert service.get_history(active.id).last().from_status == "Suspended"

    def test_available_triggers(self, service, active, requester, safety_officer, clock):
        clock.set(START + timedelta(hours=1))
        owner = service.available_triggers(active.id, requester.id)
        officer = service.available_triggers(active.id, safety_officer.id)

        assert owner == [PermitTrigger.CLOSE, PermitTrigger.REQUEST_EXTENSION]
        assert officer == [PermitTrigger.SUSPEND]
        assert service.available_triggers(active.id, uuid4()) == []


@pytest.mark.integration
class TestCancel:

    def test_cancel_draft(self, service, chains, site, requester):
        permit = new_permit(service, requester, site)
        permit = service.cancel(permit.id, requester.id, "Duplicate request")
        assert permit.status == "Cancelled"
        assert_projection(service, permit.id)

    def test_cancel_pending(self, service, chains, site, requester):
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)
        assert service.cancel(permit.id, requester.id).status == "Cancelled"

    def test_other_requester_cannot_cancel(self, service, chains, site, requester, other_requester):
        permit = new_permit(service, requester, site)
        with pytest.raises(AuthorizationError):
            service.cancel(permit.id, other_requester.id)
        assert service.get_permit(permit.id).status == "Draft"


@pytest.mark.integration
class TestRoundTrip:
    """A permit through every non-terminal state, checked against its ledger."""

    def test_full_lifecycle(self, db_session, service, chains, site, requester,
                            area_manager, safety_officer, site_leader, clock):
        permit = new_permit(service, requester, site, "Electrical")
        clock.advance(minutes=5)
        service.submit_permit(permit.id, requester.id)
        clock.advance(minutes=5)
        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)
        service.decide(permit.id, "Approver_AreaManager", area_manager.id, True)

        clock.set(START + timedelta(hours=1))
        service.request_extension(permit.id, requester.id, END + timedelta(hours=2), "Weather delay")
        service.decide_extension(permit.id, site_leader.id, True)
        clock.advance(minutes=30)
        service.suspend(permit.id, safety_officer.id, "Lightning within 10km")
        clock.advance(minutes=45)
        service.resume(permit.id, safety_officer.id)
        clock.advance(hours=2)
        final = service.close(permit.id, site_leader.id)

        entries = assert_projection(service, permit.id)
        assert [e.to_status for e in entries] == [
            "Draft", "Pending_Approval", "Pending_Approval", "Active",
            "Extension_Requested", "Active", "Suspended", "Active", "Closed",
        ]
        assert [e.sequence for e in entries] == list(range(1, 10))
        assert final.status == "Closed"
        assert db_session.query(AuditEntry).filter(AuditEntry.permit_id == permit.id).count() == 9


@pytest.mark.integration
class TestNotifications:

    def test_published_after_commit(self, session_factory, service, chains, site, requester, dispatcher):
        """Test that listeners observe the committed status from another session."""
        seen = []

        def listener(event):
            other = session_factory()
            try:
                seen.append(other.get(Permit, event.permit_id).status)
            finally:
                other.close()

        dispatcher.subscribe("permit.submit", listener)
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)

        assert seen == ["Pending_Approval"]

    def test_listener_failure_does_not_undo_transition(self, service, chains, site, requester, dispatcher):
        def broken(event):
            raise RuntimeError("webhook down")

        dispatcher.subscribe("permit.submit", broken)
        permit = new_permit(service, requester, site)
        permit = service.submit_permit(permit.id, requester.id)
        assert permit.status == "Pending_Approval"
        assert_projection(service, permit.id)

    def test_refused_transition_publishes_nothing(self, service, chains, site, requester,
                                                  other_requester, events):
        permit = new_permit(service, requester, site)
        with pytest.raises(AuthorizationError):
            service.submit_permit(permit.id, other_requester.id)
        assert [e.event_type for e in events] == ["permit.create"]


@pytest.mark.integration
class TestListPermits:

    def test_filters(self, service, chains, site, other_site, requester):
        a = new_permit(service, requester, site)
        b = new_permit(service, requester, other_site)
        service.submit_permit(b.id, requester.id)

        assert {p.id for p in service.list_permits()} == {a.id, b.id}
        assert [p.id for p in service.list_permits(status=PermitStatus.DRAFT)] == [a.id]
        assert [p.id for p in service.list_permits(status="Pending_Approval")] == [b.id]
        assert [p.id for p in service.list_permits(site_id=other_site.id)] == [b.id]


@pytest.mark.integration
class TestWorkQueues:
    """Permits waiting on a decision from a particular user."""

    def test_pending_decisions_by_role(self, service, chains, site, requester,
                                       area_manager, safety_officer, site_leader):
        general = new_permit(service, requester, site)
        electrical = new_permit(service, requester, site, "Electrical")
        draft = new_permit(service, requester, site)
        service.submit_permit(general.id, requester.id)
        service.submit_permit(electrical.id, requester.id)

        assert [p.id for p in service.pending_decisions(area_manager.id)] == [general.id, electrical.id]
        assert [p.id for p in service.pending_decisions(safety_officer.id)] == [electrical.id]
        assert service.pending_decisions(site_leader.id) == []
        assert draft.id not in {p.id for p in service.pending_decisions(area_manager.id)}

    def test_decided_role_leaves_queue(self, service, chains, site, requester, area_manager, safety_officer):
        permit = new_permit(service, requester, site, "Electrical")
        service.submit_permit(permit.id, requester.id)
        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)

        assert service.pending_decisions(safety_officer.id) == []
        assert [p.id for p in service.pending_decisions(area_manager.id)] == [permit.id]

    def test_sequential_step_hidden_until_reached(self, service, chains, site, requester,
                                                  area_manager, safety_officer, site_leader):
        permit = new_permit(service, requester, site, "Confined_Space")
        service.submit_permit(permit.id, requester.id)

        assert [p.id for p in service.pending_decisions(safety_officer.id)] == [permit.id]
        assert service.pending_decisions(area_manager.id) == []
        assert service.pending_decisions(site_leader.id) == []

        service.decide(permit.id, "Approver_Safety", safety_officer.id, True)
        assert [p.id for p in service.pending_decisions(area_manager.id)] == [permit.id]
        assert service.pending_decisions(site_leader.id) == []

    def test_other_site_approver_sees_nothing(self, db_session, service, chains, site, other_site, requester):
        outsider = create_user(db_session, roles=["Approver_AreaManager"], site_ids=[other_site.id])
        db_session.commit()
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)

        assert service.pending_decisions(outsider.id) == []

    def test_non_approvers_have_no_queue(self, service, chains, site, requester, admin):
        permit = new_permit(service, requester, site)
        service.submit_permit(permit.id, requester.id)

        assert service.pending_decisions(requester.id) == []
        assert service.pending_decisions(admin.id) == []
        assert service.pending_decisions(uuid4()) == []

    def test_pending_extensions(self, service, chains, site, requester,
                                area_manager, safety_officer, site_leader, clock):
        permit = activate(service, new_permit(service, requester, site), (area_manager, "Approver_AreaManager"))
        clock.set(START + timedelta(hours=1))
        assert service.pending_extensions(site_leader.id) == []

        service.request_extension(permit.id, requester.id, END + timedelta(hours=2))

        assert [p.id for p in service.pending_extensions(site_leader.id)] == [permit.id]
        assert [p.id for p in service.pending_extensions(area_manager.id)] == [permit.id]
        assert service.pending_extensions(safety_officer.id) == []
        assert service.pending_extensions(requester.id) == []

        service.decide_extension(permit.id, site_leader.id, True)
        assert service.pending_extensions(area_manager.id) == []
