"""Tests for approval chain templates and resolution."""

from uuid import uuid4

import pytest
import yaml

from eptw.core.approval_chain import (
    ApprovalChainResolver,
    ChainStep,
    ResolvedStep,
    load_chain_templates,
    parse_chain_config,
    seed_approval_chains,
)
from eptw.core.approval_chain.templates import parse_step, parse_template
from eptw.core.exceptions import ConfigurationError, ValidationError
from eptw.core.permit.states import PermitType
from eptw.core.rbac import Role
from eptw.db.models import ApprovalChainTemplate

from tests.factories import CHAIN_CONFIG_PATH, create_chain_template, create_site

AM = Role.AREA_MANAGER
SAFETY = Role.SAFETY_OFFICER
LEADER = Role.SITE_LEADER


class TestChainStep:
    """Tests for step parsing and conditions."""

    def test_parse_basic_step(self):
        step = parse_step({"role": "Approver_Safety"})
        assert step.role == SAFETY
        assert step.sequential is False
        assert step.when == {}

    def test_parse_legacy_role_name(self):
        step = parse_step({"role": "safety officer", "sequential": True})
        assert step.role == SAFETY
        assert step.sequential is True

    def test_requester_cannot_approve(self):
        with pytest.raises(ConfigurationError):
            parse_step({"role": "Requester"})

    def test_unknown_role(self):
        with pytest.raises(ConfigurationError):
            parse_step({"role": "Approver_Janitor"})

    def test_missing_role(self):
        with pytest.raises(ConfigurationError):
            parse_step({"sequential": True})

    def test_when_must_be_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_step({"role": "Approver_Safety", "when": ["high_risk"]})

    def test_unconditional_step_always_applies(self):
        assert ChainStep(SAFETY).applies_to(None)

    def test_condition_equality(self):
        step = ChainStep(SAFETY, when={"high_risk": True})
        assert step.applies_to({"high_risk": True})
        assert not step.applies_to({"high_risk": False})
        assert not step.applies_to({})

    def test_condition_membership(self):
        """Test that a list value matches any of its members."""
        step = ChainStep(SAFETY, when={"voltage": ["HV", "EHV"]})
        assert step.applies_to({"voltage": "HV"})
        assert not step.applies_to({"voltage": "LV"})

    def test_to_dict(self):
        assert ChainStep(LEADER, True).to_dict() == {"role": "Approver_SiteLeader", "sequential": True}
        assert ChainStep(SAFETY, when={"high_risk": True}).to_dict()["when"] == {"high_risk": True}


class TestChainConfig:
    """Tests for parsing the approval chain file."""

    def test_parse_template(self):
        template = parse_template("Hot_Work", {"steps": [{"role": "Approver_Safety"}], "description": "Hot"})
        assert template.permit_type == PermitType.HOT_WORK
        assert template.site_code is None
        assert template.description == "Hot"

    def test_unknown_permit_type(self):
        with pytest.raises(ConfigurationError):
            parse_template("Diving", {"steps": [{"role": "Approver_Safety"}]})

    def test_template_without_steps(self):
        with pytest.raises(ConfigurationError):
            parse_template("General", {"steps": []})

    def test_parse_sections(self):
        templates = parse_chain_config({
            "defaults": {"General": {"steps": [{"role": "Approver_AreaManager"}]}},
            "sites": {"SITE-A": {"General": {"steps": [{"role": "Approver_SiteLeader"}]}}},
        })
        assert [(t.site_code, t.permit_type) for t in templates] == [
            (None, PermitType.GENERAL),
            ("SITE-A", PermitType.GENERAL),
        ]

    def test_load_shipped_config(self):
        """Test that the shipped file covers every permit type."""
        templates = load_chain_templates(str(CHAIN_CONFIG_PATH))
        defaults = {t.permit_type for t in templates if t.site_code is None}
        assert defaults == set(PermitType)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_chain_templates(str(tmp_path / "missing.yaml"))

    def test_load_invalid_role_from_file(self, tmp_path):
        path = tmp_path / "chains.yaml"
        path.write_text(yaml.safe_dump({"defaults": {"General": {"steps": [{"role": "Admin"}]}}}))
        with pytest.raises(ConfigurationError):
            load_chain_templates(str(path))


class TestSeedApprovalChains:
    """Tests for storing templates."""

    def test_seed_shipped_config(self, db_session, site):
        stored = seed_approval_chains(db_session, load_chain_templates(str(CHAIN_CONFIG_PATH)))
        # NORTH-PLANT does not exist, so its override is skipped
        assert len(stored) == len(PermitType)
        assert all(row.site_id is None for row in stored)

    def test_seed_site_override(self, db_session):
        north = create_site(db_session, code="NORTH-PLANT")
        stored = seed_approval_chains(db_session, load_chain_templates(str(CHAIN_CONFIG_PATH)))

        overrides = [row for row in stored if row.site_id == north.id]
        assert len(overrides) == 1
        assert overrides[0].permit_type == "Height"

    def test_seed_is_idempotent(self, db_session, site):
        templates = load_chain_templates(str(CHAIN_CONFIG_PATH))
        seed_approval_chains(db_session, templates)
        seed_approval_chains(db_session, templates)
        assert db_session.query(ApprovalChainTemplate).count() == len(PermitType)

    def test_seed_replace(self, db_session):
        create_chain_template(db_session, permit_type="General", steps=[{"role": "Approver_SiteLeader"}])
        templates = parse_chain_config({"defaults": {"General": {"steps": [{"role": "Approver_AreaManager"}]}}})

        kept = seed_approval_chains(db_session, templates)
        assert kept[0].steps == [{"role": "Approver_SiteLeader"}]

        replaced = seed_approval_chains(db_session, templates, replace=True)
        assert replaced[0].steps == [{"role": "Approver_AreaManager", "sequential": False}]


class TestApprovalChainResolver:
    """Tests for resolving required approvals."""

    @pytest.fixture
    def resolver(self, db_session, chains):
        return ApprovalChainResolver(db_session)

    def test_general(self, resolver, site):
        assert resolver.resolve(site.id, "General") == [ResolvedStep(AM, False)]

    def test_conditional_step_skipped(self, resolver, site):
        assert resolver.resolve(site.id, PermitType.HEIGHT, {"high_risk": False}) == [ResolvedStep(AM, False)]

    def test_conditional_step_included(self, resolver, site):
        steps = resolver.resolve(site.id, PermitType.HEIGHT, {"high_risk": True})
        assert [s.role for s in steps] == [AM, SAFETY]

    def test_hot_work_order(self, resolver, site):
        steps = resolver.resolve(site.id, "Hot_Work", {"high_risk": True})
        assert [s.role for s in steps] == [SAFETY, AM]

    def test_confined_space_is_sequential(self, resolver, site):
        assert resolver.resolve(site.id, "Confined_Space") == [
            ResolvedStep(SAFETY, False),
            ResolvedStep(AM, True),
            ResolvedStep(LEADER, True),
        ]

    def test_site_template_wins(self, db_session, resolver, site):
        create_chain_template(db_session, permit_type="General", site=site, steps=[
            {"role": "Approver_SiteLeader"},
        ])
        assert [s.role for s in resolver.resolve(site.id, "General")] == [LEADER]

    def test_other_site_uses_wildcard(self, db_session, resolver, site, other_site):
        create_chain_template(db_session, permit_type="General", site=site, steps=[
            {"role": "Approver_SiteLeader"},
        ])
        assert [s.role for s in resolver.resolve(other_site.id, "General")] == [AM]

    def test_duplicate_roles_collapse(self, db_session, site):
        create_chain_template(db_session, permit_type="Electrical", steps=[
            {"role": "Approver_Safety"},
            {"role": "Approver_AreaManager"},
            {"role": "Approver_Safety", "sequential": True},
        ])
        steps = ApprovalChainResolver(db_session).resolve(site.id, "Electrical")
        assert steps == [ResolvedStep(SAFETY, False), ResolvedStep(AM, False)]

    def test_no_template(self, db_session, site):
        """Test that a missing chain is a configuration problem, not an empty chain."""
        with pytest.raises(ConfigurationError) as exc:
            ApprovalChainResolver(db_session).resolve(site.id, "General")
        assert exc.value.guard == "approval_chain"
        assert "SITE-A" in exc.value.message

    def test_all_steps_filtered_out(self, db_session, site):
        create_chain_template(db_session, permit_type="Height", steps=[
            {"role": "Approver_Safety", "when": {"high_risk": True}},
        ])
        with pytest.raises(ConfigurationError):
            ApprovalChainResolver(db_session).resolve(site.id, "Height", {"high_risk": False})

    def test_unknown_site(self, resolver):
        with pytest.raises(ValidationError) as exc:
            resolver.resolve(uuid4(), "General")
        assert exc.value.guard == "site_exists"

    def test_inactive_site(self, db_session, resolver):
        closed = create_site(db_session, code="OLD", is_active=False)
        with pytest.raises(ValidationError) as exc:
            resolver.resolve(closed.id, "General")
        assert exc.value.guard == "site_active"

    def test_unknown_permit_type(self, resolver, site):
        with pytest.raises(ValidationError):
            resolver.resolve(site.id, "Diving")

    def test_resolution_does_not_write(self, db_session, resolver, site):
        before = db_session.query(ApprovalChainTemplate).count()
        resolver.resolve(site.id, "Electrical")
        assert not db_session.new and not db_session.dirty
        assert db_session.query(ApprovalChainTemplate).count() == before
