"""
Smokey Planning Engine
Tests: Decisions.

Covers:
    - confidence scoring and default summaries
    - decision creation with its audit event
    - one decision authorising several plans in one transaction
    - newest-first listing with type filter
    - plan creation checks the decision's client
"""

import pytest
from sqlalchemy import select

from smokey.core.exceptions import NotFoundError, ValidationError
from smokey.models import db
from smokey.models.audit import AuditLog
from smokey.models.decision import DecisionType
from smokey.models.plan import Plan
from smokey.services.decision_service import decision_confidence, decision_summary


class TestConfidence:
    def test_base_score(self):
        assert decision_confidence(DecisionType.PAUSE_PLAN, None, None) == 0.5

    def test_signal_and_type_bonus(self):
        assert decision_confidence(DecisionType.CREATE_PLAN, "sig-1", None) == 0.9
        assert decision_confidence(DecisionType.BRANCH_PLAN, None, None) == 0.6

    def test_signal_strength_scales(self):
        assert decision_confidence(DecisionType.QUEUE_PLAN, None, {"signalStrength": 0.5}) == 0.55

    def test_strength_is_clamped_and_score_capped(self):
        score = decision_confidence(DecisionType.CREATE_PLAN, "sig-1", {"signalStrength": 7})
        assert score == 1.0
        assert decision_confidence(DecisionType.PAUSE_PLAN, None, {"signalStrength": -3}) == 0.5

    def test_non_numeric_strength_ignored(self):
        assert decision_confidence(DecisionType.PAUSE_PLAN, None, {"signalStrength": "high"}) == 0.5


class TestSummary:
    def test_reasoning_wins(self):
        assert decision_summary(DecisionType.PAUSE_PLAN, "Waiting on DNS", None) == "Waiting on DNS"

    def test_create_plan_names_the_type(self):
        assert decision_summary(DecisionType.CREATE_PLAN, None, {"planType": "crawl_index"}) \
            == "Create plan based on crawl_index"
        assert decision_summary(DecisionType.CREATE_PLAN, None, None) == "Create plan based on analysis"

    def test_defaults_per_type(self):
        assert decision_summary(DecisionType.QUEUE_PLAN, None, None) == "Queue plan - WIP limit reached"
        assert decision_summary(DecisionType.BRANCH_PLAN, "", None) == \
            "Branch plan due to checkpoint failure"


# ═════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═════════════════════════════════════════════════════════════════════════════

class TestCreateDecision:
    def test_persists_and_audits(self, services, make_client):
        c = make_client()
        d = services.decisions.create_decision(c.id, "CREATE_PLAN", signal_id="sig-7",
                                               reasoning="  Title scores dropped  ",
                                               context={"planType": "title_search_relevance"})
        assert d.id is not None
        assert d.decision_type == "create_plan"
        assert d.reasoning == "Title scores dropped"
        assert d.summary == "Title scores dropped"
        assert d.confidence == 0.9
        assert d.created_by == "system"
        actions = db.session.execute(
            select(AuditLog.action).where(AuditLog.entity_type == "decision",
                                          AuditLog.entity_id == str(d.id))
        ).scalars().all()
        assert actions == ["decision.created"]

    def test_unknown_type(self, services, make_client):
        c = make_client()
        with pytest.raises(ValidationError) as exc:
            services.decisions.create_decision(c.id, "launch_rocket")
        assert "create_plan" in exc.value.details["allowed"]

    def test_context_must_be_object(self, services, make_client):
        c = make_client()
        with pytest.raises(ValidationError):
            services.decisions.create_decision(c.id, "create_plan", context=["x"])

    def test_unknown_client(self, services):
        with pytest.raises(NotFoundError):
            services.decisions.create_decision(404, "create_plan")


class TestCreateWithPlans:
    def test_one_plan_per_type(self, services, make_client):
        c = make_client(tier="enterprise")
        decision, plans = services.decisions.create_decision_with_plans(
            c.id, ["crawl_index", "trust_signals"], signal_id="sig-3")
        assert [p.plan_type for p in plans] == ["crawl_index", "trust_signals"]
        assert all(p.source_decision_id == decision.id for p in plans)
        assert decision.summary == "Create plan based on crawl_index, trust_signals"
        assert [p.id for p in services.decisions.get_decision(decision.id).plans] == \
            [p.id for p in plans]

    def test_unknown_plan_type_writes_nothing(self, services, make_client):
        c = make_client()
        with pytest.raises(ValidationError) as exc:
            services.decisions.create_decision_with_plans(c.id, ["crawl_index", "seo_magic"])
        assert exc.value.details["planTypes"] == ["seo_magic"]
        assert services.decisions.get_client_decisions(c.id) == []
        assert db.session.execute(select(Plan)).first() is None

    def test_requires_plan_types(self, services, make_client):
        c = make_client()
        with pytest.raises(ValidationError):
            services.decisions.create_decision_with_plans(c.id, [])


class TestListDecisions:
    def test_newest_first_with_filter(self, services, make_client):
        c = make_client()
        first = services.decisions.create_decision(c.id, "create_plan")
        second = services.decisions.create_decision(c.id, "pause_plan")
        third = services.decisions.create_decision(c.id, "create_plan")
        assert [d.id for d in services.decisions.get_client_decisions(c.id)] == \
            [third.id, second.id, first.id]
        only = services.decisions.get_client_decisions(c.id, decision_type="create_plan", limit=1)
        assert [d.id for d in only] == [third.id]

    def test_other_clients_excluded(self, services, make_client):
        a, b = make_client(name="A"), make_client(name="B")
        services.decisions.create_decision(a.id, "create_plan")
        assert services.decisions.get_client_decisions(b.id) == []

    def test_missing_decision(self, services):
        with pytest.raises(NotFoundError):
            services.decisions.get_decision(12345)


class TestPlanAuthorisation:
    def test_decision_of_other_client(self, services, make_client, make_decision):
        a, b = make_client(name="A"), make_client(name="B")
        foreign = make_decision(a.id)
        with pytest.raises(ValidationError) as exc:
            services.engine.create_plan(b.id, "crawl_index", source_decision_id=foreign.id)
        assert exc.value.details == {"decisionId": foreign.id}

    def test_unknown_decision(self, services, make_client):
        c = make_client()
        with pytest.raises(ValidationError) as exc:
            services.engine.create_plan(c.id, "crawl_index", source_decision_id=777)
        assert exc.value.details == {"decisionId": 777}

    def test_plan_created_audit_carries_decision(self, services, make_client, make_decision):
        c = make_client()
        decision = make_decision(c.id)
        plan = services.engine.create_plan(c.id, "crawl_index", source_decision_id=decision.id)
        row = db.session.execute(
            select(AuditLog).where(AuditLog.entity_type == "plan",
                                   AuditLog.entity_id == str(plan.id))
        ).scalar_one()
        assert row.diff["source_decision_id"] == decision.id
        assert row.diff["operator_override"] is False
