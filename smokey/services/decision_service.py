"""
Decision Service: the recorded judgments that authorise plans.

A plan is created either from a decision (``source_decision_id``) or
under an explicit operator override.  Decisions carry a confidence score
derived from what prompted them:

    base 0.5
    + 0.2  an upstream signal is attached
    + 0.2  create_plan  /  + 0.1  branch_plan
    + 0.1 × context["signalStrength"]   (strength clamped to 0..1)
    capped at 1.0
"""

from __future__ import annotations

import logging

from smokey.core.exceptions import ValidationError
from smokey.models.audit import current_actor, write_audit
from smokey.models.decision import DECISION_TYPES, Decision, DecisionType
from smokey.models.plan import Plan
from smokey.repository import SmokeyRepository
from smokey.services.audit_signals import number
from smokey.services.plan_engine import PlanEngine
from smokey.services.templates import PLAN_CATALOG, get_plan_template

logger = logging.getLogger(__name__)

MAX_DECISIONS = 200

_TYPE_BONUS = {
    DecisionType.CREATE_PLAN: 0.2,
    DecisionType.BRANCH_PLAN: 0.1,
}

_DEFAULT_SUMMARIES = {
    DecisionType.PAUSE_PLAN: "Pause plan due to dependencies or resource constraints",
    DecisionType.RESUME_PLAN: "Resume plan after dependencies resolved",
    DecisionType.BRANCH_PLAN: "Branch plan due to checkpoint failure",
    DecisionType.COMPLETE_PLAN: "Complete plan - all tasks finished",
    DecisionType.QUEUE_PLAN: "Queue plan - WIP limit reached",
}


def parse_decision_type(value) -> DecisionType:
    try:
        return DecisionType(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown decision type '{value}'",
                              details={"decisionType": value, "allowed": DECISION_TYPES})


def decision_confidence(decision_type: DecisionType, signal_id: str | None,
                        context: dict | None) -> float:
    score = 0.5
    if signal_id:
        score += 0.2
    score += _TYPE_BONUS.get(decision_type, 0.0)
    strength = number(context or {}, "signalStrength")
    if strength is not None:
        score += max(0.0, min(strength, 1.0)) * 0.1
    return round(min(score, 1.0), 4)


def decision_summary(decision_type: DecisionType, reasoning: str | None,
                     context: dict | None) -> str:
    if reasoning:
        return reasoning[:500]
    if decision_type is DecisionType.CREATE_PLAN:
        return f"Create plan based on {(context or {}).get('planType') or 'analysis'}"
    return _DEFAULT_SUMMARIES[decision_type]


class DecisionService:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine) -> None:
        self.repo = repo
        self.engine = engine

    def create_decision(self, client_id: int, decision_type, *, signal_id: str | None = None,
                        reasoning: str | None = None, context: dict | None = None,
                        commit: bool = True) -> Decision:
        dtype = parse_decision_type(decision_type)
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context must be an object", details={"context": "object"})
        client = self.repo.get_client(client_id)
        reasoning = (reasoning or "").strip() or None
        signal_id = (str(signal_id).strip() if signal_id is not None else "") or None

        decision = Decision(
            client_id=client.id,
            decision_type=dtype.value,
            signal_id=signal_id,
            reasoning=reasoning,
            summary=decision_summary(dtype, reasoning, context),
            confidence=decision_confidence(dtype, signal_id, context),
            context=context or None,
            created_by=current_actor(),
        )
        self.repo.add(decision)
        self.repo.flush()
        write_audit(entity_type="decision", entity_id=decision.id, action="decision.created",
                    client_id=client.id,
                    diff={"decision_type": dtype.value, "signal_id": signal_id,
                          "confidence": decision.confidence})
        logger.info("Decision created: id=%s client=%s type=%s confidence=%.2f",
                    decision.id, client.id, dtype.value, decision.confidence)
        if commit:
            self.repo.commit()
        return decision

    def create_decision_with_plans(self, client_id: int, plan_types: list[str], *,
                                   signal_id: str | None = None, reasoning: str | None = None,
                                   context: dict | None = None) -> tuple[Decision, list[Plan]]:
        """One ``create_plan`` decision and one plan per type, in a single commit."""
        if not isinstance(plan_types, list) or not plan_types:
            raise ValidationError("planTypes must be a non-empty list",
                                  details={"planTypes": "required"})
        unknown = [t for t in plan_types if get_plan_template(str(t)) is None]
        if unknown:
            raise ValidationError(f"Unknown plan type(s): {', '.join(map(str, unknown))}",
                                  details={"planTypes": unknown, "allowed": sorted(PLAN_CATALOG)})
        if context is not None and not isinstance(context, dict):
            raise ValidationError("context must be an object", details={"context": "object"})
        ctx = dict(context or {})
        ctx.setdefault("planType", ", ".join(str(t) for t in plan_types))

        decision = self.create_decision(client_id, DecisionType.CREATE_PLAN, signal_id=signal_id,
                                        reasoning=reasoning, context=ctx, commit=False)
        plans = [
            self.engine.create_plan(client_id, str(plan_type), source_decision_id=decision.id,
                                    commit=False)
            for plan_type in plan_types
        ]
        self.repo.commit()
        return decision, plans

    def get_decision(self, decision_id: int) -> Decision:
        return self.repo.get_decision(decision_id)

    def get_client_decisions(self, client_id: int, decision_type=None,
                             limit: int | None = None) -> list[Decision]:
        self.repo.get_client(client_id)
        dtype = parse_decision_type(decision_type).value if decision_type else None
        limit = max(1, min(limit or 50, MAX_DECISIONS))
        return self.repo.list_decisions(client_id, decision_type=dtype, limit=limit)
