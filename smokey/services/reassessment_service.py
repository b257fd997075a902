"""
Reassessment Queue: follow-up checks on completed plans.

A plan gets ``reassess_after`` when it completes (template cooldown).
Once that moment passes the plan shows up in ``get_due``; reassessing it
re-runs the audit against its last task's checkpoint.  A failing result
opens a follow-up plan.  The completed plan itself never changes status.
"""

from __future__ import annotations

import logging
from datetime import datetime

from smokey.core.exceptions import SmokeyError, StateError
from smokey.models.audit import write_audit
from smokey.models.plan import CheckpointResult, PlanStatus
from smokey.repository import SmokeyRepository
from smokey.services.checkpoint_service import CheckpointEvaluator
from smokey.services.plan_engine import PlanEngine
from smokey.services.templates import FailureAction, get_plan_template

logger = logging.getLogger(__name__)


class ReassessmentQueue:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine,
                 evaluator: CheckpointEvaluator) -> None:
        self.repo = repo
        self.engine = engine
        self.evaluator = evaluator

    def get_due(self, client_id: int | None = None, now: datetime | None = None) -> dict:
        """Due plans grouped by the ISO date of ``reassess_after``.

        Returns:
            {"groups": [{"date": "YYYY-MM-DD", "items": [...]}, ...], "total": n}
        """
        if client_id is not None:
            self.repo.get_client(client_id)
        now = now or self.engine.now()
        groups: dict[str, list] = {}
        plans = self.repo.due_reassessments(now, client_id)
        for plan in plans:
            last = plan.tasks[-1] if plan.tasks else None
            groups.setdefault(plan.reassess_after.date().isoformat(), []).append({
                "plan": plan.to_dict(),
                "latest_task": last.to_dict() if last else None,
                "checkpoint": last.checkpoint.to_dict() if last and last.checkpoint else None,
            })
        return {
            "groups": [{"date": key, "items": items} for key, items in groups.items()],
            "total": len(plans),
        }

    def reassess_plan(self, plan_id: int) -> dict:
        """Re-evaluate the plan's last checkpoint with a fresh audit.

        On ``fail`` a follow-up plan is created depending on the completed
        one: the policy's branch type, or the same type again under a
        pause policy.  ``reassess_after`` is cleared on ``pass`` or
        ``fail`` only.
        """
        plan = self.repo.get_plan(plan_id)
        if plan.status != PlanStatus.COMPLETED.value:
            raise StateError(
                f"Only completed plans can be reassessed (plan {plan.id} is {plan.status})",
                details={"plan_id": plan.id, "status": plan.status},
            )
        if not plan.tasks:
            raise StateError(f"Plan {plan.id} has no tasks to reassess")
        task_number = plan.tasks[-1].task_number

        outcome = self.evaluator.evaluate_checkpoint_with_audit(plan.id, task_number)
        result = CheckpointResult(outcome.checkpoint.result)

        plan = self.repo.get_plan(plan_id, for_update=True)
        # needs_review keeps the plan due so the next sweep tries again
        if result is not CheckpointResult.NEEDS_REVIEW:
            plan.reassess_after = None
        follow_up = None
        if result is CheckpointResult.FAIL:
            template = get_plan_template(plan.plan_type)
            policy = template.policy_for(task_number) if template else None
            follow_type = plan.plan_type
            if policy is not None and policy.action is FailureAction.BRANCH and policy.branch_to:
                follow_type = policy.branch_to
            follow_up = self.engine.create_plan(
                plan.client_id,
                follow_type,
                depends_on_plan_id=plan.id,
                source_decision_id=plan.source_decision_id,
                operator_override=True,
                commit=False,
            )
            follow_up.branch_reason = f"Reassessment failed: {outcome.checkpoint.reasoning}"

        write_audit(entity_type="plan", entity_id=plan.id, action="plan.reassessed",
                    client_id=plan.client_id,
                    diff={"result": result.value,
                          "follow_up_plan_id": follow_up.id if follow_up else None})
        self.repo.commit()
        logger.info("Plan reassessed: id=%s result=%s follow_up=%s",
                    plan.id, result.value, follow_up.id if follow_up else None)
        return {
            "plan": plan.to_dict(),
            "checkpoint": outcome.checkpoint.to_dict(),
            "result": result.value,
            "follow_up_plan": follow_up.to_dict() if follow_up else None,
        }

    def reassess_due(self, client_id: int | None = None, now: datetime | None = None) -> list[dict]:
        """Reassess every due plan; used by the ``smokey-reassess`` CLI command."""
        now = now or self.engine.now()
        results = []
        for plan_id in [p.id for p in self.repo.due_reassessments(now, client_id)]:
            try:
                results.append(self.reassess_plan(plan_id))
            except SmokeyError as exc:
                self.repo.rollback()
                logger.warning("Reassessment skipped for plan %s: %s", plan_id, exc.message)
                results.append({"plan_id": plan_id, "error": exc.message, "code": exc.code})
        return results
