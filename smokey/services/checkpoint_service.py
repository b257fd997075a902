"""
Checkpoint Evaluator: pass / fail / needs_review judgments on Task output.

Rules are chosen by the plan type's ``checkpoint_rule``:

    rule        metric(s)                              pass          review
    ─────────   ─────────────────────────────────────  ────────────  ──────────
    title       title_score, seo_score                 ≥80 and ≥75   both ≥60
    technical   technical_score (+ status_code 200)    ≥90           ≥70
    image_alt   alt_text_coverage                      ≥0.8          ≥0.6
    trust       mean(ai_score, technical_score)        ≥75           ≥55
    ai          mean(ai_score, content_semantics)      ≥70           ≥50
    generic     seo_score vs. plan baseline            base+5        base+2
                seo_score (no baseline)                ≥70           ≥50

Anything below the review threshold fails.  A tool output that reports
its own failure fails outright; missing metrics go to review.

Confidence is deterministic: 0.5 at a threshold, rising linearly to 0.95
as the value moves one threshold band away from the nearest boundary.

Outcomes:
    pass          → PlanEngine.advance_plan
    fail          → failure policy of the step (branch or pause)
    needs_review  → no transition; listed by ``get_review_queue``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from smokey.core.exceptions import StateError, ToolExecutionError, ValidationError
from smokey.integrations.tool_gateway import ToolGateway
from smokey.models.audit import current_actor, write_audit
from smokey.models.plan import (
    Checkpoint,
    CheckpointMethod,
    CheckpointResult,
    Plan,
    PlanStatus,
    Task,
    TaskStatus,
    Tool,
)
from smokey.repository import SmokeyRepository
from smokey.services.audit_signals import extract_metrics, number, reported_failure
from smokey.services.plan_engine import PlanEngine
from smokey.services.templates import CheckpointRule, FailureAction, get_plan_template

logger = logging.getLogger(__name__)

MISSING_METRICS_CONFIDENCE = 0.3
REPORTED_FAILURE_CONFIDENCE = 0.9

_SEVERITY = {
    CheckpointResult.PASS: 0,
    CheckpointResult.NEEDS_REVIEW: 1,
    CheckpointResult.FAIL: 2,
}


@dataclass(frozen=True)
class Grade:
    result: CheckpointResult
    confidence: float
    reasoning: str


@dataclass
class CheckpointOutcome:
    """Checkpoint written plus what the engine did about it."""
    checkpoint: Checkpoint
    plan: Plan
    action: str | None = None           # advanced | branched | paused | review | None
    branch_plan: Plan | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "checkpoint": self.checkpoint.to_dict(),
            "plan": self.plan.to_dict(),
            "action": self.action,
        }
        if self.branch_plan is not None:
            d["branch_plan"] = self.branch_plan.to_dict()
        d.update(self.extra)
        return d


# ═════════════════════════════════════════════════════════════════════════════
# Pure grading
# ═════════════════════════════════════════════════════════════════════════════


def _confidence(distance: float, band: float) -> float:
    band = band if band > 0 else 1.0
    return round(0.5 + min(abs(distance) / band, 1.0) * 0.45, 2)


def grade_value(label: str, value: float, pass_at: float, review_at: float) -> Grade:
    """Grade one value against a (pass, review) threshold pair."""
    band = pass_at - review_at
    if value >= pass_at:
        return Grade(CheckpointResult.PASS, _confidence(value - pass_at, band),
                     f"{label} {value:g} ≥ {pass_at:g}")
    if value >= review_at:
        distance = min(pass_at - value, value - review_at)
        return Grade(CheckpointResult.NEEDS_REVIEW, _confidence(distance, band / 2),
                     f"{label} {value:g} between {review_at:g} and {pass_at:g}")
    return Grade(CheckpointResult.FAIL, _confidence(review_at - value, band),
                 f"{label} {value:g} < {review_at:g}")


def _combine(grades: list[Grade]) -> Grade:
    """Worst result wins; confidence is the weakest among grades with that result."""
    worst = max(grades, key=lambda g: _SEVERITY[g.result]).result
    same = [g for g in grades if g.result is worst]
    return Grade(worst, min(g.confidence for g in same), "; ".join(g.reasoning for g in grades))


def _missing(*keys: str) -> Grade:
    return Grade(CheckpointResult.NEEDS_REVIEW, MISSING_METRICS_CONFIDENCE,
                 f"Missing metrics: {', '.join(keys)}")


def grade(rule: CheckpointRule, metrics: dict, *, baseline: float | None = None) -> Grade:
    """Apply ``rule`` to a flat metric dict."""
    if rule is CheckpointRule.TITLE:
        title, seo = number(metrics, "title_score"), number(metrics, "seo_score")
        missing = [k for k, v in (("title_score", title), ("seo_score", seo)) if v is None]
        if missing:
            return _missing(*missing)
        return _combine([grade_value("title score", title, 80, 60),
                         grade_value("SEO score", seo, 75, 60)])

    if rule is CheckpointRule.TECHNICAL:
        technical = number(metrics, "technical_score")
        if technical is None:
            return _missing("technical_score")
        g = grade_value("technical score", technical, 90, 70)
        status_code = number(metrics, "status_code")
        if g.result is CheckpointResult.PASS and status_code is not None and int(status_code) != 200:
            return Grade(CheckpointResult.NEEDS_REVIEW, 0.5,
                         f"{g.reasoning}; but status code {int(status_code)} ≠ 200")
        return g

    if rule is CheckpointRule.IMAGE_ALT:
        coverage = number(metrics, "alt_text_coverage")
        if coverage is None:
            return _missing("alt_text_coverage")
        return grade_value("alt text coverage", coverage, 0.8, 0.6)

    if rule is CheckpointRule.TRUST:
        ai, technical = number(metrics, "ai_score"), number(metrics, "technical_score")
        missing = [k for k, v in (("ai_score", ai), ("technical_score", technical)) if v is None]
        if missing:
            return _missing(*missing)
        return grade_value("trust score (mean of AI and technical)", (ai + technical) / 2, 75, 55)

    if rule is CheckpointRule.AI:
        ai, semantics = number(metrics, "ai_score"), number(metrics, "content_semantics")
        missing = [k for k, v in (("ai_score", ai), ("content_semantics", semantics)) if v is None]
        if missing:
            return _missing(*missing)
        return grade_value("AI readiness (mean of AI and semantics)", (ai + semantics) / 2, 70, 50)

    seo = number(metrics, "seo_score")
    if seo is None:
        return _missing("seo_score")
    if baseline is not None:
        return grade_value(f"SEO score vs. baseline {baseline:g}", seo, baseline + 5, baseline + 2)
    return grade_value("SEO score", seo, 70, 50)


# ═════════════════════════════════════════════════════════════════════════════
# Evaluator
# ═════════════════════════════════════════════════════════════════════════════


class CheckpointEvaluator:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine, gateway: ToolGateway,
                 timeout: float | None = None) -> None:
        self.repo = repo
        self.engine = engine
        self.gateway = gateway
        self.timeout = timeout

    def _load(self, plan_id: int, task_number: int) -> tuple[Plan, Task]:
        plan = self.repo.get_plan(plan_id)
        task = self.repo.get_task(plan_id, task_number)
        if task.status not in (TaskStatus.DONE.value, TaskStatus.FAILED.value):
            raise StateError(
                f"Task {task_number} of plan {plan_id} is {task.status}; only settled tasks are evaluated",
                details={"task_number": task_number, "status": task.status},
            )
        if task.tool_output is None:
            raise StateError(
                f"Task {task_number} of plan {plan_id} has no output to evaluate",
                details={"task_number": task_number, "status": task.status},
            )
        return plan, task

    def _baseline(self, plan: Plan, task: Task, metrics: dict) -> float | None:
        explicit = number(metrics, "baseline_seo_score")
        if explicit is not None:
            return explicit
        for other in plan.tasks:
            if other.id == task.id or other.tool != Tool.AUDIT.value or other.tool_output is None:
                continue
            if other.status != TaskStatus.DONE.value:
                continue
            seo = number(extract_metrics(other.tool_output), "seo_score")
            if seo is not None:
                return seo
        return None

    def _grade_output(self, plan: Plan, task: Task, output: dict) -> tuple[Grade, dict]:
        metrics = extract_metrics(output)
        failure = reported_failure(output)
        if failure:
            return Grade(CheckpointResult.FAIL, REPORTED_FAILURE_CONFIDENCE,
                         f"Tool reported failure: {failure}"), metrics
        template = get_plan_template(plan.plan_type)
        rule = template.checkpoint_rule if template else CheckpointRule.GENERIC
        baseline = self._baseline(plan, task, metrics) if rule is CheckpointRule.GENERIC else None
        if baseline is not None:
            metrics = {**metrics, "baseline_seo_score": baseline}
        return grade(rule, metrics, baseline=baseline), metrics

    def _store(self, plan: Plan, task: Task, *, result: CheckpointResult,
               confidence: float | None, reasoning: str, method: CheckpointMethod,
               metrics: dict | None) -> Checkpoint:
        checkpoint = self.repo.get_checkpoint(task.id)
        if checkpoint is None:
            checkpoint = Checkpoint(task_id=task.id)
            self.repo.add(checkpoint)
        checkpoint.result = result.value
        checkpoint.confidence = confidence
        checkpoint.reasoning = reasoning
        checkpoint.method = method.value
        checkpoint.metrics = metrics
        checkpoint.evaluated_by = current_actor()
        checkpoint.evaluated_at = datetime.now(timezone.utc)
        self.repo.flush()

        action = {
            CheckpointResult.PASS: "checkpoint.passed",
            CheckpointResult.FAIL: "checkpoint.failed",
            CheckpointResult.NEEDS_REVIEW: "checkpoint.needs_review",
        }[result]
        write_audit(entity_type="checkpoint", entity_id=checkpoint.id, action=action,
                    client_id=plan.client_id,
                    diff={"plan_id": plan.id, "task_number": task.task_number,
                          "confidence": confidence, "method": method.value,
                          "reasoning": reasoning})
        self.repo.commit()
        logger.info("Checkpoint %s: plan=%s task=%s method=%s confidence=%s",
                    result.value, plan.id, task.task_number, method.value, confidence)
        return checkpoint

    def _apply(self, plan_id: int, task_number: int, checkpoint: Checkpoint) -> CheckpointOutcome:
        plan = self.repo.get_plan(plan_id)
        result = CheckpointResult(checkpoint.result)

        if result is CheckpointResult.PASS:
            plan = self.engine.advance_plan(plan_id)
            action = "advanced" if plan.status == PlanStatus.COMPLETED.value else None
            return CheckpointOutcome(checkpoint, plan, action)

        if result is CheckpointResult.NEEDS_REVIEW:
            return CheckpointOutcome(checkpoint, plan, "review")

        if plan.status not in (PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value):
            # Completed plans are followed up by the reassessment queue
            return CheckpointOutcome(checkpoint, plan, None)

        template = get_plan_template(plan.plan_type)
        policy = template.policy_for(task_number) if template else None
        if policy is not None and policy.action is FailureAction.BRANCH and policy.branch_to:
            existing = [p for p in self.repo.dependents_of(plan.id)
                        if p.plan_type == policy.branch_to
                        and p.status in (PlanStatus.QUEUED.value, PlanStatus.ACTIVE.value,
                                         PlanStatus.PAUSED.value)]
            if existing:
                # one remediation per failure; the original still waits on it
                if plan.status == PlanStatus.ACTIVE.value:
                    plan = self.engine.pause_plan(
                        plan.id, reason=f"Checkpoint failed on task {task_number}; "
                                        f"remediation plan {existing[0].id} still open")
                return CheckpointOutcome(checkpoint, plan, "branched", existing[0])
            reason = f"Checkpoint failed on task {task_number}: {checkpoint.reasoning}"
            original, branch = self.engine.branch_plan(plan.id, policy.branch_to, reason)
            return CheckpointOutcome(checkpoint, original, "branched", branch)

        if plan.status == PlanStatus.ACTIVE.value:
            plan = self.engine.pause_plan(plan.id, reason=f"Checkpoint failed on task {task_number}")
        return CheckpointOutcome(checkpoint, plan, "paused")

    # ── Public operations ────────────────────────────────────────────────────

    def evaluate_checkpoint(self, plan_id: int, task_number: int) -> CheckpointOutcome:
        """Automatic evaluation over the task's stored output."""
        plan, task = self._load(plan_id, task_number)
        g, metrics = self._grade_output(plan, task, task.tool_output)
        checkpoint = self._store(plan, task, result=g.result, confidence=g.confidence,
                                 reasoning=g.reasoning, method=CheckpointMethod.AUTOMATIC,
                                 metrics=metrics)
        return self._apply(plan_id, task_number, checkpoint)

    def evaluate_checkpoint_with_audit(self, plan_id: int, task_number: int) -> CheckpointOutcome:
        """Re-run ``audit`` and grade its fresh metrics.

        The fresh metrics are stored on the checkpoint only; ``tool_output``
        stays the record of what the task execution returned.  A failed
        audit run cannot judge the site, so it records ``needs_review``.
        """
        plan, task = self._load(plan_id, task_number)
        client = plan.client
        payload = {
            "client_id": client.id,
            "url": client.canonical_url,
            "plan_tier": client.plan_tier,
            "plan": {"id": plan.id, "plan_type": plan.plan_type},
            "task": {"task_number": task.task_number, "title": task.title, "tool": task.tool},
            "previous_output": task.tool_output,
            "reassessment": True,
        }
        try:
            fresh = self.gateway.invoke(Tool.AUDIT.value, payload, timeout=self.timeout)
        except ToolExecutionError as exc:
            checkpoint = self._store(plan, task, result=CheckpointResult.NEEDS_REVIEW,
                                     confidence=MISSING_METRICS_CONFIDENCE,
                                     reasoning=f"Audit re-run failed: {exc.message}",
                                     method=CheckpointMethod.AUTOMATIC_WITH_AUDIT,
                                     metrics=None)
            return self._apply(plan_id, task_number, checkpoint)

        # the task keeps its execution output; fresh metrics live on the checkpoint
        g, metrics = self._grade_output(plan, task, fresh)
        checkpoint = self._store(plan, task, result=g.result, confidence=g.confidence,
                                 reasoning=g.reasoning, method=CheckpointMethod.AUTOMATIC_WITH_AUDIT,
                                 metrics=metrics)
        return self._apply(plan_id, task_number, checkpoint)

    def manual_checkpoint_evaluation(self, plan_id: int, task_number: int,
                                     result, reasoning: str | None = None) -> CheckpointOutcome:
        """Operator judgment; confidence is left empty."""
        try:
            parsed = CheckpointResult(str(result or "").strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid checkpoint result '{result}'",
                details={"result": result, "allowed": [r.value for r in CheckpointResult]},
            )
        plan, task = self._load(plan_id, task_number)
        checkpoint = self._store(plan, task, result=parsed, confidence=None,
                                 reasoning=reasoning or "", method=CheckpointMethod.MANUAL,
                                 metrics=extract_metrics(task.tool_output) or None)
        return self._apply(plan_id, task_number, checkpoint)

    def get_review_queue(self, client_id: int | None = None) -> list[Checkpoint]:
        if client_id is not None:
            self.repo.get_client(client_id)
        return self.repo.review_queue(client_id)
