"""
Smokey Planning Engine
Tests: Checkpoint Evaluator.

Covers:
    - threshold rules per plan type (pure grading)
    - deterministic confidence
    - pass → plan completion, fail → pause / branch policy, needs_review → queue
    - audit re-run evaluation
    - manual evaluation
"""

import pytest

from smokey.core.exceptions import StateError, ValidationError
from smokey.models.plan import CheckpointResult
from smokey.services.checkpoint_service import grade, grade_value
from smokey.services.templates import CheckpointRule, get_plan_template

PASS, FAIL, REVIEW = CheckpointResult.PASS, CheckpointResult.FAIL, CheckpointResult.NEEDS_REVIEW


# ═════════════════════════════════════════════════════════════════════════════
# PURE GRADING
# ═════════════════════════════════════════════════════════════════════════════

class TestGradeValue:
    def test_at_threshold_is_half_confident(self):
        g = grade_value("score", 80, 80, 60)
        assert g.result is PASS
        assert g.confidence == 0.5

    def test_far_above_threshold_caps_confidence(self):
        g = grade_value("score", 200, 80, 60)
        assert g.confidence == 0.95

    def test_far_below_review_caps_confidence(self):
        g = grade_value("score", 0, 80, 60)
        assert g.result is FAIL
        assert g.confidence == 0.95

    def test_review_band(self):
        g = grade_value("score", 70, 80, 60)
        assert g.result is REVIEW
        assert g.confidence == 0.95

    def test_same_input_same_grade(self):
        assert grade_value("score", 73.5, 80, 60) == grade_value("score", 73.5, 80, 60)


class TestRules:
    def test_title_pass(self):
        g = grade(CheckpointRule.TITLE, {"title_score": 100, "seo_score": 75})
        assert g.result is PASS
        assert g.confidence == 0.5

    def test_title_worst_result_wins(self):
        g = grade(CheckpointRule.TITLE, {"title_score": 70, "seo_score": 90})
        assert g.result is REVIEW
        g = grade(CheckpointRule.TITLE, {"title_score": 85, "seo_score": 40})
        assert g.result is FAIL

    def test_title_missing_metric(self):
        g = grade(CheckpointRule.TITLE, {"title_score": 85})
        assert g.result is REVIEW
        assert g.confidence == 0.3
        assert "seo_score" in g.reasoning

    def test_technical_status_code(self):
        assert grade(CheckpointRule.TECHNICAL, {"technical_score": 95}).result is PASS
        g = grade(CheckpointRule.TECHNICAL, {"technical_score": 95, "status_code": 404})
        assert g.result is REVIEW
        assert g.confidence == 0.5
        assert grade(CheckpointRule.TECHNICAL, {"technical_score": 60}).result is FAIL

    def test_image_alt(self):
        assert grade(CheckpointRule.IMAGE_ALT, {"alt_text_coverage": 0.85}).result is PASS
        assert grade(CheckpointRule.IMAGE_ALT, {"alt_text_coverage": 0.7}).result is REVIEW
        assert grade(CheckpointRule.IMAGE_ALT, {"alt_text_coverage": 0.4}).result is FAIL

    def test_trust_uses_mean(self):
        g = grade(CheckpointRule.TRUST, {"ai_score": 80, "technical_score": 70})
        assert g.result is PASS
        assert g.confidence == 0.5

    def test_ai_missing_semantics(self):
        assert grade(CheckpointRule.AI, {"ai_score": 90}).result is REVIEW

    def test_generic_against_baseline(self):
        assert grade(CheckpointRule.GENERIC, {"seo_score": 66}, baseline=60).result is PASS
        assert grade(CheckpointRule.GENERIC, {"seo_score": 63}, baseline=60).result is REVIEW
        assert grade(CheckpointRule.GENERIC, {"seo_score": 61}, baseline=60).result is FAIL

    def test_generic_without_baseline(self):
        assert grade(CheckpointRule.GENERIC, {"seo_score": 72}).result is PASS
        assert grade(CheckpointRule.GENERIC, {"seo_score": 40}).result is FAIL

    def test_non_numeric_metric_is_missing(self):
        assert grade(CheckpointRule.IMAGE_ALT, {"alt_text_coverage": "lots"}).result is REVIEW


# ═════════════════════════════════════════════════════════════════════════════
# EVALUATOR
# ═════════════════════════════════════════════════════════════════════════════

def _plan(services, client_id, plan_type="technical_foundations"):
    decision = services.decisions.create_decision(client_id, "create_plan")
    return services.engine.create_plan(client_id, plan_type, source_decision_id=decision.id)


class TestEvaluateCheckpoint:
    def test_no_output_is_state_error(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        with pytest.raises(StateError):
            services.checkpoints.evaluate_checkpoint(plan.id, 5)

    def test_pass_completes_plan(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"status": "completed",
                                "scores": {"technical_score": 96, "status_code": 200}})
        run_tasks(plan.id)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert outcome.checkpoint.result == "pass"
        assert outcome.checkpoint.method == "automatic"
        assert outcome.action == "advanced"
        assert outcome.plan.status == "completed"
        assert outcome.checkpoint.metrics["technical_score"] == 96

    def test_fail_pauses_under_pause_policy(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"technical_score": 52})
        run_tasks(plan.id)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert outcome.checkpoint.result == "fail"
        assert outcome.action == "paused"
        assert services.engine.get_plan(plan.id).status == "paused"

    def test_fail_branches_under_branch_policy(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "crawl_index")
        assert get_plan_template("crawl_index").failure_policy.branch_to == "technical_foundations"
        tools.returns("audit", {"technical_score": 40})
        run_tasks(plan.id)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert outcome.action == "branched"
        assert outcome.plan.status == "paused"
        assert outcome.branch_plan.plan_type == "technical_foundations"
        assert outcome.branch_plan.depends_on_plan_id == plan.id
        assert outcome.branch_plan.branch_reason.startswith("Checkpoint failed on task 5")

    def test_repeat_failure_reuses_branch(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "crawl_index")
        tools.returns("audit", {"technical_score": 40})
        run_tasks(plan.id)
        first = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        second = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert second.branch_plan.id == first.branch_plan.id
        assert len(services.repo.dependents_of(plan.id)) == 1

    def test_failure_after_resume_pauses_again(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "crawl_index")
        tools.returns("audit", {"technical_score": 40})
        run_tasks(plan.id)
        first = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        services.engine.resume_plan(plan.id)
        second = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert second.action == "branched"
        assert second.branch_plan.id == first.branch_plan.id
        assert second.plan.status == "paused"
        assert services.engine.get_plan(plan.id).status == "paused"

    def test_branch_leaves_original_next_task_readable(self, services, make_client, tools,
                                                      run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "crawl_index")
        run_tasks(plan.id, upto=4)
        outcome = services.checkpoints.manual_checkpoint_evaluation(
            plan.id, 4, "fail", "crawl still blocked")
        assert outcome.action == "branched"
        nxt = services.engine.get_next_task(plan.id)
        assert nxt.task_number == 5
        assert nxt.status == "pending"
        audit_calls = len(tools.payloads("audit"))
        with pytest.raises(StateError) as exc:
            services.executor.execute_task(plan.id, 5)
        assert exc.value.details["status"] == "paused"
        assert len(tools.payloads("audit")) == audit_calls
        assert services.repo.get_task(plan.id, 5).status == "pending"

    def test_reported_failure_fails(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"status": "failed", "error": "crawl blocked by robots.txt"})
        run_tasks(plan.id)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert outcome.checkpoint.result == "fail"
        assert outcome.checkpoint.confidence == 0.9
        assert "robots.txt" in outcome.checkpoint.reasoning

    def test_needs_review_lands_in_queue(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"technical_score": 80})
        run_tasks(plan.id)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        assert outcome.action == "review"
        assert outcome.plan.status == "active"
        queue = services.checkpoints.get_review_queue(c.id)
        assert [cp.id for cp in queue] == [outcome.checkpoint.id]

    def test_reevaluation_overwrites_checkpoint(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"technical_score": 80})
        run_tasks(plan.id)
        first = services.checkpoints.evaluate_checkpoint(plan.id, 5)
        second = services.checkpoints.manual_checkpoint_evaluation(plan.id, 5, "pass", "verified")
        assert second.checkpoint.id == first.checkpoint.id
        assert second.checkpoint.result == "pass"
        assert services.checkpoints.get_review_queue(c.id) == []

    def test_generic_rule_uses_first_audit_as_baseline(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "content_optimization")   # audit → crimson → audit
        tools.returns("audit", {"seo_score": 60})
        run_tasks(plan.id, upto=2)
        tools.returns("audit", {"seo_score": 68})
        services.executor.execute_task(plan.id, 3)
        outcome = services.checkpoints.evaluate_checkpoint(plan.id, 3)
        assert outcome.checkpoint.result == "pass"
        assert outcome.checkpoint.metrics["baseline_seo_score"] == 60


class TestEvaluateWithAudit:
    def test_fresh_audit_graded_without_touching_output(self, services, make_client, tools,
                                                       run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"technical_score": 50})
        run_tasks(plan.id)
        tools.returns("audit", {"technical_score": 93})
        outcome = services.checkpoints.evaluate_checkpoint_with_audit(plan.id, 5)
        assert outcome.checkpoint.result == "pass"
        assert outcome.checkpoint.method == "automatic_with_audit"
        assert outcome.checkpoint.metrics["technical_score"] == 93
        assert services.repo.get_task(plan.id, 5).tool_output == {"technical_score": 50}
        assert tools.payloads("audit")[-1]["reassessment"] is True
        assert tools.payloads("audit")[-1]["previous_output"] == {"technical_score": 50}

    def test_failed_audit_needs_review(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id)
        tools.returns("audit", {"technical_score": 50})
        run_tasks(plan.id)
        tools.returns("audit", RuntimeError("audit service down"))
        outcome = services.checkpoints.evaluate_checkpoint_with_audit(plan.id, 5)
        assert outcome.checkpoint.result == "needs_review"
        assert outcome.checkpoint.reasoning.startswith("Audit re-run failed")
        assert services.repo.get_task(plan.id, 5).tool_output == {"technical_score": 50}


class TestManualEvaluation:
    def test_manual_fail_applies_policy(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "structure_ux")
        run_tasks(plan.id)
        outcome = services.checkpoints.manual_checkpoint_evaluation(
            plan.id, 5, "FAIL", "footer still broken")
        assert outcome.checkpoint.confidence is None
        assert outcome.checkpoint.method == "manual"
        assert outcome.checkpoint.reasoning == "footer still broken"
        assert outcome.action == "paused"

    def test_invalid_result(self, services, make_client, tools, run_tasks):
        c = make_client()
        plan = _plan(services, c.id, "structure_ux")
        run_tasks(plan.id)
        with pytest.raises(ValidationError):
            services.checkpoints.manual_checkpoint_evaluation(plan.id, 5, "maybe")

    def test_pending_task_not_evaluated(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id, "structure_ux")
        with pytest.raises(StateError) as exc:
            services.checkpoints.manual_checkpoint_evaluation(plan.id, 5, "pass")
        assert exc.value.details == {"task_number": 5, "status": "pending"}
        assert services.repo.get_checkpoint(services.repo.get_task(plan.id, 5).id) is None
