"""
Smokey Planning Engine
Plans blueprint: plan lifecycle, task execution and checkpoints.

Endpoints:
    GET  /api/v1/smokey/plans?clientId=&action=active|queued|suggest|all|by-month[&month=]
    POST /api/v1/smokey/plans                 {clientId, planType, scheduledMonth?,
                                               dependsOnPlanId?, decisionId?, operatorOverride?}
    GET  /api/v1/smokey/plans/<id>[?action=next-task]
    POST /api/v1/smokey/plans/<id>            {action, taskNumber?, result?, reasoning?,
                                               newPlanType?, reason?, note?, operatorOverride?}

POST actions:
    execute-task, mark-task-done, retry-task, abort, pause, resume, branch,
    checkpoint, checkpoint-with-audit, manual-checkpoint
"""

import logging

from flask import Blueprint, jsonify, request

from smokey.blueprints import API_PREFIX, as_bool, json_body, optional_int, required_int
from smokey.core.exceptions import ValidationError
from smokey.services.capability_service import (
    Capability,
    check_capability,
    current_capabilities,
    require_capability,
)
from smokey.services.container import get_services

logger = logging.getLogger(__name__)

plans_bp = Blueprint("smokey_plans", __name__, url_prefix=API_PREFIX)

LIST_ACTIONS = ("active", "queued", "suggest", "all", "by-month")

# action → capability required on top of authentication
PLAN_ACTIONS = {
    "execute-task": Capability.TASKS_EXECUTE,
    "mark-task-done": Capability.TASKS_EXECUTE,
    "retry-task": Capability.TASKS_EXECUTE,
    "abort": Capability.PLANS_WRITE,
    "pause": Capability.PLANS_WRITE,
    "resume": Capability.PLANS_WRITE,
    "branch": Capability.PLANS_WRITE,
    "checkpoint": Capability.CHECKPOINTS_EVALUATE,
    "checkpoint-with-audit": Capability.CHECKPOINTS_EVALUATE,
    "manual-checkpoint": Capability.CHECKPOINTS_EVALUATE,
}


def _override_requested(data: dict, capability: Capability) -> bool:
    """True when the body asks for an override; the caller must hold ``capability``."""
    if not as_bool(data.get("operatorOverride")):
        return False
    check_capability(capability)
    return True


# ═══════════════════════════════════════════════════════════════════════════
#  Collection
# ═══════════════════════════════════════════════════════════════════════════

@plans_bp.route("/plans", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def list_plans():
    client_id = required_int(request.args, "clientId")
    action = request.args.get("action", "all")
    engine = get_services().engine

    if action == "suggest":
        return jsonify({"suggestion": engine.suggest_plan(client_id)})
    if action == "active":
        plans = engine.get_active_plans(client_id)
    elif action == "queued":
        plans = engine.get_queued_plans(client_id)
    elif action == "by-month":
        plans = engine.get_plans_by_month(client_id, required_int(request.args, "month"))
    elif action == "all":
        plans = engine.get_client_plans(client_id)
    else:
        raise ValidationError(f"Unknown action '{action}'",
                              details={"action": action, "allowed": list(LIST_ACTIONS)})
    return jsonify({"items": [p.to_dict() for p in plans], "total": len(plans)})


@plans_bp.route("/plans", methods=["POST"])
@require_capability(Capability.PLANS_WRITE)
def create_plan():
    data = json_body()
    client_id = required_int(data, "clientId")
    plan_type = (data.get("planType") or "").strip()
    if not plan_type:
        raise ValidationError("planType is required", details={"planType": "required"})

    plan = get_services().engine.create_plan(
        client_id,
        plan_type,
        scheduled_month=optional_int(data, "scheduledMonth"),
        depends_on_plan_id=optional_int(data, "dependsOnPlanId"),
        source_decision_id=optional_int(data, "decisionId"),
        operator_override=_override_requested(data, Capability.PLANS_OVERRIDE),
    )
    return jsonify({"plan": plan.to_dict(include_tasks=True)}), 201


# ═══════════════════════════════════════════════════════════════════════════
#  Single plan
# ═══════════════════════════════════════════════════════════════════════════

@plans_bp.route("/plans/<int:plan_id>", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def get_plan(plan_id):
    engine = get_services().engine
    action = request.args.get("action")
    if action == "next-task":
        task = engine.get_next_task(plan_id)
        return jsonify({"task": task.to_dict() if task else None})
    if action:
        raise ValidationError(f"Unknown action '{action}'",
                              details={"action": action, "allowed": ["next-task"]})
    return jsonify({"plan": engine.get_plan(plan_id).to_dict(include_tasks=True)})


@plans_bp.route("/plans/<int:plan_id>", methods=["POST"])
def plan_action(plan_id):
    data = json_body()
    action = data.get("action")
    if action not in PLAN_ACTIONS:
        raise ValidationError(f"Unknown action '{action}'",
                              details={"action": action, "allowed": sorted(PLAN_ACTIONS)})
    check_capability(PLAN_ACTIONS[action])

    svc = get_services()
    engine = svc.engine

    if action == "execute-task":
        task = svc.executor.execute_task(
            plan_id,
            required_int(data, "taskNumber"),
            capabilities=current_capabilities(),
            operator_override=_override_requested(data, Capability.CTA_BYPASS),
        )
        return jsonify({"task": task.to_dict(), "plan": engine.get_plan(plan_id).to_dict()})

    if action == "mark-task-done":
        task = engine.complete_task_manually(plan_id, required_int(data, "taskNumber"),
                                             data.get("note"))
        return jsonify({"task": task.to_dict(), "plan": engine.get_plan(plan_id).to_dict()})

    if action == "retry-task":
        task = engine.retry_task(plan_id, required_int(data, "taskNumber"))
        return jsonify({"task": task.to_dict()})

    if action == "abort":
        return jsonify({"plan": engine.abort_plan(plan_id, reason=data.get("reason")).to_dict()})

    if action == "pause":
        return jsonify({"plan": engine.pause_plan(plan_id, reason=data.get("reason")).to_dict()})

    if action == "resume":
        return jsonify({"plan": engine.resume_plan(plan_id).to_dict()})

    if action == "branch":
        new_type = (data.get("newPlanType") or "").strip()
        if not new_type:
            raise ValidationError("newPlanType is required", details={"newPlanType": "required"})
        original, branch = engine.branch_plan(plan_id, new_type, data.get("reason") or "")
        return jsonify({"plan": original.to_dict(), "branch_plan": branch.to_dict(include_tasks=True)})

    task_number = required_int(data, "taskNumber")
    if action == "checkpoint":
        outcome = svc.checkpoints.evaluate_checkpoint(plan_id, task_number)
    elif action == "checkpoint-with-audit":
        outcome = svc.checkpoints.evaluate_checkpoint_with_audit(plan_id, task_number)
    else:
        outcome = svc.checkpoints.manual_checkpoint_evaluation(
            plan_id, task_number, data.get("result"), data.get("reasoning"))
    return jsonify(outcome.to_dict())
