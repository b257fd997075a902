"""
Smokey Planning Engine
Reassessment & review blueprint.

Endpoints:
    GET  /api/v1/smokey/reassess[?clientId=]      due plans grouped by date
    POST /api/v1/smokey/reassess/<planId>         re-audit a completed plan
    GET  /api/v1/smokey/review-queue[?clientId=]  checkpoints awaiting a human
"""

from flask import Blueprint, jsonify, request

from smokey.blueprints import API_PREFIX, optional_int
from smokey.services.capability_service import Capability, require_capability
from smokey.services.container import get_services

reassess_bp = Blueprint("smokey_reassess", __name__, url_prefix=API_PREFIX)


@reassess_bp.route("/reassess", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def due_reassessments():
    client_id = optional_int(request.args, "clientId")
    return jsonify(get_services().reassessment.get_due(client_id))


@reassess_bp.route("/reassess/<int:plan_id>", methods=["POST"])
@require_capability(Capability.CHECKPOINTS_EVALUATE)
def reassess_plan(plan_id):
    return jsonify(get_services().reassessment.reassess_plan(plan_id))


@reassess_bp.route("/review-queue", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def review_queue():
    client_id = optional_int(request.args, "clientId")
    items = []
    for cp in get_services().checkpoints.get_review_queue(client_id):
        task = cp.task
        items.append({
            "checkpoint": cp.to_dict(),
            "task": task.to_dict(),
            "plan": task.plan.to_dict(),
        })
    return jsonify({"items": items, "total": len(items)})
