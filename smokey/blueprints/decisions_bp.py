"""
Smokey Planning Engine
Decisions blueprint.

Endpoints:
    GET  /api/v1/smokey/decisions?clientId=[&decisionType=&limit=]   newest first
    POST /api/v1/smokey/decisions   {clientId, decisionType, signalId?, reasoning?,
                                     context?, planTypes?}
    GET  /api/v1/smokey/decisions/<id>

``planTypes`` (create_plan only) creates one plan per type from the new
decision in the same transaction.
"""

from flask import Blueprint, jsonify, request

from smokey.blueprints import API_PREFIX, json_body, optional_int, required_int
from smokey.core.exceptions import ValidationError
from smokey.models.decision import DecisionType
from smokey.services.capability_service import Capability, require_capability
from smokey.services.container import get_services
from smokey.services.decision_service import parse_decision_type

decisions_bp = Blueprint("smokey_decisions", __name__, url_prefix=API_PREFIX)


@decisions_bp.route("/decisions", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def list_decisions():
    decisions = get_services().decisions.get_client_decisions(
        required_int(request.args, "clientId"),
        decision_type=request.args.get("decisionType"),
        limit=optional_int(request.args, "limit"),
    )
    return jsonify({"items": [d.to_dict() for d in decisions], "total": len(decisions)})


@decisions_bp.route("/decisions", methods=["POST"])
@require_capability(Capability.PLANS_WRITE)
def create_decision():
    data = json_body()
    client_id = required_int(data, "clientId")
    dtype = parse_decision_type(data.get("decisionType"))
    fields = {
        "signal_id": data.get("signalId"),
        "reasoning": data.get("reasoning"),
        "context": data.get("context"),
    }
    svc = get_services().decisions

    plan_types = data.get("planTypes")
    if plan_types is None:
        decision = svc.create_decision(client_id, dtype, **fields)
        return jsonify({"decision": decision.to_dict(), "plans": []}), 201
    if dtype is not DecisionType.CREATE_PLAN:
        raise ValidationError("planTypes is only accepted for create_plan decisions",
                              details={"planTypes": plan_types, "decisionType": dtype.value})
    decision, plans = svc.create_decision_with_plans(client_id, plan_types, **fields)
    return jsonify({"decision": decision.to_dict(include_plans=True),
                    "plans": [p.to_dict(include_tasks=True) for p in plans]}), 201


@decisions_bp.route("/decisions/<int:decision_id>", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def get_decision(decision_id):
    decision = get_services().decisions.get_decision(decision_id)
    return jsonify({"decision": decision.to_dict(include_plans=True)})
