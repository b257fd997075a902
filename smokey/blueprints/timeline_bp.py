"""
Smokey Planning Engine
Timeline blueprint.

Endpoints:
    GET  /api/v1/smokey/timeline?clientId=
    POST /api/v1/smokey/timeline/regenerate              {clientId}
    POST /api/v1/smokey/timeline/phases/<id>/reschedule  {date}
    POST /api/v1/smokey/timeline/phases/<id>/skip
    POST /api/v1/smokey/timeline/materialize             {clientId, today?}
"""

from flask import Blueprint, jsonify, request

from smokey.blueprints import API_PREFIX, json_body, required_int
from smokey.core.exceptions import ValidationError
from smokey.services.capability_service import Capability, require_capability
from smokey.services.container import get_services
from smokey.utils.helpers import parse_date

timeline_bp = Blueprint("smokey_timeline", __name__, url_prefix=API_PREFIX)


@timeline_bp.route("/timeline", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def get_timeline():
    client_id = required_int(request.args, "clientId")
    phases = get_services().timeline.get_client_timeline(client_id)
    return jsonify({"items": phases, "total": len(phases)})


@timeline_bp.route("/timeline/regenerate", methods=["POST"])
@require_capability(Capability.TIMELINE_MANAGE)
def regenerate_timeline():
    client_id = required_int(json_body(), "clientId")
    return jsonify(get_services().timeline.regenerate_timeline(client_id))


@timeline_bp.route("/timeline/phases/<int:phase_id>/reschedule", methods=["POST"])
@require_capability(Capability.TIMELINE_MANAGE)
def reschedule_phase(phase_id):
    raw = json_body().get("date")
    new_date = parse_date(raw)
    if new_date is None:
        raise ValidationError("date is required (YYYY-MM-DD)", details={"date": raw})
    phase = get_services().timeline.reschedule_phase(phase_id, new_date)
    return jsonify({"phase": phase.to_dict()})


@timeline_bp.route("/timeline/phases/<int:phase_id>/skip", methods=["POST"])
@require_capability(Capability.TIMELINE_MANAGE)
def skip_phase(phase_id):
    phase = get_services().timeline.skip_phase(phase_id)
    return jsonify({"phase": phase.to_dict()})


@timeline_bp.route("/timeline/materialize", methods=["POST"])
@require_capability(Capability.TIMELINE_MANAGE)
def materialize_phases():
    data = json_body()
    client_id = required_int(data, "clientId")
    today = None
    if data.get("today"):
        today = parse_date(data["today"])
        if today is None:
            raise ValidationError("today must be an ISO date", details={"today": data["today"]})
    plans = get_services().timeline.materialize_due_phases(client_id, today)
    return jsonify({"items": [p.to_dict() for p in plans], "total": len(plans)})
