"""
Smokey Planning Engine
Tool sessions blueprint: interactive tool handoff.

Endpoint:
    POST /api/v1/smokey/tool-sessions
        {action: "create",   taskId, tool?, payload?}   → 201 {session}
        {action: "launch",   sessionId}                 → {session, routing}
        {action: "complete", sessionId, results}        → {session_id, task}
        {action: "fail",     sessionId, error?}         → {session_id, task}
"""

from flask import Blueprint, jsonify

from smokey.blueprints import API_PREFIX, json_body, required_int
from smokey.core.exceptions import ValidationError
from smokey.services.capability_service import Capability, require_capability
from smokey.services.container import get_services

tool_sessions_bp = Blueprint("smokey_tool_sessions", __name__, url_prefix=API_PREFIX)

SESSION_ACTIONS = ("create", "launch", "complete", "fail")


@tool_sessions_bp.route("/tool-sessions", methods=["POST"])
@require_capability(Capability.TASKS_EXECUTE)
def tool_session_action():
    data = json_body()
    action = data.get("action")
    sessions = get_services().tool_sessions

    if action == "create":
        ts = sessions.create_session(required_int(data, "taskId"), data.get("tool"),
                                     data.get("payload"))
        return jsonify({"session": ts.to_dict()}), 201
    if action == "launch":
        return jsonify(sessions.launch_session(required_int(data, "sessionId")))
    if action == "complete":
        return jsonify(sessions.complete_session(required_int(data, "sessionId"),
                                                 data.get("results")))
    if action == "fail":
        return jsonify(sessions.fail_session(required_int(data, "sessionId"), data.get("error")))
    raise ValidationError(f"Unknown action '{action}'",
                          details={"action": action, "allowed": list(SESSION_ACTIONS)})
