"""
Smokey Planning Engine
Clients & events blueprint.

Endpoints:
    GET  /api/v1/smokey/clients
    POST /api/v1/smokey/clients          {name, canonicalUrl, contractStartDate,
                                          contractLengthMonths?, planTier}
    GET  /api/v1/smokey/clients/<id>
    GET  /api/v1/smokey/events?clientId=[&entityType=&limit=]
"""

from flask import Blueprint, jsonify, request

from smokey.blueprints import API_PREFIX, json_body, optional_int, required_int
from smokey.services.capability_service import Capability, require_capability
from smokey.services.container import get_services

clients_bp = Blueprint("smokey_clients", __name__, url_prefix=API_PREFIX)

_MAX_EVENTS = 1000


@clients_bp.route("/clients", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def list_clients():
    svc = get_services()
    clients = svc.repo.list_clients()
    return jsonify({"items": [svc.clients.contract_summary(c) for c in clients],
                    "total": len(clients)})


@clients_bp.route("/clients", methods=["POST"])
@require_capability(Capability.CLIENTS_MANAGE)
def create_client():
    client, timeline = get_services().clients.create_client(json_body())
    return jsonify({"client": client.to_dict(), "timeline": timeline}), 201


@clients_bp.route("/clients/<int:client_id>", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def get_client(client_id):
    svc = get_services()
    client = svc.repo.get_client(client_id)
    return jsonify({"client": svc.clients.contract_summary(client)})


@clients_bp.route("/events", methods=["GET"])
@require_capability(Capability.PLANS_READ)
def list_events():
    svc = get_services()
    client_id = required_int(request.args, "clientId")
    svc.repo.get_client(client_id)
    limit = optional_int(request.args, "limit") or 200
    events = svc.repo.list_events(client_id, entity_type=request.args.get("entityType"),
                                  limit=max(1, min(limit, _MAX_EVENTS)))
    return jsonify({"items": [e.to_dict() for e in events], "total": len(events)})
