"""
Smokey Planning Engine
Operator authentication for /api/v1/*.

An operator is identified either by a Bearer JWT (decoded earlier by
middleware/jwt_auth.py) or by an ``X-API-Key`` header. Either way the
outcome is the same: ``g.operator_id`` / ``g.operator_roles`` are set and
the roles are granted on the capability resolver, which is all routes
consult (``@require_capability``).

API_KEYS holds ``key:role`` pairs separated by commas; a bare key or an
unknown role maps to ``viewer``. With API_AUTH_ENABLED off every call
runs as the ``dev`` operator with the admin role.
"""

import hashlib
import logging
import os

from flask import current_app, g, request

from smokey.core.exceptions import UnauthorizedError
from smokey.services.capability_service import ROLE_CAPABILITIES, get_resolver

logger = logging.getLogger(__name__)

ROLES = set(ROLE_CAPABILITIES)
DEV_OPERATOR = "dev"
FALLBACK_ROLE = "viewer"

_PUBLIC_PATHS = frozenset({"/api/v1/health"})
_OFF = {"false", "0", "no", "off"}


def key_roles() -> dict:
    """Current ``{api_key: role}`` table; re-read each call so rotation needs no restart."""
    table = {}
    for item in os.getenv("API_KEYS", "").split(","):
        key, sep, role = item.strip().rpartition(":")
        if not sep:
            key, role = role, FALLBACK_ROLE
        key, role = key.strip(), role.strip().lower()
        if not key:
            continue
        if role not in ROLES:
            logger.warning("API key configured with unknown role %r; using %s", role, FALLBACK_ROLE)
            role = FALLBACK_ROLE
        table[key] = role
    return table


def auth_enabled() -> bool:
    flag = os.getenv("API_AUTH_ENABLED", "")
    if not flag:
        try:
            flag = str(current_app.config.get("API_AUTH_ENABLED", "true"))
        except RuntimeError:
            return True
    return flag.strip().lower() not in _OFF


def operator_for_key(api_key: str) -> str:
    """``api-key:<hash prefix>``; audit rows never carry the key itself."""
    digest = hashlib.sha256(api_key.encode()).hexdigest()
    return f"api-key:{digest[:12]}"


def _act_as(operator_id: str, roles: list) -> None:
    g.operator_id = operator_id
    g.operator_roles = roles
    get_resolver().grant(operator_id, roles)


def _authenticate():
    if not auth_enabled():
        _act_as(DEV_OPERATOR, ["admin"])
        return

    if getattr(g, "jwt_operator_id", None):
        roles = [r for r in getattr(g, "jwt_roles", []) if r in ROLES]
        _act_as(str(g.jwt_operator_id), roles or [FALLBACK_ROLE])
        return

    presented = request.headers.get("X-API-Key", "").strip()
    if not presented:
        raise UnauthorizedError("Authentication required. Provide X-API-Key or a Bearer token.")

    table = key_roles()
    if not table:
        logger.error("API auth is on but API_KEYS is empty; rejecting %s %s",
                     request.method, request.path)
        raise UnauthorizedError("Server authentication not configured")
    if presented not in table:
        logger.warning("Rejected API key %s... on %s", presented[:4], request.path)
        raise UnauthorizedError("Invalid API key")

    _act_as(operator_for_key(presented), [table[presented]])


def init_auth(app):
    """Register the operator authentication hook on ``app``."""

    @app.before_request
    def _operator_auth():
        g.operator_id = None
        g.operator_roles = []
        if (not request.path.startswith("/api/v1/")
                or request.path in _PUBLIC_PATHS
                or request.method == "OPTIONS"):
            return None
        _authenticate()
        return None

    logger.info("Operator auth hook registered (auth enabled=%s)", auth_enabled())
