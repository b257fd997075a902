"""
Capability Service: operator → capability resolution with cache.

Engine logic never inspects identities or role names; it asks the
resolver for a capability set and checks membership:

    caps = resolver.resolve("op-7f3a9c12")
    if Capability.TASKS_EXECUTE in caps: ...

Roles come from the authentication layer (API key or JWT claims) and are
granted to the resolver per operator with a TTL, the same way permission
sets are cached elsewhere.  Unknown operators resolve to an empty set
(deny-by-default).
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from enum import Enum
from typing import Iterable, Protocol

from flask import current_app, g

from smokey.core.exceptions import PermissionDeniedError, UnauthorizedError

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes


class Capability(str, Enum):
    PLANS_READ = "plans.read"
    PLANS_WRITE = "plans.write"
    PLANS_OVERRIDE = "plans.override"
    TASKS_EXECUTE = "tasks.execute"
    CHECKPOINTS_EVALUATE = "checkpoints.evaluate"
    TIMELINE_MANAGE = "timeline.manage"
    CLIENTS_MANAGE = "clients.manage"
    CTA_BYPASS = "cta.bypass"
    TOOLS_AUDIT = "tools.audit"
    TOOLS_BURNT = "tools.burnt"
    TOOLS_CRIMSON = "tools.crimson"
    TOOLS_MIDNIGHT = "tools.midnight"


ALL_CAPABILITIES = frozenset(Capability)

# Override capabilities are never part of a non-admin role
_OVERRIDES = {Capability.PLANS_OVERRIDE, Capability.CTA_BYPASS}

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "admin": ALL_CAPABILITIES,
    "editor": frozenset(ALL_CAPABILITIES - _OVERRIDES),
    "viewer": frozenset({Capability.PLANS_READ}),
}


class CapabilityResolver(Protocol):
    def resolve(self, operator_id: str) -> set[Capability]: ...


class RoleCapabilityResolver:
    """Resolve capabilities from roles granted to an operator.

    ``grant`` is called by the auth layer after it has verified a credential;
    grants expire after ``ttl`` seconds so revoked keys stop resolving.
    """

    def __init__(self, role_capabilities: dict[str, frozenset[Capability]] | None = None,
                 ttl: int = CACHE_TTL) -> None:
        self._role_capabilities = role_capabilities or ROLE_CAPABILITIES
        self._ttl = ttl
        self._grants: dict[str, tuple[float, frozenset[str]]] = {}
        self._lock = threading.Lock()

    def grant(self, operator_id: str, roles: Iterable[str]) -> None:
        """Cache ``roles`` for ``operator_id``; expired grants are dropped on the way."""
        now = time.time()
        with self._lock:
            expired = [op for op, (granted_at, _) in self._grants.items()
                       if now - granted_at > self._ttl]
            for op in expired:
                del self._grants[op]
            self._grants[operator_id] = (now, frozenset(roles))

    def revoke(self, operator_id: str) -> None:
        with self._lock:
            self._grants.pop(operator_id, None)

    def clear(self) -> None:
        with self._lock:
            self._grants.clear()

    def resolve(self, operator_id: str) -> set[Capability]:
        with self._lock:
            entry = self._grants.get(operator_id)
            if entry is None:
                return set()
            granted_at, roles = entry
            if time.time() - granted_at > self._ttl:
                del self._grants[operator_id]
                return set()
        caps: set[Capability] = set()
        for role in roles:
            caps |= self._role_capabilities.get(role, frozenset())
        return caps


def get_resolver() -> RoleCapabilityResolver:
    return current_app.extensions["smokey_capabilities"]


def current_capabilities() -> set[Capability]:
    """Capability set of the operator bound to this request."""
    operator_id = getattr(g, "operator_id", None)
    if not operator_id:
        return set()
    return get_resolver().resolve(operator_id)


def tool_capability(tool: str) -> Capability | None:
    """Capability needed to run ``tool`` through the executor (None for manual)."""
    try:
        return Capability(f"tools.{tool}")
    except ValueError:
        return None


def require_capability(capability: Capability):
    """
    Decorator: require the authenticated operator to hold ``capability``.

    Raises UnauthorizedError when no operator is bound to the request and
    PermissionDeniedError when the capability is missing; the app-level
    error handlers turn those into 401 / 403.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            check_capability(capability)
            return f(*args, **kwargs)
        return decorated
    return decorator


def check_capability(capability: Capability) -> None:
    """Inline form of ``require_capability`` for routes whose need depends on the body."""
    if not getattr(g, "operator_id", None):
        raise UnauthorizedError()
    if capability not in current_capabilities():
        logger.warning(
            "Capability denied: operator=%s required=%s",
            g.operator_id, capability.value,
        )
        raise PermissionDeniedError(capability.value)
