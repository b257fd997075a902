"""JSON error envelope shared by every blueprint and the global handlers.

Every failure leaves the API as::

    {"error": "<operator-facing text>", "code": "ERR_...",
     "details": {...},      # only when there is structure to report
     "retryable": true}     # only on conflicts a client may simply retry

Views and handlers build it with ``api_error(E.NOT_FOUND, "Plan id=3 not found")``.
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes; the HTTP status each one implies lives in ``STATUS_FOR``."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    # plan paused/cancelled, task not runnable, checkpoint already decided
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    # stale plan version or task claimed by another worker
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"
    # a tool failure that escaped task bookkeeping (tool sessions)
    TOOL_EXECUTION = "ERR_TOOL_EXECUTION"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


STATUS_FOR: dict[str, int] = {
    **dict.fromkeys((E.VALIDATION_REQUIRED, E.VALIDATION_INVALID), 400),
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    **dict.fromkeys((E.CONFLICT_STATE, E.CONCURRENT_MODIFICATION), 409),
    E.TOOL_EXECUTION: 502,
    **dict.fromkeys((E.DATABASE, E.INTERNAL), 500),
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None, retryable: bool | None = None):
    """Build ``(response, status)`` for a Flask view or error handler.

    ``status`` wins over the code's usual status; unknown codes fall back to 400.
    Empty ``details`` and an unset ``retryable`` are left out of the body.
    """
    payload: dict = {"error": message, "code": code}
    if details:
        payload["details"] = details
    if retryable is not None:
        payload["retryable"] = retryable
    return jsonify(payload), status or STATUS_FOR.get(code, 400)
