"""
Per-request id and duration.

Every response carries ``X-Request-ID`` (echoed when the caller sent one)
and ``X-Request-Duration-Ms``. The request line is logged at DEBUG,
WARNING once it passes SLOW_REQUEST_MS and ERROR on a 5xx.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# tool-running endpoints (execute, complete) routinely pass this
SLOW_REQUEST_MS = 1000

_QUIET_PATHS = frozenset({"/api/v1/health"})


def _log_level(status, elapsed_ms):
    if status >= 500:
        return logging.ERROR
    if elapsed_ms > SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _stamp_request():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_request(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path not in _QUIET_PATHS:
            view_args = request.view_args or {}
            logger.log(
                _log_level(response.status_code, elapsed_ms),
                "%s %s -> %d in %.0fms",
                request.method, request.path, response.status_code, elapsed_ms,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed_ms,
                    "plan_id": view_args.get("plan_id"),
                    "client_id": request.args.get("clientId") or view_args.get("client_id"),
                },
            )
        return response
