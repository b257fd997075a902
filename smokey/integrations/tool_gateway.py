"""
Tool Gateway: bounded invocation of external tools.

A tool is reached one of two ways:
  - an in-process handler registered with ``@register_tool("audit")`` or
    ``gateway.register_handler(...)``; it runs on a worker thread and the
    caller waits at most ``timeout`` seconds for it
  - an HTTP endpoint from ``TOOL_ENDPOINTS``; the payload is POSTed as JSON
    through a ``requests.Session`` with the same timeout

Either way the caller gets the tool's JSON object back or a
``ToolExecutionError``.  A timed-out handler keeps running on its worker
thread; its late result is discarded.

Testability: pass a mock ``session`` to ToolGateway() or register fake
handlers instead of configuring endpoints.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

import requests

from smokey.core.exceptions import ToolExecutionError

logger = logging.getLogger(__name__)

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30

_MAX_WORKERS = 8

ToolHandler = Callable[[dict], Any]


# ═══════════════════════════════════════════════════════════════════════════
#  Handler Registry
# ═══════════════════════════════════════════════════════════════════════════

_tool_registry: dict[str, ToolHandler] = {}


def register_tool(name: str):
    """Decorator to register a process-wide in-process tool handler.

    Usage:
        @register_tool("audit")
        def run_audit(payload):
            return {"status": "completed", "metrics": {...}}
    """
    def decorator(fn: ToolHandler) -> ToolHandler:
        _tool_registry[name] = fn
        return fn
    return decorator


class ToolGateway:
    """Invoke tools with a hard timeout.

    Args:
        endpoints: tool name → URL for HTTP-backed tools.
        timeout:   default per-call timeout in seconds.
        session:   optional ``requests.Session`` (inject a mock in tests).
    """

    def __init__(
        self,
        endpoints: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoints = {k: v for k, v in (endpoints or {}).items() if v}
        self.timeout = timeout
        self._session = session
        self._handlers: dict[str, ToolHandler] = {}
        self._pool = ThreadPoolExecutor(max_workers=_MAX_WORKERS,
                                        thread_name_prefix="smokey-tool")

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Handlers ─────────────────────────────────────────────────────────────

    def register_handler(self, tool: str, handler: ToolHandler) -> None:
        self._handlers[tool] = handler

    def clear_handlers(self) -> None:
        self._handlers.clear()

    def is_available(self, tool: str) -> bool:
        return tool in self._handlers or tool in _tool_registry or tool in self.endpoints

    # ── Invocation ───────────────────────────────────────────────────────────

    def invoke(self, tool: str, payload: dict, *, timeout: float | None = None) -> dict:
        """Run ``tool`` with ``payload`` and return its output object.

        Raises:
            ToolExecutionError: no route, tool error, bad response, or timeout.
        """
        timeout = timeout or self.timeout
        started = time.perf_counter()
        handler = self._handlers.get(tool) or _tool_registry.get(tool)
        try:
            if handler is not None:
                output = self._invoke_handler(tool, handler, payload, timeout)
            elif tool in self.endpoints:
                output = self._invoke_http(tool, self.endpoints[tool], payload, timeout)
            else:
                raise ToolExecutionError(tool, f"No handler or endpoint configured for tool '{tool}'")
        except ToolExecutionError as exc:
            logger.warning("Tool call failed: tool=%s timed_out=%s error=%s (%.0fms)",
                           tool, exc.timed_out, exc.message,
                           (time.perf_counter() - started) * 1000)
            raise
        logger.info("Tool call ok: tool=%s (%.0fms)", tool, (time.perf_counter() - started) * 1000)
        return output

    def _invoke_handler(self, tool: str, handler: ToolHandler, payload: dict, timeout: float) -> dict:
        future = self._pool.submit(handler, payload)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ToolExecutionError(tool, f"Tool '{tool}' timed out after {timeout:g}s",
                                     timed_out=True)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(tool, f"{type(exc).__name__}: {exc}")
        return _as_output(tool, result)

    def _invoke_http(self, tool: str, url: str, payload: dict, timeout: float) -> dict:
        try:
            resp = self.session.post(url, json=payload, timeout=timeout)
        except requests.Timeout:
            raise ToolExecutionError(tool, f"Tool '{tool}' timed out after {timeout:g}s",
                                     timed_out=True)
        except requests.RequestException as exc:
            raise ToolExecutionError(tool, f"Network error: {exc}")

        if resp.status_code >= 400:
            raise ToolExecutionError(tool, f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError:
            raise ToolExecutionError(tool, "Tool returned a non-JSON response")
        return _as_output(tool, data)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _as_output(tool: str, result: Any) -> dict:
    if result is None:
        raise ToolExecutionError(tool, "Tool returned no output")
    if isinstance(result, dict):
        return result
    return {"result": result}
