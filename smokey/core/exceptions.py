"""
Engine-wide exception hierarchy.

Services raise these types; the app-level error handlers in
``smokey/__init__.py`` map each one to an HTTP status once, so every
blueprint answers with the same ``{"error", "code"}`` body.

Usage:
    from smokey.core.exceptions import NotFoundError, StateError

    raise NotFoundError(resource="Plan", resource_id=42)
    raise StateError("Plan 42 is paused; resume it before executing tasks")

Propagation rules:
  - Validation and state errors are raised before any mutation.
  - ToolExecutionError never leaves the task executor; it is persisted
    on the Task (status ``failed``) instead.
  - Anything else reaching the HTTP layer becomes InternalError (500).
"""


class SmokeyError(Exception):
    """Base class. ``status_code`` and ``code`` drive the HTTP mapping."""

    status_code = 500
    code = "ERR_INTERNAL"
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(SmokeyError):
    """Input was malformed or violated a business rule (unknown plan type,
    predecessor of another client, missing decision reference).

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, keyed by field name.
    """

    status_code = 400
    code = "ERR_VALIDATION_INVALID"


class UnauthorizedError(SmokeyError):
    """No usable credentials were supplied. Maps to HTTP 401."""

    status_code = 401
    code = "ERR_UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class PermissionDeniedError(SmokeyError):
    """The operator lacks a capability the operation needs. Maps to HTTP 403.

    Args:
        capability: The missing capability value (e.g. ``tools.crimson``).
    """

    status_code = 403
    code = "ERR_FORBIDDEN"

    def __init__(self, capability: str, message: str | None = None) -> None:
        self.capability = capability
        super().__init__(
            message or f"Missing capability: {capability}",
            details={"required": capability},
        )


class NotFoundError(SmokeyError):
    """Raised when a requested entity does not exist.

    Args:
        resource: Entity name (e.g. "Plan", "Task").
        resource_id: The key that was looked up.
    """

    status_code = 404
    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class StateError(SmokeyError):
    """Illegal lifecycle transition (e.g. resuming a plan that is not paused).

    Maps to HTTP 409.
    """

    status_code = 409
    code = "ERR_CONFLICT_STATE"


class InvalidTaskStateError(StateError):
    """A task was asked to run while not ``pending``."""

    def __init__(self, task_number: int, status: str) -> None:
        self.task_number = task_number
        self.status = status
        super().__init__(
            f"Task {task_number} is {status}; only pending tasks can execute",
            details={"task_number": task_number, "status": status},
        )


class ConcurrentModificationError(SmokeyError):
    """Lost a race on a plan or task mutation. The caller may retry.

    Maps to HTTP 409 with ``retryable: true``.
    """

    status_code = 409
    code = "ERR_CONCURRENT_MODIFICATION"
    retryable = True


class ToolExecutionError(SmokeyError):
    """A tool call failed or timed out. Captured on the Task, never surfaced as 5xx.

    Args:
        tool: Tool identifier.
        message: Failure description.
        timed_out: True when the configured timeout elapsed.
    """

    status_code = 502
    code = "ERR_TOOL_EXECUTION"

    def __init__(self, tool: str, message: str, *, timed_out: bool = False) -> None:
        self.tool = tool
        self.timed_out = timed_out
        super().__init__(message, details={"tool": tool, "timed_out": timed_out})


class InternalError(SmokeyError):
    """Unexpected failure. Maps to HTTP 500 with a generic message."""
