"""
Tool Sessions: hand a Task over to an interactive tool UI and back.

    create   → session ``created`` with the tool payload
    launch   → Task claimed (pending → in_progress), routing descriptor returned
    complete → Task done with the session results, session removed
    fail     → Task failed with the error, session removed
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from smokey.core.exceptions import ConcurrentModificationError, StateError, ValidationError
from smokey.models.audit import current_actor, write_audit
from smokey.models.plan import PlanStatus, TaskStatus, Tool, ToolSession, ToolSessionStatus
from smokey.repository import SmokeyRepository
from smokey.services.plan_engine import PlanEngine
from smokey.services.task_executor import TaskExecutor

logger = logging.getLogger(__name__)

_ROUTES = {
    Tool.AUDIT.value: "/admin/audit",
    Tool.BURNT.value: "/admin/burnt",
    Tool.CRIMSON.value: "/admin/crimson",
    Tool.MIDNIGHT.value: "/admin/midnight",
    Tool.MANUAL.value: "/admin/smokey",
}


def tool_routing(tool: str, payload: dict | None, session_id: int) -> dict:
    """Where the operator UI should go to run ``tool``, and the state to carry."""
    payload = payload or {}
    state = {"from_smokey": True, "session_id": session_id}
    if tool == Tool.AUDIT.value:
        state["url"] = payload.get("url")
    elif tool == Tool.CRIMSON.value:
        state["url"] = payload.get("url")
        state["goal"] = payload.get("goal") or "Optimize content for SEO and conversion"
        state["tone_preset"] = payload.get("tone_preset") or "Professional, Friendly, Authoritative"
    elif tool == Tool.MIDNIGHT.value:
        state["url"] = payload.get("url")
        state["mode"] = payload.get("mode") or "homepage_edit"
    elif tool == Tool.BURNT.value:
        state["actions"] = payload.get("actions") or []
    elif tool == Tool.MANUAL.value:
        state["manual_instructions"] = payload.get("instructions") or "Manual intervention required"
    else:
        raise ValidationError(f"Unknown tool '{tool}'", details={"tool": tool})
    return {"path": _ROUTES[tool], "query": {"session": str(session_id)}, "state": state}


class ToolSessionService:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine, executor: TaskExecutor) -> None:
        self.repo = repo
        self.engine = engine
        self.executor = executor

    def create_session(self, task_id: int, tool: str | None = None,
                       payload: dict | None = None) -> ToolSession:
        task = self.repo.get_task_by_id(task_id)
        plan = task.plan
        tool = tool or task.tool
        if tool != task.tool:
            raise ValidationError(f"Task {task.task_number} runs '{task.tool}', not '{tool}'",
                                  details={"tool": tool})
        if plan.status != PlanStatus.ACTIVE.value:
            raise StateError(f"Plan {plan.id} is {plan.status}; sessions need an active plan",
                             details={"plan_id": plan.id, "status": plan.status})
        if task.status != TaskStatus.PENDING.value:
            raise StateError(f"Task {task.task_number} is {task.status}; only pending tasks can start",
                             details={"task_number": task.task_number, "status": task.status})
        if payload is None:
            payload, _ = self.executor.build_payload(plan, task)
        elif not isinstance(payload, dict):
            raise ValidationError("payload must be an object", details={"payload": "object"})

        ts = ToolSession(task_id=task.id, plan_id=plan.id, tool=tool,
                         status=ToolSessionStatus.CREATED.value, payload=payload)
        self.repo.add(ts)
        self.repo.flush()
        write_audit(entity_type="tool_session", entity_id=ts.id, action="tool_session.created",
                    client_id=plan.client_id,
                    diff={"task_id": task.id, "plan_id": plan.id, "tool": tool})
        self.repo.commit()
        return ts

    def launch_session(self, session_id: int) -> dict:
        ts = self.repo.get_tool_session(session_id)
        if ts.status != ToolSessionStatus.CREATED.value:
            raise StateError(f"Tool session {ts.id} is {ts.status}; only created sessions launch",
                             details={"session_id": ts.id, "status": ts.status})
        task = ts.task
        plan = task.plan
        if plan.status != PlanStatus.ACTIVE.value:
            raise StateError(f"Plan {plan.id} is {plan.status}; sessions need an active plan",
                             details={"plan_id": plan.id, "status": plan.status})
        nxt = self.repo.next_pending_task(plan.id)
        if nxt is not None and nxt.id != task.id:
            raise StateError(f"Task {nxt.task_number} must run before task {task.task_number}",
                             details={"next_task_number": nxt.task_number})
        if not self.repo.claim_task(task.id, current_actor()):
            self.repo.rollback()
            raise ConcurrentModificationError(
                f"Task {task.task_number} of plan {plan.id} is already running",
                details={"task_number": task.task_number},
            )
        ts.status = ToolSessionStatus.LAUNCHED.value
        ts.launched_at = datetime.now(timezone.utc)
        write_audit(entity_type="tool_session", entity_id=ts.id, action="tool_session.launched",
                    client_id=plan.client_id,
                    diff={"task_id": task.id, "plan_id": plan.id, "tool": ts.tool})
        self.repo.commit()
        return {"session": ts.to_dict(), "routing": tool_routing(ts.tool, ts.payload, ts.id)}

    def _settle(self, session_id: int, status: TaskStatus, *, output: dict,
                error: str | None) -> dict:
        ts = self.repo.get_tool_session(session_id)
        if ts.status != ToolSessionStatus.LAUNCHED.value:
            raise StateError(f"Tool session {ts.id} is {ts.status}; only launched sessions settle",
                             details={"session_id": ts.id, "status": ts.status})
        task_id, plan_id, tool = ts.task_id, ts.plan_id, ts.tool
        client_id = ts.task.plan.client_id
        if not self.repo.finish_task(task_id, status.value, output=output, error_message=error):
            self.repo.rollback()
            raise ConcurrentModificationError(
                f"Task for tool session {session_id} was settled by another request")

        done = status is TaskStatus.DONE
        write_audit(entity_type="tool_session", entity_id=session_id,
                    action="tool_session.completed" if done else "tool_session.failed",
                    client_id=client_id,
                    diff={"task_id": task_id, "plan_id": plan_id, "tool": tool, "error": error})
        write_audit(entity_type="task", entity_id=task_id,
                    action="task.completed" if done else "task.failed",
                    client_id=client_id,
                    diff={"plan_id": plan_id, "tool": tool, "tool_session_id": session_id,
                          "error": error})
        self.repo.delete(ts)
        self.repo.commit()
        logger.info("Tool session %s %s: task=%s", session_id, status.value, task_id)

        task = self.repo.get_task_by_id(task_id)
        if done and not task.has_checkpoint:
            self.engine.advance_plan(plan_id)
        return {"session_id": session_id, "task": task.to_dict()}

    def complete_session(self, session_id: int, results) -> dict:
        if not isinstance(results, dict):
            raise ValidationError("results must be an object", details={"results": "object"})
        return self._settle(session_id, TaskStatus.DONE, output=results, error=None)

    def fail_session(self, session_id: int, error: str | None) -> dict:
        message = (error or "").strip() or "Tool session failed"
        return self._settle(session_id, TaskStatus.FAILED,
                            output={"status": "failed", "error": message}, error=message)
