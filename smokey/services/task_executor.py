"""
Task Executor: runs one pending Task through its tool.

Order of checks (all before any write):
    1. task exists, is not already running, is pending
    2. plan is active and the client's contract has not ended
    3. task is the plan's next task
    4. task is not a manual step
    5. caller holds the step's capability (when a capability set is given)

Then the task is claimed with a compare-and-set update and committed, so
a second caller racing on the same task gets ConcurrentModificationError
instead of running the tool twice.  The tool call happens outside any
open transaction; its result is written back with a second
compare-and-set from ``in_progress``.

Tool errors and timeouts never propagate: they are stored on the Task
(status ``failed``) so the plan can be inspected and the task retried.
"""

from __future__ import annotations

import logging

from smokey.core.exceptions import (
    ConcurrentModificationError,
    InvalidTaskStateError,
    PermissionDeniedError,
    StateError,
    ToolExecutionError,
    ValidationError,
)
from smokey.integrations.tool_gateway import ToolGateway
from smokey.models.audit import current_actor, write_audit
from smokey.models.plan import Plan, PlanStatus, Task, TaskStatus, Tool
from smokey.repository import SmokeyRepository
from smokey.services import cta_flow
from smokey.services.plan_engine import PlanEngine
from smokey.services.templates import get_plan_template

logger = logging.getLogger(__name__)


class TaskExecutor:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine, gateway: ToolGateway,
                 timeout: float | None = None) -> None:
        self.repo = repo
        self.engine = engine
        self.gateway = gateway
        self.timeout = timeout

    # ── Payload ──────────────────────────────────────────────────────────────

    def build_payload(self, plan: Plan, task: Task, *, operator_override: bool = False) -> tuple[dict, str | None]:
        """Tool input for ``task`` and the reason context was withheld (or None).

        The output of the closest preceding done task is forwarded when that
        tool may hand off to this one.  Manual steps and repeated runs of the
        same tool always pass their output along.
        """
        client = plan.client
        payload = {
            "client_id": client.id,
            "url": client.canonical_url,
            "plan_tier": client.plan_tier,
            "plan": {
                "id": plan.id,
                "plan_type": plan.plan_type,
                "objective": plan.objective,
                "scheduled_month": plan.scheduled_month,
            },
            "task": {
                "task_number": task.task_number,
                "title": task.title,
                "tool": task.tool,
            },
            "previous_output": None,
            "previous_tool": None,
        }

        previous = self.repo.previous_done_task(plan.id, task.task_number)
        if previous is None or previous.tool_output is None:
            return payload, None

        if previous.tool in (Tool.MANUAL.value, task.tool):
            decision = cta_flow.CtaDecision(True)
        else:
            decision = cta_flow.validate(previous.tool, task.tool, operator_override=operator_override)
        if not decision.allowed:
            return payload, decision.reason

        payload["previous_output"] = previous.tool_output
        payload["previous_tool"] = previous.tool
        if decision.overridden:
            payload["cta_override"] = decision.reason
        return payload, None

    # ── Execution ────────────────────────────────────────────────────────────

    def execute_task(self, plan_id: int, task_number: int, *, capabilities=None,
                     operator_override: bool = False) -> Task:
        """Run the task's tool and record the outcome.

        Returns:
            The Task, ``done`` or ``failed``.

        Raises:
            NotFoundError, ConcurrentModificationError, InvalidTaskStateError,
            StateError, ValidationError, PermissionDeniedError.
        """
        task = self.repo.get_task(plan_id, task_number)
        if task.status == TaskStatus.IN_PROGRESS.value:
            raise ConcurrentModificationError(
                f"Task {task_number} of plan {plan_id} is already being executed",
                details={"task_number": task_number},
            )
        if task.status != TaskStatus.PENDING.value:
            raise InvalidTaskStateError(task_number, task.status)

        plan = task.plan
        if plan.status != PlanStatus.ACTIVE.value:
            raise StateError(
                f"Plan {plan.id} is {plan.status}; tasks only run on active plans",
                details={"plan_id": plan.id, "status": plan.status},
            )
        self.engine.require_active_contract(plan.client)
        nxt = self.repo.next_pending_task(plan.id)
        if nxt is not None and nxt.id != task.id:
            raise StateError(
                f"Task {nxt.task_number} must run before task {task_number}",
                details={"next_task_number": nxt.task_number},
            )
        if task.tool == Tool.MANUAL.value:
            raise ValidationError(
                f"Task {task_number} is a manual step; mark it done instead of executing it",
                details={"tool": task.tool},
            )
        if capabilities is not None:
            template = get_plan_template(plan.plan_type)
            if template is not None and 1 <= task_number <= len(template.steps):
                required = template.steps[task_number - 1].required_capability
                if required not in capabilities:
                    raise PermissionDeniedError(required.value)

        payload, withheld = self.build_payload(plan, task, operator_override=operator_override)
        tool = task.tool
        task_id = task.id
        client_id = plan.client_id
        actor = current_actor()

        if not self.repo.claim_task(task_id, actor):
            self.repo.rollback()
            raise ConcurrentModificationError(
                f"Task {task_number} of plan {plan_id} was claimed by another request",
                details={"task_number": task_number},
            )
        write_audit(entity_type="task", entity_id=task_id, action="task.started",
                    client_id=client_id,
                    diff={"plan_id": plan_id, "task_number": task_number, "tool": tool})
        if withheld:
            write_audit(entity_type="task", entity_id=task_id, action="task.context_withheld",
                        client_id=client_id,
                        diff={"plan_id": plan_id, "task_number": task_number, "reason": withheld})
            logger.info("Context withheld for plan=%s task=%s: %s", plan_id, task_number, withheld)
        self.repo.commit()

        try:
            output = self.gateway.invoke(tool, payload, timeout=self.timeout)
        except ToolExecutionError as exc:
            return self._record(task_id, plan_id, task_number, client_id, tool,
                                status=TaskStatus.FAILED,
                                output={"status": "failed", "error": exc.message,
                                        "timed_out": exc.timed_out},
                                error=exc.message)
        return self._record(task_id, plan_id, task_number, client_id, tool,
                            status=TaskStatus.DONE, output=output, error=None)

    def _record(self, task_id, plan_id, task_number, client_id, tool, *,
                status: TaskStatus, output: dict, error: str | None) -> Task:
        if not self.repo.finish_task(task_id, status.value, output=output, error_message=error):
            # Settled elsewhere (e.g. marked done by an operator) while the tool ran
            self.repo.rollback()
            logger.warning("Discarding late %s result for plan=%s task=%s",
                           tool, plan_id, task_number)
            return self.repo.get_task_by_id(task_id)

        action = "task.completed" if status is TaskStatus.DONE else "task.failed"
        write_audit(entity_type="task", entity_id=task_id, action=action,
                    client_id=client_id,
                    diff={"plan_id": plan_id, "task_number": task_number, "tool": tool,
                          "error": error})
        self.repo.commit()
        logger.info("Task %s: plan=%s task=%s tool=%s", status.value, plan_id, task_number, tool)

        task = self.repo.get_task_by_id(task_id)
        if status is TaskStatus.DONE and not task.has_checkpoint:
            self.engine.advance_plan(plan_id)
        return task
