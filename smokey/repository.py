"""
Smokey Planning Engine
Repository access layer.

Every engine service receives a ``SmokeyRepository`` instead of reaching
for ``db.session`` itself, so the persistence seam is a single object
that tests can swap or wrap.

Transaction control:
  - services call ``commit()`` once per operation
  - ``commit()`` turns optimistic-lock failures (``StaleDataError``) and
    unique-key races (``IntegrityError``) into ConcurrentModificationError
    after rolling back
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from smokey.core.exceptions import ConcurrentModificationError, NotFoundError
from smokey.models import db
from smokey.models.audit import AuditLog
from smokey.models.client import Client
from smokey.models.decision import Decision
from smokey.models.plan import (
    Checkpoint,
    CheckpointResult,
    Plan,
    PlanStatus,
    Task,
    TaskStatus,
    Tool,
    ToolSession,
)
from smokey.models.timeline import TimelinePhase

logger = logging.getLogger(__name__)


def _plan_order():
    """scheduled_month ascending (unscheduled last), then creation order, then id."""
    return (
        Plan.scheduled_month.is_(None),
        Plan.scheduled_month,
        Plan.created_at,
        Plan.id,
    )


class SmokeyRepository:
    """CRUD over Client, Decision, Plan, Task, Checkpoint, TimelinePhase and ToolSession."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    @property
    def session(self):
        if self._session_factory is not None:
            return self._session_factory()
        return db.session

    # ── Unit of work ─────────────────────────────────────────────────────────

    def add(self, obj):
        self.session.add(obj)
        return obj

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConcurrentModificationError(
                "Plan was modified by another request; reload and retry"
            ) from exc

    def commit(self) -> None:
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            logger.info("Optimistic lock lost: %s", exc)
            raise ConcurrentModificationError(
                "Plan was modified by another request; reload and retry"
            ) from exc
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("Unique-key race on commit: %s", exc.orig)
            raise ConcurrentModificationError(
                "Conflicting write detected; reload and retry"
            ) from exc

    def rollback(self) -> None:
        self.session.rollback()

    # ── Clients ──────────────────────────────────────────────────────────────

    def get_client(self, client_id: int) -> Client:
        client = self.session.get(Client, client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        return client

    def list_clients(self) -> list[Client]:
        return list(self.session.execute(select(Client).order_by(Client.id)).scalars())

    # ── Decisions ────────────────────────────────────────────────────────────

    def get_decision(self, decision_id: int) -> Decision:
        decision = self.session.get(Decision, decision_id)
        if decision is None:
            raise NotFoundError("Decision", decision_id)
        return decision

    def list_decisions(self, client_id: int, *, decision_type: str | None = None,
                       limit: int = 50) -> list[Decision]:
        """Newest first."""
        stmt = select(Decision).where(Decision.client_id == client_id)
        if decision_type:
            stmt = stmt.where(Decision.decision_type == decision_type)
        return list(self.session.execute(
            stmt.order_by(Decision.created_at.desc(), Decision.id.desc()).limit(limit)
        ).scalars())

    # ── Plans ────────────────────────────────────────────────────────────────

    def get_plan(self, plan_id: int, *, for_update: bool = False) -> Plan:
        """Load a plan; ``for_update`` takes a row lock where the backend has one."""
        stmt = select(Plan).where(Plan.id == plan_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        plan = self.session.execute(stmt).scalar_one_or_none()
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    def list_plans(self, client_id: int, *, statuses=None, month: int | None = None,
                   plan_type: str | None = None) -> list[Plan]:
        stmt = select(Plan).where(Plan.client_id == client_id)
        if statuses:
            stmt = stmt.where(Plan.status.in_([getattr(s, "value", s) for s in statuses]))
        if month is not None:
            stmt = stmt.where(Plan.scheduled_month == month)
        if plan_type is not None:
            stmt = stmt.where(Plan.plan_type == plan_type)
        return list(self.session.execute(stmt.order_by(*_plan_order())).scalars())

    def count_active_plans(self, client_id: int) -> int:
        return self.session.execute(
            select(func.count(Plan.id)).where(
                Plan.client_id == client_id,
                Plan.status == PlanStatus.ACTIVE.value,
            )
        ).scalar_one()

    def queued_plans_fifo(self, client_id: int) -> list[Plan]:
        """Queued plans in creation order (activation is first-in, first-out)."""
        return list(self.session.execute(
            select(Plan)
            .where(Plan.client_id == client_id, Plan.status == PlanStatus.QUEUED.value)
            .order_by(Plan.created_at, Plan.id)
        ).scalars())

    def plan_for_phase(self, phase_id: int) -> Plan | None:
        return self.session.execute(
            select(Plan).where(Plan.timeline_phase_id == phase_id).order_by(Plan.id.desc())
        ).scalars().first()

    def dependents_of(self, plan_id: int) -> list[Plan]:
        return list(self.session.execute(
            select(Plan).where(Plan.depends_on_plan_id == plan_id).order_by(Plan.id)
        ).scalars())

    def completed_plans_since(self, client_id: int, since: datetime) -> list[Plan]:
        return list(self.session.execute(
            select(Plan).where(
                Plan.client_id == client_id,
                Plan.status == PlanStatus.COMPLETED.value,
                Plan.completed_at >= since,
            )
        ).scalars())

    def due_reassessments(self, now: datetime, client_id: int | None = None) -> list[Plan]:
        stmt = select(Plan).where(
            Plan.status == PlanStatus.COMPLETED.value,
            Plan.reassess_after.is_not(None),
            Plan.reassess_after <= now,
        )
        if client_id is not None:
            stmt = stmt.where(Plan.client_id == client_id)
        return list(self.session.execute(
            stmt.order_by(Plan.reassess_after, Plan.id)
        ).scalars())

    # ── Tasks ────────────────────────────────────────────────────────────────

    def get_task(self, plan_id: int, task_number: int) -> Task:
        task = self.session.execute(
            select(Task).where(Task.plan_id == plan_id, Task.task_number == task_number)
        ).scalar_one_or_none()
        if task is None:
            raise NotFoundError("Task", f"{plan_id}#{task_number}")
        return task

    def get_task_by_id(self, task_id: int) -> Task:
        task = self.session.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def next_pending_task(self, plan_id: int) -> Task | None:
        return self.session.execute(
            select(Task)
            .where(Task.plan_id == plan_id, Task.status == TaskStatus.PENDING.value)
            .order_by(Task.task_number)
            .limit(1)
        ).scalar_one_or_none()

    def previous_done_task(self, plan_id: int, task_number: int) -> Task | None:
        """Closest lower-numbered task that finished, for payload continuity."""
        return self.session.execute(
            select(Task)
            .where(
                Task.plan_id == plan_id,
                Task.task_number < task_number,
                Task.status == TaskStatus.DONE.value,
            )
            .order_by(Task.task_number.desc())
            .limit(1)
        ).scalar_one_or_none()

    def claim_task(self, task_id: int, actor: str, *, from_status: str = TaskStatus.PENDING.value) -> bool:
        """Compare-and-set ``from_status → in_progress``. False when another caller won."""
        result = self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.status == from_status)
            .values(
                status=TaskStatus.IN_PROGRESS.value,
                started_at=datetime.now(timezone.utc),
                executed_by=actor,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def finish_task(self, task_id: int, status: str, *, output: dict | None,
                    error_message: str | None = None) -> bool:
        """Compare-and-set ``in_progress → status``. False when the task was settled elsewhere."""
        result = self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.status == TaskStatus.IN_PROGRESS.value)
            .values(
                status=status,
                tool_output=output,
                error_message=error_message,
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def latest_audit_outputs(self, client_id: int, limit: int = 5) -> list[dict]:
        """Most recent audit outputs across the client's plans, newest first."""
        rows = self.session.execute(
            select(Task.tool_output)
            .join(Plan, Plan.id == Task.plan_id)
            .where(
                Plan.client_id == client_id,
                Task.tool == Tool.AUDIT.value,
                Task.status == TaskStatus.DONE.value,
                Task.tool_output.is_not(None),
            )
            .order_by(Task.completed_at.desc(), Task.id.desc())
            .limit(limit)
        ).scalars()
        return [r for r in rows if isinstance(r, dict)]

    # ── Checkpoints ──────────────────────────────────────────────────────────

    def get_checkpoint(self, task_id: int) -> Checkpoint | None:
        return self.session.execute(
            select(Checkpoint).where(Checkpoint.task_id == task_id)
        ).scalar_one_or_none()

    def review_queue(self, client_id: int | None = None) -> list[Checkpoint]:
        stmt = (
            select(Checkpoint)
            .join(Task, Task.id == Checkpoint.task_id)
            .join(Plan, Plan.id == Task.plan_id)
            .where(
                Checkpoint.result == CheckpointResult.NEEDS_REVIEW.value,
                Plan.status == PlanStatus.ACTIVE.value,
            )
        )
        if client_id is not None:
            stmt = stmt.where(Plan.client_id == client_id)
        return list(self.session.execute(
            stmt.order_by(Checkpoint.evaluated_at, Checkpoint.id)
        ).scalars())

    # ── Timeline ─────────────────────────────────────────────────────────────

    def get_phase(self, phase_id: int) -> TimelinePhase:
        phase = self.session.get(TimelinePhase, phase_id)
        if phase is None:
            raise NotFoundError("TimelinePhase", phase_id)
        return phase

    def list_phases(self, client_id: int) -> list[TimelinePhase]:
        return list(self.session.execute(
            select(TimelinePhase)
            .where(TimelinePhase.client_id == client_id)
            .order_by(TimelinePhase.scheduled_date, TimelinePhase.month_offset, TimelinePhase.id)
        ).scalars())

    # ── Tool sessions ────────────────────────────────────────────────────────

    def get_tool_session(self, session_id: int) -> ToolSession:
        ts = self.session.get(ToolSession, session_id)
        if ts is None:
            raise NotFoundError("ToolSession", session_id)
        return ts

    # ── Events ───────────────────────────────────────────────────────────────

    def list_events(self, client_id: int, *, entity_type: str | None = None,
                    limit: int = 200) -> list[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.client_id == client_id)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        return list(self.session.execute(
            stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
        ).scalars())
