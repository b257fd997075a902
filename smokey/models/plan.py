"""
Smokey Planning Engine
Plan / Task domain models.

Models:
    - Plan:        one unit of scheduled work for a client
    - Task:        one tool-executing step within a Plan
    - Checkpoint:  pass / fail / needs_review judgment attached to one Task
    - ToolSession: ephemeral handoff record for interactive tools

Architecture:
    Client ──1:N──▶ Plan ──1:N──▶ Task ──1:1──▶ Checkpoint
    Plan ──0:1──▶ Plan            (depends_on_plan_id, same client)
    Plan ──0:1──▶ Decision        (source_decision_id, same client)
    Task ──1:N──▶ ToolSession

Lifecycle states:
    Plan:        queued → active ⇄ paused → completed | aborted
    Task:        pending → in_progress → done | failed,  failed → pending (retry)
    ToolSession: created → launched → completed | failed
"""

import enum
from datetime import datetime, timezone

from smokey.models import db


# ── Enumerations ─────────────────────────────────────────────────────────────


class PlanStatus(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class Tool(str, enum.Enum):
    AUDIT = "audit"          # fact generation
    BURNT = "burnt"          # prioritization
    CRIMSON = "crimson"      # content execution
    MIDNIGHT = "midnight"    # structure execution
    MANUAL = "manual"        # operator-performed step


class CheckpointResult(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    NEEDS_REVIEW = "needs_review"


class CheckpointMethod(str, enum.Enum):
    AUTOMATIC = "automatic"
    AUTOMATIC_WITH_AUDIT = "automatic_with_audit"
    MANUAL = "manual"


class ToolSessionStatus(str, enum.Enum):
    CREATED = "created"
    LAUNCHED = "launched"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

PLAN_TRANSITIONS = {
    "queued":    ["active", "aborted"],
    "active":    ["paused", "completed"],
    "paused":    ["active", "aborted"],
    "completed": [],
    "aborted":   [],
}

TASK_TRANSITIONS = {
    "pending":     ["in_progress", "done"],
    "in_progress": ["done", "failed"],
    "done":        [],
    "failed":      ["pending", "done"],
}


def validate_plan_transition(old_status, new_status):
    """Return True if Plan status transition is valid."""
    return new_status in PLAN_TRANSITIONS.get(old_status, [])


def validate_task_transition(old_status, new_status):
    """Return True if Task status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Plan
# ═════════════════════════════════════════════════════════════════════════════


class Plan(db.Model):
    """
    One unit of scheduled work for a client.

    ``version`` is an optimistic lock counter: every UPDATE carries
    ``WHERE version = :loaded`` and a lost race surfaces as StaleDataError.
    """

    __tablename__ = "plans"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('queued','active','paused','completed','aborted')",
            name="ck_plan_status",
        ),
        db.Index("idx_plan_client_status", "client_id", "status"),
        db.Index("idx_plan_reassess", "status", "reassess_after"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    plan_type = db.Column(db.String(50), nullable=False,
                          comment="Key into the plan-type catalog")
    objective = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default=PlanStatus.QUEUED.value)
    scheduled_month = db.Column(db.Integer, nullable=True,
                                comment="1..contract length; NULL for ad hoc plans")

    depends_on_plan_id = db.Column(
        db.Integer, db.ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    blocking = db.Column(db.Boolean, nullable=False, default=True,
                         comment="Dependents wait for this plan to complete")
    reassess_after = db.Column(db.DateTime(timezone=True), nullable=True)

    source_decision_id = db.Column(
        db.Integer, db.ForeignKey("decisions.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="Decision that authorised this plan",
    )
    branch_reason = db.Column(db.Text, nullable=True)
    timeline_phase_id = db.Column(
        db.Integer, db.ForeignKey("timeline_phases.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    created_by = db.Column(db.String(150), default="system")

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    client = db.relationship("Client", back_populates="plans")
    tasks = db.relationship("Task", back_populates="plan", order_by="Task.task_number",
                            cascade="all, delete-orphan")
    depends_on = db.relationship("Plan", remote_side=[id], foreign_keys=[depends_on_plan_id])
    phase = db.relationship("TimelinePhase", foreign_keys=[timeline_phase_id])
    source_decision = db.relationship("Decision", back_populates="plans")

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "client_id": self.client_id,
            "plan_type": self.plan_type,
            "objective": self.objective,
            "status": self.status,
            "scheduled_month": self.scheduled_month,
            "depends_on_plan_id": self.depends_on_plan_id,
            "blocking": self.blocking,
            "reassess_after": _iso(self.reassess_after),
            "source_decision_id": self.source_decision_id,
            "branch_reason": self.branch_reason,
            "timeline_phase_id": self.timeline_phase_id,
            "created_by": self.created_by,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "version": self.version,
            "task_count": len(self.tasks),
            "done_count": sum(1 for t in self.tasks if t.status == TaskStatus.DONE.value),
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def __repr__(self):
        return f"<Plan {self.id}: {self.plan_type} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """One step within a Plan. ``task_number`` is 1-based and defines order."""

    __tablename__ = "plan_tasks"
    __table_args__ = (
        db.UniqueConstraint("plan_id", "task_number", name="uq_task_plan_number"),
        db.CheckConstraint(
            "status IN ('pending','in_progress','done','failed')",
            name="ck_task_status",
        ),
        db.CheckConstraint("task_number >= 1", name="ck_task_number_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    task_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    tool = db.Column(db.String(20), nullable=False,
                     comment="audit | burnt | crimson | midnight | manual")
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.PENDING.value)
    has_checkpoint = db.Column(db.Boolean, nullable=False, default=False)
    tool_output = db.Column(db.JSON(none_as_null=True), nullable=True,
                            comment="Raw output returned by the tool")
    error_message = db.Column(db.Text, nullable=True)
    executed_by = db.Column(db.String(150), nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    plan = db.relationship("Plan", back_populates="tasks")
    checkpoint = db.relationship("Checkpoint", back_populates="task", uselist=False,
                                 cascade="all, delete-orphan")
    sessions = db.relationship("ToolSession", back_populates="task", lazy="dynamic",
                               cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "task_number": self.task_number,
            "title": self.title,
            "tool": self.tool,
            "status": self.status,
            "has_checkpoint": self.has_checkpoint,
            "tool_output": self.tool_output,
            "error_message": self.error_message,
            "executed_by": self.executed_by,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
        }

    def __repr__(self):
        return f"<Task {self.plan_id}#{self.task_number}: {self.tool} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Checkpoint
# ═════════════════════════════════════════════════════════════════════════════


class Checkpoint(db.Model):
    """At most one per Task; re-evaluation overwrites the row in place."""

    __tablename__ = "checkpoints"
    __table_args__ = (
        db.CheckConstraint(
            "result IN ('pass','fail','needs_review')",
            name="ck_checkpoint_result",
        ),
        db.CheckConstraint(
            "method IN ('automatic','automatic_with_audit','manual')",
            name="ck_checkpoint_method",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("plan_tasks.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    result = db.Column(db.String(20), nullable=False)
    confidence = db.Column(db.Float, nullable=True, comment="0.0–1.0; NULL for manual")
    reasoning = db.Column(db.Text, default="")
    method = db.Column(db.String(30), nullable=False)
    metrics = db.Column(db.JSON, nullable=True,
                        comment="Metric snapshot the rule was applied to")
    evaluated_by = db.Column(db.String(150), default="system")
    evaluated_at = db.Column(db.DateTime(timezone=True),
                             default=lambda: datetime.now(timezone.utc))

    task = db.relationship("Task", back_populates="checkpoint")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "result": self.result,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "method": self.method,
            "metrics": self.metrics,
            "evaluated_by": self.evaluated_by,
            "evaluated_at": _iso(self.evaluated_at),
        }

    def __repr__(self):
        return f"<Checkpoint task={self.task_id}: {self.result} ({self.method})>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ToolSession
# ═════════════════════════════════════════════════════════════════════════════


class ToolSession(db.Model):
    """Handoff record for an interactive tool run; removed once consumed."""

    __tablename__ = "tool_sessions"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('created','launched','completed','failed')",
            name="ck_tool_session_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("plan_tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    plan_id = db.Column(
        db.Integer, db.ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    tool = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ToolSessionStatus.CREATED.value)
    payload = db.Column(db.JSON, nullable=True)
    results = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    launched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    task = db.relationship("Task", back_populates="sessions")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "plan_id": self.plan_id,
            "tool": self.tool,
            "status": self.status,
            "payload": self.payload,
            "results": self.results,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "launched_at": _iso(self.launched_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ToolSession {self.id}: {self.tool} [{self.status}]>"
