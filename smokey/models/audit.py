"""
Smokey Planning Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only event trail for plan lifecycle events.
"""

import json
from datetime import UTC, datetime

from smokey.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "client", "decision", "plan", "task", "checkpoint", "timeline", "tool_session",
}

AUDIT_ACTIONS = {
    # Plan lifecycle
    "plan.created",
    "plan.activated",
    "plan.paused",
    "plan.resumed",
    "plan.completed",
    "plan.aborted",
    "plan.branched",
    "plan.reassessed",
    # Task execution
    "task.started",
    "task.completed",
    "task.failed",
    "task.retried",
    "task.context_withheld",
    # Checkpoints
    "checkpoint.passed",
    "checkpoint.failed",
    "checkpoint.needs_review",
    # Timeline
    "timeline.instantiated",
    "timeline.regenerated",
    "timeline.phase_rescheduled",
    "timeline.phase_skipped",
    # Tool sessions
    "tool_session.created",
    "tool_session.launched",
    "tool_session.completed",
    "tool_session.failed",
    # Decisions
    "decision.created",
    # Generic
    "create",
}


class AuditLog(db.Model):
    """
    One row per lifecycle event.  ``diff_json`` carries the old→new
    snapshot or the event payload.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_client", "client_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, nullable=True,
                          comment="Owning client; kept after client deletion")

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="client | decision | plan | task | checkpoint | timeline | tool_session",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="plan.paused | task.completed | checkpoint.failed | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Event payload; an unreadable row yields ``{}``."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Writer ───────────────────────────────────────────────────────────────────

def current_actor() -> str:
    """Operator bound to the current request, or ``"system"``."""
    from flask import g, has_request_context
    if not has_request_context():
        return "system"
    return getattr(g, "operator_id", None) or "system"


def write_audit(*, entity_type: str, entity_id, action: str,
                actor: str | None = None, client_id: int | None = None,
                diff: dict | None = None) -> AuditLog:
    """Stage one event row in the caller's transaction (flushed, not committed).

    Raises ValueError for an entity type or action outside the known vocabulary.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    row = AuditLog(
        client_id=client_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or current_actor(),
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(row)
    db.session.flush()
    return row
