"""
Smokey Planning Engine
Decision domain model.

Models:
    - Decision: a recorded planning judgment that authorises plan creation.

Architecture:
    Client ──1:N──▶ Decision ──1:N──▶ Plan   (plans.source_decision_id)

A decision is immutable once written; a changed judgment is a new row.
"""

import enum
from datetime import datetime, timezone

from smokey.models import db


class DecisionType(str, enum.Enum):
    CREATE_PLAN = "create_plan"
    PAUSE_PLAN = "pause_plan"
    RESUME_PLAN = "resume_plan"
    BRANCH_PLAN = "branch_plan"
    COMPLETE_PLAN = "complete_plan"
    QUEUE_PLAN = "queue_plan"


DECISION_TYPES = [t.value for t in DecisionType]


class Decision(db.Model):
    """Why a plan exists: type, optional signal, reasoning and a confidence score."""

    __tablename__ = "decisions"
    __table_args__ = (
        db.CheckConstraint(
            "decision_type IN ('create_plan','pause_plan','resume_plan',"
            "'branch_plan','complete_plan','queue_plan')",
            name="ck_decision_type",
        ),
        db.CheckConstraint("confidence BETWEEN 0 AND 1", name="ck_decision_confidence"),
        db.Index("idx_decision_client_created", "client_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    decision_type = db.Column(db.String(30), nullable=False)
    signal_id = db.Column(db.String(100), nullable=True,
                          comment="Upstream signal that prompted the decision")
    summary = db.Column(db.String(500), nullable=False)
    reasoning = db.Column(db.Text, nullable=True)
    confidence = db.Column(db.Float, nullable=False)
    context = db.Column(db.JSON, nullable=True,
                        comment="Free-form inputs, e.g. planType, signalStrength")
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    client = db.relationship("Client")
    plans = db.relationship("Plan", back_populates="source_decision",
                            order_by="Plan.id", passive_deletes=True)

    def to_dict(self, include_plans=False):
        d = {
            "id": self.id,
            "client_id": self.client_id,
            "decision_type": self.decision_type,
            "signal_id": self.signal_id,
            "summary": self.summary,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "context": self.context or {},
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_plans:
            d["plan_ids"] = [p.id for p in self.plans]
        return d

    def __repr__(self):
        return f"<Decision {self.id}: {self.decision_type} ({self.confidence:.2f})>"
