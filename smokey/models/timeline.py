"""
Smokey Planning Engine
Timeline domain model.

Models:
    - TimelinePhase: a dated entry in a client's contract schedule.

Phases are derived from the tier template by the timeline scheduler and
are never edited field-by-field by other components.
"""

import enum
from datetime import datetime, timezone

from smokey.models import db


class PhaseStatus(str, enum.Enum):
    UPCOMING = "upcoming"
    RESCHEDULED = "rescheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


PHASE_STATUSES = {s.value for s in PhaseStatus}

# Phases regeneration must keep as-is
SETTLED_PHASE_STATUSES = {PhaseStatus.COMPLETED.value, PhaseStatus.SKIPPED.value}


class TimelinePhase(db.Model):
    """One phase of a client's timeline (e.g. ``Month 3 - Review & Adjust``)."""

    __tablename__ = "timeline_phases"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('upcoming','rescheduled','in_progress','completed','skipped')",
            name="ck_phase_status",
        ),
        db.Index("idx_phase_client_date", "client_id", "scheduled_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase_name = db.Column(db.String(200), nullable=False)
    month_offset = db.Column(db.Integer, nullable=False, default=0,
                             comment="Months after contract start")
    scheduled_month = db.Column(db.Integer, nullable=False, default=1)
    scheduled_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=PhaseStatus.UPCOMING.value)
    plan_type = db.Column(db.String(50), nullable=False)
    tool_sequence = db.Column(db.JSON, nullable=True,
                              comment='[{"tool": "audit", "required": true, "blocking": true}, ...]')
    description = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    client = db.relationship("Client", back_populates="phases")

    def to_dict(self, plan=None):
        d = {
            "id": self.id,
            "client_id": self.client_id,
            "phase_name": self.phase_name,
            "month_offset": self.month_offset,
            "scheduled_month": self.scheduled_month,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "status": self.status,
            "plan_type": self.plan_type,
            "tool_sequence": self.tool_sequence or [],
            "description": self.description,
        }
        if plan is not None:
            d["plan_id"] = plan.id
            d["plan_status"] = plan.status
        return d

    def __repr__(self):
        return f"<TimelinePhase {self.id}: {self.phase_name} @ {self.scheduled_date} [{self.status}]>"
