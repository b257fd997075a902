"""
Smokey Planning Engine
Client domain model.

Models:
    - Client: a contracted customer whose contract drives the timeline.

Contract terms (start date, length, tier) are fixed once the client is
created; a scope change is modelled as a new client contract.
"""

import enum
from datetime import date, datetime, timedelta, timezone

from smokey.models import db
from smokey.utils.helpers import add_months


class PlanTier(str, enum.Enum):
    STARTER = "starter"
    GROWTH = "growth"
    ENTERPRISE = "enterprise"


PLAN_TIERS = {t.value for t in PlanTier}

# Concurrent active plans allowed per tier
WIP_LIMITS = {
    PlanTier.STARTER: 1,
    PlanTier.GROWTH: 1,
    PlanTier.ENTERPRISE: 2,
}

MAX_CONTRACT_MONTHS = 36


def parse_tier(value) -> PlanTier:
    """Coerce a wire value (any case) to ``PlanTier``; raises ValueError."""
    if isinstance(value, PlanTier):
        return value
    return PlanTier(str(value or "").strip().lower())


class Client(db.Model):
    """A contracted customer. Owns plans and timeline phases."""

    __tablename__ = "clients"
    __table_args__ = (
        db.CheckConstraint(
            "plan_tier IN ('starter','growth','enterprise')",
            name="ck_client_plan_tier",
        ),
        db.CheckConstraint(
            "contract_length_months BETWEEN 1 AND 36",
            name="ck_client_contract_length",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    canonical_url = db.Column(db.String(500), nullable=False,
                              comment="Site root every tool works against")
    contract_start_date = db.Column(db.Date, nullable=False)
    contract_length_months = db.Column(db.Integer, nullable=False, default=12)
    plan_tier = db.Column(db.String(20), nullable=False, default=PlanTier.STARTER.value,
                          comment="starter | growth | enterprise")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    plans = db.relationship("Plan", back_populates="client", lazy="dynamic",
                            cascade="all, delete-orphan")
    phases = db.relationship("TimelinePhase", back_populates="client", lazy="dynamic",
                             cascade="all, delete-orphan")

    @property
    def tier(self) -> PlanTier:
        return PlanTier(self.plan_tier)

    @property
    def wip_limit(self) -> int:
        return WIP_LIMITS[self.tier]

    @property
    def contract_end_date(self) -> date:
        """First day after the contract (exclusive)."""
        return add_months(self.contract_start_date, self.contract_length_months)

    @property
    def last_contract_day(self) -> date:
        return self.contract_end_date - timedelta(days=1)

    def contract_expired(self, today: date | None = None) -> bool:
        today = today or datetime.now(timezone.utc).date()
        return today >= self.contract_end_date

    def contract_month(self, today: date | None = None) -> int:
        """1-based contract month ``today`` falls in, clamped to the contract."""
        today = today or datetime.now(timezone.utc).date()
        start = self.contract_start_date
        months = (today.year - start.year) * 12 + (today.month - start.month)
        if today.day < start.day:
            months -= 1
        return max(1, min(months + 1, self.contract_length_months))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "canonical_url": self.canonical_url,
            "contract_start_date": self.contract_start_date.isoformat() if self.contract_start_date else None,
            "contract_length_months": self.contract_length_months,
            "plan_tier": self.plan_tier,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Client {self.id}: {self.name} ({self.plan_tier})>"
