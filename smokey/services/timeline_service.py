"""
Timeline Scheduler: contract → dated phases → plans.

A client's timeline is the tier template laid over the contract:
phase date = contract start + month offset (end-of-month clamped, held to
the last contract day), and phases past the contract length are
dropped.  Only the kickoff phase
gets a plan up front; later phases get theirs from
``materialize_due_phases`` once their date arrives.

Regeneration is conservative: it never touches a plan that has started
(active, paused, completed, aborted) or a settled phase.
"""

from __future__ import annotations

import logging
from datetime import date

from smokey.core.exceptions import StateError, ValidationError
from smokey.models.audit import write_audit
from smokey.models.client import Client, parse_tier
from smokey.models.plan import PlanStatus
from smokey.models.timeline import PhaseStatus, SETTLED_PHASE_STATUSES, TimelinePhase
from smokey.repository import SmokeyRepository
from smokey.services.plan_engine import PlanEngine
from smokey.services.templates import PhaseTemplate, get_timeline_template
from smokey.utils.helpers import add_months

logger = logging.getLogger(__name__)

_OPEN_PHASE_STATUSES = (PhaseStatus.UPCOMING.value, PhaseStatus.RESCHEDULED.value)


def contract_phases(client: Client) -> list[PhaseTemplate]:
    """Template phases that fall inside the client's contract."""
    return [
        p for p in get_timeline_template(client.tier)
        if p.scheduled_month <= client.contract_length_months
    ]


def phase_date(client: Client, template: PhaseTemplate) -> date:
    """Contract start + month offset, held to the last contract day.

    A closing phase at offset == contract length would otherwise land on
    the first day after the contract.
    """
    return min(add_months(client.contract_start_date, template.month_offset),
               client.last_contract_day)


class TimelineScheduler:
    def __init__(self, repo: SmokeyRepository, engine: PlanEngine) -> None:
        self.repo = repo
        self.engine = engine

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _new_phase(self, client: Client, template: PhaseTemplate) -> TimelinePhase:
        phase = TimelinePhase(
            client_id=client.id,
            phase_name=template.phase_name,
            month_offset=template.month_offset,
            scheduled_month=template.scheduled_month,
            scheduled_date=phase_date(client, template),
            status=PhaseStatus.UPCOMING.value,
            plan_type=template.plan_type,
            tool_sequence=[t.to_dict() for t in template.tool_sequence],
            description=template.description,
        )
        self.repo.add(phase)
        return phase

    def _seed(self, client: Client, phase: TimelinePhase):
        return self.engine.create_plan(
            client.id,
            phase.plan_type,
            scheduled_month=phase.scheduled_month,
            operator_override=True,
            timeline_phase_id=phase.id,
            commit=False,
        )

    def _phase_plan_started(self, phase: TimelinePhase) -> bool:
        plan = self.repo.plan_for_phase(phase.id)
        return plan is not None and plan.status != PlanStatus.QUEUED.value

    # ── Operations ───────────────────────────────────────────────────────────

    def instantiate_timeline(self, client_id: int, contract_start_date: date | None = None,
                             plan_tier=None) -> list[dict]:
        """Build the client's timeline from its tier template and seed the first plan.

        ``contract_start_date`` and ``plan_tier`` must match the client's
        contract when given; contract terms cannot change through here.
        """
        client = self.repo.get_client(client_id)
        if contract_start_date is not None and contract_start_date != client.contract_start_date:
            raise ValidationError("contract start date differs from the client's contract",
                                  details={"contractStartDate": contract_start_date.isoformat()})
        if plan_tier is not None:
            try:
                tier = parse_tier(plan_tier)
            except ValueError:
                raise ValidationError(f"Unknown plan tier '{plan_tier}'",
                                      details={"planTier": plan_tier})
            if tier is not client.tier:
                raise ValidationError("plan tier differs from the client's contract",
                                      details={"planTier": tier.value})

        existing = self.repo.list_phases(client.id)
        if any(self._phase_plan_started(p) or p.status in SETTLED_PHASE_STATUSES
               for p in existing):
            raise StateError(
                f"Client {client.id} already has a timeline in progress; regenerate it instead",
                details={"client_id": client.id},
            )
        for phase in existing:
            plan = self.repo.plan_for_phase(phase.id)
            if plan is not None:
                self.repo.delete(plan)
            self.repo.delete(phase)
        self.repo.flush()

        phases = [self._new_phase(client, t) for t in contract_phases(client)]
        self.repo.flush()
        if phases:
            self._seed(client, phases[0])

        write_audit(entity_type="timeline", entity_id=client.id, action="timeline.instantiated",
                    client_id=client.id,
                    diff={"tier": client.plan_tier, "phases": len(phases),
                          "replaced": len(existing)})
        self.repo.commit()
        logger.info("Timeline instantiated: client=%s tier=%s phases=%d",
                    client.id, client.plan_tier, len(phases))
        return self.get_client_timeline(client.id)

    def regenerate_timeline(self, client_id: int) -> dict:
        """Rebuild phases that have not started from the current template."""
        client = self.repo.get_client(client_id)
        kept, removed = [], 0
        for phase in self.repo.list_phases(client.id):
            plan = self.repo.plan_for_phase(phase.id)
            settled = phase.status in SETTLED_PHASE_STATUSES
            started = phase.status == PhaseStatus.IN_PROGRESS.value or (
                plan is not None and plan.status != PlanStatus.QUEUED.value)
            if settled or started:
                kept.append(phase)
                continue
            if plan is not None:
                self.repo.delete(plan)
            self.repo.delete(phase)
            removed += 1
        self.repo.flush()

        kept_offsets = {p.month_offset for p in kept}
        created = [self._new_phase(client, t) for t in contract_phases(client)
                   if t.month_offset not in kept_offsets]
        self.repo.flush()

        reseeded = None
        first = min(created, key=lambda p: p.month_offset, default=None)
        if first is not None and first.month_offset == 0:
            reseeded = self._seed(client, first)

        write_audit(entity_type="timeline", entity_id=client.id, action="timeline.regenerated",
                    client_id=client.id,
                    diff={"kept": len(kept), "removed": removed, "created": len(created),
                          "reseeded_plan_id": reseeded.id if reseeded else None})
        self.repo.commit()
        logger.info("Timeline regenerated: client=%s kept=%d removed=%d created=%d",
                    client.id, len(kept), removed, len(created))
        return {
            "kept": len(kept),
            "removed": removed,
            "created": len(created),
            "phases": self.get_client_timeline(client.id),
        }

    def reschedule_phase(self, phase_id: int, new_date) -> TimelinePhase:
        """Move an unstarted phase to ``new_date`` (inside the contract)."""
        if not isinstance(new_date, date):
            raise ValidationError("date must be an ISO date (YYYY-MM-DD)", details={"date": new_date})
        phase = self.repo.get_phase(phase_id)
        if phase.scheduled_date == new_date:
            return phase
        if phase.status not in _OPEN_PHASE_STATUSES or self._phase_plan_started(phase):
            raise StateError(
                f"Phase {phase.id} has started; it can no longer be rescheduled",
                details={"phase_id": phase.id, "status": phase.status},
            )
        client = phase.client
        contract_end = client.contract_end_date
        if not client.contract_start_date <= new_date < contract_end:
            raise ValidationError(
                f"date must fall between {client.contract_start_date.isoformat()} "
                f"and {contract_end.isoformat()}",
                details={"date": new_date.isoformat()},
            )

        old_date = phase.scheduled_date
        phase.scheduled_date = new_date
        phase.scheduled_month = client.contract_month(new_date)
        phase.status = PhaseStatus.RESCHEDULED.value
        plan = self.repo.plan_for_phase(phase.id)
        if plan is not None:
            plan.scheduled_month = phase.scheduled_month
        write_audit(entity_type="timeline", entity_id=phase.id, action="timeline.phase_rescheduled",
                    client_id=client.id,
                    diff={"from": old_date.isoformat(), "to": new_date.isoformat()})
        self.repo.commit()
        return phase

    def skip_phase(self, phase_id: int) -> TimelinePhase:
        """Mark an unstarted phase skipped; its queued plan is aborted."""
        phase = self.repo.get_phase(phase_id)
        if phase.status == PhaseStatus.SKIPPED.value:
            return phase
        if phase.status not in _OPEN_PHASE_STATUSES or self._phase_plan_started(phase):
            raise StateError(
                f"Phase {phase.id} has started; it can no longer be skipped",
                details={"phase_id": phase.id, "status": phase.status},
            )
        phase.status = PhaseStatus.SKIPPED.value
        write_audit(entity_type="timeline", entity_id=phase.id, action="timeline.phase_skipped",
                    client_id=phase.client_id)
        plan = self.repo.plan_for_phase(phase.id)
        if plan is not None:
            self.engine.abort_plan(plan.id, reason=f"Phase '{phase.phase_name}' skipped")
        else:
            self.repo.commit()
        return phase

    def materialize_due_phases(self, client_id: int, today: date | None = None) -> list:
        """Create plans for upcoming phases whose date has arrived."""
        client = self.repo.get_client(client_id)
        today = today or self.engine.now().date()
        created = []
        for phase in self.repo.list_phases(client.id):
            if phase.status not in _OPEN_PHASE_STATUSES or phase.scheduled_date > today:
                continue
            if self.repo.plan_for_phase(phase.id) is not None:
                continue
            created.append(self._seed(client, phase))
        self.repo.commit()
        if created:
            logger.info("Materialized %d phase plan(s) for client %s", len(created), client.id)
        return created

    def get_client_timeline(self, client_id: int) -> list[dict]:
        client = self.repo.get_client(client_id)
        return [p.to_dict(self.repo.plan_for_phase(p.id)) for p in self.repo.list_phases(client.id)]
