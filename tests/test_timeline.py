"""
Smokey Planning Engine
Tests: Timeline Scheduler.

Covers:
    - timeline instantiation from tier templates (dates, names, contract clipping)
    - every phase date inside the contract, closing phase on its last day
    - kickoff plan seeding
    - reschedule / skip guards and side effects
    - materialization of due phases
    - conservative regeneration that never touches started plans
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from smokey.core.exceptions import StateError, ValidationError
from smokey.utils.helpers import add_months


def _start(months_elapsed=1):
    today = datetime.now(timezone.utc).date()
    return add_months(today.replace(day=1), -months_elapsed)


def _new_client(services, tier="starter", length=12, months_elapsed=1):
    client, timeline = services.clients.create_client({
        "name": "Riverside Dental",
        "canonicalUrl": "https://riverside.example",
        "contractStartDate": _start(months_elapsed).isoformat(),
        "contractLengthMonths": length,
        "planTier": tier,
    })
    return client, timeline


def _phase(services, client_id, offset):
    return next(p for p in services.repo.list_phases(client_id) if p.month_offset == offset)


class TestHelpers:
    def test_add_months_clamps_day(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)
        assert add_months(date(2026, 3, 1), -4) == date(2025, 11, 1)


class TestInstantiate:
    def test_starter_timeline(self, services):
        client, timeline = _new_client(services)
        assert len(timeline) == 13
        assert [p["month_offset"] for p in timeline] == list(range(13))
        assert timeline[0]["phase_name"] == "Initial Audit"
        assert timeline[0]["scheduled_month"] == 1
        assert timeline[1]["plan_type"] == "priority_actions"
        assert timeline[2]["plan_type"] == "content_optimization"
        assert timeline[3]["plan_type"] == "site_review"
        assert timeline[6]["phase_name"] == "Month 6 - Mid-Year Review"
        assert timeline[12]["phase_name"] == "Month 12 - Annual Review"
        assert timeline[3]["scheduled_date"] == add_months(client.contract_start_date, 3).isoformat()

    def test_kickoff_plan_is_seeded(self, services):
        client, timeline = _new_client(services)
        assert timeline[0]["plan_status"] == "active"
        assert timeline[0]["status"] == "in_progress"
        assert "plan_id" not in timeline[1]
        plan = services.engine.get_plan(timeline[0]["plan_id"])
        assert plan.plan_type == "site_review"
        assert plan.timeline_phase_id == timeline[0]["id"]

    def test_short_contract_drops_late_phases(self, services):
        _, timeline = _new_client(services, length=6)
        assert len(timeline) == 7
        assert max(p["scheduled_month"] for p in timeline) == 6

    def test_phases_fall_inside_contract(self, services):
        client, timeline = _new_client(services)
        start, end = client.contract_start_date, client.contract_end_date
        assert all(start <= date.fromisoformat(p["scheduled_date"]) < end for p in timeline)
        assert timeline[12]["scheduled_date"] == client.last_contract_day.isoformat()
        assert timeline[11]["scheduled_date"] == add_months(start, 11).isoformat()

    def test_ended_contract_rejected_on_create(self, services):
        with pytest.raises(ValidationError) as exc:
            _new_client(services, length=12, months_elapsed=13)
        assert exc.value.details == {"contractStartDate": "contract has already ended"}

    def test_tier_tool_sequences(self, services):
        _, timeline = _new_client(services, tier="enterprise")
        assert [t["tool"] for t in timeline[0]["tool_sequence"]] == ["audit", "midnight", "burnt"]
        assert timeline[1]["phase_name"] == "Month 1 - Full Optimization"

    def test_instantiate_for_existing_client(self, services, make_client):
        c = make_client(tier="growth")
        timeline = services.timeline.instantiate_timeline(c.id)
        assert len(timeline) == 13
        assert timeline[0]["plan_status"] == "active"

    def test_started_timeline_cannot_be_reinstantiated(self, services):
        client, _ = _new_client(services)
        with pytest.raises(StateError):
            services.timeline.instantiate_timeline(client.id)

    def test_contract_terms_must_match(self, services, make_client):
        c = make_client(tier="starter")
        with pytest.raises(ValidationError):
            services.timeline.instantiate_timeline(c.id, plan_tier="enterprise")
        with pytest.raises(ValidationError):
            services.timeline.instantiate_timeline(c.id, plan_tier="gold")
        with pytest.raises(ValidationError):
            services.timeline.instantiate_timeline(
                c.id, contract_start_date=c.contract_start_date + timedelta(days=1))
        assert services.repo.list_phases(c.id) == []


class TestReschedule:
    def test_reschedule_upcoming_phase(self, services):
        client, _ = _new_client(services)
        phase = _phase(services, client.id, 4)
        new_date = add_months(client.contract_start_date, 4) + timedelta(days=10)
        moved = services.timeline.reschedule_phase(phase.id, new_date)
        assert moved.status == "rescheduled"
        assert moved.scheduled_date == new_date
        assert moved.scheduled_month == 5

    def test_same_date_is_noop(self, services):
        client, _ = _new_client(services)
        phase = _phase(services, client.id, 4)
        same = services.timeline.reschedule_phase(phase.id, phase.scheduled_date)
        assert same.status == "upcoming"

    def test_closing_phase_can_move_earlier(self, services):
        client, _ = _new_client(services)
        closing = _phase(services, client.id, 12)
        new_date = closing.scheduled_date - timedelta(days=7)
        moved = services.timeline.reschedule_phase(closing.id, new_date)
        assert moved.scheduled_date == new_date
        assert moved.scheduled_month == 12

    def test_outside_contract_rejected(self, services):
        client, _ = _new_client(services)
        phase = _phase(services, client.id, 4)
        with pytest.raises(ValidationError):
            services.timeline.reschedule_phase(phase.id, add_months(client.contract_start_date, 12))
        with pytest.raises(ValidationError):
            services.timeline.reschedule_phase(phase.id,
                                               client.contract_start_date - timedelta(days=1))
        with pytest.raises(ValidationError):
            services.timeline.reschedule_phase(phase.id, "next tuesday")

    def test_started_phase_rejected(self, services):
        client, _ = _new_client(services)
        kickoff = _phase(services, client.id, 0)
        with pytest.raises(StateError):
            services.timeline.reschedule_phase(kickoff.id,
                                               kickoff.scheduled_date + timedelta(days=3))

    def test_queued_phase_plan_follows(self, services):
        client, _ = _new_client(services)
        services.timeline.materialize_due_phases(client.id)
        phase = _phase(services, client.id, 1)
        plan = services.repo.plan_for_phase(phase.id)
        assert plan.status == "queued"
        services.timeline.reschedule_phase(phase.id, add_months(client.contract_start_date, 3))
        assert services.repo.plan_for_phase(phase.id).scheduled_month == 4


class TestSkip:
    def test_skip_upcoming_phase(self, services):
        client, _ = _new_client(services)
        phase = _phase(services, client.id, 2)
        assert services.timeline.skip_phase(phase.id).status == "skipped"
        assert services.timeline.skip_phase(phase.id).status == "skipped"

    def test_skip_aborts_queued_plan(self, services):
        client, _ = _new_client(services)
        services.timeline.materialize_due_phases(client.id)
        phase = _phase(services, client.id, 1)
        services.timeline.skip_phase(phase.id)
        assert services.repo.plan_for_phase(phase.id).status == "aborted"

    def test_started_phase_cannot_be_skipped(self, services):
        client, _ = _new_client(services)
        with pytest.raises(StateError):
            services.timeline.skip_phase(_phase(services, client.id, 0).id)


class TestMaterialize:
    def test_due_phases_get_plans_once(self, services):
        client, _ = _new_client(services)
        created = services.timeline.materialize_due_phases(client.id)
        assert [p.plan_type for p in created] == ["priority_actions"]
        assert created[0].status == "queued"
        assert services.timeline.materialize_due_phases(client.id) == []

    def test_explicit_today(self, services):
        client, _ = _new_client(services)
        created = services.timeline.materialize_due_phases(
            client.id, today=add_months(client.contract_start_date, 3))
        assert [p.scheduled_month for p in created] == [1, 2, 3]

    def test_skipped_phase_not_materialized(self, services):
        client, _ = _new_client(services)
        services.timeline.skip_phase(_phase(services, client.id, 1).id)
        assert services.timeline.materialize_due_phases(client.id) == []


class TestRegenerate:
    def test_regenerate_keeps_started_phase(self, services):
        client, before = _new_client(services)
        result = services.timeline.regenerate_timeline(client.id)
        assert (result["kept"], result["removed"], result["created"]) == (1, 12, 12)
        assert len(result["phases"]) == 13
        assert result["phases"][0]["plan_id"] == before[0]["plan_id"]

    def test_regenerate_keeps_skipped_and_drops_queued(self, services):
        client, _ = _new_client(services)
        services.timeline.materialize_due_phases(client.id)
        queued_plan_id = services.repo.plan_for_phase(_phase(services, client.id, 1).id).id
        services.timeline.skip_phase(_phase(services, client.id, 2).id)
        result = services.timeline.regenerate_timeline(client.id)
        assert (result["kept"], result["removed"], result["created"]) == (2, 11, 11)
        assert [p["status"] for p in result["phases"]].count("skipped") == 1
        assert queued_plan_id not in [p.id for p in services.engine.get_client_plans(client.id)]

    @pytest.mark.parametrize("settle", ["pause", "abort", "complete"])
    def test_regenerate_leaves_settled_kickoff_plan_untouched(self, services, tools, run_tasks,
                                                              settle):
        client, before = _new_client(services)
        plan_id = before[0]["plan_id"]
        if settle == "pause":
            services.engine.pause_plan(plan_id)
        elif settle == "abort":
            services.engine.abort_plan(plan_id, reason="client asked to stop")
        else:
            plan = run_tasks(plan_id)
            for task in plan.tasks:
                if task.has_checkpoint:
                    services.checkpoints.manual_checkpoint_evaluation(plan_id, task.task_number,
                                                                      "pass")
        snapshot = services.engine.get_plan(plan_id).to_dict(include_tasks=True)
        expected_status = {"pause": "paused", "abort": "aborted", "complete": "completed"}[settle]
        assert snapshot["status"] == expected_status

        result = services.timeline.regenerate_timeline(client.id)
        assert result["phases"][0]["plan_id"] == plan_id
        assert result["kept"] >= 1
        assert services.engine.get_plan(plan_id).to_dict(include_tasks=True) == snapshot
