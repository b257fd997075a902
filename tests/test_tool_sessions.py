"""
Smokey Planning Engine
Tests: Tool Sessions.

Covers:
    - create → launch → complete / fail lifecycle
    - routing descriptor per tool
    - guards (tool mismatch, ordering, double launch, non-object results)
"""

import pytest

from smokey.core.exceptions import NotFoundError, StateError, ValidationError
from smokey.services.tool_session_service import tool_routing


def _plan(services, client_id):
    decision = services.decisions.create_decision(client_id, "create_plan")
    return services.engine.create_plan(client_id, "technical_foundations",
                                       source_decision_id=decision.id)


class TestLifecycle:
    def test_create_uses_task_payload(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        task = services.repo.get_task(plan.id, 1)
        ts = services.tool_sessions.create_session(task.id)
        assert ts.status == "created"
        assert ts.tool == "audit"
        assert ts.payload["url"] == "https://acme.example"
        assert services.repo.get_task(plan.id, 1).status == "pending"

    def test_launch_claims_task(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        launched = services.tool_sessions.launch_session(ts.id)
        assert launched["session"]["status"] == "launched"
        routing = launched["routing"]
        assert routing["path"] == "/admin/audit"
        assert routing["query"] == {"session": str(ts.id)}
        assert routing["state"]["from_smokey"] is True
        assert routing["state"]["url"] == "https://acme.example"
        assert services.repo.get_task(plan.id, 1).status == "in_progress"

    def test_complete_stores_results(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        services.tool_sessions.launch_session(ts.id)
        session_id = ts.id
        result = services.tool_sessions.complete_session(session_id, {"technical_score": 71})
        assert result["task"]["status"] == "done"
        assert result["task"]["tool_output"] == {"technical_score": 71}
        with pytest.raises(NotFoundError):
            services.repo.get_tool_session(session_id)

    def test_fail_marks_task_failed(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        services.tool_sessions.launch_session(ts.id)
        result = services.tool_sessions.fail_session(ts.id, "operator closed the tab")
        assert result["task"]["status"] == "failed"
        assert result["task"]["error_message"] == "operator closed the tab"
        assert services.engine.retry_task(plan.id, 1).status == "pending"

    def test_manual_step_through_session(self, services, make_client, tools):
        c = make_client()
        plan = _plan(services, c.id)
        services.executor.execute_task(plan.id, 1)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 2).id)
        launched = services.tool_sessions.launch_session(ts.id)
        assert launched["routing"]["path"] == "/admin/smokey"
        services.tool_sessions.complete_session(ts.id, {"note": "canonical tags fixed"})
        assert services.repo.get_task(plan.id, 2).status == "done"


class TestGuards:
    def test_tool_mismatch(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        with pytest.raises(ValidationError):
            services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id, tool="crimson")

    def test_payload_must_be_object(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        with pytest.raises(ValidationError):
            services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id,
                                                  payload=["not", "an", "object"])

    def test_out_of_order_launch(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 4).id)
        with pytest.raises(StateError) as exc:
            services.tool_sessions.launch_session(ts.id)
        assert exc.value.details["next_task_number"] == 1

    def test_launch_twice(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        services.tool_sessions.launch_session(ts.id)
        with pytest.raises(StateError):
            services.tool_sessions.launch_session(ts.id)

    def test_complete_before_launch(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        with pytest.raises(StateError):
            services.tool_sessions.complete_session(ts.id, {})

    def test_results_must_be_object(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        ts = services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)
        services.tool_sessions.launch_session(ts.id)
        with pytest.raises(ValidationError):
            services.tool_sessions.complete_session(ts.id, "done")

    def test_paused_plan(self, services, make_client):
        c = make_client()
        plan = _plan(services, c.id)
        services.engine.pause_plan(plan.id)
        with pytest.raises(StateError):
            services.tool_sessions.create_session(services.repo.get_task(plan.id, 1).id)


class TestRouting:
    def test_crimson_defaults(self):
        r = tool_routing("crimson", {"url": "https://x.example"}, 3)
        assert r["path"] == "/admin/crimson"
        assert r["state"]["goal"] == "Optimize content for SEO and conversion"

    def test_manual_instructions(self):
        r = tool_routing("manual", {"instructions": "Swap hero image"}, 7)
        assert r == {
            "path": "/admin/smokey",
            "query": {"session": "7"},
            "state": {"from_smokey": True, "session_id": 7,
                      "manual_instructions": "Swap hero image"},
        }

    def test_unknown_tool(self):
        with pytest.raises(ValidationError):
            tool_routing("hammer", {}, 1)
