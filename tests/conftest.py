"""
Fixtures shared by the engine tests.

One app and one in-memory schema per run; every test gets a clean set of
tables (``session``, autouse). ``services`` exposes the container bound to
the app, and ``tools`` installs scripted tool handlers on its gateway.
``make_client`` inserts a client row without instantiating a timeline;
``make_decision`` inserts a decision row for a client.
"""

from datetime import datetime, timezone

import pytest

from smokey import create_app
from smokey.models import db as _db
from smokey.models.client import Client
from smokey.models.decision import Decision
from smokey.services.capability_service import get_resolver
from smokey.services.container import get_services
from smokey.utils.helpers import add_months


def utc_today():
    return datetime.now(timezone.utc).date()


def contract_start(months_elapsed=1):
    """First day of the month ``months_elapsed`` months ago (current month = months_elapsed + 1)."""
    return add_months(utc_today().replace(day=1), -months_elapsed)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db, monkeypatch):
    """Per-test: open app context, rollback after test, recreate tables."""
    monkeypatch.delenv("API_AUTH_ENABLED", raising=False)
    monkeypatch.delenv("API_KEYS", raising=False)
    with app.app_context():
        get_services().gateway.clear_handlers()
        get_resolver().clear()
        yield
        get_services().gateway.clear_handlers()
        get_resolver().clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def services():
    return get_services()


@pytest.fixture()
def gateway(services):
    return services.gateway


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_client():
    """Create a Client row directly (no timeline, no kickoff plan)."""
    def _make(tier="starter", months_elapsed=1, length=12, name="Acme Plumbing"):
        c = Client(
            name=name,
            canonical_url="https://acme.example",
            contract_start_date=contract_start(months_elapsed),
            contract_length_months=length,
            plan_tier=tier,
        )
        _db.session.add(c)
        _db.session.commit()
        return c
    return _make


@pytest.fixture()
def make_decision():
    """Create a Decision row directly (no audit event)."""
    def _make(client_id, decision_type="create_plan", confidence=0.7,
              summary="Create plan based on analysis", **kw):
        d = Decision(client_id=client_id, decision_type=decision_type,
                     confidence=confidence, summary=summary, **kw)
        _db.session.add(d)
        _db.session.commit()
        return d
    return _make


class FakeTools:
    """Records payloads per tool and returns canned outputs."""

    def __init__(self, gateway):
        self.gateway = gateway
        self.calls = []
        self.outputs = {}

    def returns(self, tool, output):
        self.outputs[tool] = output

        def handler(payload, _tool=tool):
            self.calls.append((_tool, payload))
            result = self.outputs[_tool]
            if isinstance(result, Exception):
                raise result
            return result

        self.gateway.register_handler(tool, handler)

    def payloads(self, tool):
        return [p for t, p in self.calls if t == tool]


@pytest.fixture()
def tools(gateway):
    fake = FakeTools(gateway)
    for name in ("audit", "burnt", "crimson", "midnight"):
        fake.returns(name, {"status": "completed", "tool": name})
    return fake


@pytest.fixture()
def run_tasks(services):
    """Drive a plan's tasks in order: tools through the executor, manual steps marked done."""
    def _run(plan_id, upto=None):
        plan = services.engine.get_plan(plan_id)
        steps = [(t.task_number, t.tool) for t in plan.tasks]
        for number, tool in steps:
            if upto is not None and number > upto:
                break
            if tool == "manual":
                services.engine.complete_task_manually(plan_id, number)
            else:
                services.executor.execute_task(plan_id, number)
        return services.engine.get_plan(plan_id)
    return _run
