"""
Smokey Planning Engine
Service container.

Builds the engine services once per app and stores them in
``app.extensions``:

    app.extensions["smokey"]               → SmokeyServices
    app.extensions["smokey_capabilities"]  → RoleCapabilityResolver

Blueprints and CLI commands fetch them with ``get_services()``; tests
reach the same objects (e.g. to register fake tool handlers on
``get_services().gateway``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask, current_app

from smokey.integrations.tool_gateway import ToolGateway
from smokey.repository import SmokeyRepository
from smokey.services.capability_service import RoleCapabilityResolver
from smokey.services.checkpoint_service import CheckpointEvaluator
from smokey.services.client_service import ClientService
from smokey.services.decision_service import DecisionService
from smokey.services.plan_engine import PlanEngine
from smokey.services.reassessment_service import ReassessmentQueue
from smokey.services.task_executor import TaskExecutor
from smokey.services.timeline_service import TimelineScheduler
from smokey.services.tool_session_service import ToolSessionService

logger = logging.getLogger(__name__)


@dataclass
class SmokeyServices:
    repo: SmokeyRepository
    gateway: ToolGateway
    engine: PlanEngine
    executor: TaskExecutor
    checkpoints: CheckpointEvaluator
    timeline: TimelineScheduler
    reassessment: ReassessmentQueue
    tool_sessions: ToolSessionService
    clients: ClientService
    decisions: DecisionService


def build_services(gateway: ToolGateway, *, timeout: float | None = None,
                   clock=None) -> SmokeyServices:
    repo = SmokeyRepository()
    engine = PlanEngine(repo, clock=clock)
    executor = TaskExecutor(repo, engine, gateway, timeout=timeout)
    checkpoints = CheckpointEvaluator(repo, engine, gateway, timeout=timeout)
    timeline = TimelineScheduler(repo, engine)
    return SmokeyServices(
        repo=repo,
        gateway=gateway,
        engine=engine,
        executor=executor,
        checkpoints=checkpoints,
        timeline=timeline,
        reassessment=ReassessmentQueue(repo, engine, checkpoints),
        tool_sessions=ToolSessionService(repo, engine, executor),
        clients=ClientService(repo, timeline),
        decisions=DecisionService(repo, engine),
    )


def init_app(app: Flask) -> SmokeyServices:
    """Create the gateway, services and capability resolver for ``app``."""
    timeout = app.config.get("TOOL_TIMEOUT_SECONDS", 30)
    gateway = ToolGateway(endpoints=app.config.get("TOOL_ENDPOINTS") or {}, timeout=timeout)
    services = build_services(gateway, timeout=timeout)
    app.extensions["smokey"] = services
    app.extensions["smokey_capabilities"] = RoleCapabilityResolver(
        ttl=app.config.get("CAPABILITY_CACHE_TTL", 300))
    logger.info("Smokey services initialized (tool endpoints: %s, timeout=%ss)",
                sorted(gateway.endpoints) or "none", timeout)
    return services


def get_services() -> SmokeyServices:
    return current_app.extensions["smokey"]
