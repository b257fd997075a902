"""
CTA Flow Validator: permitted hand-offs between tool roles.

Routing table:
    audit    → burnt                       (facts feed prioritization only)
    burnt    → crimson, midnight           (priorities feed execution tools)
    crimson  → client_database             (execution tools never chain forward)
    midnight → client_database
    smokey   → plans, tasks, checkpoints   (the planner never calls tools)

The graph is acyclic by construction.  ``validate`` is a pure function;
the only way past the table is an explicit ``operator_override=True``,
which callers must derive from the ``cta.bypass`` capability.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ToolRole(str, Enum):
    AUDIT = "audit"
    BURNT = "burnt"
    CRIMSON = "crimson"
    MIDNIGHT = "midnight"
    SMOKEY = "smokey"


class CtaTarget(str, Enum):
    AUDIT = "audit"
    BURNT = "burnt"
    CRIMSON = "crimson"
    MIDNIGHT = "midnight"
    PLANS = "plans"
    TASKS = "tasks"
    CHECKPOINTS = "checkpoints"
    CLIENT_DATABASE = "client_database"


CTA_FLOW_RULES: dict[ToolRole, tuple[CtaTarget, ...]] = {
    ToolRole.AUDIT: (CtaTarget.BURNT,),
    ToolRole.BURNT: (CtaTarget.CRIMSON, CtaTarget.MIDNIGHT),
    ToolRole.CRIMSON: (CtaTarget.CLIENT_DATABASE,),
    ToolRole.MIDNIGHT: (CtaTarget.CLIENT_DATABASE,),
    ToolRole.SMOKEY: (CtaTarget.PLANS, CtaTarget.TASKS, CtaTarget.CHECKPOINTS),
}

EXECUTION_TOOLS = frozenset({ToolRole.CRIMSON, ToolRole.MIDNIGHT})


@dataclass(frozen=True)
class CtaDecision:
    allowed: bool
    reason: str | None = None
    overridden: bool = False

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason, "overridden": self.overridden}


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return None


def validate(source, target, *, operator_override: bool = False) -> CtaDecision:
    """Return whether ``source`` may hand off to ``target``.

    Unknown roles or targets are denied.  ``operator_override`` allows any
    known target and is reported back in the decision.
    """
    role = _coerce(ToolRole, source)
    if role is None:
        return CtaDecision(False, f"Unknown source tool: {source}")
    dest = _coerce(CtaTarget, target)
    if dest is None:
        return CtaDecision(False, f"Unknown target: {target}")

    allowed_targets = CTA_FLOW_RULES[role]
    if dest in allowed_targets:
        return CtaDecision(True)
    if operator_override:
        return CtaDecision(True, f"Operator override: {role.value} → {dest.value}", overridden=True)
    return CtaDecision(
        False,
        f"{role.value} cannot route to {dest.value}. "
        f"Allowed targets: {', '.join(t.value for t in allowed_targets)}",
    )


def allowed_targets(source) -> list[str]:
    role = _coerce(ToolRole, source)
    if role is None:
        return []
    return [t.value for t in CTA_FLOW_RULES[role]]


def is_execution_tool(tool) -> bool:
    return _coerce(ToolRole, tool) in EXECUTION_TOOLS


def is_fact_generator(tool) -> bool:
    return _coerce(ToolRole, tool) is ToolRole.AUDIT


def is_prioritization_tool(tool) -> bool:
    return _coerce(ToolRole, tool) is ToolRole.BURNT


def is_planning_tool(tool) -> bool:
    return _coerce(ToolRole, tool) is ToolRole.SMOKEY
