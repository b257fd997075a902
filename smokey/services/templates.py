"""
Plan & Timeline Templates: declarative catalog.

Every plan type is data: an ordered list of ``TaskStep`` tuples plus the
checkpoint rule, failure policy and reassessment cooldown attached to the
type.  Adding a plan type means adding an entry to ``PLAN_CATALOG``; no
engine code changes.

Timeline templates describe the phase cadence per client tier.  Each
phase names the plan type the scheduler instantiates for it.

Usage:
    from smokey.services.templates import get_plan_template, get_timeline_template

    tpl = get_plan_template("trust_signals")
    tpl.steps[0].tool            # Tool.MANUAL
    tpl.policy_for(5).action     # FailureAction.PAUSE
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from smokey.models.client import PlanTier
from smokey.models.plan import Tool
from smokey.services.capability_service import Capability


class FailureAction(str, Enum):
    BRANCH = "branch"
    PAUSE = "pause"


class CheckpointRule(str, Enum):
    TITLE = "title"
    TECHNICAL = "technical"
    IMAGE_ALT = "image_alt"
    TRUST = "trust"
    AI = "ai"
    GENERIC = "generic"


@dataclass(frozen=True)
class FailurePolicy:
    """What the engine does with a plan whose checkpoint fails."""
    action: FailureAction
    branch_to: str | None = None

    def to_dict(self) -> dict:
        return {"action": self.action.value, "branch_to": self.branch_to}


PAUSE = FailurePolicy(FailureAction.PAUSE)


def branch_to(plan_type: str) -> FailurePolicy:
    return FailurePolicy(FailureAction.BRANCH, plan_type)


@dataclass(frozen=True)
class TaskStep:
    """One (tool, required-capability, failure-policy) step of a plan type."""
    tool: Tool
    title: str
    has_checkpoint: bool = False
    failure_policy: FailurePolicy | None = None

    @property
    def required_capability(self) -> Capability:
        if self.tool is Tool.MANUAL:
            return Capability.TASKS_EXECUTE
        return Capability(f"tools.{self.tool.value}")


@dataclass(frozen=True)
class PlanTemplate:
    plan_type: str
    objective: str
    steps: tuple[TaskStep, ...]
    checkpoint_rule: CheckpointRule
    failure_policy: FailurePolicy
    reassess_after_days: int
    parallel_safe_with: frozenset[str] = field(default_factory=frozenset)

    def policy_for(self, task_number: int) -> FailurePolicy:
        """Step-level policy when set, else the plan-type policy."""
        if 1 <= task_number <= len(self.steps):
            step_policy = self.steps[task_number - 1].failure_policy
            if step_policy is not None:
                return step_policy
        return self.failure_policy

    def to_dict(self) -> dict:
        return {
            "plan_type": self.plan_type,
            "objective": self.objective,
            "steps": [
                {
                    "task_number": i,
                    "tool": s.tool.value,
                    "title": s.title,
                    "has_checkpoint": s.has_checkpoint,
                    "required_capability": s.required_capability.value,
                }
                for i, s in enumerate(self.steps, start=1)
            ],
            "checkpoint_rule": self.checkpoint_rule.value,
            "failure_policy": self.failure_policy.to_dict(),
            "reassess_after_days": self.reassess_after_days,
            "parallel_safe_with": sorted(self.parallel_safe_with),
        }


def _steps(*rows) -> tuple[TaskStep, ...]:
    """Build steps from ``(tool, title)`` rows; the last row carries the checkpoint."""
    last = len(rows) - 1
    return tuple(
        TaskStep(tool=tool, title=title, has_checkpoint=(i == last))
        for i, (tool, title) in enumerate(rows)
    )


A, B, C, M, X = Tool.AUDIT, Tool.BURNT, Tool.CRIMSON, Tool.MIDNIGHT, Tool.MANUAL


# ═════════════════════════════════════════════════════════════════════════════
# Plan-type catalog (order = default suggestion priority)
# ═════════════════════════════════════════════════════════════════════════════

_TEMPLATES = (
    PlanTemplate(
        plan_type="technical_foundations",
        objective="Fix canonical, robots, sitemap, and status code issues",
        steps=_steps(
            (A, "Confirm technical gaps list"),
            (X, "Implement fixes (canonical/robots/sitemap/status)"),
            (X, "Validate server responses"),
            (A, "Re-run technical checks"),
            (A, "Regression scan"),
        ),
        checkpoint_rule=CheckpointRule.TECHNICAL,
        failure_policy=PAUSE,
        reassess_after_days=14,
        parallel_safe_with=frozenset({"image_alt_coverage", "trust_signals"}),
    ),
    PlanTemplate(
        plan_type="crawl_index",
        objective="Fix robots.txt, sitemap, and indexing issues",
        steps=_steps(
            (A, "Confirm crawl/index blockers"),
            (X, "Fix robots/sitemap/index directives"),
            (X, "Validate endpoints accessible"),
            (A, "Re-run crawl checks"),
            (A, "Confirm status 200 + crawlability OK"),
        ),
        checkpoint_rule=CheckpointRule.TECHNICAL,
        failure_policy=branch_to("technical_foundations"),
        reassess_after_days=14,
        parallel_safe_with=frozenset({"image_alt_coverage"}),
    ),
    PlanTemplate(
        plan_type="title_search_relevance",
        objective="Optimize title for service + locality intent",
        steps=_steps(
            (C, "Generate 3 title variants (service + locality)"),
            (X, "Select best variant (SERP clarity)"),
            (C, "Generate meta description"),
            (X, "Deploy title + meta"),
            (A, "Validate semantic match + score delta"),
        ),
        checkpoint_rule=CheckpointRule.TITLE,
        failure_policy=branch_to("entity_coverage"),
        reassess_after_days=14,
        parallel_safe_with=frozenset({"image_alt_coverage", "schema_foundation"}),
    ),
    PlanTemplate(
        plan_type="image_alt_coverage",
        objective="Improve alt text coverage for images",
        steps=_steps(
            (A, "Export image list missing alt"),
            (X, "Write descriptive alt text (service/context)"),
            (X, "Apply alts + confirm filenames"),
            (A, "Recheck alt coverage"),
            (A, "Confirm media score delta"),
        ),
        checkpoint_rule=CheckpointRule.IMAGE_ALT,
        failure_policy=PAUSE,
        reassess_after_days=14,
        parallel_safe_with=frozenset({
            "schema_foundation", "ai_modularity", "title_search_relevance",
            "technical_foundations",
        }),
    ),
    PlanTemplate(
        plan_type="schema_foundation",
        objective="Add LocalBusiness and FAQ schema markup",
        steps=_steps(
            (X, "Add LocalBusiness schema (JSON-LD)"),
            (B, "Generate FAQ schema (top 3 intents)"),
            (X, "Deploy schema blocks"),
            (A, "Validate schema detection + errors"),
            (A, "Confirm AI trust signals delta"),
        ),
        checkpoint_rule=CheckpointRule.TRUST,
        failure_policy=branch_to("technical_foundations"),
        reassess_after_days=21,
        parallel_safe_with=frozenset({"image_alt_coverage", "trust_signals"}),
    ),
    PlanTemplate(
        plan_type="ai_modularity",
        objective="Improve AI extraction friendliness and structured answer readiness",
        steps=_steps(
            (M, "Identify long blocks + weak headings"),
            (M, "Convert into modular answer blocks"),
            (M, "Add implicit Q/A formatting + section breaks"),
            (A, "Re-run AI scoring"),
            (A, "Confirm improvements without regressions"),
        ),
        checkpoint_rule=CheckpointRule.AI,
        failure_policy=branch_to("structure_ux"),
        reassess_after_days=21,
        parallel_safe_with=frozenset({"image_alt_coverage"}),
    ),
    PlanTemplate(
        plan_type="entity_coverage",
        objective="Add related services, tools, and locations for entity clarity",
        steps=_steps(
            (B, "Generate entity list (services, tools, locations)"),
            (M, "Insert entities naturally into sections"),
            (M, "Add service-area clarity blocks"),
            (A, "Recheck entity density and clarity"),
            (A, "Validate AI semantic clarity remains strong"),
        ),
        checkpoint_rule=CheckpointRule.AI,
        failure_policy=branch_to("ai_modularity"),
        reassess_after_days=21,
        parallel_safe_with=frozenset({"trust_signals", "image_alt_coverage"}),
    ),
    PlanTemplate(
        plan_type="trust_signals",
        objective="Add team bios, citations, internal links, and testimonials",
        steps=_steps(
            (X, "Add 2-3 internal trust links (About, Licenses, Contact)"),
            (X, "Add visible trust markers (years, certifications, awards)"),
            (X, "Add testimonials section or surface existing reviews"),
            (A, "Recheck AI trust signals score"),
            (A, "Confirm no layout regression warnings"),
        ),
        checkpoint_rule=CheckpointRule.TRUST,
        failure_policy=PAUSE,
        reassess_after_days=21,
        parallel_safe_with=frozenset({"schema_foundation", "image_alt_coverage"}),
    ),
    PlanTemplate(
        plan_type="structure_ux",
        objective="Improve hero, navigation, services grid, and footer structure",
        steps=_steps(
            (X, "Implement hero clarity (service + geo + CTA)"),
            (X, "Improve navigation labels (service clarity)"),
            (X, "Services grid with short descriptions + CTA"),
            (X, "Footer expansion (contact, minisitemap)"),
            (A, "Regression + content clarity check"),
        ),
        checkpoint_rule=CheckpointRule.GENERIC,
        failure_policy=PAUSE,
        reassess_after_days=21,
    ),
    # ── Timeline phase plan types ───────────────────────────────────────────
    PlanTemplate(
        plan_type="site_review",
        objective="Baseline or periodic site audit with structure analysis",
        steps=_steps(
            (A, "Run full site audit"),
            (M, "Analyze page structure"),
            (B, "Prioritize findings into action items"),
            (A, "Confirm score baseline"),
        ),
        checkpoint_rule=CheckpointRule.GENERIC,
        failure_policy=PAUSE,
        reassess_after_days=30,
    ),
    PlanTemplate(
        plan_type="priority_actions",
        objective="Prioritize and execute the top open action items",
        steps=_steps(
            (B, "Prioritize open action items"),
            (C, "Draft content for top actions"),
            (X, "Deploy approved changes"),
            (A, "Measure impact of deployed actions"),
        ),
        checkpoint_rule=CheckpointRule.GENERIC,
        failure_policy=PAUSE,
        reassess_after_days=30,
        parallel_safe_with=frozenset({"image_alt_coverage"}),
    ),
    PlanTemplate(
        plan_type="content_optimization",
        objective="Optimize page content and messaging",
        steps=_steps(
            (A, "Baseline content scores"),
            (C, "Rewrite priority sections"),
            (A, "Verify content score delta"),
        ),
        checkpoint_rule=CheckpointRule.GENERIC,
        failure_policy=branch_to("ai_modularity"),
        reassess_after_days=21,
        parallel_safe_with=frozenset({"image_alt_coverage"}),
    ),
)

PLAN_CATALOG: dict[str, PlanTemplate] = {t.plan_type: t for t in _TEMPLATES}

# Catalog types offered by the suggestion heuristic (timeline-only types excluded)
SUGGESTABLE_PLAN_TYPES = tuple(
    t.plan_type for t in _TEMPLATES
    if t.plan_type not in {"site_review", "priority_actions", "content_optimization"}
)


def get_plan_template(plan_type: str) -> PlanTemplate | None:
    return PLAN_CATALOG.get(plan_type)


def is_parallel_safe(type_a: str, type_b: str) -> bool:
    """True when either template lists the other as safe to run alongside."""
    a, b = PLAN_CATALOG.get(type_a), PLAN_CATALOG.get(type_b)
    if a is None or b is None:
        return False
    return type_b in a.parallel_safe_with or type_a in b.parallel_safe_with


# ═════════════════════════════════════════════════════════════════════════════
# Timeline templates
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ToolConfig:
    tool: Tool
    required: bool = True
    blocking: bool = True

    def to_dict(self) -> dict:
        return {"tool": self.tool.value, "required": self.required, "blocking": self.blocking}


@dataclass(frozen=True)
class PhaseTemplate:
    phase_name: str
    month_offset: int
    plan_type: str
    tool_sequence: tuple[ToolConfig, ...]
    description: str = ""

    @property
    def scheduled_month(self) -> int:
        """Contract month the phase falls in; the kickoff phase belongs to month 1."""
        return max(1, self.month_offset)


def _cadence(kinds: dict[str, tuple[str, str, tuple[ToolConfig, ...], str]],
             order: tuple[str, ...]) -> tuple[PhaseTemplate, ...]:
    """Expand a repeating monthly cadence into 13 phases (kickoff + months 1-12)."""
    phases = [PhaseTemplate("Initial Audit", 0, "site_review", kinds["kickoff"][2],
                            "Baseline SEO audit and structure analysis")]
    for month in range(1, 13):
        kind = order[(month - 1) % len(order)]
        label, plan_type, sequence, description = kinds[kind]
        if month == 6:
            label, description = "Mid-Year Review", "Comprehensive mid-year assessment"
        elif month == 12:
            label, description = "Annual Review", "Year-end review and renewal planning"
        phases.append(PhaseTemplate(f"Month {month} - {label}", month, plan_type,
                                    sequence, description))
    return tuple(phases)


_ORDER = ("actions", "content", "review")

TIMELINE_TEMPLATES: dict[PlanTier, tuple[PhaseTemplate, ...]] = {
    PlanTier.STARTER: _cadence({
        "kickoff": ("", "", (ToolConfig(A), ToolConfig(M, False, False)), ""),
        "actions": ("Priority Actions", "priority_actions", (ToolConfig(B),),
                    "Prioritize and execute top action items"),
        "content": ("Content Optimization", "content_optimization", (ToolConfig(C),),
                    "Optimize page content and messaging"),
        "review": ("Review & Adjust", "site_review",
                   (ToolConfig(A), ToolConfig(M, False, False)),
                   "Quarterly review and progress assessment"),
    }, _ORDER),
    PlanTier.GROWTH: _cadence({
        "kickoff": ("", "", (ToolConfig(A), ToolConfig(M)), ""),
        "actions": ("Priority Actions", "priority_actions",
                    (ToolConfig(B), ToolConfig(C, False, False)),
                    "Prioritize and execute top action items"),
        "content": ("Content & Structure", "content_optimization",
                    (ToolConfig(C), ToolConfig(M, False, False)),
                    "Content improvements with structure analysis"),
        "review": ("Review & Adjust", "site_review", (ToolConfig(A), ToolConfig(M)),
                   "Quarterly review and progress assessment"),
    }, _ORDER),
    PlanTier.ENTERPRISE: _cadence({
        "kickoff": ("", "", (ToolConfig(A), ToolConfig(M), ToolConfig(B)), ""),
        "actions": ("Full Optimization", "priority_actions",
                    (ToolConfig(B), ToolConfig(C), ToolConfig(M, False, False)),
                    "Full optimization pass across content and structure"),
        "content": ("Content & Structure", "content_optimization",
                    (ToolConfig(C), ToolConfig(M)),
                    "Content improvements with structure analysis"),
        "review": ("Review & Adjust", "site_review",
                   (ToolConfig(A), ToolConfig(M), ToolConfig(B)),
                   "Quarterly review and progress assessment"),
    }, _ORDER),
}


def get_timeline_template(tier: PlanTier) -> tuple[PhaseTemplate, ...]:
    return TIMELINE_TEMPLATES.get(tier, TIMELINE_TEMPLATES[PlanTier.STARTER])
