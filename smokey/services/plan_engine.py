"""
Plan Engine: owner of the Plan / Task state machine.

Responsibilities:
    - plan creation from the template catalog (tasks materialized up front)
    - dependency gating and scheduling conflicts (month, WIP limit, parallel safety)
    - pause / resume / abort / branch transitions
    - next-task selection and plan completion
    - FIFO activation of queued plans when capacity frees up
    - read projections and the plan-type suggestion heuristic

State machine:
    queued → active → {paused ⇄ active} → {completed | aborted}

Every mutating method validates before it writes, writes an audit row,
and commits once (callers composing operations pass ``commit=False``).
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone

from smokey.core.exceptions import NotFoundError, StateError, ValidationError
from smokey.models.audit import current_actor, write_audit
from smokey.models.client import Client
from smokey.models.plan import (
    CheckpointResult,
    Plan,
    PlanStatus,
    Task,
    TaskStatus,
    validate_plan_transition,
    validate_task_transition,
)
from smokey.models.timeline import PhaseStatus
from smokey.repository import SmokeyRepository
from smokey.services.audit_signals import latest_signals, number
from smokey.services.templates import (
    PLAN_CATALOG,
    SUGGESTABLE_PLAN_TYPES,
    get_plan_template,
    is_parallel_safe,
)

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (PlanStatus.QUEUED, PlanStatus.ACTIVE, PlanStatus.PAUSED)


class PlanEngine:
    """Plan / Task lifecycle operations over an injected repository."""

    def __init__(self, repo: SmokeyRepository, clock=None) -> None:
        self.repo = repo
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # ═════════════════════════════════════════════════════════════════════
    # Creation
    # ═════════════════════════════════════════════════════════════════════

    def create_plan(
        self,
        client_id: int,
        plan_type: str,
        scheduled_month: int | None = None,
        depends_on_plan_id: int | None = None,
        source_decision_id: int | None = None,
        operator_override: bool = False,
        *,
        blocking: bool = True,
        timeline_phase_id: int | None = None,
        commit: bool = True,
    ) -> Plan:
        """Create a plan of ``plan_type`` with its full task list.

        The plan starts ``active`` when its dependency gate is open and
        nothing in the schedule conflicts; otherwise it is ``queued``.

        Raises:
            ValidationError: unknown type, month outside the contract,
                predecessor or decision of another client, unknown
                decision, or no decision / override.
            NotFoundError: client or predecessor missing.
            StateError: the client's contract has ended.
        """
        template = get_plan_template(plan_type)
        if template is None:
            raise ValidationError(
                f"Unknown plan type '{plan_type}'",
                details={"plan_type": plan_type, "allowed": sorted(PLAN_CATALOG)},
            )
        if not source_decision_id and not operator_override:
            raise ValidationError(
                "Plan creation requires a decisionId or an explicit operator override",
                details={"decisionId": "required"},
            )

        client = self.repo.get_client(client_id)
        self.require_active_contract(client)
        if source_decision_id is not None:
            try:
                decision = self.repo.get_decision(source_decision_id)
            except NotFoundError:
                raise ValidationError(f"Decision {source_decision_id} does not exist",
                                      details={"decisionId": source_decision_id})
            if decision.client_id != client.id:
                raise ValidationError(
                    f"Decision {source_decision_id} belongs to another client",
                    details={"decisionId": source_decision_id},
                )
        if scheduled_month is not None and not 1 <= scheduled_month <= client.contract_length_months:
            raise ValidationError(
                f"scheduledMonth must be between 1 and {client.contract_length_months}",
                details={"scheduledMonth": scheduled_month},
            )
        if depends_on_plan_id is not None:
            predecessor = self.repo.get_plan(depends_on_plan_id)
            if predecessor.client_id != client.id:
                raise ValidationError(
                    f"Plan {depends_on_plan_id} belongs to another client",
                    details={"dependsOnPlanId": depends_on_plan_id},
                )

        plan = Plan(
            client_id=client.id,
            plan_type=template.plan_type,
            objective=template.objective,
            status=PlanStatus.QUEUED.value,
            scheduled_month=scheduled_month,
            depends_on_plan_id=depends_on_plan_id,
            blocking=blocking,
            source_decision_id=source_decision_id,
            timeline_phase_id=timeline_phase_id,
            created_by=current_actor(),
        )
        for number_, step in enumerate(template.steps, start=1):
            plan.tasks.append(Task(
                task_number=number_,
                title=step.title,
                tool=step.tool.value,
                has_checkpoint=step.has_checkpoint,
                status=TaskStatus.PENDING.value,
            ))
        self.repo.add(plan)
        self.repo.flush()

        blocker = self._activation_blocker(plan, client)
        if blocker is None:
            self._activate(plan)
        write_audit(
            entity_type="plan", entity_id=plan.id, action="plan.created",
            client_id=client.id,
            diff={
                "plan_type": plan.plan_type,
                "status": plan.status,
                "scheduled_month": scheduled_month,
                "depends_on_plan_id": depends_on_plan_id,
                "source_decision_id": source_decision_id,
                "operator_override": bool(operator_override and not source_decision_id),
                "queued_reason": blocker,
            },
        )
        logger.info("Plan created: id=%s client=%s type=%s status=%s%s",
                    plan.id, client.id, plan.plan_type, plan.status,
                    f" ({blocker})" if blocker else "")
        if commit:
            self.repo.commit()
        return plan

    # ═════════════════════════════════════════════════════════════════════
    # Gating
    # ═════════════════════════════════════════════════════════════════════

    def require_active_contract(self, client: Client) -> None:
        """No new plans or task runs once the contract has ended."""
        if client.contract_expired(self.now().date()):
            raise StateError(
                f"Contract for client {client.id} ended on {client.last_contract_day.isoformat()}",
                details={"client_id": client.id,
                         "contract_end_date": client.contract_end_date.isoformat()},
            )

    def dependency_open(self, plan: Plan) -> bool:
        """False while a blocking predecessor has not completed."""
        if plan.depends_on_plan_id is None:
            return True
        predecessor = self.repo.session.get(Plan, plan.depends_on_plan_id)
        if predecessor is None:
            return True
        return predecessor.status == PlanStatus.COMPLETED.value or not predecessor.blocking

    def _activation_blocker(self, plan: Plan, client: Client) -> str | None:
        """Reason ``plan`` cannot become active right now, or None."""
        if not self.dependency_open(plan):
            return f"waiting on plan {plan.depends_on_plan_id}"
        current_month = client.contract_month(self.now().date())
        if plan.scheduled_month is not None and plan.scheduled_month > current_month:
            return f"scheduled for month {plan.scheduled_month} (current month {current_month})"
        active = [p for p in self.repo.list_plans(client.id, statuses=[PlanStatus.ACTIVE])
                  if p.id != plan.id]
        if len(active) >= client.wip_limit:
            return f"{client.plan_tier} tier allows {client.wip_limit} active plan(s)"
        for other in active:
            if not is_parallel_safe(other.plan_type, plan.plan_type):
                return f"not parallel-safe with active plan {other.id} ({other.plan_type})"
        return None

    def _transition(self, plan: Plan, new_status: PlanStatus) -> str:
        old = plan.status
        if not validate_plan_transition(old, new_status.value):
            raise StateError(
                f"Invalid transition for plan {plan.id}: {old} → {new_status.value}",
                details={"plan_id": plan.id, "status": old},
            )
        plan.status = new_status.value
        return old

    def _activate(self, plan: Plan) -> None:
        self._transition(plan, PlanStatus.ACTIVE)
        if plan.started_at is None:
            plan.started_at = self.now()
        phase = plan.phase
        if phase is not None and phase.status in (PhaseStatus.UPCOMING.value,
                                                  PhaseStatus.RESCHEDULED.value):
            phase.status = PhaseStatus.IN_PROGRESS.value

    # ═════════════════════════════════════════════════════════════════════
    # Transitions
    # ═════════════════════════════════════════════════════════════════════

    def pause_plan(self, plan_id: int, *, reason: str | None = None, commit: bool = True) -> Plan:
        """``active → paused``. In-flight task executions are not cancelled."""
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status != PlanStatus.ACTIVE.value:
            raise StateError(f"Only active plans can be paused (plan {plan.id} is {plan.status})",
                             details={"plan_id": plan.id, "status": plan.status})
        self._transition(plan, PlanStatus.PAUSED)
        write_audit(entity_type="plan", entity_id=plan.id, action="plan.paused",
                    client_id=plan.client_id, diff={"reason": reason})
        logger.info("Plan paused: id=%s reason=%s", plan.id, reason)
        if commit:
            self.repo.commit()
        return plan

    def resume_plan(self, plan_id: int, *, commit: bool = True) -> Plan:
        """``paused → active``, provided the dependency gate is open."""
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status != PlanStatus.PAUSED.value:
            raise StateError(f"Only paused plans can be resumed (plan {plan.id} is {plan.status})",
                             details={"plan_id": plan.id, "status": plan.status})
        if not self.dependency_open(plan):
            raise StateError(
                f"Plan {plan.id} is blocked by plan {plan.depends_on_plan_id}",
                details={"plan_id": plan.id, "depends_on_plan_id": plan.depends_on_plan_id},
            )
        self._transition(plan, PlanStatus.ACTIVE)
        write_audit(entity_type="plan", entity_id=plan.id, action="plan.resumed",
                    client_id=plan.client_id)
        logger.info("Plan resumed: id=%s", plan.id)
        if commit:
            self.repo.commit()
        return plan

    def abort_plan(self, plan_id: int, *, reason: str | None = None) -> Plan:
        """Operator abort. Active plans pass through ``paused`` on the way."""
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status == PlanStatus.ACTIVE.value:
            self._transition(plan, PlanStatus.PAUSED)
        old = self._transition(plan, PlanStatus.ABORTED)
        plan.completed_at = self.now()
        write_audit(entity_type="plan", entity_id=plan.id, action="plan.aborted",
                    client_id=plan.client_id, diff={"from": old, "reason": reason})
        logger.info("Plan aborted: id=%s reason=%s", plan.id, reason)
        self.activate_queued_plans(plan.client_id, commit=False)
        self.repo.commit()
        return plan

    def branch_plan(self, plan_id: int, new_plan_type: str, reason: str) -> tuple[Plan, Plan]:
        """Pause ``plan_id`` and create one remediation plan depending on it.

        The original stays resumable (``paused``, never ``aborted``).  Its
        ``blocking`` flag is cleared so the remediation can start while the
        original waits.

        Returns:
            (original, branch)
        """
        if get_plan_template(new_plan_type) is None:
            raise ValidationError(
                f"Unknown plan type '{new_plan_type}'",
                details={"newPlanType": new_plan_type, "allowed": sorted(PLAN_CATALOG)},
            )
        if not (reason or "").strip():
            raise ValidationError("reason is required to branch a plan",
                                  details={"reason": "required"})

        original = self.repo.get_plan(plan_id, for_update=True)
        if original.status not in (PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value):
            raise StateError(
                f"Only active or paused plans can branch (plan {original.id} is {original.status})",
                details={"plan_id": original.id, "status": original.status},
            )
        if original.status == PlanStatus.ACTIVE.value:
            self._transition(original, PlanStatus.PAUSED)
        original.blocking = False

        branch = self.create_plan(
            original.client_id,
            new_plan_type,
            scheduled_month=original.scheduled_month,
            depends_on_plan_id=original.id,
            source_decision_id=original.source_decision_id,
            operator_override=True,
            commit=False,
        )
        branch.branch_reason = reason
        write_audit(entity_type="plan", entity_id=original.id, action="plan.branched",
                    client_id=original.client_id,
                    diff={"branch_plan_id": branch.id, "new_plan_type": new_plan_type,
                          "reason": reason})
        logger.info("Plan branched: id=%s → %s (%s) reason=%s",
                    original.id, branch.id, new_plan_type, reason)
        self.repo.commit()
        return original, branch

    @staticmethod
    def _finished(task: Task) -> bool:
        if task.status != TaskStatus.DONE.value:
            return False
        if task.has_checkpoint:
            return task.checkpoint is not None and task.checkpoint.result == CheckpointResult.PASS.value
        return True

    def advance_plan(self, plan_id: int, *, commit: bool = True) -> Plan:
        """Complete an active plan once every task is done and every checkpoint passed.

        No-op otherwise, so any caller may invoke it after a task settles.
        """
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status != PlanStatus.ACTIVE.value:
            return plan
        if not all(self._finished(t) for t in plan.tasks):
            return plan

        template = get_plan_template(plan.plan_type)
        self._transition(plan, PlanStatus.COMPLETED)
        now = self.now()
        plan.completed_at = now
        if template is not None:
            plan.reassess_after = now + timedelta(days=template.reassess_after_days)
        if plan.phase is not None and plan.phase.status != PhaseStatus.SKIPPED.value:
            plan.phase.status = PhaseStatus.COMPLETED.value
        write_audit(entity_type="plan", entity_id=plan.id, action="plan.completed",
                    client_id=plan.client_id,
                    diff={"reassess_after": plan.reassess_after})
        logger.info("Plan completed: id=%s reassess_after=%s", plan.id, plan.reassess_after)

        self.activate_queued_plans(plan.client_id, commit=False)
        if commit:
            self.repo.commit()
        return plan

    def activate_queued_plans(self, client_id: int, *, commit: bool = True) -> list[Plan]:
        """Activate queued plans, oldest first, while gates and capacity allow."""
        client = self.repo.get_client(client_id)
        activated = []
        for plan in self.repo.queued_plans_fifo(client_id):
            if self._activation_blocker(plan, client) is not None:
                continue
            self._activate(plan)
            write_audit(entity_type="plan", entity_id=plan.id, action="plan.activated",
                        client_id=client_id)
            activated.append(plan)
        if activated:
            logger.info("Activated %d queued plan(s) for client %s: %s",
                        len(activated), client_id, [p.id for p in activated])
        if commit:
            self.repo.commit()
        return activated

    def complete_finished_plans(self, client_id: int) -> list[Plan]:
        """Complete active plans whose tasks all settled while they were paused.

        Resuming never completes a plan by itself; this sweep (or the next
        task/checkpoint event on the plan) does.
        """
        self.repo.get_client(client_id)
        completed = []
        for plan in self.repo.list_plans(client_id, statuses=[PlanStatus.ACTIVE]):
            if self.advance_plan(plan.id, commit=False).status == PlanStatus.COMPLETED.value:
                completed.append(plan)
        self.repo.commit()
        return completed

    # ═════════════════════════════════════════════════════════════════════
    # Tasks
    # ═════════════════════════════════════════════════════════════════════

    def get_next_task(self, plan_id: int) -> Task | None:
        """Lowest-numbered pending task, or None when none remain. Read-only."""
        self.repo.get_plan(plan_id)
        return self.repo.next_pending_task(plan_id)

    def complete_task_manually(self, plan_id: int, task_number: int, note: str | None = None) -> Task:
        """Operator marks a task done (manual steps, or overriding a failed tool run)."""
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status != PlanStatus.ACTIVE.value:
            raise StateError(f"Plan {plan.id} is {plan.status}; tasks can only be completed on active plans",
                             details={"plan_id": plan.id, "status": plan.status})
        task = self.repo.get_task(plan_id, task_number)
        if not validate_task_transition(task.status, TaskStatus.DONE.value):
            raise StateError(f"Task {task_number} is already {task.status}",
                             details={"task_number": task_number, "status": task.status})
        if task.status == TaskStatus.PENDING.value:
            nxt = self.repo.next_pending_task(plan_id)
            if nxt is not None and nxt.id != task.id:
                raise StateError(f"Task {nxt.task_number} must be completed before task {task_number}",
                                 details={"next_task_number": nxt.task_number})

        actor = current_actor()
        now = self.now()
        task.status = TaskStatus.DONE.value
        task.started_at = task.started_at or now
        task.completed_at = now
        task.executed_by = actor
        task.error_message = None
        task.tool_output = {
            "status": "completed",
            "manual": True,
            "note": note or "",
            "completed_by": actor,
            "completed_at": now.isoformat(),
        }
        write_audit(entity_type="task", entity_id=task.id, action="task.completed",
                    client_id=plan.client_id,
                    diff={"plan_id": plan.id, "task_number": task_number, "manual": True})
        if not task.has_checkpoint:
            self.advance_plan(plan.id, commit=False)
        self.repo.commit()
        return task

    def retry_task(self, plan_id: int, task_number: int) -> Task:
        """``failed → pending`` so the task can be executed again."""
        plan = self.repo.get_plan(plan_id, for_update=True)
        if plan.status in (PlanStatus.COMPLETED.value, PlanStatus.ABORTED.value):
            raise StateError(f"Plan {plan.id} is {plan.status}",
                             details={"plan_id": plan.id, "status": plan.status})
        task = self.repo.get_task(plan_id, task_number)
        if not validate_task_transition(task.status, TaskStatus.PENDING.value):
            raise StateError(f"Only failed tasks can be retried (task {task_number} is {task.status})",
                             details={"task_number": task_number, "status": task.status})
        previous_error = task.error_message
        task.status = TaskStatus.PENDING.value
        task.started_at = None
        task.completed_at = None
        task.tool_output = None
        task.error_message = None
        # delete-orphan cascade removes the stale verdict on flush
        task.checkpoint = None
        write_audit(entity_type="task", entity_id=task.id, action="task.retried",
                    client_id=plan.client_id,
                    diff={"plan_id": plan.id, "task_number": task_number,
                          "previous_error": previous_error})
        self.repo.commit()
        return task

    # ═════════════════════════════════════════════════════════════════════
    # Read projections
    # ═════════════════════════════════════════════════════════════════════

    def get_active_plans(self, client_id: int) -> list[Plan]:
        self.repo.get_client(client_id)
        return self.repo.list_plans(client_id, statuses=[PlanStatus.ACTIVE])

    def get_queued_plans(self, client_id: int) -> list[Plan]:
        self.repo.get_client(client_id)
        return self.repo.list_plans(client_id, statuses=[PlanStatus.QUEUED])

    def get_plans_by_month(self, client_id: int, month: int) -> list[Plan]:
        self.repo.get_client(client_id)
        return self.repo.list_plans(client_id, month=month)

    def get_client_plans(self, client_id: int) -> list[Plan]:
        self.repo.get_client(client_id)
        return self.repo.list_plans(client_id)

    def get_plan(self, plan_id: int) -> Plan:
        return self.repo.get_plan(plan_id)

    def suggest_plan(self, client_id: int) -> dict | None:
        """Recommend the next plan type for a client without creating anything.

        A type is eligible when the client has no open (queued, active,
        paused) plan of that type and none completed in the current
        contract period.  Low scores in the latest audit outputs move the
        matching remediation types to the front of the catalog order.
        """
        client = self.repo.get_client(client_id)
        open_types = {p.plan_type for p in self.repo.list_plans(client_id, statuses=_OPEN_STATUSES)}
        period_start = datetime.combine(client.contract_start_date, time.min, tzinfo=timezone.utc)
        completed_types = {p.plan_type for p in self.repo.completed_plans_since(client_id, period_start)}

        signals = latest_signals(self.repo.latest_audit_outputs(client_id))
        promoted: list[tuple[str, str]] = []
        title = number(signals, "title_score")
        if title is not None and title < 70:
            promoted.append(("title_search_relevance", f"title score {title:g} < 70"))
        ai = number(signals, "ai_score")
        if ai is not None and ai < 60:
            promoted.append(("ai_modularity", f"AI score {ai:g} < 60"))
        technical = number(signals, "technical_score")
        if technical is not None and technical < 70:
            promoted.append(("technical_foundations", f"technical score {technical:g} < 70"))
        coverage = number(signals, "alt_text_coverage")
        if coverage is not None and coverage < 0.8:
            promoted.append(("image_alt_coverage", f"alt text coverage {coverage:g} < 0.8"))

        seen = set()
        candidates = []
        for plan_type, reason in promoted + [(t, "next in catalog order") for t in SUGGESTABLE_PLAN_TYPES]:
            if plan_type not in seen:
                seen.add(plan_type)
                candidates.append((plan_type, reason))

        for plan_type, reason in candidates:
            if plan_type in open_types or plan_type in completed_types:
                continue
            template = PLAN_CATALOG[plan_type]
            return {
                "plan_type": plan_type,
                "objective": template.objective,
                "reason": reason,
                "task_count": len(template.steps),
            }
        return None

    def require_plan_for_client(self, plan_id: int, client_id: int) -> Plan:
        plan = self.repo.get_plan(plan_id)
        if plan.client_id != client_id:
            raise NotFoundError("Plan", plan_id)
        return plan
