"""
TransitionEngine -- records approval actions and advances workflow states.

Responsibility:
    For one approval action on an entity: validate and authorize it, append
    it to the approval ledger, evaluate the current step's approval policy,
    and advance the workflow state (past any approval-free steps) when the
    policy is satisfied and the entry conditions of the steps entered hold.

Architecture position:
    Kernel > Services -- imperative shell.  Orchestrates the pure policy
    functions in ``workflow_kernel.domain.policy`` with the ledger, the
    workflow state row, the execution log, and the EntityStore /
    RoleProvider collaborators.

Invariants enforced:
    - Steps only move forward in step_order.  An advance lands on the next
      step that needs a decision; the ``none`` steps walked through get an
      ``approved`` record by the system actor.
    - Policy evaluation and the advance are one atomic read-modify-write:
      the state row is locked (SELECT ... FOR UPDATE; BEGIN IMMEDIATE on
      SQLite) before the record is appended, and the advance is a
      compare-and-swap UPDATE on (current_step_id, step_started_at,
      version).  A caller whose swap finds the row already moved gets
      ALREADY_ADVANCED, not an error.
    - Every validated action is appended to the ledger against the step
      instance current at that moment, including stale, terminal, rejected,
      reassigned and escalated ones.  The step the actor targeted is kept
      as acted_on_step_id; a stale record never counts toward a policy.
    - On advance: step_started_at resets, sla_due_at is recomputed,
      pending_approval_from_role names the landing step's approving role,
      version increments, and the landing step's mapped status is written
      to the entity.
    - An action that raises leaves no ledger record and no state change
      (it runs inside a savepoint); only its execution-log row remains.

Failure modes:
    - NoWorkflowError: the entity has no workflow state.
    - StepNotFoundError: act_on_step_id is not a step of the state's template.
    - InvalidApprovalActionError: escalation on a work order, or a
      reassignment without a target user.
    - UnauthorizedRoleError: the acting user holds no step role permitted
      to take the action.
    - StepConditionFailedError: the policy is satisfied but the entity's
      fields fail an entry condition of a step the advance would enter.
    - OptimisticLockError: a reassignment / escalation update kept losing
      its version check (only possible when another writer bypasses the
      row lock).
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from workflow_kernel.domain.clock import Clock
from workflow_kernel.domain.collaborators import EntityStore, RoleProvider
from workflow_kernel.domain.policy import (
    evaluate_step_policy,
    failed_conditions,
    is_authorized,
    roles_permitting,
)
from workflow_kernel.domain.workflow import (
    AUTO_ADVANCE_COMMENT,
    ApprovalAction,
    ApprovalRecord,
    ApprovalType,
    EngineSettings,
    EntityType,
    ExecutionAction,
    StepEntry,
    TransitionOutcome,
    TransitionResult,
    WorkflowEvent,
    WorkflowState,
    WorkflowStep,
    WorkflowTemplate,
    compute_sla_due,
    resolve_entry,
)
from workflow_kernel.exceptions import (
    InvalidApprovalActionError,
    NoWorkflowError,
    OptimisticLockError,
    StepConditionFailedError,
    StepNotFoundError,
    UnauthorizedRoleError,
    WorkflowKernelError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.template import WorkflowTemplateModel
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.services.approval_ledger import ApprovalLedger
from workflow_kernel.services.base import BaseService
from workflow_kernel.services.execution_log import ExecutionLogRecorder
from workflow_kernel.services.workflow_state_store import pending_role_for

logger = get_logger("services.transition_engine")


class TransitionEngine(BaseService[WorkflowStateModel]):
    """
    The workflow state machine.

    Contract:
        ``transition`` returns a TransitionResult for every validated
        action.  Rejections, reassignments, escalations, stale and
        terminal actions are outcomes, not errors.
    """

    def __init__(
        self,
        session: Session,
        entity_store: EntityStore,
        role_provider: RoleProvider,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
    ):
        super().__init__(session, clock)
        self._entity_store = entity_store
        self._roles = role_provider
        self._settings = settings or EngineSettings()
        self._ledger = ApprovalLedger(session, self.clock)
        self._execution_log = ExecutionLogRecorder(session, self.clock)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def transition(
        self,
        entity_id: UUID,
        act_on_step_id: UUID,
        acting_user_id: UUID,
        action: ApprovalAction | str,
        comments: str | None = None,
        reassign_to_user_id: UUID | None = None,
        escalate_to_role: str | None = None,
    ) -> TransitionResult:
        """
        Record an approval action and advance the workflow if its policy
        is now satisfied.

        Args:
            entity_id: Entity whose workflow is acted on.
            act_on_step_id: The step the acting user believes is current.
            acting_user_id: Who takes the action.
            action: approved / rejected / reassigned / escalated.
            comments: Free text stored on the ledger record.
            reassign_to_user_id: Target user; required for ``reassigned``.
            escalate_to_role: Role the incident is escalated to (optional).

        Returns:
            TransitionResult with the (possibly unchanged) state, the
            outcome, and the ledger record written by this call.
        """
        try:
            action = ApprovalAction(action)
        except ValueError:
            raise InvalidApprovalActionError(
                str(action), "entity", "unknown approval action",
            ) from None

        started = time.monotonic()
        with LogContext.bind(
            entity_id=str(entity_id),
            actor_id=str(acting_user_id),
        ):
            try:
                state_model = self._lock_state(entity_id)
            except NoWorkflowError as exc:
                self._execution_log.record_failure(
                    ExecutionAction.TRANSITION,
                    exc,
                    started=started,
                    entity_id=entity_id,
                    step_id=act_on_step_id,
                    performed_by=acting_user_id,
                )
                raise
            state = state_model.to_dto()

            savepoint = self.session.begin_nested()
            try:
                result = self._apply(
                    state_model,
                    state,
                    act_on_step_id,
                    acting_user_id,
                    action,
                    comments,
                    reassign_to_user_id,
                    escalate_to_role,
                )
            except WorkflowKernelError as exc:
                savepoint.rollback()
                self._execution_log.record_failure(
                    ExecutionAction.TRANSITION,
                    exc,
                    started=started,
                    organization_id=state.organization_id,
                    entity_id=entity_id,
                    entity_type=state.entity_type,
                    workflow_state_id=state.id,
                    template_id=state.template_id,
                    step_id=act_on_step_id,
                    performed_by=acting_user_id,
                    payload={"approval_action": action.value},
                )
                raise
            savepoint.commit()

            self._execution_log.record_success(
                ExecutionAction.TRANSITION,
                started=started,
                event_type=self._event_for(result),
                outcome=result.outcome.value,
                organization_id=state.organization_id,
                entity_id=entity_id,
                entity_type=state.entity_type,
                workflow_state_id=state.id,
                template_id=state.template_id,
                step_id=result.from_step_id,
                to_step_id=result.to_step_id,
                performed_by=acting_user_id,
                payload={
                    "approval_action": action.value,
                    "act_on_step_id": act_on_step_id,
                    "record_id": result.record.id,
                    "skipped_step_ids": list(result.skipped_step_ids),
                },
            )
            return result

    # ------------------------------------------------------------------
    # Action handling
    # ------------------------------------------------------------------

    def _apply(
        self,
        state_model: WorkflowStateModel,
        state: WorkflowState,
        act_on_step_id: UUID,
        acting_user_id: UUID,
        action: ApprovalAction,
        comments: str | None,
        reassign_to_user_id: UUID | None,
        escalate_to_role: str | None,
    ) -> TransitionResult:
        template = self._load_template(state.template_id)

        step = template.step_by_id(act_on_step_id)
        if step is None:
            raise StepNotFoundError(str(act_on_step_id), str(state.template_id))

        self._validate_action(state.entity_type, action, reassign_to_user_id)
        self._authorize(state, step, acting_user_id, action)

        record = self._ledger.append(
            state,
            step_id=state.current_step_id,
            step_started_at=state.step_started_at,
            user_id=acting_user_id,
            action=action,
            comments=comments,
            reassigned_to_user_id=(
                reassign_to_user_id
                if action is ApprovalAction.REASSIGNED else None
            ),
            acted_on_step_id=step.id,
        )

        if state.is_terminal:
            logger.info(
                "transition_on_terminal_workflow",
                extra={"step_id": str(step.id), "approval_action": action.value},
            )
            return self._result(state, TransitionOutcome.TERMINAL, record,
                                 reason="workflow already completed")

        if record.is_stale:
            logger.info(
                "transition_stale_step",
                extra={
                    "act_on_step_id": str(step.id),
                    "current_step_id": str(state.current_step_id),
                    "approval_action": action.value,
                },
            )
            return self._result(state, TransitionOutcome.STALE_STEP, record,
                                 reason="step is no longer current")

        if action is ApprovalAction.REJECTED:
            logger.info(
                "approval_rejected",
                extra={"step_id": str(step.id), "step_name": step.name},
            )
            return self._result(state, TransitionOutcome.REJECTED, record,
                                 reason="step rejected")

        if action is ApprovalAction.REASSIGNED:
            new_state = self._update_with_retry(
                state_model,
                acting_user_id,
                assigned_to_user_id=reassign_to_user_id,
            )
            logger.info(
                "workflow_reassigned",
                extra={
                    "step_id": str(step.id),
                    "assigned_to_user_id": str(reassign_to_user_id),
                },
            )
            return self._result(new_state, TransitionOutcome.REASSIGNED, record,
                                 reason="assignee changed")

        if action is ApprovalAction.ESCALATED:
            new_state = state
            if escalate_to_role:
                new_state = self._update_with_retry(
                    state_model,
                    acting_user_id,
                    pending_approval_from_role=escalate_to_role,
                )
            logger.info(
                "workflow_escalated",
                extra={
                    "step_id": str(step.id),
                    "escalate_to_role": escalate_to_role,
                },
            )
            return self._result(new_state, TransitionOutcome.ESCALATED, record,
                                 reason="escalated")

        return self._evaluate_and_advance(
            state_model, state, template, step, record, acting_user_id,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_action(
        self,
        entity_type: EntityType,
        action: ApprovalAction,
        reassign_to_user_id: UUID | None,
    ) -> None:
        if not entity_type.allows(action):
            raise InvalidApprovalActionError(
                action.value,
                entity_type.value,
                "escalation is only available for incidents",
            )
        if action is ApprovalAction.REASSIGNED and reassign_to_user_id is None:
            raise InvalidApprovalActionError(
                action.value,
                entity_type.value,
                "reassignment requires a target user",
            )

    def _authorize(
        self,
        state: WorkflowState,
        step: WorkflowStep,
        user_id: UUID,
        action: ApprovalAction,
    ) -> None:
        if step.approval_type is ApprovalType.NONE or not step.roles:
            return
        user_roles = self._roles.roles_of_user(state.organization_id, user_id)
        if is_authorized(step, action, user_roles):
            return
        required = sorted(roles_permitting(step, action))
        logger.warning(
            "approval_unauthorized",
            extra={
                "step_id": str(step.id),
                "approval_action": action.value,
                "required_roles": required,
                "user_roles": sorted(user_roles),
            },
        )
        raise UnauthorizedRoleError(str(user_id), str(step.id), action.value, required)

    def _check_entry_conditions(
        self,
        state: WorkflowState,
        entry: StepEntry,
    ) -> None:
        """Raise unless every step the advance enters accepts the entity."""
        field_names = {
            condition.field_name
            for step in entry.entered
            for condition in step.conditions
            if condition.is_active
        }
        if not field_names:
            return
        fields = self._entity_store.get_fields(
            state.entity_type, state.entity_id, field_names,
        )
        for step in entry.entered:
            failed = failed_conditions(step.conditions, fields)
            if not failed:
                continue
            condition = failed[0]
            actual = fields.get(condition.field_name)
            logger.warning(
                "step_condition_failed",
                extra={
                    "step_id": str(step.id),
                    "step_name": step.name,
                    "field_name": condition.field_name,
                    "operator": condition.operator.value,
                    "expected_value": condition.expected_value,
                    "actual_value": actual,
                    "failed_count": len(failed),
                },
            )
            raise StepConditionFailedError(
                str(step.id),
                condition.field_name,
                condition.operator.value,
                condition.expected_value,
                actual,
            )

    # ------------------------------------------------------------------
    # Policy and advance
    # ------------------------------------------------------------------

    def _evaluate_and_advance(
        self,
        state_model: WorkflowStateModel,
        state: WorkflowState,
        template: WorkflowTemplate,
        step: WorkflowStep,
        record: ApprovalRecord,
        acting_user_id: UUID,
    ) -> TransitionResult:
        records = self._ledger.records_for_step_instance(
            state.entity_id, step.id, state.step_started_at,
        )
        role_holders = None
        if step.approval_type is ApprovalType.UNANIMOUS:
            role_holders = {
                role: self._roles.users_with_role(state.organization_id, role)
                for role in step.role_assignments
            }
        evaluation = evaluate_step_policy(
            step,
            records,
            default_min_approvals=self._settings.min_approvals_for(
                state.entity_type.module,
            ),
            role_holders=role_holders,
        )

        if not evaluation.satisfied:
            logger.info(
                "approval_pending",
                extra={
                    "step_id": str(step.id),
                    "approval_type": step.approval_type.value,
                    "approver_count": len(evaluation.approvers),
                    "required_approvers": evaluation.required_approvers,
                    "policy_reason": evaluation.reason,
                },
            )
            return self._result(state, TransitionOutcome.PENDING, record,
                                 reason=evaluation.reason)

        return self._advance(state_model, state, template, step, record, acting_user_id)

    def _advance(
        self,
        state_model: WorkflowStateModel,
        state: WorkflowState,
        template: WorkflowTemplate,
        step: WorkflowStep,
        record: ApprovalRecord,
        actor_id: UUID,
    ) -> TransitionResult:
        now = self.clock.now()
        next_step = template.next_step(step.id)
        entry = resolve_entry(template, next_step) if next_step is not None else None

        values: dict[str, Any] = {
            "version": WorkflowStateModel.version + 1,
            "updated_by_id": actor_id,
        }
        if entry is None:
            values.update(
                completed_at=now,
                sla_due_at=None,
                pending_approval_from_role=None,
            )
            outcome = TransitionOutcome.COMPLETED
        else:
            self._check_entry_conditions(state, entry)
            landing = entry.landing
            values.update(
                current_step_id=landing.id,
                step_started_at=now,
                sla_due_at=(
                    None if entry.completes
                    else compute_sla_due(now, landing.sla_hours)
                ),
                pending_approval_from_role=(
                    None if entry.completes
                    else pending_role_for(landing, state.organization_id, self._roles)
                ),
            )
            outcome = TransitionOutcome.ADVANCED
            if entry.completes:
                values["completed_at"] = now
                outcome = TransitionOutcome.COMPLETED

        swapped = self._compare_and_swap(
            state_model,
            expected_step_id=state.current_step_id,
            expected_started_at=state.step_started_at,
            expected_version=state.version,
            values=values,
        )
        if not swapped:
            current = self._reload(state_model)
            logger.info(
                "workflow_already_advanced",
                extra={
                    "step_id": str(step.id),
                    "current_step_id": str(current.current_step_id),
                },
            )
            return self._result(current, TransitionOutcome.ALREADY_ADVANCED, record,
                                 reason="another action advanced the step first")

        new_state = self._reload(state_model)
        skipped = entry.skipped if entry is not None else ()
        for passed in skipped:
            self._ledger.append(
                new_state,
                step_id=passed.id,
                step_started_at=now,
                user_id=self._settings.system_actor_id,
                action=ApprovalAction.APPROVED,
                comments=AUTO_ADVANCE_COMMENT,
            )
            logger.info(
                "workflow_step_skipped",
                extra={"step_id": str(passed.id), "step_name": passed.name},
            )

        landing = entry.landing if entry is not None else None
        status = None
        if landing is not None:
            status = landing.status_for(state.entity_type)
            if status:
                self._entity_store.update_status(
                    state.entity_type, state.entity_id, status,
                )

        logger.info(
            "workflow_step_advanced",
            extra={
                "from_step_id": str(step.id),
                "from_step_name": step.name,
                "to_step_id": str(landing.id) if landing else None,
                "to_step_name": landing.name if landing else None,
                "skipped_steps": len(skipped),
                "pending_approval_from_role": new_state.pending_approval_from_role,
                "status": status,
                "sla_due_at": new_state.sla_due_at,
                "version": new_state.version,
            },
        )
        if outcome is TransitionOutcome.COMPLETED:
            logger.info(
                "workflow_completed",
                extra={"template_id": str(template.id)},
            )

        return TransitionResult(
            state=new_state,
            outcome=outcome,
            record=record,
            from_step_id=step.id,
            to_step_id=landing.id if landing else None,
            reason="policy satisfied",
            skipped_step_ids=tuple(s.id for s in skipped),
        )

    @staticmethod
    def _event_for(result: TransitionResult) -> WorkflowEvent | None:
        if result.outcome is TransitionOutcome.COMPLETED:
            return WorkflowEvent.WORKFLOW_COMPLETED
        if result.outcome is TransitionOutcome.ADVANCED:
            return WorkflowEvent.STEP_TRANSITIONED
        return None

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _lock_state(self, entity_id: UUID) -> WorkflowStateModel:
        model = self.session.execute(
            select(WorkflowStateModel)
            .where(WorkflowStateModel.entity_id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise NoWorkflowError(str(entity_id))
        return model

    def _load_template(self, template_id: UUID) -> WorkflowTemplate:
        return self.session.get(WorkflowTemplateModel, template_id).to_dto()

    def _compare_and_swap(
        self,
        state_model: WorkflowStateModel,
        *,
        expected_step_id: UUID | None,
        expected_started_at: datetime,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        result = self.session.execute(
            update(WorkflowStateModel)
            .where(
                WorkflowStateModel.id == state_model.id,
                WorkflowStateModel.current_step_id == expected_step_id,
                WorkflowStateModel.step_started_at == expected_started_at,
                WorkflowStateModel.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _update_with_retry(
        self,
        state_model: WorkflowStateModel,
        actor_id: UUID,
        **changes: Any,
    ) -> WorkflowState:
        """Version-checked update of non-positional fields."""
        attempts = 0
        while True:
            attempts += 1
            state = state_model.to_dto()
            swapped = self._compare_and_swap(
                state_model,
                expected_step_id=state.current_step_id,
                expected_started_at=state.step_started_at,
                expected_version=state.version,
                values={
                    **changes,
                    "version": WorkflowStateModel.version + 1,
                    "updated_by_id": actor_id,
                },
            )
            if swapped:
                return self._reload(state_model)
            if attempts >= self._settings.max_cas_retries:
                raise OptimisticLockError(
                    "WorkflowState", str(state.entity_id), attempts,
                )
            logger.warning(
                "workflow_state_cas_retry",
                extra={"attempt": attempts, "version": state.version},
            )
            self._reload(state_model)

    def _reload(self, state_model: WorkflowStateModel) -> WorkflowState:
        self.session.refresh(state_model)
        return state_model.to_dto()

    @staticmethod
    def _result(
        state: WorkflowState,
        outcome: TransitionOutcome,
        record: ApprovalRecord,
        reason: str,
    ) -> TransitionResult:
        return TransitionResult(
            state=state,
            outcome=outcome,
            record=record,
            from_step_id=state.current_step_id,
            to_step_id=state.current_step_id,
            reason=reason,
        )
