"""
WorkflowStateStore -- point initializer and state lookup.

Responsibility:
    Attaches an entity to its organization's default template for the
    entity's module, placing it on the first step that needs a decision,
    and returns the current workflow state of an entity.

Architecture position:
    Kernel > Services -- imperative shell.  Writes ``WorkflowStateModel``
    rows (INSERT only; advances belong to TransitionEngine), auto-advance
    ledger records, execution-log rows, and the entity status through the
    ``EntityStore`` collaborator.

Invariants enforced:
    - Idempotent initialization: an existing state is returned unchanged,
      never reset.
    - One state per entity: a concurrent second initializer loses on the
      UNIQUE(entity_id) constraint inside a savepoint, re-reads, and
      returns the winner's row.
    - Leading ``none`` steps are walked through on creation.  Each skipped
      step gets an ``approved`` record by the initializing actor; a final
      ``none`` step completes the workflow on arrival.
    - sla_due_at = step_started_at + sla_hours of the landing step.
    - pending_approval_from_role names the landing step's approving role.

Failure modes:
    - NoDefaultTemplateError: no active default template for the module.
    - EntityNotFoundError: the entity store does not know the entity.
    Both are written to the execution log before propagating.
"""

from __future__ import annotations

import time
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from workflow_kernel.domain.clock import Clock
from workflow_kernel.domain.collaborators import EntityStore, RoleProvider
from workflow_kernel.domain.policy import resolve_pending_role
from workflow_kernel.domain.workflow import (
    AUTO_ADVANCE_COMMENT,
    ApprovalAction,
    EntityType,
    ExecutionAction,
    WorkflowEvent,
    WorkflowState,
    WorkflowStep,
    compute_sla_due,
    resolve_entry,
)
from workflow_kernel.exceptions import (
    EntityNotFoundError,
    NoDefaultTemplateError,
    WorkflowKernelError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.services.approval_ledger import ApprovalLedger
from workflow_kernel.services.base import BaseService
from workflow_kernel.services.execution_log import ExecutionLogRecorder
from workflow_kernel.services.template_store import TemplateStore

logger = get_logger("services.workflow_state_store")


def pending_role_for(
    step: WorkflowStep,
    organization_id: UUID,
    role_provider: RoleProvider | None,
) -> str | None:
    """Approving role ``step`` waits on, resolved against current holders."""
    holders = None
    if role_provider is not None:
        holders = {
            role.role_name: role_provider.users_with_role(organization_id, role.role_name)
            for role in step.roles
        }
    return resolve_pending_role(step, holders)


class WorkflowStateStore(BaseService[WorkflowStateModel]):
    """
    Creates and reads per-entity workflow states.

    Contract:
        ``initialize`` either returns the entity's existing state or creates
        one on the default template, within the caller's transaction.
    """

    def __init__(
        self,
        session: Session,
        entity_store: EntityStore,
        clock: Clock | None = None,
        role_provider: RoleProvider | None = None,
    ):
        super().__init__(session, clock)
        self._entity_store = entity_store
        self._roles = role_provider
        self._templates = TemplateStore(session, self.clock)
        self._ledger = ApprovalLedger(session, self.clock)
        self._execution_log = ExecutionLogRecorder(session, self.clock)

    def initialize(
        self,
        entity_id: UUID,
        entity_type: EntityType | str,
        organization_id: UUID,
        actor_id: UUID,
    ) -> WorkflowState:
        """
        Attach the entity to the default template.

        Postconditions:
            - A WorkflowState exists for the entity.
            - When a new state was created: the landing step's mapped status
              has been written to the entity, and every leading ``none``
              step walked through has an auto-advance ledger record.

        Raises:
            NoDefaultTemplateError: no default template for the module.
            EntityNotFoundError: the entity does not exist.
        """
        entity_type = EntityType(entity_type)
        started = time.monotonic()

        with LogContext.bind(
            entity_id=str(entity_id),
            actor_id=str(actor_id),
            organization_id=str(organization_id),
        ):
            existing = self._get_model(entity_id)
            if existing is not None:
                logger.debug("workflow_already_initialized")
                return existing.to_dto()

            try:
                template = self._resolve_template(entity_id, entity_type, organization_id)
            except WorkflowKernelError as exc:
                self._execution_log.record_failure(
                    ExecutionAction.INITIALIZE,
                    exc,
                    started=started,
                    organization_id=organization_id,
                    entity_id=entity_id,
                    entity_type=entity_type,
                    performed_by=actor_id,
                )
                raise

            entry = resolve_entry(template, template.first_step)
            landing = entry.landing
            now = self.clock.now()
            model = WorkflowStateModel(
                entity_id=entity_id,
                entity_type=entity_type.value,
                organization_id=organization_id,
                template_id=template.id,
                current_step_id=landing.id,
                step_started_at=now,
                sla_due_at=None if entry.completes else compute_sla_due(now, landing.sla_hours),
                pending_approval_from_role=(
                    None if entry.completes
                    else pending_role_for(landing, organization_id, self._roles)
                ),
                completed_at=now if entry.completes else None,
                version=1,
                created_at=now,
                updated_at=now,
                created_by_id=actor_id,
            )

            savepoint = self.session.begin_nested()
            try:
                self.session.add(model)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                winner = self._get_model(entity_id)
                if winner is None:
                    raise
                logger.info(
                    "workflow_initialize_race_lost",
                    extra={"state_id": str(winner.id)},
                )
                return winner.to_dto()

            state = model.to_dto()
            for skipped in entry.skipped:
                self._ledger.append(
                    state,
                    step_id=skipped.id,
                    step_started_at=now,
                    user_id=actor_id,
                    action=ApprovalAction.APPROVED,
                    comments=AUTO_ADVANCE_COMMENT,
                )
                logger.info(
                    "workflow_step_skipped",
                    extra={"step_id": str(skipped.id), "step_name": skipped.name},
                )

            status = landing.status_for(entity_type)
            if status:
                self._entity_store.update_status(entity_type, entity_id, status)

            logger.info(
                "workflow_initialized",
                extra={
                    "entity_type": entity_type.value,
                    "template_id": str(template.id),
                    "template_version": template.version,
                    "step_id": str(landing.id),
                    "step_name": landing.name,
                    "skipped_steps": len(entry.skipped),
                    "pending_approval_from_role": state.pending_approval_from_role,
                    "sla_due_at": state.sla_due_at,
                    "status": status,
                },
            )
            self._execution_log.record_success(
                ExecutionAction.INITIALIZE,
                started=started,
                event_type=WorkflowEvent.WORKFLOW_INITIALIZED,
                outcome="completed" if entry.completes else "initialized",
                organization_id=organization_id,
                entity_id=entity_id,
                entity_type=entity_type,
                workflow_state_id=state.id,
                template_id=template.id,
                to_step_id=landing.id,
                performed_by=actor_id,
                payload={
                    "template_version": template.version,
                    "skipped_step_ids": [s.id for s in entry.skipped],
                    "status": status,
                },
            )
            return state

    def initialize_for_new_entity(
        self,
        entity_id: UUID,
        entity_type: EntityType | str,
        organization_id: UUID,
        actor_id: UUID,
    ) -> WorkflowState | None:
        """
        Entity-creation hook: never fails the creation for lack of a workflow.

        Returns None (and logs ``workflow_not_configured``) when the
        organization has no default template for the module.
        """
        try:
            return self.initialize(entity_id, entity_type, organization_id, actor_id)
        except NoDefaultTemplateError as exc:
            logger.warning(
                "workflow_not_configured",
                extra={
                    "entity_id": str(entity_id),
                    "organization_id": str(organization_id),
                    "workflow_module": exc.module,
                },
            )
            return None

    def get_state(self, entity_id: UUID) -> WorkflowState | None:
        model = self._get_model(entity_id)
        return model.to_dto() if model is not None else None

    def _resolve_template(self, entity_id, entity_type, organization_id):
        if not self._entity_store.exists(entity_type, entity_id):
            raise EntityNotFoundError(entity_type.value, str(entity_id))
        module = entity_type.module
        template = self._templates.get_default(organization_id, module)
        if template is None:
            raise NoDefaultTemplateError(str(organization_id), module.value)
        return template

    def _get_model(self, entity_id: UUID) -> WorkflowStateModel | None:
        return self.session.execute(
            select(WorkflowStateModel)
            .where(WorkflowStateModel.entity_id == entity_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
