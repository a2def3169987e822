"""
TemplateStore -- versioned workflow template definitions.

Responsibility:
    Creates, lists, revises and deletes workflow templates (ordered steps
    with role assignments and entry conditions) per organization x module,
    and maintains the organization's default template for each module.

Architecture position:
    Kernel > Services -- imperative shell.  Reads and writes
    ``WorkflowTemplateModel`` / ``WorkflowStepModel`` /
    ``StepRoleAssignmentModel`` / ``StepConditionModel``; returns frozen
    ``WorkflowTemplate`` DTOs.  Successful create and revise calls are
    written to the execution log and publish TEMPLATE_CREATED /
    TEMPLATE_UPDATED.

Invariants enforced:
    - A template has at least one step; step_order values are positive and
      unique (InvalidStepOrderError).
    - At most one default per organization x module at every instant.
      set_default locks the organization x module rows, clears the other
      defaults and sets the target inside the caller's transaction, so no
      concurrent reader ever observes two or zero defaults.  The partial
      unique index on (organization_id, module) WHERE is_default backs this
      in the database.
    - A template referenced by a workflow state is never mutated or
      deleted; revise_template writes a new version instead.

Failure modes:
    - TemplateNotFoundError: unknown template id, or module mismatch.
    - TemplateInUseError: delete of a referenced template.
    - InvalidTemplateError / InvalidStepOrderError: bad definition.
"""

from __future__ import annotations

import time
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from workflow_kernel.domain.clock import Clock
from workflow_kernel.domain.workflow import (
    ApprovalType,
    ConditionOperator,
    ExecutionAction,
    StepSpec,
    WorkflowEvent,
    WorkflowModule,
    WorkflowStep,
    WorkflowTemplate,
)
from workflow_kernel.exceptions import (
    InvalidStepOrderError,
    InvalidTemplateError,
    TemplateInUseError,
    TemplateNotFoundError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.template import (
    StepConditionModel,
    StepRoleAssignmentModel,
    WorkflowStepModel,
    WorkflowTemplateModel,
)
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.services.base import BaseService
from workflow_kernel.services.execution_log import ExecutionLogRecorder

logger = get_logger("services.template_store")


def _coerce_module(module: WorkflowModule | str) -> WorkflowModule:
    try:
        return WorkflowModule(module)
    except ValueError:
        raise InvalidTemplateError(f"unknown module {module!r}") from None


def validate_steps(steps: Sequence[StepSpec]) -> None:
    """
    Check a step list before anything is written.

    Raises:
        InvalidStepOrderError: empty list, duplicate or non-positive step_order.
        InvalidTemplateError: unknown approval type, bad SLA / threshold,
            blank step name, duplicate role on one step, condition with
            a blank field name or unknown operator.
    """
    orders = [s.step_order for s in steps]
    if not steps:
        raise InvalidStepOrderError(orders, "a template needs at least one step")
    if any(order < 1 for order in orders):
        raise InvalidStepOrderError(orders, "step_order values must be positive")
    if len(set(orders)) != len(orders):
        raise InvalidStepOrderError(orders, "duplicate step_order values")

    for spec in steps:
        try:
            approval_type = ApprovalType(spec.approval_type)
        except ValueError:
            raise InvalidTemplateError(
                f"step {spec.step_order}: unknown approval type {spec.approval_type!r}"
            ) from None
        if not spec.name or not spec.name.strip():
            raise InvalidTemplateError(f"step {spec.step_order}: name is required")
        if spec.sla_hours is not None and spec.sla_hours <= 0:
            raise InvalidTemplateError(
                f"step {spec.step_order}: sla_hours must be positive"
            )
        if spec.min_approvals is not None:
            if spec.min_approvals < 1:
                raise InvalidTemplateError(
                    f"step {spec.step_order}: min_approvals must be at least 1"
                )
            if approval_type is not ApprovalType.MULTIPLE:
                raise InvalidTemplateError(
                    f"step {spec.step_order}: min_approvals only applies to "
                    "'multiple' steps"
                )
        role_names = [r.role_name.strip().casefold() for r in spec.roles]
        if len(set(role_names)) != len(role_names):
            raise InvalidTemplateError(
                f"step {spec.step_order}: role assigned more than once"
            )
        for condition in spec.conditions:
            if not condition.field_name or not condition.field_name.strip():
                raise InvalidTemplateError(
                    f"step {spec.step_order}: condition field_name is required"
                )
            try:
                ConditionOperator(condition.operator)
            except ValueError:
                raise InvalidTemplateError(
                    f"step {spec.step_order}: unknown condition operator "
                    f"{condition.operator!r}"
                ) from None


class TemplateStore(BaseService[WorkflowTemplateModel]):
    """
    Template authoring and default-template management.

    Contract:
        Every write flushes within the caller's transaction; the caller
        commits.  Read methods return frozen DTOs.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._execution_log = ExecutionLogRecorder(session, self.clock)

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def create_template(
        self,
        organization_id: UUID,
        module: WorkflowModule | str,
        name: str,
        steps: Sequence[StepSpec],
        *,
        actor_id: UUID,
        description: str | None = None,
        is_default: bool = False,
    ) -> WorkflowTemplate:
        """
        Create a new template version.

        The version is one more than the highest existing version of the
        same organization x module x name (1 for a new name).

        Raises:
            InvalidTemplateError / InvalidStepOrderError on a bad definition.
        """
        started = time.monotonic()
        module = _coerce_module(module)
        if not name or not name.strip():
            raise InvalidTemplateError("template name is required")
        validate_steps(steps)

        model = self._insert_template(
            organization_id=organization_id,
            module=module,
            name=name.strip(),
            description=description,
            steps=steps,
            actor_id=actor_id,
            supersedes_id=None,
        )

        logger.info(
            "template_created",
            extra={
                "template_id": str(model.id),
                "organization_id": str(organization_id),
                "workflow_module": module.value,
                "template_name": model.name,
                "version": model.version,
                "step_count": len(steps),
            },
        )
        self._execution_log.record_success(
            ExecutionAction.TEMPLATE_CREATE,
            started=started,
            event_type=WorkflowEvent.TEMPLATE_CREATED,
            organization_id=organization_id,
            template_id=model.id,
            performed_by=actor_id,
            payload={
                "workflow_module": module.value,
                "template_name": model.name,
                "version": model.version,
                "step_count": len(steps),
            },
        )

        if is_default:
            return self.set_default(model.id, module, actor_id=actor_id)
        return model.to_dto()

    def revise_template(
        self,
        template_id: UUID,
        steps: Sequence[StepSpec],
        *,
        actor_id: UUID,
        name: str | None = None,
        description: str | None = None,
    ) -> WorkflowTemplate:
        """
        Write a new version of a template.

        The new version inherits the default flag.  The previous version is
        deactivated unless workflow states still reference it; in-flight
        entities stay pinned to the version they started on.
        """
        started = time.monotonic()
        current = self._get_model(template_id)
        validate_steps(steps)
        module = WorkflowModule(current.module)

        model = self._insert_template(
            organization_id=current.organization_id,
            module=module,
            name=(name or current.name).strip(),
            description=description if description is not None else current.description,
            steps=steps,
            actor_id=actor_id,
            supersedes_id=current.id,
        )

        was_default = current.is_default
        referenced = self._reference_count(current.id) > 0
        if not referenced:
            current.is_active = False
            current.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "template_revised",
            extra={
                "template_id": str(model.id),
                "supersedes_id": str(current.id),
                "version": model.version,
                "previous_deactivated": not referenced,
            },
        )
        self._execution_log.record_success(
            ExecutionAction.TEMPLATE_REVISE,
            started=started,
            event_type=WorkflowEvent.TEMPLATE_UPDATED,
            organization_id=model.organization_id,
            template_id=model.id,
            performed_by=actor_id,
            payload={
                "supersedes_id": current.id,
                "version": model.version,
                "previous_deactivated": not referenced,
            },
        )

        if was_default:
            return self.set_default(model.id, module, actor_id=actor_id)
        return model.to_dto()

    def set_default(
        self,
        template_id: UUID,
        module: WorkflowModule | str,
        *,
        actor_id: UUID | None = None,
    ) -> WorkflowTemplate:
        """
        Make ``template_id`` the only default for its organization x module.

        Raises:
            TemplateNotFoundError: unknown id, or the template belongs to a
                different module.
            InvalidTemplateError: the template is inactive.
        """
        module = _coerce_module(module)
        target = self._get_model(template_id)
        if target.module != module.value:
            raise TemplateNotFoundError(
                str(template_id),
                f"not a {module.value} template",
            )
        if not target.is_active:
            raise InvalidTemplateError(
                f"inactive template {template_id} cannot be the default"
            )

        scope = (
            WorkflowTemplateModel.organization_id == target.organization_id,
            WorkflowTemplateModel.module == module.value,
        )

        # Lock every row in scope in id order so concurrent calls queue
        # instead of deadlocking.
        self.session.execute(
            select(WorkflowTemplateModel.id)
            .where(*scope)
            .order_by(WorkflowTemplateModel.id)
            .with_for_update()
        ).all()

        previous = self.session.execute(
            select(WorkflowTemplateModel.id).where(
                *scope, WorkflowTemplateModel.is_default.is_(True),
            )
        ).scalar_one_or_none()

        # Clear before set: the partial unique index is checked per row.
        self.session.execute(
            update(WorkflowTemplateModel)
            .where(
                *scope,
                WorkflowTemplateModel.id != template_id,
                WorkflowTemplateModel.is_default.is_(True),
            )
            .values(is_default=False, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(WorkflowTemplateModel)
            .where(WorkflowTemplateModel.id == template_id)
            .values(is_default=True, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        self.session.flush()
        self.session.expire_all()

        logger.info(
            "template_default_set",
            extra={
                "template_id": str(template_id),
                "organization_id": str(target.organization_id),
                "workflow_module": module.value,
                "previous_default_id": str(previous) if previous else None,
            },
        )
        return self._get_model(template_id).to_dto()

    def deactivate_template(
        self,
        template_id: UUID,
        *,
        actor_id: UUID | None = None,
    ) -> WorkflowTemplate:
        """Mark a template inactive and clear its default flag."""
        model = self._get_model(template_id)
        model.is_active = False
        model.is_default = False
        model.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "template_deactivated",
            extra={"template_id": str(template_id), "workflow_module": model.module},
        )
        return model.to_dto()

    def delete_template(self, template_id: UUID) -> None:
        """
        Delete an unreferenced template with its steps and role assignments.

        Raises:
            TemplateNotFoundError: unknown id.
            TemplateInUseError: a workflow state still references it.
        """
        model = self._get_model(template_id)
        in_use = self._reference_count(template_id)
        if in_use:
            logger.warning(
                "template_delete_refused",
                extra={"template_id": str(template_id), "state_count": in_use},
            )
            raise TemplateInUseError(str(template_id), in_use)

        self.session.delete(model)
        self.session.flush()
        logger.info("template_deleted", extra={"template_id": str(template_id)})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_template(self, template_id: UUID) -> WorkflowTemplate:
        return self._get_model(template_id).to_dto()

    def get_steps(self, template_id: UUID) -> tuple[WorkflowStep, ...]:
        """Steps of a template ordered by step_order."""
        return self.get_template(template_id).steps

    def get_default(
        self,
        organization_id: UUID,
        module: WorkflowModule | str,
    ) -> WorkflowTemplate | None:
        """Active default template for organization x module, if any."""
        module = _coerce_module(module)
        model = self.session.execute(
            select(WorkflowTemplateModel).where(
                WorkflowTemplateModel.organization_id == organization_id,
                WorkflowTemplateModel.module == module.value,
                WorkflowTemplateModel.is_default.is_(True),
                WorkflowTemplateModel.is_active.is_(True),
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_templates(
        self,
        organization_id: UUID,
        module: WorkflowModule | str | None = None,
        include_inactive: bool = False,
    ) -> list[WorkflowTemplate]:
        query = select(WorkflowTemplateModel).where(
            WorkflowTemplateModel.organization_id == organization_id,
        )
        if module is not None:
            query = query.where(
                WorkflowTemplateModel.module == _coerce_module(module).value,
            )
        if not include_inactive:
            query = query.where(WorkflowTemplateModel.is_active.is_(True))
        query = query.order_by(
            WorkflowTemplateModel.module,
            WorkflowTemplateModel.name,
            WorkflowTemplateModel.version,
        )
        return [m.to_dto() for m in self.session.execute(query).scalars()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_model(self, template_id: UUID) -> WorkflowTemplateModel:
        model = self.session.get(WorkflowTemplateModel, template_id)
        if model is None:
            raise TemplateNotFoundError(str(template_id))
        return model

    def _reference_count(self, template_id: UUID) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(WorkflowStateModel)
            .where(WorkflowStateModel.template_id == template_id)
        ).scalar_one()

    def _next_version(
        self,
        organization_id: UUID,
        module: WorkflowModule,
        name: str,
    ) -> int:
        highest = self.session.execute(
            select(func.max(WorkflowTemplateModel.version)).where(
                WorkflowTemplateModel.organization_id == organization_id,
                WorkflowTemplateModel.module == module.value,
                WorkflowTemplateModel.name == name,
            )
        ).scalar_one_or_none()
        return (highest or 0) + 1

    def _insert_template(
        self,
        *,
        organization_id: UUID,
        module: WorkflowModule,
        name: str,
        description: str | None,
        steps: Sequence[StepSpec],
        actor_id: UUID,
        supersedes_id: UUID | None,
    ) -> WorkflowTemplateModel:
        now = self.clock.now()
        model = WorkflowTemplateModel(
            organization_id=organization_id,
            module=module.value,
            name=name,
            description=description,
            version=self._next_version(organization_id, module, name),
            is_default=False,
            is_active=True,
            supersedes_id=supersedes_id,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        for spec in sorted(steps, key=lambda s: s.step_order):
            model.steps.append(
                WorkflowStepModel(
                    step_order=spec.step_order,
                    name=spec.name.strip(),
                    description=spec.description,
                    approval_type=ApprovalType(spec.approval_type).value,
                    sla_hours=spec.sla_hours,
                    is_required=spec.is_required,
                    min_approvals=spec.min_approvals,
                    work_order_status=spec.work_order_status,
                    incident_status=spec.incident_status,
                    roles=[
                        StepRoleAssignmentModel(
                            role_name=role.role_name.strip(),
                            can_approve=role.can_approve,
                            can_reject=role.can_reject,
                            can_assign=role.can_assign,
                        )
                        for role in spec.roles
                    ],
                    conditions=[
                        StepConditionModel(
                            field_name=condition.field_name.strip(),
                            operator=ConditionOperator(condition.operator).value,
                            expected_value=condition.expected_value,
                            is_active=condition.is_active,
                        )
                        for condition in spec.conditions
                    ],
                )
            )
        self.session.add(model)
        self.session.flush()
        return model
