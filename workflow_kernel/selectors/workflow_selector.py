"""
Module: workflow_kernel.selectors.workflow_selector
Responsibility: Read-only queries over workflow states and the approval
    ledger for collaborators: current state, approval history with step
    names, SLA-overdue listing, per-module workflow coverage, and the
    execution log with its per-organization analytics.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - History is returned in ledger order (sequence_no).
    - SLA breach is observed, never enforced: list_overdue reports
      non-terminal states whose sla_due_at lies before ``as_of``.
    - Analytics cover the most recent ``window`` execution-log rows of an
      organization; failed = total - successful.

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from workflow_kernel.db.types import utc
from workflow_kernel.domain.collaborators import EntityStore
from workflow_kernel.domain.workflow import (
    ApprovalRecord,
    EntityType,
    ExecutionAnalytics,
    ExecutionLogEntry,
    WorkflowState,
)
from workflow_kernel.models.approval_record import ApprovalRecordModel
from workflow_kernel.models.execution_log import WorkflowExecutionLogModel
from workflow_kernel.models.template import WorkflowStepModel, WorkflowTemplateModel
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    """A ledger record joined with the name of the step it names."""

    record: ApprovalRecord
    step_name: str
    step_order: int


@dataclass(frozen=True)
class OverdueWorkflow:
    """A workflow whose current step is past its SLA."""

    state: WorkflowState
    step_name: str
    overdue_by: timedelta


@dataclass(frozen=True)
class ModuleWorkflowStatus:
    """Workflow coverage of one entity type in one organization."""

    organization_id: UUID
    entity_type: EntityType
    total_entities: int
    with_workflow: int
    without_workflow: int
    has_default_template: bool
    default_template_id: UUID | None = None


class WorkflowSelector(BaseSelector[WorkflowStateModel]):
    """
    Selector for workflow state and approval history queries.

    Guarantees:
        - Read-only.
        - Returns frozen DTOs, never ORM instances.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def get_state(self, entity_id: UUID) -> WorkflowState | None:
        model = self.session.execute(
            select(WorkflowStateModel).where(WorkflowStateModel.entity_id == entity_id)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_approvals(self, entity_id: UUID) -> list[ApprovalHistoryEntry]:
        """Approval history of an entity in the order it was recorded."""
        rows = self.session.execute(
            select(
                ApprovalRecordModel,
                WorkflowStepModel.name,
                WorkflowStepModel.step_order,
            )
            .join(WorkflowStepModel, WorkflowStepModel.id == ApprovalRecordModel.step_id)
            .where(ApprovalRecordModel.entity_id == entity_id)
            .order_by(ApprovalRecordModel.sequence_no)
        ).all()
        return [
            ApprovalHistoryEntry(
                record=record.to_dto(),
                step_name=step_name,
                step_order=step_order,
            )
            for record, step_name, step_order in rows
        ]

    def list_overdue(
        self,
        as_of: datetime,
        organization_id: UUID | None = None,
    ) -> list[OverdueWorkflow]:
        """Non-terminal workflows past their SLA, most overdue first."""
        as_of = utc(as_of)
        query = (
            select(WorkflowStateModel, WorkflowStepModel.name)
            .join(
                WorkflowStepModel,
                WorkflowStepModel.id == WorkflowStateModel.current_step_id,
            )
            .where(
                WorkflowStateModel.completed_at.is_(None),
                WorkflowStateModel.sla_due_at.is_not(None),
                WorkflowStateModel.sla_due_at < as_of,
            )
            .order_by(WorkflowStateModel.sla_due_at, WorkflowStateModel.entity_id)
        )
        if organization_id is not None:
            query = query.where(WorkflowStateModel.organization_id == organization_id)

        results = []
        for model, step_name in self.session.execute(query).all():
            state = model.to_dto()
            results.append(
                OverdueWorkflow(
                    state=state,
                    step_name=step_name,
                    overdue_by=as_of - state.sla_due_at,
                )
            )
        return results

    def module_status(
        self,
        organization_id: UUID,
        entity_type: EntityType | str,
        entity_store: EntityStore,
    ) -> ModuleWorkflowStatus:
        """Counts of entities with and without a workflow state."""
        entity_type = EntityType(entity_type)
        entity_ids = {
            ref.entity_id
            for ref in entity_store.list_entities(entity_type, organization_id)
        }
        tracked = set(self.session.execute(
            select(WorkflowStateModel.entity_id)
            .where(
                WorkflowStateModel.organization_id == organization_id,
                WorkflowStateModel.entity_type == entity_type.value,
            )
        ).scalars())
        default_id = self.session.execute(
            select(WorkflowTemplateModel.id).where(
                WorkflowTemplateModel.organization_id == organization_id,
                WorkflowTemplateModel.module == entity_type.module.value,
                WorkflowTemplateModel.is_default.is_(True),
                WorkflowTemplateModel.is_active.is_(True),
            )
        ).scalar_one_or_none()

        total = len(entity_ids)
        with_workflow = len(entity_ids & tracked)
        return ModuleWorkflowStatus(
            organization_id=organization_id,
            entity_type=entity_type,
            total_entities=total,
            with_workflow=with_workflow,
            without_workflow=total - with_workflow,
            has_default_template=default_id is not None,
            default_template_id=default_id,
        )

    def list_execution_log(self, entity_id: UUID) -> list[ExecutionLogEntry]:
        """Execution-log rows of an entity, oldest first."""
        rows = self.session.execute(
            select(WorkflowExecutionLogModel)
            .where(WorkflowExecutionLogModel.entity_id == entity_id)
            .order_by(WorkflowExecutionLogModel.created_at)
        ).scalars()
        return [r.to_dto() for r in rows]

    def execution_analytics(
        self,
        organization_id: UUID,
        window: int = 100,
        recent: int = 10,
    ) -> ExecutionAnalytics:
        """Success counts and mean duration over the latest ``window`` rows."""
        rows = [
            r.to_dto()
            for r in self.session.execute(
                select(WorkflowExecutionLogModel)
                .where(WorkflowExecutionLogModel.organization_id == organization_id)
                .order_by(WorkflowExecutionLogModel.created_at.desc())
                .limit(window)
            ).scalars()
        ]
        durations = [r.duration_ms for r in rows if r.duration_ms is not None]
        successful = sum(1 for r in rows if r.success)
        return ExecutionAnalytics(
            total=len(rows),
            successful=successful,
            failed=len(rows) - successful,
            average_duration_ms=(
                round(sum(durations) / len(durations), 2) if durations else None
            ),
            recent=tuple(rows[:recent]),
        )
