"""
ApprovalLedger -- append-only record of approval actions.

Responsibility:
    Appends one ``ApprovalRecord`` per validated approval action and reads
    back the records of a step instance (for policy evaluation) or of a
    whole entity (history).

Architecture position:
    Kernel > Services -- imperative shell.  INSERT-only writer of
    ``ApprovalRecordModel``; the model's ORM listeners refuse UPDATE and
    DELETE.

Invariants enforced:
    - Records are never modified or deleted.
    - sequence_no gives a total order per entity.  It is allocated as
      max + 1 while the caller holds the entity's workflow state row lock,
      and UNIQUE(entity_id, sequence_no) rejects any allocation made
      without it.
    - step_id is the step current when the action was recorded.  The step
      the actor targeted goes to acted_on_step_id.
    - A record counts toward a step instance only when step_id and
      step_started_at match the instance and the actor targeted that step.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from workflow_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalRecord,
    EntityType,
    WorkflowState,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.approval_record import ApprovalRecordModel
from workflow_kernel.services.base import BaseService

logger = get_logger("services.approval_ledger")


class ApprovalLedger(BaseService[ApprovalRecordModel]):
    """
    Append and query approval records.

    Preconditions for ``append``:
        The caller holds the entity's workflow state row lock (the
        transition engine takes it with SELECT ... FOR UPDATE).
    """

    def append(
        self,
        state: WorkflowState,
        step_id: UUID,
        step_started_at: datetime,
        user_id: UUID,
        action: ApprovalAction,
        comments: str | None = None,
        reassigned_to_user_id: UUID | None = None,
        acted_on_step_id: UUID | None = None,
    ) -> ApprovalRecord:
        """Append a record for the step instance (step_id, step_started_at).

        ``acted_on_step_id`` defaults to ``step_id``; pass the targeted step
        when it is not the current one.
        """
        action = ApprovalAction(action)
        if acted_on_step_id is None:
            acted_on_step_id = step_id
        model = ApprovalRecordModel(
            entity_id=state.entity_id,
            entity_type=EntityType(state.entity_type).value,
            organization_id=state.organization_id,
            step_id=step_id,
            step_started_at=step_started_at,
            acted_on_step_id=acted_on_step_id,
            sequence_no=self._next_sequence(state.entity_id),
            approved_by_user_id=user_id,
            approved_at=self.clock.now(),
            approval_action=action.value,
            comments=comments,
            reassigned_to_user_id=reassigned_to_user_id,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "approval_recorded",
            extra={
                "record_id": str(model.id),
                "step_id": str(step_id),
                "acted_on_step_id": str(acted_on_step_id),
                "approval_action": action.value,
                "approved_by_user_id": str(user_id),
                "sequence_no": model.sequence_no,
            },
        )
        return model.to_dto()

    def records_for_step_instance(
        self,
        entity_id: UUID,
        step_id: UUID,
        step_started_at: datetime,
    ) -> list[ApprovalRecord]:
        """Records counting toward one step instance, by sequence_no.

        Stale records logged while the step was current but aimed at
        another step are excluded.
        """
        rows = self.session.execute(
            select(ApprovalRecordModel)
            .where(
                ApprovalRecordModel.entity_id == entity_id,
                ApprovalRecordModel.step_id == step_id,
                ApprovalRecordModel.step_started_at == step_started_at,
                ApprovalRecordModel.acted_on_step_id == step_id,
            )
            .order_by(ApprovalRecordModel.sequence_no)
        ).scalars()
        return [r.to_dto() for r in rows]

    def history(self, entity_id: UUID) -> list[ApprovalRecord]:
        """All records of an entity in the order they were appended."""
        rows = self.session.execute(
            select(ApprovalRecordModel)
            .where(ApprovalRecordModel.entity_id == entity_id)
            .order_by(ApprovalRecordModel.sequence_no)
        ).scalars()
        return [r.to_dto() for r in rows]

    def _next_sequence(self, entity_id: UUID) -> int:
        highest = self.session.execute(
            select(func.max(ApprovalRecordModel.sequence_no)).where(
                ApprovalRecordModel.entity_id == entity_id,
            )
        ).scalar_one_or_none()
        return (highest or 0) + 1
