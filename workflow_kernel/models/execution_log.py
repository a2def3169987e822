"""
Module: workflow_kernel.models.execution_log
Responsibility: ORM persistence for the workflow execution log -- one row per
    initialize, transition and template write, successful or not.

Architecture position: Kernel > Models.  May import from db/, domain/ and
    exceptions only.

Invariants enforced:
    - Append-only: ORM listeners refuse UPDATE and DELETE.
    - action_type limited by CHECK constraint.
    - A failed row carries error_code; a successful row carries none.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE through the ORM.

Audit relevance:
    The approval ledger answers "who decided what"; this table answers
    "what did the kernel do, how long did it take, and did it fail".  The
    analytics selector aggregates it per organization.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Float,
    Index,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base, UUIDString
from workflow_kernel.domain.workflow import (
    EntityType,
    ExecutionAction,
    ExecutionLogEntry,
    WorkflowEvent,
)
from workflow_kernel.exceptions import ImmutabilityViolationError


class WorkflowExecutionLogModel(Base):
    """Persistent execution-log row. Append-only.

    Contract:
        Ids are plain columns, not foreign keys: a row outlives the
        template or step it mentions (unreferenced templates may be
        deleted).
    """

    __tablename__ = "workflow_execution_logs"

    __table_args__ = (
        CheckConstraint(
            "action_type IN ('initialize', 'transition', "
            "'template_create', 'template_revise')",
            name="ck_workflow_execution_logs_action",
        ),
        CheckConstraint(
            "success OR error_code IS NOT NULL",
            name="ck_workflow_execution_logs_failure_code",
        ),
        Index("ix_workflow_execution_logs_org_created", "organization_id", "created_at"),
        Index("ix_workflow_execution_logs_entity", "entity_id"),
    )

    organization_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    workflow_state_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    template_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    step_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    to_step_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    performed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    # Domain event published by a successful call, if any
    event_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        status = "ok" if self.success else self.error_code
        return f"<WorkflowExecutionLog {self.action_type} {status} entity={self.entity_id}>"

    def to_dto(self) -> ExecutionLogEntry:
        """Convert ORM model to frozen domain DTO."""
        return ExecutionLogEntry(
            id=self.id,
            action_type=ExecutionAction(self.action_type),
            success=self.success,
            created_at=self.created_at,
            organization_id=self.organization_id,
            entity_id=self.entity_id,
            entity_type=EntityType(self.entity_type) if self.entity_type else None,
            workflow_state_id=self.workflow_state_id,
            template_id=self.template_id,
            step_id=self.step_id,
            to_step_id=self.to_step_id,
            performed_by=self.performed_by,
            event_type=WorkflowEvent(self.event_type) if self.event_type else None,
            outcome=self.outcome,
            error_code=self.error_code,
            error_message=self.error_message,
            duration_ms=self.duration_ms,
            payload=self.payload,
        )


@event.listens_for(WorkflowExecutionLogModel, "before_update")
def prevent_execution_log_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="WorkflowExecutionLog",
        entity_id=str(target.id),
        reason="Execution log rows are append-only -- cannot modify",
    )


@event.listens_for(WorkflowExecutionLogModel, "before_delete")
def prevent_execution_log_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="WorkflowExecutionLog",
        entity_id=str(target.id),
        reason="Execution log rows are append-only -- cannot delete",
    )
