"""
Module: workflow_kernel.models.approval_record
Responsibility: ORM persistence for the append-only approval ledger.

Architecture position: Kernel > Models.  May import from db/, domain/ and
    exceptions only.

Invariants enforced:
    - Append-only: ORM listeners refuse UPDATE and DELETE.
    - Per-entity total order: UNIQUE(entity_id, sequence_no).  sequence_no
      is allocated while the entity's workflow state row is locked.
    - approval_action limited by CHECK constraint.
    - step_id is always the step current at recording time; the step the
      actor targeted is kept separately in acted_on_step_id.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE through the ORM.
    - IntegrityError on a duplicate sequence_no (lock not held).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base, UUIDString
from workflow_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalRecord,
    EntityType,
)
from workflow_kernel.exceptions import ImmutabilityViolationError


class ApprovalRecordModel(Base):
    """Persistent approval ledger entry. Append-only.

    Contract:
        Records are immutable once created -- no UPDATE, no DELETE.
        step_id is the step that was current when the action was recorded;
        (step_id, step_started_at) identifies that step instance.  A record
        counts toward the instance only when acted_on_step_id == step_id.
    """

    __tablename__ = "workflow_approvals"

    __table_args__ = (
        CheckConstraint(
            "approval_action IN ('approved', 'rejected', 'reassigned', 'escalated')",
            name="ck_workflow_approvals_action",
        ),
        CheckConstraint(
            "approval_action <> 'escalated' OR entity_type = 'incident'",
            name="ck_workflow_approvals_escalated_incident",
        ),
        UniqueConstraint(
            "entity_id", "sequence_no",
            name="uq_workflow_approvals_sequence",
        ),
        Index(
            "ix_workflow_approvals_step_instance",
            "entity_id", "step_id", "step_started_at",
        ),
    )

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    step_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id"),
        nullable=False,
    )
    acted_on_step_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id"),
        nullable=False,
    )
    step_started_at: Mapped[datetime] = mapped_column(nullable=False)
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    approved_at: Mapped[datetime] = mapped_column(nullable=False)
    approval_action: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    reassigned_to_user_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord entity={self.entity_id} #{self.sequence_no} "
            f"{self.approval_action} by={self.approved_by_user_id}>"
        )

    def to_dto(self) -> ApprovalRecord:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalRecord(
            id=self.id,
            entity_id=self.entity_id,
            entity_type=EntityType(self.entity_type),
            organization_id=self.organization_id,
            step_id=self.step_id,
            step_started_at=self.step_started_at,
            sequence_no=self.sequence_no,
            approved_by_user_id=self.approved_by_user_id,
            approved_at=self.approved_at,
            approval_action=ApprovalAction(self.approval_action),
            comments=self.comments,
            reassigned_to_user_id=self.reassigned_to_user_id,
            acted_on_step_id=self.acted_on_step_id,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only Ledger)
# =============================================================================


@event.listens_for(ApprovalRecordModel, "before_update")
def prevent_approval_record_update(mapper, connection, target):
    """Prevent updates to approval ledger records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRecord",
        entity_id=str(target.id),
        reason="Approval records are append-only -- cannot modify",
    )


@event.listens_for(ApprovalRecordModel, "before_delete")
def prevent_approval_record_delete(mapper, connection, target):
    """Prevent deletion of approval ledger records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRecord",
        entity_id=str(target.id),
        reason="Approval records are append-only -- cannot delete",
    )
