"""
Module: workflow_kernel.models.workflow_state
Responsibility: ORM persistence for the per-entity workflow position.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - One state per entity: UNIQUE(entity_id).
    - version is the compare-and-swap token; every write increments it.
    - current_step_id references a step of template_id (service-enforced;
      both columns carry foreign keys).

Failure modes:
    - IntegrityError on a concurrent second initialization of the same
      entity (resolved by WorkflowStateStore by re-reading the winner).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import TrackedBase, UUIDString
from workflow_kernel.domain.workflow import EntityType, WorkflowState


class WorkflowStateModel(TrackedBase):
    """Current step of one tracked entity.

    Contract:
        Mutated only by WorkflowStateStore (insert) and TransitionEngine
        (compare-and-swap UPDATE on current_step_id, step_started_at and
        version).
    """

    __tablename__ = "workflow_states"

    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('work_order', 'incident')",
            name="ck_workflow_states_entity_type",
        ),
        Index(
            "ix_workflow_states_org_type",
            "organization_id", "entity_type",
        ),
        Index("ix_workflow_states_sla_due", "sla_due_at"),
    )

    entity_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    template_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_templates.id"),
        nullable=False,
        index=True,
    )
    current_step_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id"),
        nullable=True,
    )
    assigned_to_user_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )
    pending_approval_from_role: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    step_started_at: Mapped[datetime] = mapped_column(nullable=False)
    sla_due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<WorkflowState entity={self.entity_id} "
            f"step={self.current_step_id} v{self.version}>"
        )

    def to_dto(self) -> WorkflowState:
        """Convert ORM model to frozen domain DTO."""
        return WorkflowState(
            id=self.id,
            entity_id=self.entity_id,
            entity_type=EntityType(self.entity_type),
            organization_id=self.organization_id,
            template_id=self.template_id,
            current_step_id=self.current_step_id,
            step_started_at=self.step_started_at,
            version=self.version,
            assigned_to_user_id=self.assigned_to_user_id,
            pending_approval_from_role=self.pending_approval_from_role,
            sla_due_at=self.sla_due_at,
            completed_at=self.completed_at,
        )
