"""
Module: workflow_kernel.models.template
Responsibility: ORM persistence for workflow templates, their ordered steps,
    and the role assignments (with permission flags) of each step,
    and the entry conditions of each step.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - At most one default template per organization x module: partial
      unique index ``ux_workflow_templates_one_default``.
    - step_order unique within a template: UNIQUE(template_id, step_order).
    - Versions unique per organization x module x name.
    - approval_type / module / condition operator limited by CHECK
      constraints.
    - Structural immutability once referenced by a workflow state is
      enforced by ``workflow_kernel.db.immutability``.

Failure modes:
    - IntegrityError on a second default for the same organization x module.
    - IntegrityError on duplicate step_order.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import Base, TrackedBase, UUIDString
from workflow_kernel.domain.workflow import (
    ApprovalType,
    ConditionOperator,
    StepCondition,
    StepRole,
    WorkflowModule,
    WorkflowStep,
    WorkflowTemplate,
)


class WorkflowTemplateModel(TrackedBase):
    """Persistent template version.

    Contract:
        A row is one version.  Editing a referenced template creates a new
        row whose supersedes_id points at the previous version.
    """

    __tablename__ = "workflow_templates"

    __table_args__ = (
        CheckConstraint(
            "module IN ('work_orders', 'safety_incidents')",
            name="ck_workflow_templates_module",
        ),
        CheckConstraint("version >= 1", name="ck_workflow_templates_version"),
        UniqueConstraint(
            "organization_id", "module", "name", "version",
            name="uq_workflow_templates_version",
        ),
        Index(
            "ux_workflow_templates_one_default",
            "organization_id", "module",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
        Index(
            "ix_workflow_templates_org_module",
            "organization_id", "module",
        ),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    module: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Lineage pointer; the superseded row may since have been deleted.
    supersedes_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )

    steps: Mapped[list["WorkflowStepModel"]] = relationship(
        "WorkflowStepModel",
        back_populates="template",
        order_by="WorkflowStepModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowTemplate {self.name} v{self.version} "
            f"{self.module} default={self.is_default}>"
        )

    def to_dto(self) -> WorkflowTemplate:
        """Convert ORM model to frozen domain DTO."""
        return WorkflowTemplate(
            id=self.id,
            organization_id=self.organization_id,
            module=WorkflowModule(self.module),
            name=self.name,
            version=self.version,
            is_default=self.is_default,
            is_active=self.is_active,
            description=self.description,
            supersedes_id=self.supersedes_id,
            created_at=self.created_at,
            steps=tuple(s.to_dto() for s in self.steps),
        )


class WorkflowStepModel(Base):
    """Persistent step of a template version."""

    __tablename__ = "workflow_steps"

    __table_args__ = (
        UniqueConstraint(
            "template_id", "step_order",
            name="uq_workflow_steps_order",
        ),
        CheckConstraint("step_order >= 1", name="ck_workflow_steps_order_positive"),
        CheckConstraint(
            "approval_type IN ('none', 'single', 'multiple', 'unanimous')",
            name="ck_workflow_steps_approval_type",
        ),
        CheckConstraint(
            "sla_hours IS NULL OR sla_hours > 0",
            name="ck_workflow_steps_sla_positive",
        ),
        CheckConstraint(
            "min_approvals IS NULL OR min_approvals >= 1",
            name="ck_workflow_steps_min_approvals",
        ),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_templates.id"),
        nullable=False,
        index=True,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sla_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    min_approvals: Mapped[int | None] = mapped_column(Integer, nullable=True)
    work_order_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    incident_status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    template: Mapped["WorkflowTemplateModel"] = relationship(
        "WorkflowTemplateModel",
        back_populates="steps",
    )
    roles: Mapped[list["StepRoleAssignmentModel"]] = relationship(
        "StepRoleAssignmentModel",
        back_populates="step",
        order_by="StepRoleAssignmentModel.role_name",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    conditions: Mapped[list["StepConditionModel"]] = relationship(
        "StepConditionModel",
        back_populates="step",
        order_by="StepConditionModel.field_name",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<WorkflowStep {self.step_order}:{self.name} ({self.approval_type})>"

    def to_dto(self) -> WorkflowStep:
        """Convert ORM model to frozen domain DTO."""
        return WorkflowStep(
            id=self.id,
            template_id=self.template_id,
            step_order=self.step_order,
            name=self.name,
            approval_type=ApprovalType(self.approval_type),
            description=self.description,
            sla_hours=self.sla_hours,
            is_required=self.is_required,
            min_approvals=self.min_approvals,
            work_order_status=self.work_order_status,
            incident_status=self.incident_status,
            roles=tuple(r.to_dto() for r in self.roles),
            conditions=tuple(c.to_dto() for c in self.conditions),
        )


class StepRoleAssignmentModel(Base):
    """Role allowed to act on a step, with per-action permission flags."""

    __tablename__ = "workflow_step_roles"

    __table_args__ = (
        UniqueConstraint("step_id", "role_name", name="uq_workflow_step_roles"),
    )

    step_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id"),
        nullable=False,
        index=True,
    )
    role_name: Mapped[str] = mapped_column(String(100), nullable=False)
    can_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_reject: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_assign: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    step: Mapped["WorkflowStepModel"] = relationship(
        "WorkflowStepModel",
        back_populates="roles",
    )

    def __repr__(self) -> str:
        return f"<StepRoleAssignment {self.role_name} step={self.step_id}>"

    def to_dto(self) -> StepRole:
        return StepRole(
            role_name=self.role_name,
            can_approve=self.can_approve,
            can_reject=self.can_reject,
            can_assign=self.can_assign,
        )


class StepConditionModel(Base):
    """Entry condition of a step, evaluated against entity fields."""

    __tablename__ = "workflow_step_conditions"

    __table_args__ = (
        CheckConstraint(
            "operator IN ('equals', 'not_equals', 'greater_than', "
            "'less_than', 'contains')",
            name="ck_workflow_step_conditions_operator",
        ),
    )

    step_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id"),
        nullable=False,
        index=True,
    )
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    operator: Mapped[str] = mapped_column(String(20), nullable=False)
    expected_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    step: Mapped["WorkflowStepModel"] = relationship(
        "WorkflowStepModel",
        back_populates="conditions",
    )

    def __repr__(self) -> str:
        return (
            f"<StepCondition {self.field_name} {self.operator} "
            f"{self.expected_value!r} step={self.step_id}>"
        )

    def to_dto(self) -> StepCondition:
        return StepCondition(
            field_name=self.field_name,
            operator=ConditionOperator(self.operator),
            expected_value=self.expected_value,
            is_active=self.is_active,
        )
