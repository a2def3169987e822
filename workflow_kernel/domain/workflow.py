"""
Workflow domain types (``workflow_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the approval-workflow engine: modules and entity
types, approval types and actions, template/step/state/record snapshots,
and the results returned by the services.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/``, ``selectors/`` or outer layers.

Invariants enforced
-------------------
* ``sla_due_at`` is always ``step_started_at + sla_hours`` when the step
  defines an SLA, else ``None`` (``compute_sla_due``).
* ``ApprovalAction.ESCALATED`` is only valid for incidents
  (``EntityType.allows``).
* A ``WorkflowState`` with ``completed_at`` set is terminal.
* Entering a step walks past ``none`` steps that have a successor; a
  final ``none`` step is terminal on arrival (``resolve_entry``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping
from uuid import UUID


# =========================================================================
# Modules and entity types
# =========================================================================


class WorkflowModule(str, Enum):
    """Entity family a template governs."""

    WORK_ORDERS = "work_orders"
    SAFETY_INCIDENTS = "safety_incidents"


class EntityType(str, Enum):
    """Kind of tracked entity."""

    WORK_ORDER = "work_order"
    INCIDENT = "incident"

    @property
    def module(self) -> WorkflowModule:
        if self is EntityType.WORK_ORDER:
            return WorkflowModule.WORK_ORDERS
        return WorkflowModule.SAFETY_INCIDENTS

    @classmethod
    def for_module(cls, module: WorkflowModule | str) -> EntityType:
        module = WorkflowModule(module)
        if module is WorkflowModule.WORK_ORDERS:
            return cls.WORK_ORDER
        return cls.INCIDENT

    def allows(self, action: ApprovalAction) -> bool:
        """Escalation exists only in the incident workflow."""
        if action is ApprovalAction.ESCALATED:
            return self is EntityType.INCIDENT
        return True


# =========================================================================
# Approval policy vocabulary
# =========================================================================


class ApprovalType(str, Enum):
    """Approval policy of a step."""

    NONE = "none"
    SINGLE = "single"
    MULTIPLE = "multiple"
    UNANIMOUS = "unanimous"


class ApprovalAction(str, Enum):
    """Action recorded in the approval ledger."""

    APPROVED = "approved"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"
    ESCALATED = "escalated"


class TransitionOutcome(str, Enum):
    """What a transition call did after recording the action."""

    ADVANCED = "advanced"
    COMPLETED = "completed"
    PENDING = "pending"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"
    ESCALATED = "escalated"
    STALE_STEP = "stale_step"
    TERMINAL = "terminal"
    ALREADY_ADVANCED = "already_advanced"


class ConditionOperator(str, Enum):
    """Comparison applied by a step condition to an entity field."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class ExecutionAction(str, Enum):
    """Kind of kernel operation written to the execution log."""

    INITIALIZE = "initialize"
    TRANSITION = "transition"
    TEMPLATE_CREATE = "template_create"
    TEMPLATE_REVISE = "template_revise"


class WorkflowEvent(str, Enum):
    """Domain event published by a successful kernel operation."""

    WORKFLOW_INITIALIZED = "workflow_initialized"
    STEP_TRANSITIONED = "step_transitioned"
    WORKFLOW_COMPLETED = "workflow_completed"
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"


AUTO_ADVANCE_COMMENT = "auto-advanced: step requires no approval"


def compute_sla_due(
    step_started_at: datetime,
    sla_hours: int | None,
) -> datetime | None:
    """Deadline for a step instance, or None when the step has no SLA."""
    if sla_hours is None:
        return None
    return step_started_at + timedelta(hours=sla_hours)


# =========================================================================
# Template definitions
# =========================================================================


@dataclass(frozen=True)
class StepRole:
    """A role assigned to a step, with its permission flags."""

    role_name: str
    can_approve: bool = True
    can_reject: bool = True
    can_assign: bool = True

    def permits(self, action: ApprovalAction) -> bool:
        if action is ApprovalAction.APPROVED:
            return self.can_approve
        if action is ApprovalAction.REJECTED:
            return self.can_reject
        if action is ApprovalAction.REASSIGNED:
            return self.can_assign
        return True


@dataclass(frozen=True)
class StepCondition:
    """A predicate over an entity field that must hold to enter a step.

    ``expected_value`` is stored as text; numeric comparisons apply when
    both sides parse as numbers (see ``domain.policy.condition_holds``).
    """

    field_name: str
    operator: ConditionOperator
    expected_value: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class StepSpec:
    """Input definition of a step, used when creating a template."""

    step_order: int
    name: str
    approval_type: ApprovalType = ApprovalType.SINGLE
    description: str | None = None
    sla_hours: int | None = None
    is_required: bool = True
    min_approvals: int | None = None
    work_order_status: str | None = None
    incident_status: str | None = None
    roles: tuple[StepRole, ...] = ()
    conditions: tuple[StepCondition, ...] = ()


@dataclass(frozen=True)
class WorkflowStep:
    """Immutable snapshot of a persisted step."""

    id: UUID
    template_id: UUID
    step_order: int
    name: str
    approval_type: ApprovalType
    description: str | None = None
    sla_hours: int | None = None
    is_required: bool = True
    min_approvals: int | None = None
    work_order_status: str | None = None
    incident_status: str | None = None
    roles: tuple[StepRole, ...] = ()
    conditions: tuple[StepCondition, ...] = ()

    @property
    def role_assignments(self) -> frozenset[str]:
        return frozenset(r.role_name for r in self.roles)

    def status_for(self, entity_type: EntityType) -> str | None:
        """Entity status written when this step becomes current."""
        if entity_type is EntityType.WORK_ORDER:
            return self.work_order_status
        return self.incident_status

    def to_spec(self) -> StepSpec:
        return StepSpec(
            step_order=self.step_order,
            name=self.name,
            approval_type=self.approval_type,
            description=self.description,
            sla_hours=self.sla_hours,
            is_required=self.is_required,
            min_approvals=self.min_approvals,
            work_order_status=self.work_order_status,
            incident_status=self.incident_status,
            roles=self.roles,
            conditions=self.conditions,
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """Immutable snapshot of a template version and its ordered steps."""

    id: UUID
    organization_id: UUID
    module: WorkflowModule
    name: str
    version: int
    is_default: bool
    is_active: bool
    description: str | None = None
    supersedes_id: UUID | None = None
    created_at: datetime | None = None
    steps: tuple[WorkflowStep, ...] = ()

    @property
    def first_step(self) -> WorkflowStep | None:
        return self.steps[0] if self.steps else None

    def step_by_id(self, step_id: UUID) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def next_step(self, step_id: UUID) -> WorkflowStep | None:
        """Step following ``step_id`` in step_order, or None at the end."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                if index + 1 < len(self.steps):
                    return self.steps[index + 1]
                return None
        return None


@dataclass(frozen=True)
class StepEntry:
    """Where a workflow lands when it enters ``step``.

    ``skipped`` lists the approval-free steps walked through on the way to
    ``landing``.  ``completes`` is True when ``landing`` is a final ``none``
    step, so arriving there finishes the workflow.
    """

    landing: WorkflowStep
    skipped: tuple[WorkflowStep, ...] = ()
    completes: bool = False

    @property
    def entered(self) -> tuple[WorkflowStep, ...]:
        return self.skipped + (self.landing,)


def resolve_entry(template: WorkflowTemplate, step: WorkflowStep) -> StepEntry:
    """Walk consecutive ``none`` steps starting at ``step``."""
    skipped: list[WorkflowStep] = []
    current = step
    while current.approval_type is ApprovalType.NONE:
        following = template.next_step(current.id)
        if following is None:
            return StepEntry(landing=current, skipped=tuple(skipped), completes=True)
        skipped.append(current)
        current = following
    return StepEntry(landing=current, skipped=tuple(skipped))


# =========================================================================
# Runtime state and ledger records
# =========================================================================


@dataclass(frozen=True)
class WorkflowState:
    """Immutable snapshot of an entity's position in its workflow."""

    id: UUID
    entity_id: UUID
    entity_type: EntityType
    organization_id: UUID
    template_id: UUID
    current_step_id: UUID | None
    step_started_at: datetime
    version: int = 1
    assigned_to_user_id: UUID | None = None
    pending_approval_from_role: str | None = None
    sla_due_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None

    def is_overdue(self, as_of: datetime) -> bool:
        """SLA breach is observed, never enforced."""
        if self.is_terminal or self.sla_due_at is None:
            return False
        return as_of > self.sla_due_at


@dataclass(frozen=True)
class ApprovalRecord:
    """One entry of the append-only approval ledger.

    ``step_id`` and ``step_started_at`` identify the step instance that was
    current when the action was recorded.  ``acted_on_step_id`` is the step
    the actor targeted; it differs from ``step_id`` only for stale actions,
    which never count toward any policy.
    """

    id: UUID
    entity_id: UUID
    entity_type: EntityType
    organization_id: UUID
    step_id: UUID
    step_started_at: datetime
    sequence_no: int
    approved_by_user_id: UUID
    approved_at: datetime
    approval_action: ApprovalAction
    comments: str | None = None
    reassigned_to_user_id: UUID | None = None
    acted_on_step_id: UUID | None = None

    @property
    def is_stale(self) -> bool:
        """True when the actor targeted a step other than the current one."""
        return self.acted_on_step_id is not None and self.acted_on_step_id != self.step_id


@dataclass(frozen=True)
class TransitionResult:
    """Result of ``TransitionEngine.transition``.

    ``record`` is the ledger entry written for this call; it is present for
    every outcome, including the non-advancing ones.
    """

    state: WorkflowState
    outcome: TransitionOutcome
    record: ApprovalRecord
    from_step_id: UUID | None = None
    to_step_id: UUID | None = None
    reason: str = ""
    skipped_step_ids: tuple[UUID, ...] = ()

    @property
    def advanced(self) -> bool:
        return self.outcome in (
            TransitionOutcome.ADVANCED,
            TransitionOutcome.COMPLETED,
        )


@dataclass(frozen=True)
class BulkInitResult:
    """Counts returned by ``BulkInitializer.initialize_missing``."""

    initialized: int
    skipped: int


@dataclass(frozen=True)
class EntityInitResult:
    """Per-entity outcome of an explicit-id bulk initialization."""

    entity_id: UUID
    success: bool
    state: WorkflowState | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One row of the workflow execution log."""

    id: UUID
    action_type: ExecutionAction
    success: bool
    created_at: datetime
    organization_id: UUID | None = None
    entity_id: UUID | None = None
    entity_type: EntityType | None = None
    workflow_state_id: UUID | None = None
    template_id: UUID | None = None
    step_id: UUID | None = None
    to_step_id: UUID | None = None
    performed_by: UUID | None = None
    event_type: WorkflowEvent | None = None
    outcome: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: float | None = None
    payload: Mapping | None = None


@dataclass(frozen=True)
class ExecutionAnalytics:
    """Aggregate view over the most recent execution-log rows."""

    total: int
    successful: int
    failed: int
    average_duration_ms: float | None
    recent: tuple[ExecutionLogEntry, ...] = ()

    @property
    def success_rate(self) -> float | None:
        if not self.total:
            return None
        return round(self.successful / self.total, 4)


@dataclass(frozen=True)
class EngineSettings:
    """Tunables handed to the transition engine by the configuration layer."""

    multiple_min_approvals: Mapping[WorkflowModule, int] = field(
        default_factory=dict,
    )
    default_min_approvals: int = 2
    max_cas_retries: int = 3
    system_actor_id: UUID = UUID(int=0)

    def min_approvals_for(self, module: WorkflowModule) -> int:
        return self.multiple_min_approvals.get(module, self.default_min_approvals)
