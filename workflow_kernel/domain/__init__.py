"""Pure domain layer for the workflow kernel (ZERO I/O)."""

from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from workflow_kernel.domain.collaborators import EntityRef, EntityStore, RoleProvider
from workflow_kernel.domain.policy import (
    PolicyEvaluation,
    evaluate_step_policy,
    failed_conditions,
    is_authorized,
    resolve_pending_role,
)
from workflow_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalRecord,
    ApprovalType,
    BulkInitResult,
    ConditionOperator,
    EngineSettings,
    EntityInitResult,
    EntityType,
    ExecutionAction,
    ExecutionAnalytics,
    ExecutionLogEntry,
    StepCondition,
    StepEntry,
    StepRole,
    StepSpec,
    TransitionOutcome,
    TransitionResult,
    WorkflowModule,
    WorkflowState,
    WorkflowStep,
    WorkflowEvent,
    WorkflowTemplate,
    compute_sla_due,
    resolve_entry,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "EntityRef",
    "EntityStore",
    "RoleProvider",
    "PolicyEvaluation",
    "evaluate_step_policy",
    "failed_conditions",
    "is_authorized",
    "resolve_pending_role",
    "ApprovalAction",
    "ApprovalRecord",
    "ApprovalType",
    "BulkInitResult",
    "ConditionOperator",
    "EngineSettings",
    "EntityInitResult",
    "EntityType",
    "ExecutionAction",
    "ExecutionAnalytics",
    "ExecutionLogEntry",
    "StepCondition",
    "StepEntry",
    "StepRole",
    "StepSpec",
    "TransitionOutcome",
    "TransitionResult",
    "WorkflowModule",
    "WorkflowState",
    "WorkflowStep",
    "WorkflowEvent",
    "WorkflowTemplate",
    "compute_sla_due",
    "resolve_entry",
]
