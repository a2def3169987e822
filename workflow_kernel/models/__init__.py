"""ORM models for the workflow kernel."""

from workflow_kernel.models.approval_record import ApprovalRecordModel
from workflow_kernel.models.execution_log import WorkflowExecutionLogModel
from workflow_kernel.models.template import (
    StepConditionModel,
    StepRoleAssignmentModel,
    WorkflowStepModel,
    WorkflowTemplateModel,
)
from workflow_kernel.models.workflow_state import WorkflowStateModel

__all__ = [
    "ApprovalRecordModel",
    "StepConditionModel",
    "StepRoleAssignmentModel",
    "WorkflowExecutionLogModel",
    "WorkflowStateModel",
    "WorkflowStepModel",
    "WorkflowTemplateModel",
]
