"""Read-only selectors."""

from workflow_kernel.selectors.workflow_selector import (
    ApprovalHistoryEntry,
    ModuleWorkflowStatus,
    OverdueWorkflow,
    WorkflowSelector,
)

__all__ = [
    "ApprovalHistoryEntry",
    "ModuleWorkflowStatus",
    "OverdueWorkflow",
    "WorkflowSelector",
]
