"""Write-side services of the workflow kernel."""

from workflow_kernel.services.approval_ledger import ApprovalLedger
from workflow_kernel.services.bulk_initializer import BulkInitializer
from workflow_kernel.services.execution_log import ExecutionLogRecorder
from workflow_kernel.services.template_store import TemplateStore
from workflow_kernel.services.transition_engine import TransitionEngine
from workflow_kernel.services.workflow_state_store import WorkflowStateStore

__all__ = [
    "ApprovalLedger",
    "BulkInitializer",
    "ExecutionLogRecorder",
    "TemplateStore",
    "TransitionEngine",
    "WorkflowStateStore",
]
