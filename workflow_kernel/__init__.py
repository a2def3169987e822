"""
Workflow Kernel

Approval-workflow engine for maintenance work orders and safety incidents:
- Versioned, organization-scoped workflow templates with ordered steps
- One workflow state per tracked entity, advanced by compare-and-swap
- Append-only approval ledger (the audit trail)
- Approval policies: none, single, multiple, unanimous
- Passive SLA deadlines observed by collaborators
"""

__version__ = "0.1.0"
