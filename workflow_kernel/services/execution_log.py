"""
ExecutionLogRecorder -- persisted execution log and domain-event publication.

Responsibility:
    Writes one ``WorkflowExecutionLogModel`` row per initialize,
    transition and template write, carrying its duration, outcome and (on
    failure) the typed error code.  Successful calls that change a
    workflow or template also publish a domain event
    (``workflow_event_published`` log line plus the row's event_type).

Architecture position:
    Kernel > Services -- imperative shell, called by WorkflowStateStore,
    TransitionEngine, BulkInitializer and TemplateStore.  INSERT-only.

Invariants enforced:
    - Append-only: the model's ORM listeners refuse UPDATE and DELETE.
    - Rows are flushed in the caller's transaction.  A failure row survives
      only if the caller keeps that transaction; callers that catch a
      kernel error and carry on (bulk initialization, an API layer
      returning an error body) therefore keep it.

Failure modes:
    - None of its own; database errors propagate to the caller.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from workflow_kernel.domain.workflow import (
    EntityType,
    ExecutionAction,
    ExecutionLogEntry,
    WorkflowEvent,
)
from workflow_kernel.exceptions import WorkflowKernelError
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.execution_log import WorkflowExecutionLogModel
from workflow_kernel.services.base import BaseService

logger = get_logger("services.execution_log")


def elapsed_ms(started: float) -> float:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return round((time.monotonic() - started) * 1000, 2)


def _json_safe(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return value


class ExecutionLogRecorder(BaseService[WorkflowExecutionLogModel]):
    """Append execution-log rows for kernel operations."""

    def record_success(
        self,
        action_type: ExecutionAction,
        *,
        started: float,
        event_type: WorkflowEvent | None = None,
        outcome: str | None = None,
        **fields: Any,
    ) -> ExecutionLogEntry:
        entry = self._append(
            action_type,
            success=True,
            duration_ms=elapsed_ms(started),
            event_type=event_type,
            outcome=outcome,
            **fields,
        )
        if event_type is not None:
            logger.info(
                "workflow_event_published",
                extra={
                    "event_type": event_type.value,
                    "execution_log_id": str(entry.id),
                    "entity_id": str(entry.entity_id) if entry.entity_id else None,
                    "template_id": str(entry.template_id) if entry.template_id else None,
                    "to_step_id": str(entry.to_step_id) if entry.to_step_id else None,
                },
            )
        return entry

    def record_failure(
        self,
        action_type: ExecutionAction,
        error: WorkflowKernelError,
        *,
        started: float,
        **fields: Any,
    ) -> ExecutionLogEntry:
        return self._append(
            action_type,
            success=False,
            duration_ms=elapsed_ms(started),
            error_code=error.code,
            error_message=str(error),
            **fields,
        )

    def _append(
        self,
        action_type: ExecutionAction,
        *,
        success: bool,
        duration_ms: float,
        organization_id: UUID | None = None,
        entity_id: UUID | None = None,
        entity_type: EntityType | str | None = None,
        workflow_state_id: UUID | None = None,
        template_id: UUID | None = None,
        step_id: UUID | None = None,
        to_step_id: UUID | None = None,
        performed_by: UUID | None = None,
        event_type: WorkflowEvent | None = None,
        outcome: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> ExecutionLogEntry:
        model = WorkflowExecutionLogModel(
            organization_id=organization_id,
            entity_id=entity_id,
            entity_type=EntityType(entity_type).value if entity_type else None,
            workflow_state_id=workflow_state_id,
            template_id=template_id,
            step_id=step_id,
            to_step_id=to_step_id,
            performed_by=performed_by,
            action_type=ExecutionAction(action_type).value,
            event_type=event_type.value if event_type else None,
            success=success,
            outcome=outcome,
            error_code=error_code,
            error_message=error_message,
            duration_ms=duration_ms,
            payload=_json_safe(payload) if payload else None,
            created_at=self.clock.now(),
        )
        self.session.add(model)
        self.session.flush()

        logger.debug(
            "execution_logged",
            extra={
                "execution_log_id": str(model.id),
                "action_type": model.action_type,
                "success": success,
                "error_code": error_code,
                "duration_ms": duration_ms,
            },
        )
        return model.to_dto()
