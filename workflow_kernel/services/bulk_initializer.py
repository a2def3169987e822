"""
BulkInitializer -- backfills workflow states for untracked entities.

Responsibility:
    Scans the entity store for entities of a module that have no workflow
    state and initializes each through WorkflowStateStore.  Also serves the
    explicit-id path (initialize a given list of entities, reporting a
    result per entity).

Architecture position:
    Kernel > Services -- imperative shell.  Reads the EntityStore
    collaborator and ``WorkflowStateModel``; state writes go through
    ``WorkflowStateStore.initialize``, so leading ``none`` steps are
    walked through exactly as on entity creation.

Invariants enforced:
    - Precondition before any write: every organization with an untracked
      entity has an active default template (NoDefaultTemplateError
      otherwise).  This is not a per-entity failure.
    - Re-runnable: entities that already have a state are skipped, so a
      partial prior run is simply completed.
    - A per-entity failure on the explicit-id path is rolled back to its
      savepoint and then written to the execution log.
"""

from __future__ import annotations

import time
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from workflow_kernel.domain.clock import Clock
from workflow_kernel.domain.collaborators import EntityRef, EntityStore, RoleProvider
from workflow_kernel.domain.workflow import (
    BulkInitResult,
    EntityInitResult,
    EntityType,
    ExecutionAction,
    WorkflowModule,
)
from workflow_kernel.exceptions import NoDefaultTemplateError, WorkflowKernelError
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.services.base import BaseService
from workflow_kernel.services.execution_log import ExecutionLogRecorder
from workflow_kernel.services.template_store import TemplateStore
from workflow_kernel.services.workflow_state_store import WorkflowStateStore

logger = get_logger("services.bulk_initializer")


class BulkInitializer(BaseService[WorkflowStateModel]):
    """Attach the default template to every entity of a module lacking one."""

    def __init__(
        self,
        session: Session,
        entity_store: EntityStore,
        clock: Clock | None = None,
        role_provider: RoleProvider | None = None,
    ):
        super().__init__(session, clock)
        self._entity_store = entity_store
        self._templates = TemplateStore(session, self.clock)
        self._states = WorkflowStateStore(
            session, entity_store, self.clock, role_provider=role_provider,
        )
        self._execution_log = ExecutionLogRecorder(session, self.clock)

    def initialize_missing(
        self,
        module: WorkflowModule | str,
        *,
        actor_id: UUID,
        organization_id: UUID | None = None,
    ) -> BulkInitResult:
        """
        Initialize every untracked entity of ``module``.

        Args:
            module: work_orders or safety_incidents.
            actor_id: Recorded as creator of the new states.
            organization_id: Restrict the scan to one organization.

        Returns:
            BulkInitResult(initialized, skipped); skipped counts entities
            that already had a state.

        Raises:
            NoDefaultTemplateError: an organization with untracked entities
                has no default template.  Raised before any write.
        """
        module = WorkflowModule(module)
        entity_type = EntityType.for_module(module)

        with LogContext.bind(
            actor_id=str(actor_id),
            organization_id=str(organization_id) if organization_id else None,
        ):
            entities = list(self._entity_store.list_entities(entity_type, organization_id))
            tracked = self._tracked_ids(e.entity_id for e in entities)
            untracked = [e for e in entities if e.entity_id not in tracked]

            self._require_defaults(untracked, module)

            initialized = 0
            for ref in untracked:
                self._states.initialize(
                    ref.entity_id, entity_type, ref.organization_id, actor_id,
                )
                initialized += 1

            result = BulkInitResult(
                initialized=initialized,
                skipped=len(entities) - len(untracked),
            )
            logger.info(
                "bulk_initialize_completed",
                extra={
                    "workflow_module": module.value,
                    "scanned": len(entities),
                    "initialized": result.initialized,
                    "skipped": result.skipped,
                },
            )
            return result

    def initialize_entities(
        self,
        entity_type: EntityType | str,
        entity_ids: Iterable[UUID],
        organization_id: UUID,
        *,
        actor_id: UUID,
    ) -> list[EntityInitResult]:
        """
        Initialize an explicit list of entities, one result per id.

        A failure for one entity (unknown entity, no default template) is
        reported in its result and does not stop the others.  Each entity
        is initialized inside its own savepoint.
        """
        entity_type = EntityType(entity_type)
        results: list[EntityInitResult] = []

        for entity_id in entity_ids:
            started = time.monotonic()
            savepoint = self.session.begin_nested()
            try:
                state = self._states.initialize(
                    entity_id, entity_type, organization_id, actor_id,
                )
            except WorkflowKernelError as exc:
                savepoint.rollback()
                self._execution_log.record_failure(
                    ExecutionAction.INITIALIZE,
                    exc,
                    started=started,
                    organization_id=organization_id,
                    entity_id=entity_id,
                    entity_type=entity_type,
                    performed_by=actor_id,
                    payload={"bulk": True},
                )
                logger.warning(
                    "bulk_initialize_entity_failed",
                    extra={
                        "entity_id": str(entity_id),
                        "error_code": exc.code,
                    },
                )
                results.append(
                    EntityInitResult(
                        entity_id=entity_id,
                        success=False,
                        error_code=exc.code,
                        error_message=str(exc),
                    )
                )
                continue
            savepoint.commit()
            results.append(EntityInitResult(entity_id=entity_id, success=True, state=state))

        logger.info(
            "bulk_initialize_entities_completed",
            extra={
                "entity_type": entity_type.value,
                "requested": len(results),
                "succeeded": sum(1 for r in results if r.success),
            },
        )
        return results

    def _tracked_ids(self, entity_ids: Iterable[UUID]) -> set[UUID]:
        ids = list(entity_ids)
        if not ids:
            return set()
        tracked: set[UUID] = set()
        # Chunked to stay under bind-parameter limits.
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            tracked.update(
                self.session.execute(
                    select(WorkflowStateModel.entity_id).where(
                        WorkflowStateModel.entity_id.in_(chunk),
                    )
                ).scalars()
            )
        return tracked

    def _require_defaults(
        self,
        untracked: list[EntityRef],
        module: WorkflowModule,
    ) -> None:
        for org_id in sorted({e.organization_id for e in untracked}, key=str):
            if self._templates.get_default(org_id, module) is None:
                logger.warning(
                    "bulk_initialize_no_default",
                    extra={
                        "organization_id": str(org_id),
                        "workflow_module": module.value,
                    },
                )
                raise NoDefaultTemplateError(str(org_id), module.value)
