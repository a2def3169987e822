"""
Module: workflow_kernel.adapters.table_entity_store
Responsibility: EntityStore adapter over the application's work-order and
    incident tables, using SQLAlchemy Core constructs built from a column
    mapping (the kernel owns none of these tables).
Architecture position: Kernel > Adapters.  Implements
    ``workflow_kernel.domain.collaborators.EntityStore``.

Invariants enforced:
    - Status writes go through the caller's session, so they commit or roll
      back together with the workflow change that caused them.

Failure modes:
    - EntityNotFoundError from update_status and get_fields when no row
      matches.
    - EntityNotFoundError for an entity type that has no table mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping
from uuid import UUID

from sqlalchemy import column, select, table, update
from sqlalchemy.orm import Session

from workflow_kernel.domain.collaborators import EntityRef
from workflow_kernel.domain.workflow import EntityType
from workflow_kernel.exceptions import EntityNotFoundError
from workflow_kernel.logging_config import get_logger

logger = get_logger("adapters.table_entity_store")


@dataclass(frozen=True)
class EntityTableMapping:
    """Where an entity type lives and which columns the kernel touches."""

    table: str
    id_column: str = "id"
    organization_column: str = "organization_id"
    status_column: str = "status"


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class TableEntityStore:
    """EntityStore backed by plain database tables."""

    def __init__(
        self,
        session: Session,
        mappings: Mapping[EntityType, EntityTableMapping],
    ):
        self._session = session
        self._mappings = {EntityType(k): v for k, v in mappings.items()}

    def _table(self, entity_type: EntityType):
        mapping = self._mappings.get(EntityType(entity_type))
        if mapping is None:
            raise EntityNotFoundError(str(entity_type), "<no table mapping>")
        tbl = table(
            mapping.table,
            column(mapping.id_column),
            column(mapping.organization_column),
            column(mapping.status_column),
        )
        return (
            tbl,
            tbl.c[mapping.id_column],
            tbl.c[mapping.organization_column],
            tbl.c[mapping.status_column],
        )

    def exists(self, entity_type: EntityType, entity_id: UUID) -> bool:
        tbl, id_col, _, _ = self._table(entity_type)
        found = self._session.execute(
            select(id_col).select_from(tbl).where(id_col == str(entity_id))
        ).first()
        return found is not None

    def list_entities(
        self,
        entity_type: EntityType,
        organization_id: UUID | None = None,
    ) -> Iterator[EntityRef]:
        tbl, id_col, org_col, _ = self._table(entity_type)
        query = select(id_col, org_col).select_from(tbl).order_by(id_col)
        if organization_id is not None:
            query = query.where(org_col == str(organization_id))
        for entity_id, org_id in self._session.execute(query):
            yield EntityRef(entity_id=_as_uuid(entity_id), organization_id=_as_uuid(org_id))

    def update_status(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        status: str,
    ) -> None:
        tbl, id_col, _, status_col = self._table(entity_type)
        result = self._session.execute(
            update(tbl)
            .where(id_col == str(entity_id))
            .values({status_col: status})
        )
        if result.rowcount == 0:
            raise EntityNotFoundError(EntityType(entity_type).value, str(entity_id))
        logger.debug(
            "entity_status_updated",
            extra={
                "entity_type": EntityType(entity_type).value,
                "entity_id": str(entity_id),
                "status": status,
            },
        )

    def get_fields(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        field_names: Iterable[str],
    ) -> Mapping[str, Any]:
        tbl, id_col, _, _ = self._table(entity_type)
        names = sorted(set(field_names))
        if not names:
            if not self.exists(entity_type, entity_id):
                raise EntityNotFoundError(EntityType(entity_type).value, str(entity_id))
            return {}
        # Condition fields are arbitrary columns of the mapped table.
        columns = [column(name) for name in names]
        row = self._session.execute(
            select(*columns).select_from(tbl).where(id_col == str(entity_id))
        ).first()
        if row is None:
            raise EntityNotFoundError(EntityType(entity_type).value, str(entity_id))
        return dict(zip(names, row))
