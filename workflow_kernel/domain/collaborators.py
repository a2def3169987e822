"""
Collaborator interfaces (``workflow_kernel.domain.collaborators``).

Responsibility
--------------
Narrow protocols through which the engine reaches systems it does not
own: the entity store (work orders, safety incidents) and the identity /
role provider.

Architecture position
---------------------
**Kernel domain layer** -- interfaces only, ZERO I/O.  Concrete adapters
live in ``workflow_kernel.adapters``; tests supply in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol
from uuid import UUID

from workflow_kernel.domain.workflow import EntityType


@dataclass(frozen=True)
class EntityRef:
    """Identity of a tracked entity as reported by the entity store."""

    entity_id: UUID
    organization_id: UUID


class EntityStore(Protocol):
    """Pluggable interface to the work-order / incident store."""

    def exists(self, entity_type: EntityType, entity_id: UUID) -> bool:
        """Return True if the entity exists."""
        ...

    def list_entities(
        self,
        entity_type: EntityType,
        organization_id: UUID | None = None,
    ) -> Iterable[EntityRef]:
        """Return every entity of the type, optionally for one organization."""
        ...

    def update_status(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        status: str,
    ) -> None:
        """Write the entity's externally visible status field."""
        ...

    def get_fields(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        field_names: Iterable[str],
    ) -> Mapping[str, Any]:
        """Return the named entity fields (missing fields map to None).

        Used to evaluate step entry conditions.
        """
        ...

class RoleProvider(Protocol):
    """Pluggable interface for organization role lookups."""

    def users_with_role(
        self,
        organization_id: UUID,
        role_name: str,
    ) -> frozenset[UUID]:
        """Return the users holding ``role_name`` in the organization."""
        ...

    def roles_of_user(
        self,
        organization_id: UUID,
        user_id: UUID,
    ) -> frozenset[str]:
        """Return all role names the user holds in the organization."""
        ...
