"""Collaborator adapters (entity tables, role directory)."""

from workflow_kernel.adapters.role_directory import StaticRoleDirectory
from workflow_kernel.adapters.table_entity_store import (
    EntityTableMapping,
    TableEntityStore,
)

__all__ = [
    "EntityTableMapping",
    "StaticRoleDirectory",
    "TableEntityStore",
]
