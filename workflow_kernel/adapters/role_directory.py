"""
Module: workflow_kernel.adapters.role_directory
Responsibility: RoleProvider adapter backed by an in-memory mapping of
    organization -> role -> users, typically built from configuration
    (``workflow_config.bridges.build_role_directory``).
Architecture position: Kernel > Adapters.  Implements
    ``workflow_kernel.domain.collaborators.RoleProvider``.

Invariants enforced:
    - Role names match case-insensitively; the configured spelling is the
      one reported back by roles_of_user.
"""

from __future__ import annotations

from typing import Iterable, Mapping
from uuid import UUID


class StaticRoleDirectory:
    """Immutable role directory."""

    def __init__(
        self,
        assignments: Mapping[UUID, Mapping[str, Iterable[UUID]]] | None = None,
    ):
        self._by_org: dict[UUID, dict[str, tuple[str, frozenset[UUID]]]] = {}
        for org_id, roles in (assignments or {}).items():
            org_roles: dict[str, tuple[str, frozenset[UUID]]] = {}
            for role_name, users in roles.items():
                key = role_name.strip().casefold()
                spelled, existing = org_roles.get(key, (role_name.strip(), frozenset()))
                org_roles[key] = (spelled, existing | frozenset(users))
            self._by_org[org_id] = org_roles

    def users_with_role(self, organization_id: UUID, role_name: str) -> frozenset[UUID]:
        org_roles = self._by_org.get(organization_id, {})
        _, users = org_roles.get(role_name.strip().casefold(), ("", frozenset()))
        return users

    def roles_of_user(self, organization_id: UUID, user_id: UUID) -> frozenset[str]:
        return frozenset(
            spelled
            for spelled, users in self._by_org.get(organization_id, {}).values()
            if user_id in users
        )

    def organizations(self) -> frozenset[UUID]:
        return frozenset(self._by_org)
