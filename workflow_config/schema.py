"""
Workflow configuration schema.

Defines the human-authored, reviewable configuration artifact.  YAML is
parsed into these types by the loader, checked by the validator, and
translated into kernel inputs by the bridges.  Every type is a frozen
dataclass; identifiers stay strings here and become UUIDs in the bridges.
"""

from __future__ import annotations

from dataclasses import dataclass

NIL_ACTOR_ID = "00000000-0000-0000-0000-000000000000"

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfigDef:
    """Transition engine tunables."""

    max_cas_retries: int = 3
    system_actor_id: str = NIL_ACTOR_ID


# ---------------------------------------------------------------------------
# Modules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityTableDef:
    """Where a module's entities live in the application database."""

    table: str
    id_column: str = "id"
    organization_column: str = "organization_id"
    status_column: str = "status"


@dataclass(frozen=True)
class ModuleConfigDef:
    """Per-module settings."""

    module: str  # work_orders, safety_incidents
    multiple_min_approvals: int = 2
    entity_table: EntityTableDef | None = None


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleGrantDef:
    """Users holding a role in one organization."""

    organization_id: str
    role_name: str
    user_ids: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Seed templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepRoleDef:
    role_name: str
    can_approve: bool = True
    can_reject: bool = True
    can_assign: bool = True


@dataclass(frozen=True)
class StepConditionDef:
    """Entry condition of a step over one entity field."""

    field_name: str
    operator: str  # equals, not_equals, greater_than, less_than, contains
    expected_value: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class StepDef:
    step_order: int
    name: str
    approval_type: str = "single"
    description: str | None = None
    sla_hours: int | None = None
    is_required: bool = True
    min_approvals: int | None = None
    work_order_status: str | None = None
    incident_status: str | None = None
    roles: tuple[StepRoleDef, ...] = ()
    conditions: tuple[StepConditionDef, ...] = ()


@dataclass(frozen=True)
class TemplateDef:
    """A template seeded into organizations by scripts/seed_templates.py."""

    name: str
    module: str
    steps: tuple[StepDef, ...]
    description: str | None = None
    is_default: bool = False


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowConfigSet:
    """The complete configuration."""

    version: int
    engine: EngineConfigDef
    modules: tuple[ModuleConfigDef, ...]
    role_grants: tuple[RoleGrantDef, ...]
    templates: tuple[TemplateDef, ...]
    checksum: str = ""
    source_path: str | None = None

    def module(self, name: str) -> ModuleConfigDef | None:
        for module in self.modules:
            if module.module == name:
                return module
        return None
