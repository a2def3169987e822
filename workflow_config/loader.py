"""
Configuration Loader (``workflow_config.loader``).

Responsibility
--------------
Loads a workflow configuration YAML file and parses it into the typed
``workflow_config.schema`` dataclasses.  The single public entry point
for runtime configuration is ``workflow_config.get_active_config()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel.

Invariants enforced
-------------------
* Missing required keys raise ``KeyError``; no silent defaults for
  required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  document for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from workflow_config.schema import (
    EngineConfigDef,
    EntityTableDef,
    ModuleConfigDef,
    NIL_ACTOR_ID,
    RoleGrantDef,
    StepConditionDef,
    StepDef,
    StepRoleDef,
    TemplateDef,
    WorkflowConfigSet,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_engine(data: dict[str, Any]) -> EngineConfigDef:
    return EngineConfigDef(
        max_cas_retries=int(data.get("max_cas_retries", 3)),
        system_actor_id=str(data.get("system_actor_id", NIL_ACTOR_ID)),
    )


def parse_module(name: str, data: dict[str, Any]) -> ModuleConfigDef:
    """Parse one entry of the ``modules`` mapping."""
    table_data = data.get("entity_table")
    entity_table = None
    if table_data:
        entity_table = EntityTableDef(
            table=table_data["table"],
            id_column=table_data.get("id_column", "id"),
            organization_column=table_data.get("organization_column", "organization_id"),
            status_column=table_data.get("status_column", "status"),
        )
    return ModuleConfigDef(
        module=name,
        multiple_min_approvals=int(data.get("multiple_min_approvals", 2)),
        entity_table=entity_table,
    )


def parse_role_grants(data: dict[str, Any]) -> tuple[RoleGrantDef, ...]:
    """Parse ``roles``: organization id -> role name -> list of user ids."""
    grants = []
    for org_id, roles in (data or {}).items():
        for role_name, users in (roles or {}).items():
            grants.append(
                RoleGrantDef(
                    organization_id=str(org_id),
                    role_name=str(role_name),
                    user_ids=tuple(str(u) for u in (users or ())),
                )
            )
    return tuple(grants)


def parse_condition(data: dict[str, Any]) -> StepConditionDef:
    expected = data.get("expected_value")
    return StepConditionDef(
        field_name=data["field_name"],
        operator=data["operator"],
        expected_value=None if expected is None else str(expected),
        is_active=data.get("is_active", True),
    )


def parse_step(data: dict[str, Any]) -> StepDef:
    """
    Parse a step definition.

    Roles may be given as plain names or as mappings with permission flags.
    Condition expected values are kept as text; YAML numbers are stringified.
    """
    roles = []
    for role in data.get("roles", ()):
        if isinstance(role, str):
            roles.append(StepRoleDef(role_name=role))
        else:
            roles.append(
                StepRoleDef(
                    role_name=role["role_name"],
                    can_approve=role.get("can_approve", True),
                    can_reject=role.get("can_reject", True),
                    can_assign=role.get("can_assign", True),
                )
            )
    return StepDef(
        step_order=int(data["step_order"]),
        name=data["name"],
        approval_type=data.get("approval_type", "single"),
        description=data.get("description"),
        sla_hours=data.get("sla_hours"),
        is_required=data.get("is_required", True),
        min_approvals=data.get("min_approvals"),
        work_order_status=data.get("work_order_status"),
        incident_status=data.get("incident_status"),
        roles=tuple(roles),
        conditions=tuple(parse_condition(c) for c in data.get("conditions", ())),
    )


def parse_template(data: dict[str, Any]) -> TemplateDef:
    return TemplateDef(
        name=data["name"],
        module=data["module"],
        description=data.get("description"),
        is_default=data.get("is_default", False),
        steps=tuple(parse_step(s) for s in data.get("steps", ())),
    )


def parse_config(data: dict[str, Any], source_path: str | None = None) -> WorkflowConfigSet:
    """Parse a whole configuration document."""
    return WorkflowConfigSet(
        version=int(data.get("version", 1)),
        engine=parse_engine(data.get("engine", {})),
        modules=tuple(
            parse_module(name, body or {})
            for name, body in (data.get("modules") or {}).items()
        ),
        role_grants=parse_role_grants(data.get("roles", {})),
        templates=tuple(parse_template(t) for t in data.get("templates", ())),
        checksum=compute_checksum(data),
        source_path=source_path,
    )


def load_config(path: Path) -> WorkflowConfigSet:
    """Load and parse a configuration file."""
    return parse_config(load_yaml_file(path), source_path=str(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
