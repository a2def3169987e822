"""
Configuration Validator (``workflow_config.validator``).

Responsibility
--------------
Validates a ``WorkflowConfigSet`` before any of it reaches the kernel.

Architecture position
---------------------
**Config layer** -- called by ``workflow_config.get_active_config`` after
loading and before the bridges run.

Invariants enforced
-------------------
* Module names -- only ``work_orders`` and ``safety_incidents`` exist.
* Thresholds -- ``multiple_min_approvals`` and ``max_cas_retries`` >= 1.
* Identifiers -- organization, user and system-actor ids parse as UUIDs.
* Seed templates -- positive unique step orders, known approval types,
  ``min_approvals`` only on ``multiple`` steps, known condition operators,
  at most one default per module.
* Role coverage -- roles referenced by seed templates should have holders.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> configuration
  MUST NOT be used.
* Validation warnings (``ConfigValidationResult.warnings``)  ->
  configuration may be used but should be reviewed.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from uuid import UUID

from workflow_config.schema import TemplateDef, WorkflowConfigSet

KNOWN_MODULES = frozenset({"work_orders", "safety_incidents"})
KNOWN_APPROVAL_TYPES = frozenset({"none", "single", "multiple", "unanimous"})
KNOWN_CONDITION_OPERATORS = frozenset(
    {"equals", "not_equals", "greater_than", "less_than", "contains"}
)


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block use but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def validate_configuration(config: WorkflowConfigSet) -> ConfigValidationResult:
    """
    Validate a configuration set.

    Postconditions:
        - Returns a ``ConfigValidationResult``; the caller decides whether
          to proceed based on ``is_valid``.
    """
    result = ConfigValidationResult()

    _validate_engine(config, result)
    _validate_modules(config, result)
    _validate_role_grants(config, result)
    _validate_templates(config, result)

    return result


def _validate_engine(config: WorkflowConfigSet, result: ConfigValidationResult) -> None:
    if config.engine.max_cas_retries < 1:
        result.add_error(
            f"engine.max_cas_retries must be >= 1, got {config.engine.max_cas_retries}"
        )
    if not _is_uuid(config.engine.system_actor_id):
        result.add_error(
            f"engine.system_actor_id is not a UUID: {config.engine.system_actor_id!r}"
        )


def _validate_modules(config: WorkflowConfigSet, result: ConfigValidationResult) -> None:
    for module in config.modules:
        if module.module not in KNOWN_MODULES:
            result.add_error(f"Unknown module '{module.module}'")
            continue
        if module.multiple_min_approvals < 1:
            result.add_error(
                f"modules.{module.module}.multiple_min_approvals must be >= 1, "
                f"got {module.multiple_min_approvals}"
            )
        if module.entity_table is None:
            result.add_warning(
                f"modules.{module.module} has no entity_table; "
                "bulk initialization needs an EntityStore supplied in code"
            )


def _validate_role_grants(config: WorkflowConfigSet, result: ConfigValidationResult) -> None:
    for grant in config.role_grants:
        if not _is_uuid(grant.organization_id):
            result.add_error(
                f"roles: organization id is not a UUID: {grant.organization_id!r}"
            )
        if not grant.role_name.strip():
            result.add_error(f"roles.{grant.organization_id}: blank role name")
        for user_id in grant.user_ids:
            if not _is_uuid(user_id):
                result.add_error(
                    f"roles.{grant.organization_id}.{grant.role_name}: "
                    f"user id is not a UUID: {user_id!r}"
                )


def _validate_templates(config: WorkflowConfigSet, result: ConfigValidationResult) -> None:
    defaults = Counter(t.module for t in config.templates if t.is_default)
    for module, count in defaults.items():
        if count > 1:
            result.add_error(
                f"Module '{module}' declares {count} default templates; at most one allowed"
            )

    granted = {g.role_name.strip().casefold() for g in config.role_grants if g.user_ids}
    for template in config.templates:
        _validate_template(template, granted, result)


def _validate_template(
    template: TemplateDef,
    granted_roles: set[str],
    result: ConfigValidationResult,
) -> None:
    where = f"template '{template.name}'"
    if template.module not in KNOWN_MODULES:
        result.add_error(f"{where}: unknown module '{template.module}'")
    if not template.steps:
        result.add_error(f"{where}: has no steps")
        return

    orders = [s.step_order for s in template.steps]
    if any(o < 1 for o in orders):
        result.add_error(f"{where}: step orders must be positive, got {orders}")
    if len(set(orders)) != len(orders):
        result.add_error(f"{where}: duplicate step orders {orders}")

    for step in template.steps:
        step_where = f"{where} step {step.step_order} '{step.name}'"
        if step.approval_type not in KNOWN_APPROVAL_TYPES:
            result.add_error(f"{step_where}: unknown approval_type '{step.approval_type}'")
        if step.sla_hours is not None and step.sla_hours <= 0:
            result.add_error(f"{step_where}: sla_hours must be positive")
        if step.min_approvals is not None:
            if step.approval_type != "multiple":
                result.add_error(
                    f"{step_where}: min_approvals only applies to 'multiple' steps"
                )
            elif step.min_approvals < 1:
                result.add_error(f"{step_where}: min_approvals must be >= 1")
        names = [r.role_name.strip().casefold() for r in step.roles]
        if len(set(names)) != len(names):
            result.add_error(f"{step_where}: duplicate role assignment")
        for role in step.roles:
            if role.role_name.strip().casefold() not in granted_roles:
                result.add_warning(
                    f"{step_where}: role '{role.role_name}' has no holders in any organization"
                )
        for condition in step.conditions:
            if not condition.field_name.strip():
                result.add_error(f"{step_where}: condition with blank field_name")
            if condition.operator not in KNOWN_CONDITION_OPERATORS:
                result.add_error(
                    f"{step_where}: unknown condition operator '{condition.operator}'"
                )
            elif condition.expected_value is None and condition.operator != "not_equals":
                result.add_warning(
                    f"{step_where}: condition on '{condition.field_name}' has no "
                    "expected_value and can never pass"
                )
