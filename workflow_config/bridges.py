"""
Bridges (``workflow_config.bridges``).

Responsibility
--------------
Translate configuration definitions into the inputs the kernel consumes:
``EngineSettings`` for the transition engine, a ``StaticRoleDirectory``
for authorization, table mappings for ``TableEntityStore`` and
``StepSpec`` tuples for ``TemplateStore.create_template``.

Architecture position
---------------------
**Config layer** -- the only place where configuration and kernel types
meet.  The kernel never imports from ``workflow_config``.
"""

from __future__ import annotations

from uuid import UUID

from workflow_config.schema import TemplateDef, WorkflowConfigSet
from workflow_kernel.adapters import EntityTableMapping, StaticRoleDirectory
from workflow_kernel.domain.workflow import (
    ApprovalType,
    ConditionOperator,
    EngineSettings,
    EntityType,
    StepCondition,
    StepRole,
    StepSpec,
    WorkflowModule,
)


def build_engine_settings(config: WorkflowConfigSet) -> EngineSettings:
    return EngineSettings(
        multiple_min_approvals={
            WorkflowModule(m.module): m.multiple_min_approvals for m in config.modules
        },
        max_cas_retries=config.engine.max_cas_retries,
        system_actor_id=UUID(config.engine.system_actor_id),
    )


def build_role_directory(config: WorkflowConfigSet) -> StaticRoleDirectory:
    """Fold role grants into organization -> role -> users."""
    assignments: dict[UUID, dict[str, set[UUID]]] = {}
    for grant in config.role_grants:
        org_roles = assignments.setdefault(UUID(grant.organization_id), {})
        users = org_roles.setdefault(grant.role_name, set())
        users.update(UUID(u) for u in grant.user_ids)
    return StaticRoleDirectory(assignments)


def build_entity_table_mappings(
    config: WorkflowConfigSet,
) -> dict[EntityType, EntityTableMapping]:
    mappings: dict[EntityType, EntityTableMapping] = {}
    for module in config.modules:
        if module.entity_table is None:
            continue
        mappings[EntityType.for_module(module.module)] = EntityTableMapping(
            table=module.entity_table.table,
            id_column=module.entity_table.id_column,
            organization_column=module.entity_table.organization_column,
            status_column=module.entity_table.status_column,
        )
    return mappings


def build_step_specs(template: TemplateDef) -> tuple[StepSpec, ...]:
    return tuple(
        StepSpec(
            step_order=step.step_order,
            name=step.name,
            approval_type=ApprovalType(step.approval_type),
            description=step.description,
            sla_hours=step.sla_hours,
            is_required=step.is_required,
            min_approvals=step.min_approvals,
            work_order_status=step.work_order_status,
            incident_status=step.incident_status,
            roles=tuple(
                StepRole(
                    role_name=role.role_name,
                    can_approve=role.can_approve,
                    can_reject=role.can_reject,
                    can_assign=role.can_assign,
                )
                for role in step.roles
            ),
            conditions=tuple(
                StepCondition(
                    field_name=condition.field_name,
                    operator=ConditionOperator(condition.operator),
                    expected_value=condition.expected_value,
                    is_active=condition.is_active,
                )
                for condition in step.conditions
            ),
        )
        for step in template.steps
    )
