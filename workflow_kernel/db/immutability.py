"""
ORM-Level Template Immutability.

===============================================================================
WHY THIS EXISTS
===============================================================================

A workflow state pins a template row (one version) and walks its steps.  If
the steps or their roles changed underneath an in-flight entity, its
current_step_id could point at a step that no longer exists, or its approval
policy could change mid-step.  Edits to a referenced template must therefore
create a new version (TemplateStore.revise_template) instead of mutating
rows in place.

The approval ledger and the execution log have their own append-only
listeners, declared next to their models.

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_insert / before_update / before_delete]
         |
         v
    _template_is_referenced(connection, template_id) --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | When Immutable                      | What stays mutable
----------------------|-------------------------------------|--------------------
WorkflowTemplate      | Once referenced by a workflow state | is_default, is_active,
                      |                                     | audit columns
WorkflowStep          | Once its template is referenced     | nothing
StepRoleAssignment    | Once its template is referenced     | nothing
StepCondition         | Once its template is referenced     | nothing

===============================================================================
USAGE
===============================================================================

Called once at startup (scripts and the test suite do this):

    from workflow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    from workflow_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, text
from sqlalchemy.orm.attributes import get_history

from workflow_kernel.exceptions import ImmutabilityViolationError
from workflow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Template columns frozen once a workflow state references the template
TEMPLATE_STRUCTURAL_FIELDS = frozenset({
    "organization_id",
    "module",
    "name",
    "description",
    "version",
    "supersedes_id",
})


def _template_is_referenced(connection, template_id) -> bool:
    """True if any workflow state pins the template."""
    result = connection.execute(
        text(
            "SELECT EXISTS (SELECT 1 FROM workflow_states "
            "WHERE template_id = :template_id)"
        ),
        {"template_id": str(template_id)},
    )
    return bool(result.scalar())


def _template_id_of_step(connection, step_id):
    result = connection.execute(
        text("SELECT template_id FROM workflow_steps WHERE id = :step_id"),
        {"step_id": str(step_id)},
    )
    return result.scalar()


def _block(entity_type: str, entity_id, operation: str, reason: str, **fields):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **fields,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# WorkflowTemplate
# =============================================================================


def _check_template_update(mapper, connection, target):
    """Block structural edits of a template pinned by a workflow state."""
    changed = [
        field for field in TEMPLATE_STRUCTURAL_FIELDS
        if get_history(target, field).has_changes()
    ]
    if not changed:
        return
    if _template_is_referenced(connection, target.id):
        _block(
            "WorkflowTemplate",
            target.id,
            "UPDATE",
            f"Cannot modify {sorted(changed)} on a template referenced by "
            "workflow states; create a new version instead",
            fields=sorted(changed),
        )


def _check_template_delete(mapper, connection, target):
    if _template_is_referenced(connection, target.id):
        _block(
            "WorkflowTemplate",
            target.id,
            "DELETE",
            "Templates referenced by workflow states cannot be deleted",
        )


# =============================================================================
# WorkflowStep
# =============================================================================


def _check_step_write(operation):
    def _check(mapper, connection, target):
        if target.template_id is None:
            return
        if _template_is_referenced(connection, target.template_id):
            _block(
                "WorkflowStep",
                target.id,
                operation,
                f"Steps of a referenced template are immutable ({operation})",
            )
    _check.__name__ = f"_check_step_{operation.lower()}"
    return _check


_check_step_insert = _check_step_write("INSERT")
_check_step_update = _check_step_write("UPDATE")
_check_step_delete = _check_step_write("DELETE")


# =============================================================================
# Step children: StepRoleAssignment, StepCondition
# =============================================================================


def _check_step_child_write(entity_type, operation):
    def _check(mapper, connection, target):
        if target.step_id is None:
            return
        template_id = _template_id_of_step(connection, target.step_id)
        if template_id is not None and _template_is_referenced(connection, template_id):
            _block(
                entity_type,
                target.id,
                operation,
                f"{entity_type} rows of a referenced template are immutable ({operation})",
            )
    _check.__name__ = f"_check_{entity_type.lower()}_{operation.lower()}"
    return _check


_check_role_insert = _check_step_child_write("StepRoleAssignment", "INSERT")
_check_role_update = _check_step_child_write("StepRoleAssignment", "UPDATE")
_check_role_delete = _check_step_child_write("StepRoleAssignment", "DELETE")
_check_condition_insert = _check_step_child_write("StepCondition", "INSERT")
_check_condition_update = _check_step_child_write("StepCondition", "UPDATE")
_check_condition_delete = _check_step_child_write("StepCondition", "DELETE")


def _listeners():
    from workflow_kernel.models.template import (
        StepConditionModel,
        StepRoleAssignmentModel,
        WorkflowStepModel,
        WorkflowTemplateModel,
    )

    return (
        (WorkflowTemplateModel, "before_update", _check_template_update),
        (WorkflowTemplateModel, "before_delete", _check_template_delete),
        (WorkflowStepModel, "before_insert", _check_step_insert),
        (WorkflowStepModel, "before_update", _check_step_update),
        (WorkflowStepModel, "before_delete", _check_step_delete),
        (StepRoleAssignmentModel, "before_insert", _check_role_insert),
        (StepRoleAssignmentModel, "before_update", _check_role_update),
        (StepRoleAssignmentModel, "before_delete", _check_role_delete),
        (StepConditionModel, "before_insert", _check_condition_insert),
        (StepConditionModel, "before_update", _check_condition_update),
        (StepConditionModel, "before_delete", _check_condition_delete),
    )


def register_immutability_listeners():
    """
    Register template immutability listeners.

    Idempotent: already-registered listeners are left alone.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove template immutability listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
