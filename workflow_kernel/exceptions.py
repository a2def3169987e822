"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval workflows are driven by callers that need to react differently to
"nothing is configured", "you may not act here" and "that step does not
exist".  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:

    try:
        engine.transition(entity_id, step_id, user_id, ApprovalAction.APPROVED)
    except UnauthorizedRoleError as e:
        api_response(status=403, code=e.code, step=e.step_id)
    except NoWorkflowError as e:
        api_response(status=404, code=e.code, entity=e.entity_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from WorkflowKernelError:

    WorkflowKernelError (base)
    |
    +-- TemplateError
    |   +-- TemplateNotFoundError
    |   +-- TemplateInUseError
    |   +-- NoDefaultTemplateError
    |   +-- InvalidTemplateError
    |       +-- InvalidStepOrderError
    |
    +-- WorkflowStateError
    |   +-- NoWorkflowError
    |   +-- StepNotFoundError
    |   +-- EntityNotFoundError
    |   +-- StepConditionFailedError
    |
    +-- ApprovalError
    |   +-- UnauthorizedRoleError
    |   +-- InvalidApprovalActionError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                     | When Raised
--------------|--------------------------|-------------------------------------------
Template      | TEMPLATE_NOT_FOUND       | Template id unknown (or module mismatch)
              | TEMPLATE_IN_USE          | Delete while a workflow state references it
              | NO_DEFAULT_TEMPLATE      | No active default for organization x module
              | INVALID_TEMPLATE         | Empty step list, bad approval type, ...
              | INVALID_STEP_ORDER       | Duplicate / non-positive step_order
--------------|--------------------------|-------------------------------------------
State         | NO_WORKFLOW              | Entity has not been initialized
              | STEP_NOT_FOUND           | Step does not belong to the entity template
              | ENTITY_NOT_FOUND         | Entity store does not know the entity
              | STEP_CONDITION_FAILED    | Entity fields fail a step entry condition
--------------|--------------------------|-------------------------------------------
Approval      | UNAUTHORIZED_ROLE        | Acting user holds none of the step roles
              | INVALID_APPROVAL_ACTION  | Escalation on a work order, ...
--------------|--------------------------|-------------------------------------------
Concurrency   | OPTIMISTIC_LOCK_CONFLICT | CAS retries exhausted
--------------|--------------------------|-------------------------------------------
Immutability  | IMMUTABILITY_VIOLATION   | Update/delete of an append-only record
--------------|--------------------------|-------------------------------------------
Config        | WORKFLOW_CONFIG_ERROR    | YAML configuration failed validation

===============================================================================
HANDLING PATTERNS
===============================================================================

1. NOT-CONFIGURED IS NOT FATAL ON ENTITY CREATION:

    state = state_store.initialize_for_new_entity(...)
    if state is None:
        show_banner("workflow not configured")

2. REJECTIONS ARE OUTCOMES, NOT ERRORS:

    result = engine.transition(..., ApprovalAction.REJECTED)
    assert result.outcome is TransitionOutcome.REJECTED

3. LOST COMPARE-AND-SWAP RACES ARE NOT SURFACED:

    result = engine.transition(..., ApprovalAction.APPROVED)
    # result.outcome may be ALREADY_ADVANCED; no exception is raised

4. A FAILED ENTRY CONDITION UNDOES THE WHOLE ACTION:

    try:
        engine.transition(..., ApprovalAction.APPROVED)
    except StepConditionFailedError as e:
        # neither the approval nor the advance was kept
        show_error(e.field_name, e.operator, e.expected_value)

===============================================================================
"""


class WorkflowKernelError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_KERNEL_ERROR"


# Template-related exceptions


class TemplateError(WorkflowKernelError):
    """Base exception for template-related errors."""

    code: str = "TEMPLATE_ERROR"


class TemplateNotFoundError(TemplateError):
    """Template with given ID was not found."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str, reason: str = "not found"):
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Workflow template {template_id}: {reason}")


class TemplateInUseError(TemplateError):
    """Template is still referenced by live workflow states."""

    code: str = "TEMPLATE_IN_USE"

    def __init__(self, template_id: str, state_count: int):
        self.template_id = template_id
        self.state_count = state_count
        super().__init__(
            f"Workflow template {template_id} is referenced by "
            f"{state_count} workflow state(s)"
        )


class NoDefaultTemplateError(TemplateError):
    """No active default template exists for organization x module."""

    code: str = "NO_DEFAULT_TEMPLATE"

    def __init__(self, organization_id: str, module: str):
        self.organization_id = organization_id
        self.module = module
        super().__init__(
            f"No default workflow template for module {module} "
            f"in organization {organization_id}"
        )


class InvalidTemplateError(TemplateError):
    """Template definition is structurally invalid."""

    code: str = "INVALID_TEMPLATE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid workflow template: {reason}")


class InvalidStepOrderError(InvalidTemplateError):
    """Duplicate or missing step_order values at template creation."""

    code: str = "INVALID_STEP_ORDER"

    def __init__(self, step_orders: list[int], reason: str):
        self.step_orders = step_orders
        super().__init__(f"{reason} (step_order values: {step_orders})")


# Workflow-state exceptions


class WorkflowStateError(WorkflowKernelError):
    """Base exception for workflow-state errors."""

    code: str = "WORKFLOW_STATE_ERROR"


class NoWorkflowError(WorkflowStateError):
    """Entity has no workflow state (not initialized)."""

    code: str = "NO_WORKFLOW"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(
            f"No workflow state for entity {entity_id}. "
            "Has the workflow been initialized?"
        )


class StepNotFoundError(WorkflowStateError):
    """Step does not exist or does not belong to the entity's template."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, step_id: str, template_id: str):
        self.step_id = step_id
        self.template_id = template_id
        super().__init__(
            f"Step {step_id} does not belong to workflow template {template_id}"
        )


class EntityNotFoundError(WorkflowStateError):
    """Entity store has no entity with the given ID."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class StepConditionFailedError(WorkflowStateError):
    """Entity fields do not satisfy an entry condition of the next step."""

    code: str = "STEP_CONDITION_FAILED"

    def __init__(
        self,
        step_id: str,
        field_name: str,
        operator: str,
        expected_value: str | None,
        actual_value: object = None,
    ):
        self.step_id = step_id
        self.field_name = field_name
        self.operator = operator
        self.expected_value = expected_value
        self.actual_value = actual_value
        super().__init__(
            f"Cannot enter step {step_id}: {field_name} {operator} "
            f"{expected_value!r} does not hold (actual {actual_value!r})"
        )


# Approval exceptions


class ApprovalError(WorkflowKernelError):
    """Base exception for approval-action errors."""

    code: str = "APPROVAL_ERROR"


class UnauthorizedRoleError(ApprovalError):
    """Acting user holds none of the step's assigned roles for the action."""

    code: str = "UNAUTHORIZED_ROLE"

    def __init__(
        self,
        user_id: str,
        step_id: str,
        action: str,
        required_roles: list[str],
    ):
        self.user_id = user_id
        self.step_id = step_id
        self.action = action
        self.required_roles = required_roles
        super().__init__(
            f"User {user_id} may not {action} step {step_id}; "
            f"requires one of roles {required_roles}"
        )


class InvalidApprovalActionError(ApprovalError):
    """Approval action is not valid for this entity or is incomplete."""

    code: str = "INVALID_APPROVAL_ACTION"

    def __init__(self, action: str, entity_type: str, reason: str):
        self.action = action
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(
            f"Action {action} is not valid for {entity_type}: {reason}"
        )


# Concurrency-related exceptions


class ConcurrencyError(WorkflowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Compare-and-swap retries exhausted on a workflow state row."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id} "
            f"after {attempts} attempt(s)"
        )


# Immutability-related exceptions


class ImmutabilityError(WorkflowKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    ApprovalRecords are append-only; templates and steps are frozen once a
    workflow state references them.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration exceptions


class ConfigurationError(WorkflowKernelError):
    """Workflow configuration failed validation."""

    code: str = "WORKFLOW_CONFIG_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            f"Workflow configuration invalid: {len(errors)} error(s): "
            + "; ".join(errors)
        )
