"""
Approval policy evaluation (``workflow_kernel.domain.policy``).

Responsibility
--------------
Pure functions deciding (a) whether a user may take an action on a step
and (b) whether a step instance's accumulated ledger records satisfy the
step's approval policy.

Architecture position
---------------------
**Kernel domain layer** -- pure functions, ZERO I/O.  The transition
engine loads records and role holders and hands them in.

Policy semantics
----------------
* ``none``      -- always satisfied.
* ``single``    -- at least one ``approved`` record.
* ``multiple``  -- distinct approving users >= ``min_approvals`` (step) or
                   the module default.
* ``unanimous`` -- every current holder of a step role has approved and no
                   rejection is outstanding.  A rejection stays outstanding
                   until a later ``approved`` record arrives from a user
                   sharing a step role with the rejecting user (or from the
                   rejecting user).

Role names are compared case-insensitively.

Entry conditions
----------------
A step may carry conditions over entity fields.  ``failed_conditions``
returns the active ones that do not hold; the engine refuses to enter a
step while that list is non-empty.  ``greater_than`` and ``less_than``
compare numerically when both sides parse as numbers, otherwise as text.
A missing field satisfies only ``not_equals``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence
from uuid import UUID

from workflow_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalRecord,
    ApprovalType,
    ConditionOperator,
    StepCondition,
    WorkflowStep,
)


@dataclass(frozen=True)
class PolicyEvaluation:
    """Result of evaluating a step instance against its approval policy."""

    satisfied: bool
    approval_type: ApprovalType
    approvers: frozenset[UUID] = frozenset()
    required_approvers: int = 0
    outstanding_rejections: frozenset[UUID] = frozenset()
    missing_approvers: frozenset[UUID] = frozenset()
    reason: str = ""

    @property
    def blocked_by_rejection(self) -> bool:
        return bool(self.outstanding_rejections)


def _norm(role_name: str) -> str:
    return role_name.strip().casefold()


def roles_permitting(step: WorkflowStep, action: ApprovalAction) -> frozenset[str]:
    """Step roles whose permission flags allow ``action``."""
    return frozenset(r.role_name for r in step.roles if r.permits(action))


def is_authorized(
    step: WorkflowStep,
    action: ApprovalAction,
    user_roles: frozenset[str],
) -> bool:
    """Whether a user holding ``user_roles`` may take ``action`` on ``step``.

    ``none`` steps and steps without role assignments accept any user.
    """
    if step.approval_type is ApprovalType.NONE or not step.roles:
        return True
    allowed = {_norm(r) for r in roles_permitting(step, action)}
    return any(_norm(r) in allowed for r in user_roles)


def resolve_min_approvals(step: WorkflowStep, default_min_approvals: int) -> int:
    """Threshold for a ``multiple`` step: step-level wins over module default."""
    if step.min_approvals is not None:
        return max(step.min_approvals, 1)
    return max(default_min_approvals, 1)


def evaluate_step_policy(
    step: WorkflowStep,
    records: Sequence[ApprovalRecord],
    *,
    default_min_approvals: int = 2,
    role_holders: Mapping[str, frozenset[UUID]] | None = None,
) -> PolicyEvaluation:
    """Decide whether ``records`` satisfy ``step``'s approval policy.

    Preconditions:
        ``records`` belong to one step instance and are ordered by
        ``sequence_no``.  ``role_holders`` maps each step role name to its
        current holders; it is only consulted for ``unanimous`` steps.
    """
    approval_type = step.approval_type
    ordered = sorted(records, key=lambda r: r.sequence_no)
    approvers = frozenset(
        r.approved_by_user_id
        for r in ordered
        if r.approval_action is ApprovalAction.APPROVED
    )

    if approval_type is ApprovalType.NONE:
        return PolicyEvaluation(
            satisfied=True,
            approval_type=approval_type,
            approvers=approvers,
            reason="no approval required",
        )

    if approval_type is ApprovalType.SINGLE:
        return PolicyEvaluation(
            satisfied=len(approvers) >= 1,
            approval_type=approval_type,
            approvers=approvers,
            required_approvers=1,
            reason="single approval" if approvers else "awaiting approval",
        )

    if approval_type is ApprovalType.MULTIPLE:
        required = resolve_min_approvals(step, default_min_approvals)
        return PolicyEvaluation(
            satisfied=len(approvers) >= required,
            approval_type=approval_type,
            approvers=approvers,
            required_approvers=required,
            reason=f"{len(approvers)} of {required} distinct approvals",
        )

    return _evaluate_unanimous(step, ordered, approvers, role_holders or {})


def _evaluate_unanimous(
    step: WorkflowStep,
    ordered: Sequence[ApprovalRecord],
    approvers: frozenset[UUID],
    role_holders: Mapping[str, frozenset[UUID]],
) -> PolicyEvaluation:
    holders_by_role: dict[str, frozenset[UUID]] = {}
    for role_name, users in role_holders.items():
        key = _norm(role_name)
        holders_by_role[key] = holders_by_role.get(key, frozenset()) | users

    step_roles = {_norm(r) for r in step.role_assignments}
    required_users: set[UUID] = set()
    for role in step_roles:
        required_users |= holders_by_role.get(role, frozenset())

    def step_roles_of(user_id: UUID) -> set[str]:
        return {
            role for role in step_roles
            if user_id in holders_by_role.get(role, frozenset())
        }

    # Rejections are cleared only by a later approval from the same role.
    outstanding: list[UUID] = []
    for record in ordered:
        if record.approval_action is ApprovalAction.REJECTED:
            outstanding.append(record.approved_by_user_id)
        elif record.approval_action is ApprovalAction.APPROVED:
            approver_roles = step_roles_of(record.approved_by_user_id)
            outstanding = [
                rejecter for rejecter in outstanding
                if rejecter != record.approved_by_user_id
                and not (step_roles_of(rejecter) & approver_roles)
            ]

    missing = frozenset(required_users - approvers)
    rejections = frozenset(outstanding)

    if rejections:
        return PolicyEvaluation(
            satisfied=False,
            approval_type=ApprovalType.UNANIMOUS,
            approvers=approvers,
            required_approvers=len(required_users),
            outstanding_rejections=rejections,
            missing_approvers=missing,
            reason="blocked by rejection",
        )

    if not required_users:
        # Nobody currently holds a step role: one approval stands in.
        return PolicyEvaluation(
            satisfied=bool(approvers),
            approval_type=ApprovalType.UNANIMOUS,
            approvers=approvers,
            required_approvers=1,
            reason="no role holders; single approval required",
        )

    return PolicyEvaluation(
        satisfied=not missing,
        approval_type=ApprovalType.UNANIMOUS,
        approvers=approvers,
        required_approvers=len(required_users),
        missing_approvers=missing,
        reason=f"{len(required_users) - len(missing)} of "
               f"{len(required_users)} role holders approved",
    )


def resolve_pending_role(
    step: WorkflowStep,
    role_holders: Mapping[str, frozenset[UUID]] | None = None,
) -> str | None:
    """Role whose approval the step is waiting for.

    The first approving role (in role-name order) that currently has
    holders; when nobody holds any approving role, the first approving
    role.  ``none`` steps and steps without an approving role wait on
    nobody.
    """
    if step.approval_type is ApprovalType.NONE:
        return None
    approving = sorted(roles_permitting(step, ApprovalAction.APPROVED))
    if not approving:
        return None
    held = {_norm(name) for name, users in (role_holders or {}).items() if users}
    for role_name in approving:
        if _norm(role_name) in held:
            return role_name
    return approving[0]


# =========================================================================
# Entry conditions
# =========================================================================


def _as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return None if number.is_nan() else number


def condition_holds(condition: StepCondition, actual: Any) -> bool:
    """Whether the entity field value ``actual`` satisfies ``condition``."""
    operator = ConditionOperator(condition.operator)
    expected = condition.expected_value

    if actual is None:
        return operator is ConditionOperator.NOT_EQUALS and expected is not None

    if operator is ConditionOperator.EQUALS:
        return str(actual) == expected
    if operator is ConditionOperator.NOT_EQUALS:
        return str(actual) != expected
    if operator is ConditionOperator.CONTAINS:
        return expected is not None and expected in str(actual)

    if expected is None:
        return False
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        left, right = str(actual), expected
    if operator is ConditionOperator.GREATER_THAN:
        return left > right
    return left < right


def failed_conditions(
    conditions: Sequence[StepCondition],
    fields: Mapping[str, Any],
) -> tuple[StepCondition, ...]:
    """Active conditions that ``fields`` do not satisfy, in order."""
    return tuple(
        condition for condition in conditions
        if condition.is_active
        and not condition_holds(condition, fields.get(condition.field_name))
    )
