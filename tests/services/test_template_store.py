"""
Tests for TemplateStore: authoring, versioning, the single-default
invariant and template immutability once referenced.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from workflow_kernel.domain.workflow import (
    ApprovalType,
    ConditionOperator,
    EntityType,
    ExecutionAction,
    StepCondition,
    StepRole,
    StepSpec,
    WorkflowEvent,
    WorkflowModule,
)
from workflow_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidStepOrderError,
    InvalidTemplateError,
    TemplateInUseError,
    TemplateNotFoundError,
)
from workflow_kernel.models.execution_log import WorkflowExecutionLogModel
from workflow_kernel.models.template import StepConditionModel, WorkflowStepModel, WorkflowTemplateModel
from tests.conftest import REVIEW_CLOSE_STEPS


def single_step(order=1, name="Approve", **kwargs):
    return StepSpec(step_order=order, name=name, approval_type=ApprovalType.SINGLE, **kwargs)


class TestCreateTemplate:
    """create_template validation and persistence."""

    def test_steps_stored_in_order(self, template_store, org_id, test_actor_id):
        steps = [single_step(3, "C"), single_step(1, "A"), single_step(2, "B")]
        template = template_store.create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Ordered", steps, actor_id=test_actor_id,
        )
        assert [s.name for s in template.steps] == ["A", "B", "C"]
        assert [s.step_order for s in template_store.get_steps(template.id)] == [1, 2, 3]
        assert template.version == 1
        assert template.is_active
        assert not template.is_default

    def test_roles_and_flags_persisted(self, template_store, org_id, test_actor_id):
        steps = [single_step(roles=(StepRole("Supervisor"), StepRole("Auditor", can_approve=False)))]
        template = template_store.create_template(
            org_id, "work_orders", "Roles", steps, actor_id=test_actor_id,
        )
        roles = {r.role_name: r for r in template.steps[0].roles}
        assert set(roles) == {"Supervisor", "Auditor"}
        assert roles["Auditor"].can_approve is False
        assert roles["Auditor"].can_reject is True

    def test_gaps_in_step_order_allowed(self, template_store, org_id, test_actor_id):
        steps = [single_step(10, "A"), single_step(20, "B")]
        template = template_store.create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Gaps", steps, actor_id=test_actor_id,
        )
        assert [s.step_order for s in template.steps] == [10, 20]

    def test_empty_steps_rejected(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidStepOrderError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Empty", [], actor_id=test_actor_id,
            )

    def test_duplicate_step_order_rejected(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidStepOrderError) as exc_info:
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Dup",
                [single_step(1, "A"), single_step(1, "B")],
                actor_id=test_actor_id,
            )
        assert exc_info.value.code == "INVALID_STEP_ORDER"

    def test_non_positive_step_order_rejected(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidStepOrderError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Zero", [single_step(0)],
                actor_id=test_actor_id,
            )

    def test_min_approvals_only_on_multiple(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidTemplateError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Bad",
                [single_step(min_approvals=2)],
                actor_id=test_actor_id,
            )

    def test_non_positive_sla_rejected(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidTemplateError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Bad",
                [single_step(sla_hours=0)],
                actor_id=test_actor_id,
            )

    def test_unknown_module_rejected(self, template_store, org_id, test_actor_id):
        with pytest.raises(InvalidTemplateError):
            template_store.create_template(
                org_id, "purchase_orders", "Bad", [single_step()], actor_id=test_actor_id,
            )

    def test_same_name_gets_next_version(self, template_store, org_id, test_actor_id):
        first = template_store.create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Std", [single_step()], actor_id=test_actor_id,
        )
        second = template_store.create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Std", [single_step()], actor_id=test_actor_id,
        )
        assert (first.version, second.version) == (1, 2)


class TestDefaultTemplate:
    """At most one default per organization x module."""

    def test_create_as_default(self, create_template, template_store, org_id):
        template = create_template()
        assert template.is_default
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS).id == template.id

    def test_set_default_clears_previous(self, create_template, template_store, org_id):
        first = create_template(name="First")
        second = create_template(name="Second", is_default=False)

        result = template_store.set_default(second.id, WorkflowModule.WORK_ORDERS)

        assert result.is_default
        assert not template_store.get_template(first.id).is_default
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS).id == second.id
        defaults = [
            t for t in template_store.list_templates(org_id, WorkflowModule.WORK_ORDERS)
            if t.is_default
        ]
        assert len(defaults) == 1

    def test_set_default_is_idempotent(self, create_template, template_store):
        template = create_template()
        again = template_store.set_default(template.id, WorkflowModule.WORK_ORDERS)
        assert again.is_default

    def test_defaults_are_per_module(self, create_template, template_store, org_id):
        wo = create_template(module=WorkflowModule.WORK_ORDERS)
        inc = create_template(module=WorkflowModule.SAFETY_INCIDENTS, name="Incidents")
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS).id == wo.id
        assert template_store.get_default(org_id, WorkflowModule.SAFETY_INCIDENTS).id == inc.id

    def test_defaults_are_per_organization(self, create_template, template_store, org_id):
        other_org = uuid4()
        mine = create_template()
        theirs = create_template(organization_id=other_org)
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS).id == mine.id
        assert template_store.get_default(other_org, WorkflowModule.WORK_ORDERS).id == theirs.id

    def test_set_default_module_mismatch(self, create_template, template_store):
        template = create_template()
        with pytest.raises(TemplateNotFoundError):
            template_store.set_default(template.id, WorkflowModule.SAFETY_INCIDENTS)

    def test_set_default_unknown_template(self, template_store):
        with pytest.raises(TemplateNotFoundError):
            template_store.set_default(uuid4(), WorkflowModule.WORK_ORDERS)

    def test_inactive_template_cannot_be_default(self, create_template, template_store):
        template = create_template(is_default=False)
        template_store.deactivate_template(template.id)
        with pytest.raises(InvalidTemplateError):
            template_store.set_default(template.id, WorkflowModule.WORK_ORDERS)

    def test_no_default_returns_none(self, template_store, org_id):
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS) is None

    def test_unique_index_backs_the_invariant(self, create_template, session):
        """Bypassing set_default cannot produce a second default."""
        create_template(name="First")
        second = create_template(name="Second", is_default=False)
        model = session.get(WorkflowTemplateModel, second.id)
        model.is_default = True
        with pytest.raises(IntegrityError):
            with session.begin_nested():
                session.flush()

    def test_default_set_is_logged(self, create_template, template_store, captured_logs):
        first = create_template(name="First")
        second = create_template(name="Second", is_default=False)
        template_store.set_default(second.id, WorkflowModule.WORK_ORDERS)
        entries = [r for r in captured_logs() if r["message"] == "template_default_set"]
        assert entries[-1]["previous_default_id"] == str(first.id)


class TestListAndDeactivate:
    def test_list_filters_inactive(self, create_template, template_store, org_id):
        active = create_template(name="Active")
        retired = create_template(name="Retired", is_default=False)
        template_store.deactivate_template(retired.id)

        listed = template_store.list_templates(org_id)
        assert [t.id for t in listed] == [active.id]
        everything = template_store.list_templates(org_id, include_inactive=True)
        assert {t.id for t in everything} == {active.id, retired.id}

    def test_deactivate_clears_default(self, create_template, template_store, org_id):
        template = create_template()
        result = template_store.deactivate_template(template.id)
        assert not result.is_active
        assert not result.is_default
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS) is None


class TestDeleteTemplate:
    def test_delete_unreferenced(self, create_template, template_store, session):
        template = create_template()
        step_ids = [s.id for s in template.steps]
        template_store.delete_template(template.id)
        with pytest.raises(TemplateNotFoundError):
            template_store.get_template(template.id)
        assert all(session.get(WorkflowStepModel, sid) is None for sid in step_ids)

    def test_delete_referenced_refused(self, work_order_template, create_work_order, template_store):
        create_work_order()
        with pytest.raises(TemplateInUseError) as exc_info:
            template_store.delete_template(work_order_template.id)
        assert exc_info.value.state_count == 1

    def test_delete_unknown(self, template_store):
        with pytest.raises(TemplateNotFoundError):
            template_store.delete_template(uuid4())


class TestRevisionAndImmutability:
    """Referenced templates are frozen; changes go to a new version."""

    def test_revise_unreferenced_deactivates_previous(self, work_order_template, template_store, org_id, test_actor_id):
        revised = template_store.revise_template(
            work_order_template.id, [single_step(1, "Only")], actor_id=test_actor_id,
        )
        assert revised.version == 2
        assert revised.supersedes_id == work_order_template.id
        assert revised.is_default
        old = template_store.get_template(work_order_template.id)
        assert not old.is_active
        assert not old.is_default

    def test_revise_referenced_keeps_previous_active(
        self, work_order_template, create_work_order, template_store, state_store, org_id, test_actor_id,
    ):
        entity_id, state = create_work_order()
        revised = template_store.revise_template(
            work_order_template.id, REVIEW_CLOSE_STEPS, actor_id=test_actor_id,
        )
        old = template_store.get_template(work_order_template.id)
        assert old.is_active
        assert not old.is_default
        assert template_store.get_default(org_id, WorkflowModule.WORK_ORDERS).id == revised.id
        # In-flight entity stays on the version it started with.
        assert state_store.get_state(entity_id).template_id == work_order_template.id

    def test_referenced_step_cannot_be_edited(self, work_order_template, create_work_order, session):
        create_work_order()
        step = session.get(WorkflowStepModel, work_order_template.steps[0].id)
        step.name = "Renamed"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_referenced_template_name_cannot_be_edited(self, work_order_template, create_work_order, session):
        create_work_order()
        model = session.get(WorkflowTemplateModel, work_order_template.id)
        model.name = "Renamed"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_unreferenced_step_can_be_edited(self, work_order_template, session):
        step = session.get(WorkflowStepModel, work_order_template.steps[0].id)
        step.name = "Renamed"
        session.flush()
        assert session.get(WorkflowStepModel, step.id).name == "Renamed"

    def test_referenced_template_default_flag_still_mutable(
        self, work_order_template, create_work_order, create_template, template_store, org_id,
    ):
        create_work_order()
        other = create_template(name="Other", is_default=False)
        template_store.set_default(other.id, WorkflowModule.WORK_ORDERS)
        assert template_store.get_default(org_id, EntityType.WORK_ORDER.module).id == other.id


class TestStepConditions:
    """Entry conditions are authored with their step and frozen with it."""

    def conditional_step(self, *conditions):
        return single_step(conditions=conditions)

    def test_conditions_persisted(self, template_store, org_id, test_actor_id):
        template = template_store.create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Gated",
            [self.conditional_step(
                StepCondition(" priority ", ConditionOperator.NOT_EQUALS, "low"),
                StepCondition("estimated_hours", ConditionOperator.GREATER_THAN, "0", is_active=False),
            )],
            actor_id=test_actor_id,
        )
        stored = template_store.get_template(template.id).steps[0].conditions
        assert stored == (
            StepCondition("estimated_hours", ConditionOperator.GREATER_THAN, "0", is_active=False),
            StepCondition("priority", ConditionOperator.NOT_EQUALS, "low"),
        )

    @pytest.mark.parametrize("condition", [
        StepCondition("  ", ConditionOperator.EQUALS, "x"),
        StepCondition("priority", "between", "1"),
    ])
    def test_invalid_condition_rejected(self, template_store, org_id, test_actor_id, condition):
        with pytest.raises(InvalidTemplateError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Bad", [self.conditional_step(condition)],
                actor_id=test_actor_id,
            )

    def test_referenced_condition_cannot_be_edited(self, create_template, create_work_order, session):
        template = create_template(steps=[
            self.conditional_step(StepCondition("priority", ConditionOperator.EQUALS, "high")),
        ])
        create_work_order()
        model = session.execute(
            select(StepConditionModel).where(StepConditionModel.step_id == template.steps[0].id)
        ).scalar_one()
        model.expected_value = "low"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_condition_cannot_be_added_to_referenced_step(self, work_order_template, create_work_order, session):
        create_work_order()
        session.add(StepConditionModel(
            step_id=work_order_template.steps[0].id,
            field_name="priority",
            operator=ConditionOperator.EQUALS.value,
            expected_value="high",
            is_active=True,
        ))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestTemplateExecutionLog:
    def rows(self, session, template_id):
        return session.execute(
            select(WorkflowExecutionLogModel)
            .where(WorkflowExecutionLogModel.template_id == template_id)
        ).scalars().all()

    def test_create_logged_with_event(self, create_template, session, org_id, test_actor_id, captured_logs):
        template = create_template()

        [row] = [r.to_dto() for r in self.rows(session, template.id)]
        assert row.action_type is ExecutionAction.TEMPLATE_CREATE
        assert row.event_type is WorkflowEvent.TEMPLATE_CREATED
        assert row.success
        assert row.organization_id == org_id
        assert row.performed_by == test_actor_id
        assert row.payload["step_count"] == 2
        assert row.entity_id is None
        published = [r for r in captured_logs() if r["message"] == "workflow_event_published"]
        assert published[-1]["event_type"] == "template_created"

    def test_revision_logged_as_update(self, work_order_template, template_store, session, test_actor_id):
        revised = template_store.revise_template(
            work_order_template.id, [single_step(1, "Only")], actor_id=test_actor_id,
        )
        [row] = [r.to_dto() for r in self.rows(session, revised.id)]
        assert row.action_type is ExecutionAction.TEMPLATE_REVISE
        assert row.event_type is WorkflowEvent.TEMPLATE_UPDATED
        assert row.payload["supersedes_id"] == str(work_order_template.id)
        assert row.payload["previous_deactivated"] is True

    def test_rejected_template_writes_nothing(self, template_store, session, org_id, test_actor_id):
        with pytest.raises(InvalidStepOrderError):
            template_store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, "Empty", [], actor_id=test_actor_id,
            )
        assert session.execute(select(WorkflowExecutionLogModel)).scalars().all() == []
