"""
Concurrency tests: racing approvers, racing initializers and racing
default-template changes against one database.

Each worker gets its own session from ``session_factory`` and commits for
real.  Under SQLite every write transaction starts with BEGIN IMMEDIATE,
so workers serialize on the database lock; under PostgreSQL the state row
lock (SELECT ... FOR UPDATE) does the same job.

Expected behavior:
- Two authorized users approving the same single-approval step: exactly
  one advances the workflow, the other finds the step already left behind.
- Two approvals that together meet a multiple step's threshold: one is
  pending, the other advances, and both ledger records survive.
- Two initializers for one entity: one workflow state, both callers see it.
- Two set_default calls in one organization x module: exactly one default.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from tests.conftest import INCIDENT_STEPS, REVIEW_CLOSE_STEPS, TEST_ACTOR_ID
from workflow_kernel.adapters import StaticRoleDirectory
from workflow_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalType,
    EntityType,
    StepRole,
    StepSpec,
    TransitionOutcome,
    WorkflowModule,
)
from workflow_kernel.models.workflow_state import WorkflowStateModel
from workflow_kernel.selectors import WorkflowSelector
from workflow_kernel.services import TemplateStore, TransitionEngine, WorkflowStateStore

pytestmark = pytest.mark.slow_locks


def run_concurrently(workers):
    """Start every callable at the same barrier; return results or raised exceptions."""
    barrier = Barrier(len(workers))

    def _run(worker):
        barrier.wait()
        try:
            return worker()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(workers)) as pool:
        return list(pool.map(_run, workers))


@pytest.fixture
def committed_incident(session_factory, entity_store, deterministic_clock, org_id):
    """An incident at its Triage step, committed so every worker can see it."""
    sess = session_factory()
    TemplateStore(sess, deterministic_clock).create_template(
        org_id, WorkflowModule.SAFETY_INCIDENTS, "Incident Investigation", INCIDENT_STEPS,
        actor_id=TEST_ACTOR_ID, is_default=True,
    )
    entity_id = entity_store.add(EntityType.INCIDENT, org_id)
    state = WorkflowStateStore(sess, entity_store, deterministic_clock).initialize(
        entity_id, EntityType.INCIDENT, org_id, TEST_ACTOR_ID,
    )
    sess.commit()
    sess.close()
    return entity_id, state


class TestConcurrentApprovals:
    def test_one_approval_advances_the_other_is_stale(
        self, session_factory, committed_incident, entity_store, role_directory,
        deterministic_clock, engine_settings, users,
    ):
        entity_id, state = committed_incident
        triage_step_id = state.current_step_id

        def approve(user_id):
            def _work():
                sess = session_factory()
                engine = TransitionEngine(
                    sess, entity_store, role_directory, deterministic_clock, engine_settings,
                )
                result = engine.transition(entity_id, triage_step_id, user_id, ApprovalAction.APPROVED)
                sess.commit()
                return result
            return _work

        results = run_concurrently([approve(users["officer_a"]), approve(users["officer_b"])])

        errors = [r for r in results if isinstance(r, Exception)]
        assert not errors, errors
        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == sorted([TransitionOutcome.ADVANCED.value, TransitionOutcome.STALE_STEP.value])

        sess = session_factory()
        selector = WorkflowSelector(sess)
        final = selector.get_state(entity_id)
        assert final.version == state.version + 1
        assert final.current_step_id != triage_step_id

        history = selector.list_approvals(entity_id)
        assert sorted(h.record.sequence_no for h in history) == [1, 2]

    def test_racing_approvals_on_last_step_complete_once(
        self, session_factory, entity_store, deterministic_clock, engine_settings, org_id,
    ):
        first, second = uuid4(), uuid4()
        directory = StaticRoleDirectory({org_id: {"Supervisor": [first, second]}})

        sess = session_factory()
        TemplateStore(sess, deterministic_clock).create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Standard", REVIEW_CLOSE_STEPS,
            actor_id=TEST_ACTOR_ID, is_default=True,
        )
        entity_id = entity_store.add(EntityType.WORK_ORDER, org_id)
        state = WorkflowStateStore(sess, entity_store, deterministic_clock).initialize(
            entity_id, EntityType.WORK_ORDER, org_id, TEST_ACTOR_ID,
        )
        sess.commit()
        sess.close()

        def approve(user_id):
            def _work():
                s = session_factory()
                engine = TransitionEngine(s, entity_store, directory, deterministic_clock, engine_settings)
                result = engine.transition(entity_id, state.current_step_id, user_id, "approved")
                s.commit()
                return result
            return _work

        results = run_concurrently([approve(first), approve(second)])

        errors = [r for r in results if isinstance(r, Exception)]
        assert not errors, errors
        outcomes = {r.outcome for r in results}
        assert TransitionOutcome.COMPLETED in outcomes
        assert sum(r.outcome is TransitionOutcome.COMPLETED for r in results) == 1
        assert entity_store.status_writes.count((entity_id, "completed")) == 1

    def test_quorum_reached_by_racing_approvals_advances_once(
        self, session_factory, entity_store, role_directory, deterministic_clock, engine_settings,
        org_id, users,
    ):
        sess = session_factory()
        template = TemplateStore(sess, deterministic_clock).create_template(
            org_id, WorkflowModule.SAFETY_INCIDENTS, "Quorum Review",
            [
                StepSpec(step_order=1, name="Quorum", approval_type=ApprovalType.MULTIPLE,
                         min_approvals=2, incident_status="reported",
                         roles=(StepRole("Safety Officer"),)),
                StepSpec(step_order=2, name="Review", approval_type=ApprovalType.SINGLE,
                         incident_status="investigating", roles=(StepRole("Plant Manager"),)),
            ],
            actor_id=TEST_ACTOR_ID, is_default=True,
        )
        quorum, review = template.steps
        entity_id = entity_store.add(EntityType.INCIDENT, org_id)
        state = WorkflowStateStore(sess, entity_store, deterministic_clock).initialize(
            entity_id, EntityType.INCIDENT, org_id, TEST_ACTOR_ID,
        )
        sess.commit()
        sess.close()

        def approve(user_id):
            def _work():
                s = session_factory()
                engine = TransitionEngine(s, entity_store, role_directory, deterministic_clock, engine_settings)
                result = engine.transition(entity_id, quorum.id, user_id, ApprovalAction.APPROVED)
                s.commit()
                return result
            return _work

        results = run_concurrently([approve(users["officer_a"]), approve(users["officer_b"])])

        errors = [r for r in results if isinstance(r, Exception)]
        assert not errors, errors
        assert sorted(r.outcome.value for r in results) == sorted(
            [TransitionOutcome.ADVANCED.value, TransitionOutcome.PENDING.value],
        )

        selector = WorkflowSelector(session_factory())
        final = selector.get_state(entity_id)
        assert final.current_step_id == review.id
        assert final.version == state.version + 1

        history = selector.list_approvals(entity_id)
        assert sorted(h.record.sequence_no for h in history) == [1, 2]
        assert {h.record.approved_by_user_id for h in history} == {users["officer_a"], users["officer_b"]}
        assert all(h.record.step_id == quorum.id for h in history)
        assert entity_store.status_writes.count((entity_id, "investigating")) == 1


class TestConcurrentInitialization:
    def test_one_state_per_entity(
        self, session_factory, entity_store, deterministic_clock, org_id,
    ):
        sess = session_factory()
        TemplateStore(sess, deterministic_clock).create_template(
            org_id, WorkflowModule.WORK_ORDERS, "Standard", REVIEW_CLOSE_STEPS,
            actor_id=TEST_ACTOR_ID, is_default=True,
        )
        sess.commit()
        sess.close()
        entity_id = entity_store.add(EntityType.WORK_ORDER, org_id)

        def initialize():
            s = session_factory()
            state = WorkflowStateStore(s, entity_store, deterministic_clock).initialize(
                entity_id, EntityType.WORK_ORDER, org_id, TEST_ACTOR_ID,
            )
            s.commit()
            return state

        results = run_concurrently([initialize, initialize, initialize])

        errors = [r for r in results if isinstance(r, Exception)]
        assert not errors, errors
        assert len({r.id for r in results}) == 1

        check = session_factory()
        count = check.execute(
            select(func.count()).select_from(WorkflowStateModel)
            .where(WorkflowStateModel.entity_id == entity_id)
        ).scalar_one()
        assert count == 1


class TestConcurrentDefaults:
    def test_exactly_one_default_survives(
        self, session_factory, deterministic_clock, org_id,
    ):
        sess = session_factory()
        store = TemplateStore(sess, deterministic_clock)
        candidates = [
            store.create_template(
                org_id, WorkflowModule.WORK_ORDERS, name, REVIEW_CLOSE_STEPS,
                actor_id=TEST_ACTOR_ID,
            )
            for name in ("Standard", "Expedited", "Shutdown")
        ]
        sess.commit()
        sess.close()

        def make_default(template_id):
            def _work():
                s = session_factory()
                template = TemplateStore(s, deterministic_clock).set_default(
                    template_id, WorkflowModule.WORK_ORDERS, actor_id=TEST_ACTOR_ID,
                )
                s.commit()
                return template
            return _work

        results = run_concurrently([make_default(t.id) for t in candidates])

        errors = [r for r in results if isinstance(r, Exception)]
        assert not errors, errors

        check = TemplateStore(session_factory(), deterministic_clock)
        templates = check.list_templates(org_id, WorkflowModule.WORK_ORDERS)
        assert sum(t.is_default for t in templates) == 1
        assert check.get_default(org_id, WorkflowModule.WORK_ORDERS) is not None
