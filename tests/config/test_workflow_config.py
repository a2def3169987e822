"""
Tests for the workflow configuration pipeline:
YAML -> WorkflowConfigSet -> validation -> bridges -> kernel inputs.
"""

from uuid import UUID

import pytest
import yaml

from workflow_config import get_active_config
from workflow_config.bridges import (
    build_engine_settings,
    build_entity_table_mappings,
    build_role_directory,
    build_step_specs,
)
from workflow_config.loader import compute_checksum, load_yaml_file, parse_config
from workflow_config.validator import validate_configuration
from workflow_kernel.domain.workflow import (
    ApprovalType,
    ConditionOperator,
    EntityType,
    StepCondition,
    WorkflowModule,
)
from workflow_kernel.exceptions import ConfigurationError

ORG = "6f1c2a9e-0d7b-4c61-9f0e-3b8f5a2d1c01"
USER = "0b7e3d52-6a1f-4e8c-9d24-7c5f1a3e9b11"


def minimal_document(**overrides):
    doc = {
        "version": 1,
        "engine": {"max_cas_retries": 5},
        "modules": {
            "work_orders": {
                "multiple_min_approvals": 3,
                "entity_table": {"table": "work_orders"},
            },
        },
        "roles": {ORG: {"Supervisor": [USER]}},
        "templates": [
            {
                "name": "Standard",
                "module": "work_orders",
                "is_default": True,
                "steps": [
                    {"step_order": 1, "name": "Review", "roles": ["Supervisor"]},
                    {"step_order": 2, "name": "Close", "approval_type": "none"},
                ],
            },
        ],
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def write_config(tmp_path):
    def _write(doc):
        path = tmp_path / "workflow.yaml"
        path.write_text(yaml.safe_dump(doc))
        return path
    return _write


class TestLoader:
    def test_packaged_defaults_load_and_validate(self):
        config = get_active_config()
        assert {m.module for m in config.modules} == {"work_orders", "safety_incidents"}
        assert config.checksum

    def test_parse_minimal_document(self):
        config = parse_config(minimal_document())
        assert config.engine.max_cas_retries == 5
        [module] = config.modules
        assert module.multiple_min_approvals == 3
        assert module.entity_table.status_column == "status"
        [template] = config.templates
        assert template.steps[0].approval_type == "single"
        assert template.steps[0].roles[0].role_name == "Supervisor"

    def test_checksum_is_deterministic(self):
        assert compute_checksum(minimal_document()) == compute_checksum(minimal_document())
        assert compute_checksum(minimal_document()) != compute_checksum(minimal_document(version=2))

    def test_missing_required_key(self):
        doc = minimal_document(templates=[{"module": "work_orders", "steps": []}])
        with pytest.raises(KeyError):
            parse_config(doc)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml_file(path) == {}


class TestValidation:
    def test_valid_document(self):
        result = validate_configuration(parse_config(minimal_document()))
        assert result.is_valid, result.errors

    @pytest.mark.parametrize(
        "doc, fragment",
        [
            (minimal_document(modules={"purchase_orders": {}}), "Unknown module"),
            (minimal_document(modules={"work_orders": {"multiple_min_approvals": 0}}), "multiple_min_approvals"),
            (minimal_document(engine={"max_cas_retries": 0}), "max_cas_retries"),
            (minimal_document(engine={"system_actor_id": "root"}), "system_actor_id"),
            (minimal_document(roles={"acme": {"Supervisor": [USER]}}), "organization id"),
            (minimal_document(roles={ORG: {"Supervisor": ["bob"]}}), "user id"),
        ],
    )
    def test_structural_errors(self, doc, fragment):
        result = validate_configuration(parse_config(doc))
        assert not result.is_valid
        assert any(fragment in e for e in result.errors)

    def test_template_errors(self):
        doc = minimal_document(templates=[
            {
                "name": "Broken",
                "module": "work_orders",
                "steps": [
                    {"step_order": 1, "name": "A", "approval_type": "maybe"},
                    {"step_order": 1, "name": "B", "min_approvals": 2},
                    {"step_order": 2, "name": "C", "sla_hours": -1},
                ],
            },
        ])
        errors = validate_configuration(parse_config(doc)).errors
        assert any("unknown approval_type" in e for e in errors)
        assert any("duplicate step orders" in e for e in errors)
        assert any("min_approvals only applies" in e for e in errors)
        assert any("sla_hours" in e for e in errors)

    def test_two_defaults_per_module(self):
        template = minimal_document()["templates"][0]
        doc = minimal_document(templates=[template, {**template, "name": "Other"}])
        errors = validate_configuration(parse_config(doc)).errors
        assert any("default templates" in e for e in errors)

    def test_role_without_holders_warns(self):
        doc = minimal_document(roles={})
        result = validate_configuration(parse_config(doc))
        assert result.is_valid
        assert any("Supervisor" in w for w in result.warnings)


class TestGetActiveConfig:
    def test_explicit_path(self, write_config):
        path = write_config(minimal_document())
        config = get_active_config(path)
        assert config.source_path == str(path)

    def test_environment_variable(self, write_config, monkeypatch):
        path = write_config(minimal_document(version=7))
        monkeypatch.setenv("WORKFLOW_CONFIG_PATH", str(path))
        assert get_active_config().version == 7

    def test_invalid_config_raises(self, write_config):
        path = write_config(minimal_document(engine={"max_cas_retries": 0}))
        with pytest.raises(ConfigurationError) as exc_info:
            get_active_config(path)
        assert exc_info.value.code == "WORKFLOW_CONFIG_ERROR"
        assert exc_info.value.errors

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_trace_logged(self, write_config, captured_logs):
        path = write_config(minimal_document())
        config = get_active_config(path)
        [trace] = [r for r in captured_logs() if r["message"] == "WORKFLOW_CONFIG_TRACE"]
        assert trace["checksum"] == config.checksum
        assert trace["config_version"] == 1


class TestBridges:
    def test_engine_settings(self):
        settings = build_engine_settings(parse_config(minimal_document()))
        assert settings.max_cas_retries == 5
        assert settings.min_approvals_for(WorkflowModule.WORK_ORDERS) == 3
        assert settings.min_approvals_for(WorkflowModule.SAFETY_INCIDENTS) == 2
        assert settings.system_actor_id == UUID(int=0)

    def test_role_directory(self):
        directory = build_role_directory(parse_config(minimal_document()))
        assert directory.users_with_role(UUID(ORG), "Supervisor") == frozenset({UUID(USER)})

    def test_entity_table_mappings(self):
        mappings = build_entity_table_mappings(parse_config(minimal_document()))
        assert set(mappings) == {EntityType.WORK_ORDER}
        assert mappings[EntityType.WORK_ORDER].table == "work_orders"

    def test_step_specs_create_a_template(self, template_store, test_actor_id):
        config = parse_config(minimal_document())
        [template_def] = config.templates
        specs = build_step_specs(template_def)
        assert [s.approval_type for s in specs] == [ApprovalType.SINGLE, ApprovalType.NONE]

        template = template_store.create_template(
            UUID(ORG), template_def.module, template_def.name, specs,
            actor_id=test_actor_id, is_default=template_def.is_default,
        )
        assert template.is_default
        assert template.steps[0].role_assignments == frozenset({"Supervisor"})

    def test_packaged_templates_are_valid_for_the_kernel(self, template_store, test_actor_id):
        config = get_active_config()
        for template_def in config.templates:
            template = template_store.create_template(
                UUID(ORG), template_def.module, template_def.name,
                build_step_specs(template_def), actor_id=test_actor_id,
                is_default=template_def.is_default,
            )
            assert len(template.steps) == len(template_def.steps)


def gated_document(*conditions):
    doc = minimal_document()
    doc["templates"][0]["steps"][1]["conditions"] = list(conditions)
    return doc


class TestStepConditions:
    def test_parsed_with_text_expected_value(self):
        config = parse_config(gated_document(
            {"field_name": "estimated_hours", "operator": "less_than", "expected_value": 40},
            {"field_name": "priority", "operator": "not_equals", "is_active": False},
        ))
        hours, priority = config.templates[0].steps[1].conditions
        assert hours.expected_value == "40"
        assert priority.expected_value is None
        assert priority.is_active is False

    def test_bridged_to_kernel_conditions(self):
        config = parse_config(gated_document(
            {"field_name": "priority", "operator": "equals", "expected_value": "high"},
        ))
        specs = build_step_specs(config.templates[0])
        assert specs[0].conditions == ()
        assert specs[1].conditions == (
            StepCondition("priority", ConditionOperator.EQUALS, "high"),
        )

    def test_invalid_conditions_are_errors(self):
        config = parse_config(gated_document(
            {"field_name": " ", "operator": "equals", "expected_value": "x"},
            {"field_name": "priority", "operator": "between", "expected_value": "1"},
        ))
        errors = validate_configuration(config).errors
        assert any("blank field_name" in e for e in errors)
        assert any("unknown condition operator 'between'" in e for e in errors)

    def test_condition_without_expected_value_warns(self):
        config = parse_config(gated_document({"field_name": "priority", "operator": "equals"}))
        result = validate_configuration(config)
        assert result.is_valid
        assert any("can never pass" in w for w in result.warnings)

    def test_not_equals_without_expected_value_is_quiet(self):
        config = parse_config(gated_document({"field_name": "assigned_to", "operator": "not_equals"}))
        result = validate_configuration(config)
        assert not any("can never pass" in w for w in result.warnings)
