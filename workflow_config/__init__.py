"""
workflow_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  The engine tunables, per-module approval
    thresholds, entity table mappings, role grants and seed templates all
    flow from one YAML document.

Architecture position:
    Configuration -- sits above ``workflow_kernel``.  The kernel MUST
    NEVER import from ``workflow_config``; ``bridges`` translate the
    parsed definitions into kernel inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation before use: a configuration with errors is never returned.
    - Deterministic checksum: the same document always yields the same
      ``WorkflowConfigSet.checksum``.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ConfigurationError`` -- validation reported errors.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``WORKFLOW_CONFIG_TRACE`` log entry with the source path, version and
    checksum, tying engine behavior to the configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from workflow_config.loader import load_config
from workflow_config.schema import WorkflowConfigSet
from workflow_config.validator import ConfigValidationResult, validate_configuration
from workflow_kernel.exceptions import ConfigurationError

_logger = logging.getLogger("workflow_kernel.config")

CONFIG_PATH_ENV = "WORKFLOW_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> WorkflowConfigSet:
    """The ONLY public configuration entrypoint.

    Resolution order for the document: the ``path`` argument, then the
    ``WORKFLOW_CONFIG_PATH`` environment variable, then the packaged
    ``defaults.yaml``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ConfigurationError: If validation reports any error.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config(resolved)

    validation = validate_configuration(config)
    for warning in validation.warnings:
        _logger.warning(
            "workflow_config_warning",
            extra={"source_path": str(resolved), "warning": warning},
        )
    if not validation.is_valid:
        raise ConfigurationError(validation.errors)

    _logger.info(
        "WORKFLOW_CONFIG_TRACE",
        extra={
            "trace_type": "WORKFLOW_CONFIG_TRACE",
            "source_path": str(resolved),
            "config_version": config.version,
            "checksum": config.checksum,
            "module_count": len(config.modules),
            "role_grant_count": len(config.role_grants),
            "template_count": len(config.templates),
        },
    )
    return config


__all__ = [
    "ConfigValidationResult",
    "WorkflowConfigSet",
    "get_active_config",
    "validate_configuration",
]
