"""
approval_config -- single public entrypoint for workflow policy.

Responsibility:
    Provides the runtime way to obtain the workflow policy through
    ``get_active_config()``: document numbering (prefix and sequence
    types), the built-in stage list of each workflow type and its upload
    bypass policy.

Architecture position:
    Configuration -- YAML-driven policy.  Sits above ``approval_kernel``
    and imports only its pure domain layer.  The kernel never imports
    from this package; ``WorkflowService.from_policy`` accepts the
    returned object.

Failure modes:
    - ``FileNotFoundError`` -- the policy file does not exist.
    - ``ValueError`` / ``KeyError`` -- structural problems.
    - ``TemplateValidationError`` -- a built-in stage list is invalid.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``APPROVAL_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying workflows back to the policy that routed them.
"""

from __future__ import annotations

import logging
from pathlib import Path

from approval_config.loader import load_policy
from approval_config.schema import WorkflowPolicyConfig, WorkflowTypeDef

_logger = logging.getLogger("approval_kernel.config")

_DEFAULT_POLICY_PATH = Path(__file__).parent / "defaults" / "workflow_policy.yaml"


def get_active_config(config_path: Path | str | None = None) -> WorkflowPolicyConfig:
    """The public configuration entrypoint.

    Non-goals:
        - Does NOT cache; callers hold the returned policy.

    Args:
        config_path: Override path to a policy YAML file.  Defaults to
            approval_config/defaults/workflow_policy.yaml.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_POLICY_PATH
    policy = load_policy(path)

    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "trace_type": "APPROVAL_CONFIG_TRACE",
            "config_id": policy.config_id,
            "config_version": policy.version,
            "checksum": policy.checksum,
            "sequence_prefix": policy.sequence_prefix,
            "workflow_type_count": len(policy.workflow_types),
        },
    )
    return policy


__all__ = [
    "WorkflowPolicyConfig",
    "WorkflowTypeDef",
    "get_active_config",
]
