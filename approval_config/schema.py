"""
Workflow policy schema.

Typed, frozen form of ``defaults/workflow_policy.yaml``: document
numbering, the built-in stage list of each workflow type and its upload
bypass policy.  The loader parses YAML into these types; the kernel reads
them through ``WorkflowService.from_policy``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from approval_kernel.domain.identity import Role
from approval_kernel.domain.workflow import DEFAULT_CURRENCY, StageDefinition


@dataclass(frozen=True)
class WorkflowTypeDef:
    """Built-in stage list and upload policy of one workflow type."""

    workflow_type: str
    label: str
    stages: tuple[StageDefinition, ...]
    bypass_upload_roles: frozenset[Role] = frozenset()
    description: str | None = None


@dataclass(frozen=True)
class WorkflowPolicyConfig:
    """The runtime policy artifact returned by ``get_active_config``."""

    config_id: str
    version: int
    sequence_prefix: str
    sequence_types: tuple[str, ...]
    workflow_types: Mapping[str, WorkflowTypeDef] = field(default_factory=dict)
    default_currency: str = DEFAULT_CURRENCY
    checksum: str = ""

    def get_workflow_type(self, workflow_type: str) -> WorkflowTypeDef | None:
        return self.workflow_types.get(workflow_type)
