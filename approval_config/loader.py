"""
Policy loader (``approval_config.loader``).

Responsibility
--------------
Loads the workflow policy YAML and parses it into the frozen dataclasses
of ``approval_config.schema``.  Runtime callers go through
``approval_config.get_active_config()``.

Invariants enforced
-------------------
* Every built-in stage list passes the kernel's template validator
  (unique orders, contiguous from 1) before a policy is returned.
* Workflow types are a subset of the configured sequence types: every
  workflow needs a number.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Structural problems  -> ``ValueError``; unknown roles ->
  ``UnknownRoleError``; bad stage lists -> ``TemplateValidationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import WorkflowPolicyConfig, WorkflowTypeDef
from approval_kernel.domain.identity import parse_role, parse_roles
from approval_kernel.domain.templates import validate_stage_definitions
from approval_kernel.domain.workflow import DEFAULT_CURRENCY, StageDefinition


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_stage(data: dict[str, Any]) -> StageDefinition:
    """Parse one StageDefinition; ``order`` and ``name`` are required."""
    threshold = data.get("approval_threshold")
    return StageDefinition(
        order=int(data["order"]),
        name=data["name"],
        description=data.get("description"),
        department=data.get("department"),
        required_role=parse_role(data["required_role"]) if data.get("required_role") else None,
        requires_one_of=parse_roles(data.get("requires_one_of") or ()),
        approval_required=data.get("approval_required", True),
        file_upload_required=data.get("file_upload_required", False),
        notify_emails=tuple(data.get("notify_emails") or ()),
        visible_to_departments=frozenset(data.get("visible_to_departments") or ()),
        approval_threshold=Decimal(str(threshold)) if threshold is not None else None,
    )


def parse_workflow_type(workflow_type: str, data: dict[str, Any]) -> WorkflowTypeDef:
    """Parse and validate one workflow type's built-in definition."""
    label = data.get("label") or workflow_type
    stages = validate_stage_definitions(
        label, [parse_stage(s) for s in data.get("stages") or ()],
    )
    return WorkflowTypeDef(
        workflow_type=workflow_type,
        label=label,
        stages=stages,
        bypass_upload_roles=parse_roles(data.get("bypass_upload_roles") or ()),
        description=data.get("description"),
    )


def parse_policy(data: dict[str, Any], checksum: str = "") -> WorkflowPolicyConfig:
    """
    Parse the whole policy document.

    Raises:
        KeyError: ``sequences.prefix`` or ``sequences.types`` missing.
        ValueError: a workflow type has no sequence type.
    """
    sequences = data["sequences"]
    sequence_types = tuple(str(t) for t in sequences["types"])
    if not sequence_types:
        raise ValueError("sequences.types must list at least one type")

    workflow_types = {}
    for key, body in (data.get("workflow_types") or {}).items():
        if key not in sequence_types:
            raise ValueError(
                f"Workflow type {key!r} is not a configured sequence type {sequence_types}"
            )
        workflow_types[key] = parse_workflow_type(key, body or {})

    return WorkflowPolicyConfig(
        config_id=data.get("config_id", "default"),
        version=int(data.get("version", 1)),
        sequence_prefix=str(sequences["prefix"]),
        sequence_types=sequence_types,
        workflow_types=workflow_types,
        default_currency=data.get("default_currency", DEFAULT_CURRENCY),
        checksum=checksum,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_policy(path: Path) -> WorkflowPolicyConfig:
    """Load, checksum and parse the policy file at ``path``."""
    data = load_yaml_file(path)
    return parse_policy(data, checksum=compute_checksum(data))
