"""
Tests for the YAML workflow policy.

Covers:
- the shipped defaults (numbering, built-in stage lists, bypass roles)
- checksum determinism and the APPROVAL_CONFIG_TRACE log entry
- rejection of malformed policy files
- a service wired from a custom policy
"""

from decimal import Decimal

import pytest
import yaml

from approval_config import get_active_config
from approval_config.loader import compute_checksum, load_yaml_file, parse_policy
from approval_kernel.domain.identity import Role
from approval_kernel.exceptions import TemplateValidationError, UnknownRoleError
from approval_kernel.services.workflow_service import WorkflowService


def minimal_policy(**overrides) -> dict:
    data = {
        "config_id": "custom",
        "version": 3,
        "sequences": {"prefix": "ACME", "types": ["REQ"]},
        "workflow_types": {
            "REQ": {
                "label": "Request",
                "stages": [
                    {"order": 1, "name": "Manager", "required_role": "GA"},
                    {"order": 2, "name": "Finance", "required_role": "Finance"},
                ],
            },
        },
    }
    data.update(overrides)
    return data


@pytest.fixture
def write_policy(tmp_path):
    def _write(data: dict):
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestDefaults:
    def test_numbering(self, policy):
        assert policy.sequence_prefix == "WFMT"
        assert policy.sequence_types == ("MAF", "PR", "CATTO", "SKU", "PAF")
        assert policy.default_currency == "IDR"

    def test_maf_stage_list(self, policy):
        maf = policy.get_workflow_type("MAF")
        assert [s.name for s in maf.stages] == [
            "PPIC Review", "Purchasing Review", "CFO Approval", "CEO/COO Approval",
        ]
        assert maf.stages[2].approval_threshold == Decimal("1000000")
        assert maf.stages[3].requires_one_of == frozenset({Role.COO})
        assert maf.bypass_upload_roles == frozenset({Role.CEO, Role.CFO})

    def test_types_without_stage_list(self, policy):
        assert policy.get_workflow_type("SKU") is None
        assert set(policy.workflow_types) == {"MAF", "PR", "CATTO"}

    def test_checksum_is_deterministic(self, policy):
        assert len(policy.checksum) == 64
        assert get_active_config().checksum == policy.checksum
        data = {"b": 1, "a": [1, 2]}
        assert compute_checksum(data) == compute_checksum({"a": [1, 2], "b": 1})

    def test_load_emits_trace(self, captured_logs):
        policy = get_active_config()
        traces = [r for r in captured_logs() if r["message"] == "APPROVAL_CONFIG_TRACE"]
        assert len(traces) == 1
        assert traces[0]["config_id"] == policy.config_id
        assert traces[0]["checksum"] == policy.checksum
        assert traces[0]["workflow_type_count"] == 3


class TestCustomPolicy:
    def test_loads_from_path(self, write_policy):
        policy = get_active_config(write_policy(minimal_policy()))
        assert policy.config_id == "custom"
        assert policy.version == 3
        assert [s.order for s in policy.get_workflow_type("REQ").stages] == [1, 2]

    def test_service_uses_custom_numbering(self, write_policy, session, clock, people, draft_maf):
        policy = get_active_config(write_policy(minimal_policy()))
        service = WorkflowService.from_policy(session, policy, clock=clock)
        result = service.create_workflow(draft_maf(workflow_type="REQ"), people["requester"])
        assert result.workflow.workflow_number == "ACME-REQ-240101-001"
        assert [s.stage_name for s in result.stages] == ["Manager", "Finance"]

    def test_gap_in_stage_orders(self, write_policy):
        data = minimal_policy()
        data["workflow_types"]["REQ"]["stages"][1]["order"] = 3
        with pytest.raises(TemplateValidationError):
            get_active_config(write_policy(data))

    def test_unknown_role(self, write_policy):
        data = minimal_policy()
        data["workflow_types"]["REQ"]["stages"][0]["required_role"] = "Janitor"
        with pytest.raises(UnknownRoleError):
            get_active_config(write_policy(data))

    def test_workflow_type_needs_a_sequence(self):
        data = minimal_policy(sequences={"prefix": "ACME", "types": ["OTHER"]})
        with pytest.raises(ValueError):
            parse_policy(data)

    def test_empty_sequence_types(self):
        with pytest.raises(ValueError):
            parse_policy(minimal_policy(sequences={"prefix": "ACME", "types": []}))

    def test_missing_sequences_section(self):
        data = minimal_policy()
        del data["sequences"]
        with pytest.raises(KeyError):
            parse_policy(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(tmp_path / "absent.yaml")
