"""
Tests for viewer-filtered reads.

Covers:
- who may open a workflow (executive, requester, department with a
  visible stage) and who may not
- stage, approval and file filtering inside one workflow view
- list_visible_workflows filtering and ordering
"""

import pytest

from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.visibility import (
    REASON_EXECUTIVE,
    REASON_NO_DEPARTMENT,
    REASON_REQUESTER,
    REASON_VISIBLE_STAGE,
)
from approval_kernel.domain.workflow import StageDefinition, WorkflowStatus
from approval_kernel.exceptions import ForbiddenError, WorkflowNotFoundError

RESTRICTED = (
    StageDefinition(
        order=1, name="Purchasing Review", required_role=Role.PURCHASING,
        visible_to_departments=frozenset({"Purchasing"}),
    ),
    StageDefinition(
        order=2, name="GA Review", required_role=Role.GA,
        visible_to_departments=frozenset({"GA"}),
    ),
)

NO_DEPARTMENT = Identity("u-temp", "temp@example.com", Role.LOGISTICS, None)


@pytest.fixture
def restricted_workflow(service, people, draft_maf):
    created = service.create_workflow(draft_maf(stages=RESTRICTED), people["requester"])
    return service.submit(created.workflow.id, people["requester"])


def stage_names(view) -> list[str]:
    return [s.stage_name for s in view.stages]


class TestWorkflowView:
    def test_requester_sees_everything(self, service, people, restricted_workflow):
        view = service.get_workflow_view(restricted_workflow.workflow.id, people["requester"])
        assert stage_names(view) == ["Purchasing Review", "GA Review"]
        assert view.access_reason == REASON_REQUESTER

    def test_executive_sees_everything(self, service, people, restricted_workflow):
        view = service.get_workflow_view(restricted_workflow.workflow.id, people["ceo"])
        assert stage_names(view) == ["Purchasing Review", "GA Review"]
        assert view.access_reason == REASON_EXECUTIVE

    @pytest.mark.parametrize("who, expected", [("purchasing", "Purchasing Review"), ("ga", "GA Review")])
    def test_department_sees_its_stage_only(self, service, people, restricted_workflow, who, expected):
        view = service.get_workflow_view(restricted_workflow.workflow.id, people[who])
        assert stage_names(view) == [expected]
        assert view.access_reason == REASON_VISIBLE_STAGE

    def test_unrelated_department_is_refused(self, service, people, restricted_workflow):
        with pytest.raises(ForbiddenError):
            service.get_workflow_view(restricted_workflow.workflow.id, people["logistics"])

    def test_no_department_is_refused(self, service, restricted_workflow):
        with pytest.raises(ForbiddenError) as exc:
            service.get_workflow_view(restricted_workflow.workflow.id, NO_DEPARTMENT)
        assert REASON_NO_DEPARTMENT in str(exc.value)

    def test_open_stage_is_visible_to_any_department(self, service, people, draft_maf):
        created = service.create_workflow(draft_maf(), people["requester"])
        view = service.get_workflow_view(created.workflow.id, people["logistics"])
        assert stage_names(view) == ["PPIC Review", "Purchasing Review"]

    def test_unknown_workflow(self, service, people):
        from uuid import uuid4

        with pytest.raises(WorkflowNotFoundError):
            service.get_workflow_view(uuid4(), people["ceo"])

    def test_approvals_and_files_follow_stage_visibility(self, service, people, restricted_workflow):
        wf_id = restricted_workflow.workflow.id
        first = restricted_workflow.stages[0]
        service.register_file(wf_id, people["requester"], "datasheet.pdf", "s3://bucket/datasheet")
        service.register_file(
            wf_id, people["purchasing"], "quote.pdf", "s3://bucket/quote", stage_id=first.id,
        )
        service.approve(first.id, wf_id, people["purchasing"], comments="quote ok")

        purchasing_view = service.get_workflow_view(wf_id, people["purchasing"])
        assert [a.approver_id for a in purchasing_view.approvals] == [people["purchasing"].id]
        assert sorted(f.file_name for f in purchasing_view.files) == ["datasheet.pdf", "quote.pdf"]

        ga_view = service.get_workflow_view(wf_id, people["ga"])
        assert ga_view.approvals == ()
        assert [f.file_name for f in ga_view.files] == ["datasheet.pdf"]

        full = service.get_workflow_view(wf_id, people["cfo"])
        assert len(full.approvals) == 1
        assert len(full.files) == 2


class TestListVisibleWorkflows:
    def test_filters_by_access(self, service, people, draft_maf):
        open_wf = service.create_workflow(draft_maf(), people["requester"])
        restricted = service.create_workflow(draft_maf(stages=RESTRICTED), people["requester"])

        def listed(viewer):
            return {w.id for w in service.list_visible_workflows(viewer)}

        both = {open_wf.workflow.id, restricted.workflow.id}
        assert listed(people["requester"]) == both
        assert listed(people["admin"]) == both
        assert listed(people["ga"]) == both
        assert listed(people["logistics"]) == {open_wf.workflow.id}
        assert listed(NO_DEPARTMENT) == set()

    def test_newest_first(self, service, people, draft_maf, clock):
        numbers = []
        for _ in range(3):
            numbers.append(
                service.create_workflow(draft_maf(), people["requester"]).workflow.workflow_number
            )
            clock.advance(60)
        listed = [w.workflow_number for w in service.list_visible_workflows(people["ceo"])]
        assert listed == list(reversed(numbers))

    def test_status_and_type_filters(self, service, people, draft_maf):
        draft = service.create_workflow(draft_maf(), people["requester"])
        submitted = service.create_workflow(draft_maf(), people["requester"])
        service.submit(submitted.workflow.id, people["requester"])
        pr = service.create_workflow(draft_maf(workflow_type="PR"), people["requester"])

        in_progress = service.list_visible_workflows(people["ceo"], status=WorkflowStatus.IN_PROGRESS)
        assert [w.id for w in in_progress] == [submitted.workflow.id]

        drafts = service.list_visible_workflows(people["ceo"], status=WorkflowStatus.DRAFT)
        assert {w.id for w in drafts} == {draft.workflow.id, pr.workflow.id}

        purchase_requests = service.list_visible_workflows(people["ceo"], workflow_type="PR")
        assert [w.id for w in purchase_requests] == [pr.workflow.id]

    def test_empty_database(self, service, people):
        assert service.list_visible_workflows(people["ceo"]) == []
