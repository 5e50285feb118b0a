"""
End-to-end tests of the approval-stage state machine through WorkflowService.

Covers:
- submit / approve / reject / cancel / archive happy paths and guards
- end-to-end scenarios: rejection mid-way, upload gate and file deletion,
  department scope
- atomic final approval, single active stage, cascading rejection and
  stage order guards
- notification-only stages
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.workflow import (
    StageDefinition,
    StageStatus,
    WorkflowStatus,
)
from approval_kernel.exceptions import (
    AttachmentNotFoundError,
    CascadingRejectionError,
    CommentsRequiredError,
    DepartmentNotVisibleError,
    ForbiddenError,
    InactiveIdentityError,
    InvalidWorkflowStateError,
    MissingUploadError,
    NotRequesterError,
    PreconditionFailedError,
    RoleNotAuthorizedError,
    StageNotActiveError,
    StageNotFoundError,
    StageOrderViolationError,
    ValidationError,
    WorkflowNotFoundError,
)
from approval_kernel.models.approval import ApprovalModel
from approval_kernel.models.workflow import StageInstanceModel


def approval_count(session, workflow_id) -> int:
    count = session.execute(
        select(func.count()).select_from(ApprovalModel).where(ApprovalModel.workflow_id == workflow_id)
    ).scalar_one()
    session.rollback()
    return count


def statuses(result) -> list[str]:
    return [s.status.value for s in result.stages]


def in_progress_count(result) -> int:
    return sum(1 for s in result.stages if s.status == StageStatus.IN_PROGRESS)


# ---------------------------------------------------------------------------
# Scenario A: three-stage template, approve then reject
# ---------------------------------------------------------------------------


class TestRejectionScenario:
    def test_reject_mid_way_leaves_later_stages_pending(
        self, service, session, people, three_stage_template, draft_maf,
    ):
        created = service.create_workflow(
            draft_maf(template_id=three_stage_template.id), people["requester"],
        )
        wf_id = created.workflow.id
        assert created.workflow.overall_status == WorkflowStatus.DRAFT
        assert statuses(created) == ["pending", "pending", "pending"]

        submitted = service.submit(wf_id, people["requester"])
        assert submitted.workflow.overall_status == WorkflowStatus.IN_PROGRESS
        assert statuses(submitted) == ["in_progress", "pending", "pending"]
        assert submitted.workflow.current_stage_order == 1

        stage1, stage2, stage3 = submitted.stages
        approved = service.approve(stage1.id, wf_id, people["purchasing"])
        assert statuses(approved) == ["completed", "in_progress", "pending"]
        assert approved.approval.action.value == "approved"
        assert approved.approval.approver_role == Role.PURCHASING
        assert approval_count(session, wf_id) == 1

        rejected = service.reject(stage2.id, wf_id, people["ga"], "price above quote")
        assert rejected.workflow.overall_status == WorkflowStatus.REJECTED
        assert statuses(rejected) == ["completed", "rejected", "pending"]
        assert rejected.workflow.current_stage_order is None
        assert rejected.approval.comments == "price above quote"
        assert approval_count(session, wf_id) == 2

        # Terminal: stage 3 can never start.
        with pytest.raises(InvalidWorkflowStateError):
            service.approve(stage3.id, wf_id, people["finance"])
        assert statuses(service.get_state(wf_id)) == ["completed", "rejected", "pending"]

    def test_rejected_workflow_cannot_be_cancelled(
        self, service, people, three_stage_template, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        service.reject(submitted.stages[0].id, wf.workflow.id, people["purchasing"], "no")
        with pytest.raises(InvalidWorkflowStateError):
            service.cancel(wf.workflow.id, people["requester"])


# ---------------------------------------------------------------------------
# Scenario B: upload gate
# ---------------------------------------------------------------------------


class TestUploadGate:
    UPLOAD_STAGES = (
        StageDefinition(order=1, name="PPIC Review", required_role=Role.PPIC, file_upload_required=True),
        StageDefinition(order=2, name="CFO Sign-off", required_role=Role.CFO, file_upload_required=True),
    )

    def _submitted(self, service, people, draft_maf, workflow_type="MAF"):
        wf = service.create_workflow(
            draft_maf(workflow_type=workflow_type, stages=self.UPLOAD_STAGES), people["requester"],
        )
        return service.submit(wf.workflow.id, people["requester"])

    def test_missing_upload_then_upload_then_approve(self, service, session, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1 = submitted.workflow.id, submitted.stages[0]

        with pytest.raises(MissingUploadError) as exc:
            service.approve(stage1.id, wf_id, people["ppic"])
        assert exc.value.stage_id == str(stage1.id)
        assert approval_count(session, wf_id) == 0
        assert statuses(service.get_state(wf_id)) == ["in_progress", "pending"]

        attached = service.register_file(
            wf_id, people["ppic"], "maf-signed.pdf", "s3://bucket/maf-signed.pdf", stage_id=stage1.id,
        )
        assert attached.uploaded_by == people["ppic"].id

        approved = service.approve(stage1.id, wf_id, people["ppic"])
        assert statuses(approved) == ["completed", "in_progress"]

    def test_file_from_another_uploader_does_not_count(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1 = submitted.workflow.id, submitted.stages[0]
        service.register_file(wf_id, people["requester"], "form.pdf", "ref-1", stage_id=stage1.id)
        with pytest.raises(MissingUploadError):
            service.approve(stage1.id, wf_id, people["ppic"])

    def test_file_on_another_stage_does_not_count(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1, stage2 = submitted.workflow.id, *submitted.stages
        service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage2.id)
        service.register_file(wf_id, people["ppic"], "general.pdf", "ref-2")
        with pytest.raises(MissingUploadError):
            service.approve(stage1.id, wf_id, people["ppic"])

    def test_bypass_role_skips_upload_for_maf(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1, stage2 = submitted.workflow.id, *submitted.stages
        assert submitted.workflow.bypass_upload_roles == frozenset({Role.CEO, Role.CFO})
        service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage1.id)
        service.approve(stage1.id, wf_id, people["ppic"])

        done = service.approve(stage2.id, wf_id, people["cfo"])
        assert done.workflow.overall_status == WorkflowStatus.COMPLETED

    def test_no_bypass_for_purchase_requests(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf, workflow_type="PR")
        wf_id, stage1, stage2 = submitted.workflow.id, *submitted.stages
        assert submitted.workflow.bypass_upload_roles == frozenset()
        service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage1.id)
        service.approve(stage1.id, wf_id, people["ppic"])
        with pytest.raises(MissingUploadError):
            service.approve(stage2.id, wf_id, people["cfo"])

    def test_reject_does_not_need_upload(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        result = service.reject(
            submitted.stages[0].id, submitted.workflow.id, people["ppic"], "wrong part number",
        )
        assert result.workflow.overall_status == WorkflowStatus.REJECTED

    def test_register_file_rejects_stage_of_other_workflow(self, service, people, draft_maf):
        first = self._submitted(service, people, draft_maf)
        second = self._submitted(service, people, draft_maf)
        with pytest.raises(StageNotFoundError):
            service.register_file(
                second.workflow.id, people["ppic"], "x.pdf", "ref", stage_id=first.stages[0].id,
            )

    def test_register_file_requires_name(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        with pytest.raises(ValidationError):
            service.register_file(submitted.workflow.id, people["ppic"], "  ", "ref")

    def test_deleted_file_no_longer_satisfies_the_gate(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1 = submitted.workflow.id, submitted.stages[0]
        attached = service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage1.id)

        deleted = service.delete_file(attached.id, people["ppic"])
        assert deleted.is_deleted
        assert deleted.deleted_by == people["ppic"].id
        assert service.list_files(wf_id) == []
        assert service.get_audit_trace(wf_id).last_action == "file_deleted"

        with pytest.raises(MissingUploadError):
            service.approve(stage1.id, wf_id, people["ppic"])

    def test_deleting_after_approval_keeps_the_approval(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1 = submitted.workflow.id, submitted.stages[0]
        attached = service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage1.id)
        service.approve(stage1.id, wf_id, people["ppic"])

        service.delete_file(attached.id, people["admin"])
        assert statuses(service.get_state(wf_id)) == ["completed", "in_progress"]

    def test_only_uploader_or_admin_deletes(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id, stage1 = submitted.workflow.id, submitted.stages[0]
        attached = service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1", stage_id=stage1.id)

        with pytest.raises(ForbiddenError):
            service.delete_file(attached.id, people["requester"])
        with pytest.raises(InactiveIdentityError):
            service.delete_file(attached.id, people["inactive_ppic"])
        assert [f.id for f in service.list_files(wf_id)] == [attached.id]

    def test_unknown_or_already_deleted_file(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        attached = service.register_file(submitted.workflow.id, people["ppic"], "form.pdf", "ref-1")
        service.delete_file(attached.id, people["ppic"])

        with pytest.raises(AttachmentNotFoundError):
            service.delete_file(attached.id, people["ppic"])
        with pytest.raises(AttachmentNotFoundError):
            service.delete_file(uuid4(), people["admin"])

    def test_files_of_a_finished_workflow_cannot_be_deleted(self, service, people, draft_maf):
        submitted = self._submitted(service, people, draft_maf)
        wf_id = submitted.workflow.id
        attached = service.register_file(wf_id, people["ppic"], "form.pdf", "ref-1")
        service.cancel(wf_id, people["requester"])

        with pytest.raises(InvalidWorkflowStateError):
            service.delete_file(attached.id, people["admin"])


# ---------------------------------------------------------------------------
# Scenario C: department scope
# ---------------------------------------------------------------------------


class TestDepartmentScope:
    STAGES = (
        StageDefinition(
            order=1, name="Warehouse check", required_role=Role.LOGISTICS,
            visible_to_departments=frozenset({"Warehouse"}),
        ),
    )

    def test_out_of_scope_department_is_forbidden_without_side_effects(
        self, service, session, people, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(stages=self.STAGES), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        stage = submitted.stages[0]

        with pytest.raises(ForbiddenError) as exc:
            service.approve(stage.id, wf.workflow.id, people["logistics"])
        assert isinstance(exc.value, DepartmentNotVisibleError)

        after = service.get_state(wf.workflow.id)
        assert after.workflow.version == submitted.workflow.version
        assert statuses(after) == ["in_progress"]
        assert approval_count(session, wf.workflow.id) == 0

    def test_listed_department_may_approve(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(stages=self.STAGES), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        warehouse = Identity("u-wh", "wh@example.com", Role.LOGISTICS, "Warehouse")
        done = service.approve(submitted.stages[0].id, wf.workflow.id, warehouse)
        assert done.workflow.overall_status == WorkflowStatus.COMPLETED


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


class TestGuards:
    def test_wrong_role_is_forbidden(self, service, people, three_stage_template, draft_maf):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(RoleNotAuthorizedError):
            service.approve(submitted.stages[0].id, wf.workflow.id, people["ga"])

    def test_admin_may_approve_any_stage(self, service, people, three_stage_template, draft_maf):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        result = service.approve(submitted.stages[0].id, wf.workflow.id, people["admin"])
        assert result.approval.approver_role == Role.ADMIN

    def test_pending_stage_cannot_be_approved(self, service, people, three_stage_template, draft_maf):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(StageNotActiveError):
            service.approve(submitted.stages[1].id, wf.workflow.id, people["ga"])

    def test_draft_stage_cannot_be_approved(self, service, people, three_stage_template, draft_maf):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        with pytest.raises(InvalidWorkflowStateError) as exc:
            service.approve(wf.stages[0].id, wf.workflow.id, people["purchasing"])
        assert isinstance(exc.value, PreconditionFailedError)
        assert exc.value.retryable

    def test_inactive_identity_cannot_approve(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(InactiveIdentityError):
            service.approve(submitted.stages[0].id, wf.workflow.id, people["inactive_ppic"])

    def test_inactive_identity_cannot_create(self, service, people, draft_maf):
        with pytest.raises(InactiveIdentityError):
            service.create_workflow(draft_maf(), people["inactive_ppic"])

    def test_unknown_workflow(self, service, people):
        with pytest.raises(WorkflowNotFoundError):
            service.submit(uuid4(), people["requester"])

    def test_unknown_stage(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(StageNotFoundError):
            service.approve(uuid4(), wf.workflow.id, people["ppic"])

    @pytest.mark.parametrize("comments", ["", "   ", "\n\t"])
    def test_reject_requires_comments(self, service, session, people, draft_maf, comments):
        wf = service.create_workflow(draft_maf(), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(CommentsRequiredError):
            service.reject(submitted.stages[0].id, wf.workflow.id, people["ppic"], comments)
        after = service.get_state(wf.workflow.id)
        assert after.workflow.overall_status == WorkflowStatus.IN_PROGRESS
        assert statuses(after)[0] == "in_progress"
        assert approval_count(session, wf.workflow.id) == 0

    def test_reject_comments_are_stripped(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        submitted = service.submit(wf.workflow.id, people["requester"])
        result = service.reject(submitted.stages[0].id, wf.workflow.id, people["ppic"], "  late  ")
        assert result.approval.comments == "late"


class TestSubmit:
    def test_only_requester_or_admin_submits(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        with pytest.raises(NotRequesterError):
            service.submit(wf.workflow.id, people["ppic"])
        result = service.submit(wf.workflow.id, people["admin"])
        assert result.workflow.overall_status == WorkflowStatus.IN_PROGRESS

    def test_submit_twice_fails(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(InvalidWorkflowStateError) as exc:
            service.submit(wf.workflow.id, people["requester"])
        assert exc.value.current_status == "in_progress"

    def test_submit_sets_timestamps_and_bumps_version(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        assert wf.workflow.version == 1
        submitted = service.submit(wf.workflow.id, people["requester"])
        assert submitted.workflow.submitted_at is not None
        assert submitted.workflow.version > wf.workflow.version
        assert submitted.stages[0].started_at is not None


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


class TestInvariants:
    def test_final_approval_completes_workflow_atomically(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(estimated_amount=Decimal("2000000")), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        approvers = [people["ppic"], people["purchasing"], people["cfo"]]
        for stage, approver in zip(state.stages, approvers):
            state = service.approve(stage.id, wf.workflow.id, approver)

        assert state.workflow.overall_status == WorkflowStatus.COMPLETED
        assert state.workflow.current_stage_order is None
        assert state.workflow.completed_at is not None
        assert statuses(state) == ["completed"] * 3
        assert state.active_stage is None

        persisted = service.get_state(wf.workflow.id)
        assert persisted.workflow.overall_status == WorkflowStatus.COMPLETED
        assert statuses(persisted) == ["completed"] * 3

    def test_at_most_one_stage_in_progress_throughout(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(estimated_amount=Decimal("9000000")), people["requester"])
        assert in_progress_count(wf) == 0
        state = service.submit(wf.workflow.id, people["requester"])
        approvers = [people["ppic"], people["purchasing"], people["cfo"], people["coo"]]
        for stage, approver in zip(state.stages, approvers):
            assert in_progress_count(state) == 1
            assert state.active_stage.id == stage.id
            assert state.workflow.current_stage_order == stage.stage_order
            state = service.approve(stage.id, wf.workflow.id, approver)
        assert in_progress_count(state) == 0

    def test_no_stage_activated_after_an_earlier_rejection(
        self, service, session, people, three_stage_template, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        state = service.approve(state.stages[0].id, wf.workflow.id, people["purchasing"])

        # Corrupt the row behind the engine's back: stage 1 rejected while
        # the workflow still says in_progress.
        row = session.get(StageInstanceModel, state.stages[0].id)
        row.status = StageStatus.REJECTED.value
        session.commit()

        with pytest.raises(CascadingRejectionError) as exc:
            service.approve(state.stages[1].id, wf.workflow.id, people["ga"])
        assert exc.value.rejected_stage_order == 1
        assert exc.value.target_order == 2
        assert statuses(service.get_state(wf.workflow.id)) == ["rejected", "in_progress", "pending"]

    def test_later_stage_cannot_be_approved_while_an_earlier_one_is_open(
        self, service, session, people, three_stage_template, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])

        # Two active stages: stage 2 forced in_progress next to stage 1.
        row = session.get(StageInstanceModel, state.stages[1].id)
        row.status = StageStatus.IN_PROGRESS.value
        session.commit()

        with pytest.raises(StageOrderViolationError) as exc:
            service.approve(state.stages[1].id, wf.workflow.id, people["ga"])
        assert exc.value.target_order == 2
        assert exc.value.blocking_order == 1
        assert isinstance(exc.value, PreconditionFailedError)

        with pytest.raises(StageOrderViolationError) as exc:
            service.approve(state.stages[0].id, wf.workflow.id, people["purchasing"])
        assert exc.value.blocking_order == 2
        assert approval_count(session, wf.workflow.id) == 0
        assert statuses(service.get_state(wf.workflow.id)) == ["in_progress", "in_progress", "pending"]

    def test_next_stage_already_completed_is_refused(
        self, service, session, people, three_stage_template, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(template_id=three_stage_template.id), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])

        row = session.get(StageInstanceModel, state.stages[1].id)
        row.status = StageStatus.COMPLETED.value
        session.commit()

        with pytest.raises(StageNotActiveError) as exc:
            service.approve(state.stages[0].id, wf.workflow.id, people["purchasing"])
        assert exc.value.stage_id == str(state.stages[1].id)
        assert approval_count(session, wf.workflow.id) == 0
        assert statuses(service.get_state(wf.workflow.id)) == ["in_progress", "completed", "pending"]


# ---------------------------------------------------------------------------
# Notification-only stages
# ---------------------------------------------------------------------------


class TestNotificationOnlyStages:
    STAGES = (
        StageDefinition(order=1, name="PPIC Review", required_role=Role.PPIC),
        StageDefinition(
            order=2, name="Inform warehouse", approval_required=False,
            notify_emails=("warehouse@example.com",),
        ),
        StageDefinition(order=3, name="Finance Review", required_role=Role.FINANCE),
    )

    def test_passed_automatically_after_previous_approval(
        self, service, session, people, dispatcher, draft_maf,
    ):
        wf = service.create_workflow(draft_maf(stages=self.STAGES), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        state = service.approve(state.stages[0].id, wf.workflow.id, people["ppic"])

        assert statuses(state) == ["completed", "completed", "in_progress"]
        assert approval_count(session, wf.workflow.id) == 1
        auto = [e for e in state.events if e.stage_order == 2]
        assert auto and auto[0].notify_emails == ("warehouse@example.com",)

        trace = service.get_audit_trace(wf.workflow.id)
        assert trace.actions[-2:] == ("stage_approved", "stage_auto_completed")

    def test_trailing_notification_stage_completes_workflow(self, service, people, draft_maf):
        stages = self.STAGES[:2]
        wf = service.create_workflow(draft_maf(stages=stages), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        state = service.approve(state.stages[0].id, wf.workflow.id, people["ppic"])
        assert state.workflow.overall_status == WorkflowStatus.COMPLETED


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_in_progress_leaves_no_active_stage(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        state = service.approve(state.stages[0].id, wf.workflow.id, people["ppic"])

        cancelled = service.cancel(wf.workflow.id, people["requester"], reason="supplier withdrew")
        assert cancelled.workflow.overall_status == WorkflowStatus.CANCELLED
        assert statuses(cancelled) == ["completed", "pending"]
        assert cancelled.workflow.current_stage_order is None
        assert service.get_audit_trace(wf.workflow.id).last_action == "workflow_cancelled"

    def test_cancel_draft(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        assert service.cancel(wf.workflow.id, people["admin"]).workflow.overall_status == WorkflowStatus.CANCELLED

    def test_only_requester_or_admin_cancels(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        with pytest.raises(NotRequesterError):
            service.cancel(wf.workflow.id, people["ceo"])

    def test_completed_workflow_cannot_be_cancelled(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        for stage, approver in zip(state.stages, [people["ppic"], people["purchasing"]]):
            state = service.approve(stage.id, wf.workflow.id, approver)
        with pytest.raises(InvalidWorkflowStateError):
            service.cancel(wf.workflow.id, people["requester"])


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class TestArchive:
    def _completed(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        for stage, approver in zip(state.stages, [people["ppic"], people["purchasing"]]):
            state = service.approve(stage.id, wf.workflow.id, approver)
        return state

    def test_admin_archives_a_completed_workflow(self, service, people, draft_maf):
        done = self._completed(service, people, draft_maf)
        archived = service.archive(done.workflow.id, people["admin"])

        assert archived.workflow.overall_status == WorkflowStatus.ARCHIVED
        assert archived.workflow.is_terminal
        assert statuses(archived) == ["completed", "completed"]
        trace = service.get_audit_trace(done.workflow.id)
        assert trace.last_action == "workflow_archived"

    @pytest.mark.parametrize("finish", ["reject", "cancel"])
    def test_rejected_and_cancelled_can_be_archived(self, service, people, draft_maf, finish):
        wf = service.create_workflow(draft_maf(), people["requester"])
        state = service.submit(wf.workflow.id, people["requester"])
        if finish == "reject":
            service.reject(state.stages[0].id, wf.workflow.id, people["ppic"], "wrong resin grade")
        else:
            service.cancel(wf.workflow.id, people["requester"])
        assert service.archive(wf.workflow.id, people["admin"]).workflow.overall_status == WorkflowStatus.ARCHIVED

    def test_only_admin_archives(self, service, people, draft_maf):
        done = self._completed(service, people, draft_maf)
        with pytest.raises(ForbiddenError):
            service.archive(done.workflow.id, people["requester"])
        with pytest.raises(ForbiddenError):
            service.archive(done.workflow.id, people["ceo"])
        assert service.get_state(done.workflow.id).workflow.overall_status == WorkflowStatus.COMPLETED

    def test_open_workflows_cannot_be_archived(self, service, people, draft_maf):
        wf = service.create_workflow(draft_maf(), people["requester"])
        with pytest.raises(InvalidWorkflowStateError):
            service.archive(wf.workflow.id, people["admin"])
        service.submit(wf.workflow.id, people["requester"])
        with pytest.raises(InvalidWorkflowStateError):
            service.archive(wf.workflow.id, people["admin"])

    def test_archived_is_final(self, service, people, draft_maf):
        done = self._completed(service, people, draft_maf)
        service.archive(done.workflow.id, people["admin"])
        with pytest.raises(InvalidWorkflowStateError):
            service.archive(done.workflow.id, people["admin"])
        with pytest.raises(InvalidWorkflowStateError):
            service.cancel(done.workflow.id, people["admin"])
