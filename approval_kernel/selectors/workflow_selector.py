"""
Module: approval_kernel.selectors.workflow_selector
Responsibility: Read-side queries over workflows, filtered for a viewer.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - A viewer only receives workflows ``check_workflow_access`` grants,
      and within a workflow only the stages the visibility filter keeps
      (with their approvals and files).
    - Stage order is preserved.

Failure modes:
    - WorkflowNotFoundError for unknown ids.
    - ForbiddenError when the viewer has no access to the workflow.
"""

from collections import defaultdict
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select

from approval_kernel.domain.identity import Identity
from approval_kernel.domain.visibility import (
    AccessDecision,
    check_workflow_access,
    filter_visible_stages,
)
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    AttachedFile,
    StageInstance,
    WorkflowInstance,
    WorkflowStatus,
)
from approval_kernel.exceptions import ForbiddenError, WorkflowNotFoundError
from approval_kernel.models.approval import ApprovalModel
from approval_kernel.models.attached_file import AttachedFileModel
from approval_kernel.models.workflow import StageInstanceModel, WorkflowInstanceModel
from approval_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class WorkflowView:
    """What one viewer sees of one workflow."""

    workflow: WorkflowInstance
    stages: tuple[StageInstance, ...]
    approvals: tuple[ApprovalRecord, ...]
    files: tuple[AttachedFile, ...]
    access_reason: str


class WorkflowSelector(BaseSelector):
    """Viewer-aware reads over workflows and their stages."""

    def get_workflow(self, workflow_id: UUID) -> WorkflowInstance:
        model = self.session.get(WorkflowInstanceModel, workflow_id)
        if model is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return model.to_dto()

    def get_stages(self, workflow_id: UUID) -> tuple[StageInstance, ...]:
        rows = self.session.execute(
            select(StageInstanceModel)
            .where(StageInstanceModel.workflow_id == workflow_id)
            .order_by(StageInstanceModel.stage_order)
        ).scalars().all()
        return tuple(r.to_dto() for r in rows)

    def get_approvals(self, workflow_id: UUID) -> tuple[ApprovalRecord, ...]:
        rows = self.session.execute(
            select(ApprovalModel)
            .where(ApprovalModel.workflow_id == workflow_id)
            .order_by(ApprovalModel.created_at)
        ).scalars().all()
        return tuple(r.to_dto() for r in rows)

    def check_access(self, workflow_id: UUID, viewer: Identity) -> AccessDecision:
        workflow = self.get_workflow(workflow_id)
        return check_workflow_access(workflow, self.get_stages(workflow_id), viewer)

    def get_workflow_view(self, workflow_id: UUID, viewer: Identity) -> WorkflowView:
        """
        The workflow, its visible stages, and the approvals and files
        attached to those stages (plus files attached at creation).

        Raises:
            WorkflowNotFoundError, ForbiddenError.
        """
        workflow = self.get_workflow(workflow_id)
        stages = self.get_stages(workflow_id)
        decision = check_workflow_access(workflow, stages, viewer)
        if not decision.has_access:
            raise ForbiddenError(viewer.id, "view workflow", decision.reason)

        visible = filter_visible_stages(stages, viewer, workflow.requester_id)
        visible_ids = {s.id for s in visible}
        approvals = tuple(a for a in self.get_approvals(workflow_id) if a.stage_id in visible_ids)
        file_rows = self.session.execute(
            select(AttachedFileModel)
            .where(
                AttachedFileModel.workflow_id == workflow_id,
                AttachedFileModel.deleted_at.is_(None),
            )
            .order_by(AttachedFileModel.uploaded_at, AttachedFileModel.file_name)
        ).scalars().all()
        files = tuple(
            f.to_dto() for f in file_rows
            if f.stage_id is None or f.stage_id in visible_ids
        )
        return WorkflowView(
            workflow=workflow,
            stages=visible,
            approvals=approvals,
            files=files,
            access_reason=decision.reason,
        )

    def list_visible_workflows(
        self,
        viewer: Identity,
        status: WorkflowStatus | None = None,
        workflow_type: str | None = None,
    ) -> list[WorkflowInstance]:
        """Workflows ``viewer`` may open, newest first."""
        stmt = select(WorkflowInstanceModel)
        if status is not None:
            stmt = stmt.where(WorkflowInstanceModel.overall_status == status.value)
        if workflow_type is not None:
            stmt = stmt.where(WorkflowInstanceModel.workflow_type == workflow_type)
        stmt = stmt.order_by(
            WorkflowInstanceModel.created_at.desc(),
            WorkflowInstanceModel.workflow_number.desc(),
        )
        workflows = [m.to_dto() for m in self.session.execute(stmt).scalars().all()]
        if not workflows:
            return []

        stages_by_workflow: dict[UUID, list[StageInstance]] = defaultdict(list)
        stage_rows = self.session.execute(
            select(StageInstanceModel)
            .where(StageInstanceModel.workflow_id.in_([w.id for w in workflows]))
            .order_by(StageInstanceModel.workflow_id, StageInstanceModel.stage_order)
        ).scalars().all()
        for row in stage_rows:
            stages_by_workflow[row.workflow_id].append(row.to_dto())

        return [
            w for w in workflows
            if check_workflow_access(w, stages_by_workflow[w.id], viewer).has_access
        ]
