"""
CommentService -- discussion threads on workflows and their stages.

Responsibility:
    Appends comments to a workflow, optionally pinned to one of its
    stages, and lists them for a viewer.  Comments are conversation only:
    they never change workflow or stage state.

Architecture position:
    Kernel > Services.  Called by WorkflowService, which owns the
    transaction.  Uses domain.visibility for who may read and write.

Invariants enforced:
    - Only active identities comment, and only on workflows they may open.
    - A stage comment needs the stage to be visible to its author and to
      belong to the same workflow.
    - Comments are append-only (ORM listeners) and each one is audited on
      the workflow's chain.
    - Readers see workflow-level comments plus those on visible stages.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.authorization import require_active
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity
from approval_kernel.domain.visibility import check_workflow_access, is_stage_visible
from approval_kernel.domain.workflow import CommentType, WorkflowComment
from approval_kernel.exceptions import (
    ForbiddenError,
    StageNotFoundError,
    ValidationError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.comment import CommentModel
from approval_kernel.models.workflow import StageInstanceModel, WorkflowInstanceModel
from approval_kernel.services.auditor_service import AuditorService

logger = get_logger("services.comments")


class CommentService:
    """
    Contract:
        ``add_comment`` flushes one comment row and its audit event inside
        the caller's transaction.  ``list_comments`` reads only.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT edit or delete comments.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)

    def _load_stages(self, workflow_id: UUID) -> list[StageInstanceModel]:
        return list(
            self._session.execute(
                select(StageInstanceModel)
                .where(StageInstanceModel.workflow_id == workflow_id)
                .order_by(StageInstanceModel.stage_order)
            ).scalars().all()
        )

    def add_comment(
        self,
        workflow_id: UUID,
        actor: Identity,
        text: str,
        stage_id: UUID | None = None,
        comment_type: CommentType = CommentType.GENERAL,
    ) -> WorkflowComment:
        """
        Append a comment to the workflow, or to one of its stages.

        Raises:
            InactiveIdentityError, ValidationError, WorkflowNotFoundError,
            StageNotFoundError, ForbiddenError.
        """
        require_active(actor, "add comment")
        body = (text or "").strip()
        if not body:
            raise ValidationError("Comment text is required", field="comment_text")

        # Lock the header: the audit chain of this workflow is appended to.
        workflow = self._session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == workflow_id)
            .with_for_update()
        ).scalar_one_or_none()
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))

        stages = [s.to_dto() for s in self._load_stages(workflow_id)]
        stage = None
        if stage_id is not None:
            stage = next((s for s in stages if s.id == stage_id), None)
            if stage is None:
                raise StageNotFoundError(str(stage_id), str(workflow_id))

        decision = check_workflow_access(workflow.to_dto(), stages, actor)
        if not decision.has_access:
            raise ForbiddenError(actor.id, "add comment", decision.reason)
        if stage is not None and not is_stage_visible(stage, actor, workflow.requester_id):
            raise ForbiddenError(actor.id, "add comment", "stage is not visible to you")

        model = CommentModel(
            workflow_id=workflow_id,
            stage_id=stage_id,
            comment_text=body,
            comment_type=CommentType(comment_type).value,
            author_id=actor.id,
            author_role=actor.role.value,
            created_at=self._clock.now(),
        )
        self._session.add(model)
        self._session.flush()

        dto = model.to_dto()
        self._auditor.record_comment_added(dto)
        logger.info(
            "comment_added",
            extra={
                "comment_id": str(dto.id),
                "comment_type": dto.comment_type.value,
                "on_stage": str(stage_id) if stage_id else None,
            },
        )
        return dto

    def list_comments(
        self,
        workflow_id: UUID,
        viewer: Identity,
        stage_id: UUID | None = None,
    ) -> list[WorkflowComment]:
        """Comments ``viewer`` may read, newest first.

        With ``stage_id`` only that stage's comments are returned.
        """
        workflow = self._session.get(WorkflowInstanceModel, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))
        stages = [s.to_dto() for s in self._load_stages(workflow_id)]
        decision = check_workflow_access(workflow.to_dto(), stages, viewer)
        if not decision.has_access:
            raise ForbiddenError(viewer.id, "view comments", decision.reason)

        visible_ids = {
            s.id for s in stages if is_stage_visible(s, viewer, workflow.requester_id)
        }
        if stage_id is not None and stage_id not in {s.id for s in stages}:
            raise StageNotFoundError(str(stage_id), str(workflow_id))

        stmt = select(CommentModel).where(CommentModel.workflow_id == workflow_id)
        if stage_id is not None:
            stmt = stmt.where(CommentModel.stage_id == stage_id)
        rows = self._session.execute(
            stmt.order_by(CommentModel.created_at.desc(), CommentModel.id)
        ).scalars().all()
        return [
            r.to_dto() for r in rows
            if r.stage_id is None or r.stage_id in visible_ids
        ]
