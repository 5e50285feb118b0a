"""
AttachmentRegistry -- file metadata for workflows and stages.

Responsibility:
    Registers attachment metadata and answers the stage engine's upload
    gate question ("did this person upload a file for this stage?").
    Implements the ``FileStore`` protocol.  Bytes never pass through the
    kernel; ``storage_ref`` is the host's object-store key.

Architecture position:
    Kernel > Services.  Called by WorkflowService (registration) and by
    StageEngine (gate check).

Invariants enforced:
    - Only active identities register files.
    - A stage attachment must reference a stage of the same workflow.
    - Registration and deletion are audited on the workflow's chain.
    - Deletion is soft and limited to the uploader or an admin while the
      workflow is not finished.  A deleted file no longer satisfies the
      upload gate; approvals already recorded are unaffected.
"""

from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from approval_kernel.domain.authorization import require_active
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity
from approval_kernel.domain.workflow import (
    TERMINAL_WORKFLOW_STATUSES,
    AttachedFile,
    WorkflowStatus,
)
from approval_kernel.exceptions import (
    AttachmentNotFoundError,
    ForbiddenError,
    InvalidWorkflowStateError,
    StageNotFoundError,
    ValidationError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.attached_file import AttachedFileModel
from approval_kernel.models.workflow import StageInstanceModel, WorkflowInstanceModel
from approval_kernel.services.auditor_service import AuditorService

logger = get_logger("services.attachments")


class AttachmentRegistry:
    """
    Contract:
        ``register_file`` flushes a new AttachedFileModel and its audit
        event; ``has_file``/``list_files`` are read-only.

    Non-goals:
        - Does NOT store, scan or serve file bytes.
        - Does NOT call ``session.commit()``.
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

    def register_file(
        self,
        workflow_id: UUID,
        actor: Identity,
        file_name: str,
        storage_ref: str,
        stage_id: UUID | None = None,
        content_type: str | None = None,
        size_bytes: int | None = None,
    ) -> AttachedFile:
        """
        Record that ``actor`` uploaded ``file_name`` to the workflow or stage.

        Raises:
            InactiveIdentityError, WorkflowNotFoundError, StageNotFoundError,
            ValidationError.
        """
        require_active(actor, "register file")
        if not file_name or not file_name.strip():
            raise ValidationError("file_name is required", field="file_name")
        if not storage_ref or not storage_ref.strip():
            raise ValidationError("storage_ref is required", field="storage_ref")

        # Lock the header: the audit chain of this workflow is appended to.
        workflow = self._session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == workflow_id)
            .with_for_update()
        ).scalar_one_or_none()
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))

        if stage_id is not None:
            stage = self._session.get(StageInstanceModel, stage_id)
            if stage is None or stage.workflow_id != workflow_id:
                raise StageNotFoundError(str(stage_id), str(workflow_id))

        model = AttachedFileModel(
            workflow_id=workflow_id,
            stage_id=stage_id,
            file_name=file_name.strip(),
            storage_ref=storage_ref,
            content_type=content_type,
            size_bytes=size_bytes,
            uploaded_by=actor.id,
            uploaded_at=self._clock.now(),
        )
        self._session.add(model)
        self._session.flush()

        dto = model.to_dto()
        self._auditor.record_file_attached(dto)
        logger.info(
            "file_registered",
            extra={
                "file_id": str(dto.id),
                "file_name": dto.file_name,
                "attached_to_stage": str(stage_id) if stage_id else None,
            },
        )
        return dto

    def has_file(self, workflow_id: UUID, stage_id: UUID, uploader_id: str) -> bool:
        return bool(
            self._session.execute(
                select(
                    exists().where(
                        AttachedFileModel.workflow_id == workflow_id,
                        AttachedFileModel.stage_id == stage_id,
                        AttachedFileModel.uploaded_by == uploader_id,
                        AttachedFileModel.deleted_at.is_(None),
                    )
                )
            ).scalar()
        )

    def list_files(self, workflow_id: UUID, stage_id: UUID | None = None) -> list[AttachedFile]:
        """Live files of a workflow (all of them), or of one stage."""
        stmt = select(AttachedFileModel).where(
            AttachedFileModel.workflow_id == workflow_id,
            AttachedFileModel.deleted_at.is_(None),
        )
        if stage_id is not None:
            stmt = stmt.where(AttachedFileModel.stage_id == stage_id)
        stmt = stmt.order_by(AttachedFileModel.uploaded_at, AttachedFileModel.file_name)
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    def delete_file(self, file_id: UUID, actor: Identity) -> AttachedFile:
        """
        Soft-delete an attachment.  Only the uploader or an admin may.

        Raises:
            InactiveIdentityError, AttachmentNotFoundError, ForbiddenError,
            InvalidWorkflowStateError (workflow finished or archived).
        """
        require_active(actor, "delete file")
        model = self._session.get(AttachedFileModel, file_id)
        if model is None or model.deleted_at is not None:
            raise AttachmentNotFoundError(str(file_id))

        workflow = self._session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == model.workflow_id)
            .with_for_update()
        ).scalar_one()
        if WorkflowStatus(workflow.overall_status) in TERMINAL_WORKFLOW_STATUSES:
            raise InvalidWorkflowStateError(
                str(workflow.id), workflow.overall_status, "delete files of",
            )
        if not actor.is_admin and actor.id != model.uploaded_by:
            raise ForbiddenError(actor.id, "delete file", "only the uploader or an admin")

        model.deleted_at = self._clock.now()
        model.deleted_by = actor.id
        self._session.flush()

        dto = model.to_dto()
        self._auditor.record_file_deleted(dto)
        logger.info(
            "file_deleted",
            extra={"file_id": str(dto.id), "file_name": dto.file_name},
        )
        return dto
