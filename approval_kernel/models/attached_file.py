"""
Module: approval_kernel.models.attached_file
Responsibility: Metadata of files attached to workflows and stages.  The
    bytes live in an external store; ``storage_ref`` is its opaque key.
Architecture position: Kernel > Models.

The (workflow_id, stage_id, uploaded_by) index serves the upload gate of
the stage engine.  Deletion is soft: ``deleted_at``/``deleted_by`` are set
and the row stays for the audit trail.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.workflow import AttachedFile


class AttachedFileModel(Base):
    __tablename__ = "attached_files"

    __table_args__ = (
        Index("ix_attached_files_gate", "workflow_id", "stage_id", "uploaded_by"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_instances.id"), nullable=False,
    )
    stage_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stage_instances.id"), nullable=True,
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<AttachedFile {self.file_name} workflow={self.workflow_id}>"

    def to_dto(self) -> AttachedFile:
        return AttachedFile(
            id=self.id,
            workflow_id=self.workflow_id,
            stage_id=self.stage_id,
            file_name=self.file_name,
            storage_ref=self.storage_ref,
            content_type=self.content_type,
            size_bytes=self.size_bytes,
            uploaded_by=self.uploaded_by,
            uploaded_at=self.uploaded_at,
            deleted_at=self.deleted_at,
            deleted_by=self.deleted_by,
        )
