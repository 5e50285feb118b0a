"""
Module: approval_kernel.models.comment
Responsibility: ORM persistence for discussion comments on workflows and
    their stages.

Architecture position: Kernel > Models.  May import from db/base.py only
    (plus domain value types for DTO conversion).

Invariants enforced:
    - Comments are append-only: ORM listeners raise
      ImmutabilityViolationError on UPDATE or DELETE.
    - ``comment_type`` is limited to the CommentType values by CHECK
      constraint.

Audit relevance:
    Each comment is paired with a ``comment_added`` AuditEvent on the
    workflow's chain, written in the same transaction.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.identity import Role
from approval_kernel.domain.workflow import CommentType, WorkflowComment
from approval_kernel.exceptions import ImmutabilityViolationError


class CommentModel(Base):
    """Persistent workflow or stage comment. Append-only."""

    __tablename__ = "workflow_comments"

    __table_args__ = (
        CheckConstraint(
            "comment_type IN ('general', 'approval', 'rejection', 'revision_request')",
            name="ck_workflow_comments_type",
        ),
        Index("ix_workflow_comments_workflow", "workflow_id", "created_at"),
        Index("ix_workflow_comments_stage", "stage_id"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_instances.id"), nullable=False,
    )
    stage_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stage_instances.id"), nullable=True,
    )
    comment_text: Mapped[str] = mapped_column(Text, nullable=False)
    comment_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=CommentType.GENERAL.value,
    )
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_role: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Comment {self.id} workflow={self.workflow_id} type={self.comment_type}>"

    def to_dto(self) -> WorkflowComment:
        return WorkflowComment(
            id=self.id,
            workflow_id=self.workflow_id,
            stage_id=self.stage_id,
            comment_text=self.comment_text,
            comment_type=CommentType(self.comment_type),
            author_id=self.author_id,
            author_role=Role(self.author_role),
            created_at=self.created_at,
        )


@event.listens_for(CommentModel, "before_update")
def prevent_comment_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Comment",
        entity_id=str(target.id),
        reason="Comments are immutable -- cannot modify",
    )


@event.listens_for(CommentModel, "before_delete")
def prevent_comment_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Comment",
        entity_id=str(target.id),
        reason="Comments are immutable -- cannot delete",
    )
