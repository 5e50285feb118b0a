"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approve/reject decisions on stages.

Architecture position: Kernel > Models.  May import from db/base.py only
    (plus domain value types for DTO conversion).

Invariants enforced:
    - Decisions are append-only: ORM listeners raise
      ImmutabilityViolationError on UPDATE or DELETE.
    - ``action`` is limited to 'approved' / 'rejected' by CHECK constraint.

Failure modes:
    - ImmutabilityViolationError on decision UPDATE/DELETE.

Audit relevance:
    Approvals are the sign-off record of a workflow.  Each one is paired
    with an AuditEvent written in the same transaction.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.identity import Role
from approval_kernel.domain.workflow import ApprovalAction, ApprovalRecord
from approval_kernel.exceptions import ImmutabilityViolationError


class ApprovalModel(Base):
    """Persistent approval decision. Append-only.

    Contract:
        Decisions are immutable once created -- no UPDATE, no DELETE.
    """

    __tablename__ = "approvals"

    __table_args__ = (
        CheckConstraint(
            "action IN ('approved', 'rejected')",
            name="ck_approvals_action",
        ),
        Index("ix_approvals_workflow", "workflow_id", "created_at"),
        Index("ix_approvals_stage", "stage_id"),
    )

    stage_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stage_instances.id"), nullable=False,
    )
    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_instances.id"), nullable=False,
    )
    approver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Approval {self.id} stage={self.stage_id} action={self.action}>"

    def to_dto(self) -> ApprovalRecord:
        return ApprovalRecord(
            id=self.id,
            stage_id=self.stage_id,
            workflow_id=self.workflow_id,
            approver_id=self.approver_id,
            approver_role=Role(self.approver_role),
            action=ApprovalAction(self.action),
            comments=self.comments,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRecord) -> ApprovalModel:
        return cls(
            id=dto.id,
            stage_id=dto.stage_id,
            workflow_id=dto.workflow_id,
            approver_id=dto.approver_id,
            approver_role=dto.approver_role.value,
            action=dto.action.value,
            comments=dto.comments,
            created_at=dto.created_at,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(ApprovalModel, "before_update")
def prevent_approval_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Approval",
        entity_id=str(target.id),
        reason="Approvals are immutable -- cannot modify",
    )


@event.listens_for(ApprovalModel, "before_delete")
def prevent_approval_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="Approval",
        entity_id=str(target.id),
        reason="Approvals are immutable -- cannot delete",
    )
