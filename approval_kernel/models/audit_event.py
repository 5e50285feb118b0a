"""
Module: approval_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chains.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; ORM listeners reject UPDATE and DELETE.
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - ``seq`` increases by one within each ``chain_key``
      (UNIQUE(chain_key, seq)); chains are independent of each other.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError if two writers append the same seq to one chain (the
      workflow row lock normally prevents this).

Audit relevance:
    AuditEvent IS the audit trail.  Every state-changing operation --
    workflow creation, submission, approval, rejection, cancellation,
    file registration, template save, sequence reset -- produces one.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError


class AuditAction(str, Enum):
    """Types of auditable actions.

    Contract: Every member is produced by exactly one AuditorService
    ``record_*`` method.
    """

    # Workflow lifecycle
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_SUBMITTED = "workflow_submitted"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_ARCHIVED = "workflow_archived"

    # Stage lifecycle
    STAGE_APPROVED = "stage_approved"
    STAGE_REJECTED = "stage_rejected"
    STAGE_AUTO_COMPLETED = "stage_auto_completed"

    # Attachments
    FILE_ATTACHED = "file_attached"
    FILE_DELETED = "file_deleted"

    # Discussion
    COMMENT_ADDED = "comment_added"

    # Templates
    TEMPLATE_SAVED = "template_saved"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_DEACTIVATED = "template_deactivated"

    # Sequences
    SEQUENCE_RESET = "sequence_reset"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        Append-only, never updated or deleted.  Each row's hash includes
        the previous row's hash within the same chain.

    Guarantees:
        - prev_hash is None only for the first event of a chain.

    Non-goals:
        - Does NOT enforce hash correctness at INSERT time; that is
          AuditorService's job.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint("chain_key", "seq", name="uq_audit_chain_seq"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_workflow", "workflow_id"),
        Index("idx_audit_action", "action"),
    )

    # e.g. "workflow:<uuid>", "sequence:MAF-240101", "template:<uuid>"
    chain_key: Mapped[str] = mapped_column(String(120), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    workflow_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.chain_key}#{self.seq} {self.action}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None


@event.listens_for(AuditEvent, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are immutable -- cannot modify",
    )


@event.listens_for(AuditEvent, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are immutable -- cannot delete",
    )
