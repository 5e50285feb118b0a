"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every state-changing
    operation of the kernel.  Provides chain validation for tamper
    detection and trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by StageEngine,
    TemplateService, SequenceService, AttachmentRegistry and
    CommentService.  Implements the ``AuditSink`` protocol.

Invariants enforced:
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.  Every audit event links to its
      predecessor in the same chain.
    - Chains are keyed (one per workflow, per sequence key, per template),
      so writers of different workflows never contend on a chain head.
      The caller holds the lock that serializes writers of one chain
      (the workflow row, the counter row or the template row).
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: Recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
    - IntegrityError: Two writers appended the same seq to one chain.

Audit relevance:
    This IS the audit service.  All audit events flow through
    ``_create_audit_event()`` which enforces chain linkage before persisting.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import distinct, select
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    AttachedFile,
    AuditRecord,
    StageInstance,
    WorkflowInstance,
    WorkflowComment,
    WorkflowTemplate,
)
from approval_kernel.exceptions import AuditChainBrokenError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


def workflow_chain_key(workflow_id: UUID) -> str:
    return f"workflow:{workflow_id}"


def sequence_chain_key(sequence_type: str, sequence_date: str) -> str:
    return f"sequence:{sequence_type}-{sequence_date}"


def template_chain_key(template_id: UUID) -> str:
    return f"template:{template_id}"


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    entity_type: str
    entity_id: str
    occurred_at: datetime
    actor_id: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events of one chain in order."""

    chain_key: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        Accepts domain-specific recording requests (workflow created,
        stage approved, template saved, ...) and creates append-only
        ``AuditEvent`` rows with hash chain linkage.

    Guarantees:
        - Every audit event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
          Tampering with any field is detectable by ``validate_chain()``.
        - Audit events are written in the caller's transaction, so they
          commit (or roll back) together with the transition they describe.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _get_chain_head(self, chain_key: str) -> AuditEvent | None:
        return self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == chain_key)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _create_audit_event(
        self,
        chain_key: str,
        entity_type: str,
        entity_id: str,
        action: AuditAction | str,
        actor_id: str,
        payload: dict[str, Any] | None = None,
        workflow_id: UUID | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event linked to the head of ``chain_key``.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with ``seq`` one past the
              chain head and ``prev_hash`` equal to the head's hash.
        """
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        head = self._get_chain_head(chain_key)
        seq = head.seq + 1 if head else 1
        prev_hash = head.hash if head else None

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action_value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            chain_key=chain_key,
            seq=seq,
            workflow_id=workflow_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action_value,
            actor_id=str(actor_id),
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "chain_key": chain_key,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "audit_action": action_value,
                "seq": seq,
            },
        )

        return audit_event

    # AuditSink protocol

    def record(self, record: AuditRecord) -> AuditEvent:
        """Append a caller-built record to its chain."""
        return self._create_audit_event(
            chain_key=record.chain_key,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            action=record.action,
            actor_id=record.actor_id,
            payload=record.payload,
            workflow_id=record.workflow_id,
        )

    # Workflow lifecycle

    def record_workflow_created(
        self,
        workflow: WorkflowInstance,
        stages: tuple[StageInstance, ...],
        actor_id: str,
        stage_source: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(workflow.id),
            entity_type="WorkflowInstance",
            entity_id=str(workflow.id),
            action=AuditAction.WORKFLOW_CREATED,
            actor_id=actor_id,
            workflow_id=workflow.id,
            payload={
                "workflow_number": workflow.workflow_number,
                "workflow_type": workflow.workflow_type,
                "title": workflow.title,
                "department": workflow.department,
                "estimated_amount": workflow.estimated_amount,
                "currency": workflow.currency,
                "template_id": workflow.template_id,
                "template_version": workflow.template_version,
                "stage_source": stage_source,
                "stages": [
                    {"order": s.stage_order, "name": s.stage_name} for s in stages
                ],
            },
        )

    def record_workflow_submitted(
        self,
        workflow: WorkflowInstance,
        stage_count: int,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(workflow.id),
            entity_type="WorkflowInstance",
            entity_id=str(workflow.id),
            action=AuditAction.WORKFLOW_SUBMITTED,
            actor_id=actor_id,
            workflow_id=workflow.id,
            payload={
                "workflow_number": workflow.workflow_number,
                "stage_count": stage_count,
            },
        )

    def record_workflow_cancelled(
        self,
        workflow: WorkflowInstance,
        previous_status: str,
        actor_id: str,
        reason: str | None,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(workflow.id),
            entity_type="WorkflowInstance",
            entity_id=str(workflow.id),
            action=AuditAction.WORKFLOW_CANCELLED,
            actor_id=actor_id,
            workflow_id=workflow.id,
            payload={
                "workflow_number": workflow.workflow_number,
                "previous_status": previous_status,
                "reason": reason,
            },
        )

    def record_workflow_archived(
        self,
        workflow: WorkflowInstance,
        previous_status: str,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(workflow.id),
            entity_type="WorkflowInstance",
            entity_id=str(workflow.id),
            action=AuditAction.WORKFLOW_ARCHIVED,
            actor_id=actor_id,
            workflow_id=workflow.id,
            payload={
                "workflow_number": workflow.workflow_number,
                "previous_status": previous_status,
            },
        )

    # Stage lifecycle

    def record_stage_approved(
        self,
        stage: StageInstance,
        approval: ApprovalRecord,
        next_stage_order: int | None,
        workflow_completed: bool,
    ) -> AuditEvent:
        """One entry per approval, including the workflow completion it caused."""
        return self._create_audit_event(
            chain_key=workflow_chain_key(stage.workflow_id),
            entity_type="StageInstance",
            entity_id=str(stage.id),
            action=AuditAction.STAGE_APPROVED,
            actor_id=approval.approver_id,
            workflow_id=stage.workflow_id,
            payload={
                "stage_order": stage.stage_order,
                "stage_name": stage.stage_name,
                "approval_id": approval.id,
                "approver_role": approval.approver_role,
                "comments": approval.comments,
                "next_stage_order": next_stage_order,
                "workflow_completed": workflow_completed,
            },
        )

    def record_stage_rejected(
        self,
        stage: StageInstance,
        approval: ApprovalRecord,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(stage.workflow_id),
            entity_type="StageInstance",
            entity_id=str(stage.id),
            action=AuditAction.STAGE_REJECTED,
            actor_id=approval.approver_id,
            workflow_id=stage.workflow_id,
            payload={
                "stage_order": stage.stage_order,
                "stage_name": stage.stage_name,
                "approval_id": approval.id,
                "approver_role": approval.approver_role,
                "comments": approval.comments,
            },
        )

    def record_stage_auto_completed(
        self,
        stage: StageInstance,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(stage.workflow_id),
            entity_type="StageInstance",
            entity_id=str(stage.id),
            action=AuditAction.STAGE_AUTO_COMPLETED,
            actor_id=actor_id,
            workflow_id=stage.workflow_id,
            payload={
                "stage_order": stage.stage_order,
                "stage_name": stage.stage_name,
                "notify_emails": list(stage.notify_emails),
            },
        )

    # Attachments

    def record_file_attached(self, attached: AttachedFile) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(attached.workflow_id),
            entity_type="AttachedFile",
            entity_id=str(attached.id),
            action=AuditAction.FILE_ATTACHED,
            actor_id=attached.uploaded_by,
            workflow_id=attached.workflow_id,
            payload={
                "file_name": attached.file_name,
                "storage_ref": attached.storage_ref,
                "stage_id": attached.stage_id,
            },
        )

    def record_file_deleted(self, attached: AttachedFile) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(attached.workflow_id),
            entity_type="AttachedFile",
            entity_id=str(attached.id),
            action=AuditAction.FILE_DELETED,
            actor_id=attached.deleted_by,
            workflow_id=attached.workflow_id,
            payload={
                "file_name": attached.file_name,
                "stage_id": attached.stage_id,
                "uploaded_by": attached.uploaded_by,
            },
        )

    # Discussion

    def record_comment_added(self, comment: WorkflowComment) -> AuditEvent:
        return self._create_audit_event(
            chain_key=workflow_chain_key(comment.workflow_id),
            entity_type="WorkflowComment",
            entity_id=str(comment.id),
            action=AuditAction.COMMENT_ADDED,
            actor_id=comment.author_id,
            workflow_id=comment.workflow_id,
            payload={
                "stage_id": comment.stage_id,
                "comment_type": comment.comment_type,
                "author_role": comment.author_role,
                "comment_text": comment.comment_text,
            },
        )

    # Templates

    def record_template_change(
        self,
        template: WorkflowTemplate,
        action: AuditAction,
        actor_id: str,
        demoted_template_id: UUID | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=template_chain_key(template.id),
            entity_type="WorkflowTemplate",
            entity_id=str(template.id),
            action=action,
            actor_id=actor_id,
            payload={
                "workflow_type": template.workflow_type,
                "name": template.name,
                "version": template.version,
                "is_active": template.is_active,
                "is_default": template.is_default,
                "bypass_upload_roles": template.bypass_upload_roles,
                "stage_count": len(template.stages),
                "demoted_template_id": demoted_template_id,
            },
        )

    # Sequences

    def record_sequence_reset(
        self,
        sequence_type: str,
        sequence_date: str,
        previous_value: int | None,
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            chain_key=sequence_chain_key(sequence_type, sequence_date),
            entity_type="SequenceCounter",
            entity_id=f"{sequence_type}-{sequence_date}",
            action=AuditAction.SEQUENCE_RESET,
            actor_id=actor_id,
            payload={
                "sequence_type": sequence_type,
                "sequence_date": sequence_date,
                "previous_value": previous_value,
            },
        )

    # Validation and queries

    def validate_chain(self, chain_key: str) -> bool:
        """
        Validate one audit chain.

        Postconditions:
            - Returns ``True`` only if every event's stored ``hash`` and
              ``payload_hash`` match their recomputed values and every
              event's ``prev_hash`` matches its predecessor's ``hash``.

        Raises:
            AuditChainBrokenError: If validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == chain_key)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        prev_hash: str | None = None
        for expected_seq, event in enumerate(events, start=1):
            if event.prev_hash != prev_hash or event.seq != expected_seq:
                self._chain_broken(chain_key, event, str(prev_hash), str(event.prev_hash))

            payload_hash = hash_payload(event.payload or {})
            if payload_hash != event.payload_hash:
                self._chain_broken(chain_key, event, payload_hash, event.payload_hash)

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                self._chain_broken(chain_key, event, expected_hash, event.hash)
            prev_hash = event.hash

        return True

    def validate_all_chains(self) -> int:
        """Validate every chain; returns the number of chains checked."""
        keys = self._session.execute(
            select(distinct(AuditEvent.chain_key)).order_by(AuditEvent.chain_key)
        ).scalars().all()
        for key in keys:
            self.validate_chain(key)
        return len(keys)

    def _chain_broken(self, chain_key: str, event: AuditEvent, expected: str, actual: str):
        error = AuditChainBrokenError(chain_key, str(event.id), expected, actual)
        logger.critical(
            "audit_chain_broken",
            extra={"chain_key": chain_key, "seq": event.seq},
        )
        raise error

    def get_chain(self, chain_key: str) -> AuditTrace:
        """All events of ``chain_key`` in order."""
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == chain_key)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            chain_key=chain_key,
            entries=tuple(
                AuditTraceEntry(
                    seq=e.seq,
                    action=e.action,
                    entity_type=e.entity_type,
                    entity_id=e.entity_id,
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    payload=e.payload or {},
                    hash=e.hash,
                )
                for e in events
            ),
        )

    def get_trace(self, workflow_id: UUID) -> AuditTrace:
        """The audit trail of one workflow."""
        return self.get_chain(workflow_chain_key(workflow_id))
