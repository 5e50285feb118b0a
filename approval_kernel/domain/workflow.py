"""
Workflow domain types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the staged approval engine: the workflow and
stage lifecycle state machines, template stage definitions, instance
snapshots, approval records, attachment metadata, audit records and the
stage events handed to notification dispatchers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.  ORM models
convert to these types with ``to_dto()``; services return nothing else.

Invariants enforced
-------------------
* ``WORKFLOW_TRANSITIONS`` and ``STAGE_TRANSITIONS`` define the only valid
  status transitions.  Finished workflows (completed, rejected,
  cancelled) can only be archived; ``archived`` has no outgoing edges.
* A workflow holds at most one ``in_progress`` stage, and none unless the
  workflow itself is ``in_progress`` (``active_stage`` raises if a stage
  list violates this).
* Stage snapshots are copies: a ``StageInstance`` carries every field of
  the ``StageDefinition`` it was cloned from, never a reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from approval_kernel.domain.identity import Role

DEFAULT_CURRENCY = "IDR"


# =========================================================================
# Lifecycle state machines
# =========================================================================


class WorkflowStatus(str, Enum):
    """Overall workflow lifecycle states."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: frozenset({
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.IN_PROGRESS: frozenset({
        WorkflowStatus.COMPLETED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.CANCELLED,
    }),
    # a finished workflow may only be archived (admin)
    WorkflowStatus.COMPLETED: frozenset({WorkflowStatus.ARCHIVED}),
    WorkflowStatus.REJECTED: frozenset({WorkflowStatus.ARCHIVED}),
    WorkflowStatus.CANCELLED: frozenset({WorkflowStatus.ARCHIVED}),
    WorkflowStatus.ARCHIVED: frozenset(),
}

FINISHED_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELLED,
})

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = (
    FINISHED_WORKFLOW_STATUSES | {WorkflowStatus.ARCHIVED}
)


class StageStatus(str, Enum):
    """Stage instance lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    # pending -> completed is the automatic pass of a notification-only stage
    StageStatus.PENDING: frozenset({
        StageStatus.IN_PROGRESS,
        StageStatus.COMPLETED,
    }),
    # in_progress -> pending happens when the workflow is cancelled
    StageStatus.IN_PROGRESS: frozenset({
        StageStatus.COMPLETED,
        StageStatus.REJECTED,
        StageStatus.PENDING,
    }),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.REJECTED: frozenset(),
}


def can_transition_workflow(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    return target in WORKFLOW_TRANSITIONS.get(current, frozenset())


def can_transition_stage(current: StageStatus, target: StageStatus) -> bool:
    return target in STAGE_TRANSITIONS.get(current, frozenset())


class ApprovalAction(str, Enum):
    """Decision recorded on an Approval row."""

    APPROVED = "approved"
    REJECTED = "rejected"


class StageEventKind(str, Enum):
    """Kinds of stage events delivered to notification dispatchers."""

    STAGE_ACTIVATED = "stage_activated"
    STAGE_COMPLETED = "stage_completed"
    STAGE_REJECTED = "stage_rejected"
    WORKFLOW_COMPLETED = "workflow_completed"


# =========================================================================
# Template types
# =========================================================================


@dataclass(frozen=True)
class StageDefinition:
    """One step of a workflow template.

    ``required_role`` and ``requires_one_of`` combine with OR; a stage with
    neither is open to any role.  An empty ``visible_to_departments``
    means every department can see and act on the stage.
    ``approval_threshold`` makes the stage conditional: it is only cloned
    into a workflow whose estimated amount exceeds the threshold.
    """

    order: int
    name: str
    description: str | None = None
    department: str | None = None
    required_role: Role | None = None
    requires_one_of: frozenset[Role] = frozenset()
    approval_required: bool = True
    file_upload_required: bool = False
    notify_emails: tuple[str, ...] = ()
    visible_to_departments: frozenset[str] = frozenset()
    approval_threshold: Decimal | None = None

    def with_order(self, order: int) -> StageDefinition:
        """Return a copy renumbered to ``order``."""
        return StageDefinition(
            order=order,
            name=self.name,
            description=self.description,
            department=self.department,
            required_role=self.required_role,
            requires_one_of=self.requires_one_of,
            approval_required=self.approval_required,
            file_upload_required=self.file_upload_required,
            notify_emails=self.notify_emails,
            visible_to_departments=self.visible_to_departments,
            approval_threshold=self.approval_threshold,
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """A saved, versioned stage list for a workflow type."""

    id: UUID
    workflow_type: str
    name: str
    stages: tuple[StageDefinition, ...]
    description: str | None = None
    is_active: bool = True
    is_default: bool = False
    bypass_upload_roles: frozenset[Role] = frozenset()
    version: int = 1
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =========================================================================
# Instance types
# =========================================================================


@dataclass(frozen=True)
class NewWorkflow:
    """Caller input for creating a workflow.

    Stage source precedence: ``stages`` (ad-hoc list), then
    ``template_id``, then the type's default template, then the
    configured built-in stage list for the type.
    """

    workflow_type: str
    title: str
    department: str
    description: str | None = None
    estimated_amount: Decimal | None = None
    currency: str = DEFAULT_CURRENCY
    template_id: UUID | None = None
    stages: tuple[StageDefinition, ...] | None = None


@dataclass(frozen=True)
class WorkflowInstance:
    """Snapshot of a workflow header."""

    id: UUID
    workflow_number: str
    workflow_type: str
    title: str
    department: str
    requester_id: str
    overall_status: WorkflowStatus
    version: int
    description: str | None = None
    estimated_amount: Decimal | None = None
    currency: str = DEFAULT_CURRENCY
    current_stage_order: int | None = None
    template_id: UUID | None = None
    template_version: int | None = None
    bypass_upload_roles: frozenset[Role] = frozenset()
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_WORKFLOW_STATUSES


@dataclass(frozen=True)
class StageInstance:
    """Snapshot of one cloned stage of a workflow."""

    id: UUID
    workflow_id: UUID
    stage_order: int
    stage_name: str
    status: StageStatus
    description: str | None = None
    department: str | None = None
    required_role: Role | None = None
    requires_one_of: frozenset[Role] = frozenset()
    visible_to_departments: frozenset[str] = frozenset()
    approval_required: bool = True
    file_upload_required: bool = False
    notify_emails: tuple[str, ...] = ()
    approval_threshold: Decimal | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalRecord:
    """An immutable approve/reject decision on a stage."""

    id: UUID
    stage_id: UUID
    workflow_id: UUID
    approver_id: str
    approver_role: Role
    action: ApprovalAction
    comments: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AttachedFile:
    """Metadata of a file attached to a workflow; bytes live elsewhere.

    ``stage_id = None`` means the file was attached at creation time.
    A deleted file keeps its row (``deleted_at`` set) for the audit trail
    but no longer counts for the upload gate.
    """

    id: UUID
    workflow_id: UUID
    file_name: str
    storage_ref: str
    uploaded_by: str
    uploaded_at: datetime
    stage_id: UUID | None = None
    content_type: str | None = None
    size_bytes: int | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class CommentType(str, Enum):
    """Kinds of free-text comments on a workflow or stage."""

    GENERAL = "general"
    APPROVAL = "approval"
    REJECTION = "rejection"
    REVISION_REQUEST = "revision_request"


@dataclass(frozen=True)
class WorkflowComment:
    """A comment on a workflow, or on one of its stages (``stage_id`` set).

    Comments are discussion only; they never change workflow state.
    """

    id: UUID
    workflow_id: UUID
    comment_text: str
    comment_type: CommentType
    author_id: str
    author_role: Role
    created_at: datetime
    stage_id: UUID | None = None


# =========================================================================
# Audit / notification / result types
# =========================================================================


@dataclass(frozen=True)
class AuditRecord:
    """A single fact handed to an AuditSink.

    ``chain_key`` selects the hash chain the record is appended to (one per
    workflow, sequence key or template), so unrelated writers never contend
    on the same chain head.
    """

    chain_key: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    workflow_id: UUID | None = None


@dataclass(frozen=True)
class StageEvent:
    """A notification-worthy stage transition."""

    kind: StageEventKind
    workflow_id: UUID
    workflow_number: str
    stage_id: UUID | None
    stage_order: int | None
    stage_name: str | None
    actor_id: str
    notify_emails: tuple[str, ...] = ()
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class TransitionResult:
    """Authoritative state of a workflow after a transition."""

    workflow: WorkflowInstance
    stages: tuple[StageInstance, ...]
    approval: ApprovalRecord | None = None
    events: tuple[StageEvent, ...] = ()

    @property
    def active_stage(self) -> StageInstance | None:
        """The single in-progress stage, if any."""
        return active_stage(self.stages)


def active_stage(stages) -> StageInstance | None:
    """Return the in-progress stage of ``stages`` or None.

    Raises:
        ValueError: If more than one stage is in progress.
    """
    active = [s for s in stages if s.status == StageStatus.IN_PROGRESS]
    if len(active) > 1:
        raise ValueError(
            f"{len(active)} stages in progress: "
            + ", ".join(str(s.stage_order) for s in active)
        )
    return active[0] if active else None
