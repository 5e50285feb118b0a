"""
WorkflowService -- canonical entry point for every caller-facing operation.

Responsibility:
    Wires the kernel services together over one Session and gives each
    operation (create, submit, approve, reject, cancel, archive, file
    registration and deletion, comments, template authoring, sequence
    allocation/reset) exactly one transaction.
    Binds log context, times the call, maps persistence failures onto the
    kernel's error hierarchy and dispatches stage notifications once the
    transition is durable.

Architecture position:
    Kernel > Services -- imperative shell, owns transaction boundaries.
    Delegates state-machine work to StageEngine, stage sources to
    TemplateService, numbering to SequenceService, files to
    AttachmentRegistry, discussion to CommentService, the trail to
    AuditorService and reads to WorkflowSelector.

Invariants enforced:
    - One operation == one transaction: commit on success, rollback on any
      failure (when ``auto_commit``).  No operation applies partial effects.
    - Notifications are dispatched only after commit; a failing dispatcher
      is logged and never undoes a committed transition.
    - A version-guard conflict surfaces as ConcurrentTransitionError, any
      other SQLAlchemy failure as StorageError (always logged at ERROR).

Failure modes:
    - Every ApprovalKernelError raised by the delegated services,
      unchanged.
    - ConcurrentTransitionError: the workflow row changed under us.
    - StorageError: database unavailable, lock timeout, constraint failure.

Audit relevance:
    Every invocation is logged with correlation_id, workflow_id, actor_id
    and duration.  The audit trail itself is written by the delegated
    services inside the same transaction.
"""

from __future__ import annotations

import time
from datetime import date, datetime
from typing import Any, Callable, Iterable, Mapping, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.protocols import NotificationDispatcher
from approval_kernel.domain.sequence import AllocatedSequence, SequenceCounterInfo
from approval_kernel.domain.workflow import (
    AttachedFile,
    CommentType,
    NewWorkflow,
    StageDefinition,
    TransitionResult,
    WorkflowComment,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTemplate,
)
from approval_kernel.exceptions import (
    ApprovalKernelError,
    ConcurrentTransitionError,
    StorageError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.selectors.workflow_selector import WorkflowSelector, WorkflowView
from approval_kernel.services.attachment_registry import AttachmentRegistry
from approval_kernel.services.auditor_service import AuditorService, AuditTrace
from approval_kernel.services.comment_service import CommentService
from approval_kernel.services.notification import LoggingNotificationDispatcher
from approval_kernel.services.sequence_service import (
    DEFAULT_PREFIX,
    DEFAULT_SEQUENCE_TYPES,
    SequenceService,
)
from approval_kernel.services.stage_engine import StageEngine
from approval_kernel.services.template_service import TemplateService

logger = get_logger("services.workflow")

T = TypeVar("T")


class WorkflowService:
    """
    Orchestrates approval workflows with transactional guarantees.

    Contract:
        Each public mutating method runs in its own transaction and returns
        frozen DTOs.  With ``auto_commit=False`` the caller owns commit and
        rollback and must call ``dispatch_events`` after committing.

    Guarantees:
        - The returned DTOs reflect committed state (when ``auto_commit``).
        - Failed operations leave the database as it was.

    Non-goals:
        - Does NOT authenticate; callers pass a resolved Identity.
        - Does NOT store file bytes.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        builtin_types: Mapping[str, Any] | None = None,
        prefix: str = DEFAULT_PREFIX,
        sequence_types: Iterable[str] = DEFAULT_SEQUENCE_TYPES,
        dispatcher: NotificationDispatcher | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()

        sequence_types = tuple(sequence_types)
        self._auditor = AuditorService(session, self._clock)
        self._sequences = SequenceService(
            session, self._auditor, self._clock,
            prefix=prefix, sequence_types=sequence_types,
        )
        self._templates = TemplateService(
            session, self._auditor, self._clock, workflow_types=sequence_types,
        )
        self._files = AttachmentRegistry(session, self._auditor, self._clock)
        self._comments = CommentService(session, self._auditor, self._clock)
        self._engine = StageEngine(
            session,
            clock=self._clock,
            auditor=self._auditor,
            sequences=self._sequences,
            templates=self._templates,
            files=self._files,
            builtin_types=builtin_types,
        )
        self._selector = WorkflowSelector(session)

    @classmethod
    def from_policy(cls, session: Session, policy: Any, **kwargs: Any) -> WorkflowService:
        """Build from a loaded policy (``approval_config.WorkflowPolicyConfig``)."""
        return cls(
            session,
            builtin_types=policy.workflow_types,
            prefix=policy.sequence_prefix,
            sequence_types=policy.sequence_types,
            **kwargs,
        )

    @property
    def auditor(self) -> AuditorService:
        return self._auditor

    @property
    def sequences(self) -> SequenceService:
        return self._sequences

    @property
    def templates(self) -> TemplateService:
        return self._templates

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()

    def _execute(
        self,
        operation: str,
        work: Callable[[], T],
        actor: Identity | None = None,
        workflow_id: UUID | None = None,
        stage_id: UUID | None = None,
    ) -> T:
        """Run ``work`` as one transaction with logging and error mapping."""
        with LogContext.bind(
            correlation_id=str(uuid4()),
            workflow_id=workflow_id,
            stage_id=stage_id,
            actor_id=actor.id if actor else None,
        ):
            logger.info("workflow_operation_started", extra={"operation": operation})
            t0 = time.monotonic()

            try:
                result = work()
                if self._auto_commit:
                    self._session.commit()
            except StaleDataError as exc:
                self._rollback()
                logger.warning(
                    "workflow_operation_race_lost",
                    extra={"operation": operation},
                )
                raise ConcurrentTransitionError(str(workflow_id)) from exc
            except ApprovalKernelError as exc:
                self._rollback()
                logger.info(
                    "workflow_operation_refused",
                    extra={
                        "operation": operation,
                        "error_code": exc.code,
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                raise
            except SQLAlchemyError as exc:
                self._rollback()
                logger.error(
                    "workflow_operation_storage_failed",
                    extra={
                        "operation": operation,
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                    exc_info=True,
                )
                raise StorageError(operation, str(exc)) from exc
            except Exception:
                self._rollback()
                logger.error(
                    "workflow_operation_failed",
                    extra={
                        "operation": operation,
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                    exc_info=True,
                )
                raise

            logger.info(
                "workflow_operation_completed",
                extra={
                    "operation": operation,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )

        if self._auto_commit and isinstance(result, TransitionResult):
            self.dispatch_events(result)
        return result

    def _read(self, work: Callable[[], T]) -> T:
        """Run a query and end its transaction so no lock is held."""
        try:
            return work()
        except SQLAlchemyError as exc:
            logger.error("workflow_read_storage_failed", exc_info=True)
            raise StorageError("read", str(exc)) from exc
        finally:
            if self._auto_commit:
                self._session.rollback()

    def dispatch_events(self, result: TransitionResult) -> None:
        """Hand the result's stage events to the dispatcher, in order."""
        for event in result.events:
            try:
                self._dispatcher.dispatch(event)
            except Exception:
                logger.error(
                    "notification_dispatch_failed",
                    extra={
                        "event_kind": event.kind.value,
                        "workflow_number": event.workflow_number,
                    },
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Workflow lifecycle
    # ------------------------------------------------------------------

    def create_workflow(self, draft: NewWorkflow, actor: Identity) -> TransitionResult:
        """Create a draft workflow; stages are cloned from their source."""
        return self._execute(
            "create_workflow",
            lambda: self._engine.create_workflow(draft, actor),
            actor=actor,
        )

    def submit(self, workflow_id: UUID, actor: Identity) -> TransitionResult:
        return self._execute(
            "submit",
            lambda: self._engine.submit(workflow_id, actor),
            actor=actor,
            workflow_id=workflow_id,
        )

    def approve(
        self,
        stage_id: UUID,
        workflow_id: UUID,
        actor: Identity,
        comments: str | None = None,
    ) -> TransitionResult:
        return self._execute(
            "approve",
            lambda: self._engine.approve(stage_id, workflow_id, actor, comments),
            actor=actor,
            workflow_id=workflow_id,
            stage_id=stage_id,
        )

    def reject(
        self,
        stage_id: UUID,
        workflow_id: UUID,
        actor: Identity,
        comments: str,
    ) -> TransitionResult:
        return self._execute(
            "reject",
            lambda: self._engine.reject(stage_id, workflow_id, actor, comments),
            actor=actor,
            workflow_id=workflow_id,
            stage_id=stage_id,
        )

    def cancel(
        self,
        workflow_id: UUID,
        actor: Identity,
        reason: str | None = None,
    ) -> TransitionResult:
        return self._execute(
            "cancel",
            lambda: self._engine.cancel(workflow_id, actor, reason),
            actor=actor,
            workflow_id=workflow_id,
        )

    def archive(self, workflow_id: UUID, actor: Identity) -> TransitionResult:
        """Admin-only: file away a completed, rejected or cancelled workflow."""
        return self._execute(
            "archive",
            lambda: self._engine.archive(workflow_id, actor),
            actor=actor,
            workflow_id=workflow_id,
        )

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
        """Record file metadata; the bytes live in the host's storage."""
        return self._execute(
            "register_file",
            lambda: self._files.register_file(
                workflow_id, actor, file_name, storage_ref,
                stage_id=stage_id, content_type=content_type, size_bytes=size_bytes,
            ),
            actor=actor,
            workflow_id=workflow_id,
            stage_id=stage_id,
        )

    def delete_file(self, file_id: UUID, actor: Identity) -> AttachedFile:
        return self._execute(
            "delete_file",
            lambda: self._files.delete_file(file_id, actor),
            actor=actor,
        )

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(
        self,
        workflow_id: UUID,
        actor: Identity,
        text: str,
        stage_id: UUID | None = None,
        comment_type: CommentType = CommentType.GENERAL,
    ) -> WorkflowComment:
        return self._execute(
            "add_comment",
            lambda: self._comments.add_comment(
                workflow_id, actor, text, stage_id=stage_id, comment_type=comment_type,
            ),
            actor=actor,
            workflow_id=workflow_id,
            stage_id=stage_id,
        )

    def list_comments(
        self,
        workflow_id: UUID,
        viewer: Identity,
        stage_id: UUID | None = None,
    ) -> list[WorkflowComment]:
        """Comments on the workflow and its visible stages, newest first."""
        return self._read(lambda: self._comments.list_comments(workflow_id, viewer, stage_id))

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_template(
        self,
        workflow_type: str,
        name: str,
        stages: Iterable[StageDefinition],
        actor: Identity,
        description: str | None = None,
        is_default: bool = False,
        bypass_upload_roles: Iterable[Role] = (),
    ) -> WorkflowTemplate:
        stages = tuple(stages)
        bypass_upload_roles = tuple(bypass_upload_roles)
        return self._execute(
            "save_template",
            lambda: self._templates.save_template(
                workflow_type, name, stages, actor,
                description=description,
                is_default=is_default,
                bypass_upload_roles=bypass_upload_roles,
            ),
            actor=actor,
        )

    def update_template(
        self,
        template_id: UUID,
        actor: Identity,
        stages: Iterable[StageDefinition] | None = None,
        name: str | None = None,
        description: str | None = None,
        is_default: bool | None = None,
        bypass_upload_roles: Iterable[Role] | None = None,
    ) -> WorkflowTemplate:
        stages = tuple(stages) if stages is not None else None
        bypass_upload_roles = (
            tuple(bypass_upload_roles) if bypass_upload_roles is not None else None
        )
        return self._execute(
            "update_template",
            lambda: self._templates.update_template(
                template_id, actor,
                stages=stages,
                name=name,
                description=description,
                is_default=is_default,
                bypass_upload_roles=bypass_upload_roles,
            ),
            actor=actor,
        )

    def deactivate_template(self, template_id: UUID, actor: Identity) -> WorkflowTemplate:
        return self._execute(
            "deactivate_template",
            lambda: self._templates.deactivate_template(template_id, actor),
            actor=actor,
        )

    def get_template(self, template_id: UUID) -> WorkflowTemplate:
        return self._read(lambda: self._templates.get_template(template_id))

    def get_default_template(self, workflow_type: str) -> WorkflowTemplate | None:
        return self._read(lambda: self._templates.get_default_template(workflow_type))

    def list_templates(
        self, workflow_type: str | None = None, include_inactive: bool = False,
    ) -> list[WorkflowTemplate]:
        return self._read(
            lambda: self._templates.list_templates(workflow_type, include_inactive),
        )

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def allocate_sequence(
        self,
        sequence_type: str,
        on_date: date | datetime | str | None = None,
    ) -> AllocatedSequence:
        """Allocate and commit the next number (SKU, PAF, ... documents)."""
        return self._execute(
            "allocate_sequence",
            lambda: self._sequences.allocate(sequence_type, on_date),
        )

    def reset_sequence(
        self,
        sequence_type: str,
        on_date: date | datetime | str,
        actor: Identity,
    ) -> int | None:
        return self._execute(
            "reset_sequence",
            lambda: self._sequences.reset(sequence_type, on_date, actor),
            actor=actor,
        )

    def current_sequence_value(
        self,
        sequence_type: str,
        on_date: date | datetime | str | None = None,
    ) -> int | None:
        return self._read(lambda: self._sequences.current_value(sequence_type, on_date))

    def list_sequence_counters(
        self, sequence_type: str | None = None,
    ) -> list[SequenceCounterInfo]:
        return self._read(lambda: self._sequences.list_counters(sequence_type))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_state(self, workflow_id: UUID) -> TransitionResult:
        """Unfiltered current state; for internal callers, not viewers."""
        return self._read(lambda: self._engine.get_state(workflow_id))

    def get_workflow_view(self, workflow_id: UUID, viewer: Identity) -> WorkflowView:
        return self._read(lambda: self._selector.get_workflow_view(workflow_id, viewer))

    def list_visible_workflows(
        self,
        viewer: Identity,
        status: WorkflowStatus | None = None,
        workflow_type: str | None = None,
    ) -> list[WorkflowInstance]:
        return self._read(
            lambda: self._selector.list_visible_workflows(viewer, status, workflow_type),
        )

    def list_files(self, workflow_id: UUID, stage_id: UUID | None = None) -> list[AttachedFile]:
        return self._read(lambda: self._files.list_files(workflow_id, stage_id))

    def get_audit_trace(self, workflow_id: UUID) -> AuditTrace:
        return self._read(lambda: self._auditor.get_trace(workflow_id))

    def validate_audit_chains(self) -> int:
        """Validate every audit chain; raises AuditChainBrokenError."""
        return self._read(self._auditor.validate_all_chains)
