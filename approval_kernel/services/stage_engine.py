"""
StageEngine -- the approval-stage state machine.

Responsibility:
    Creates workflows (cloning their stage list), and performs every
    state transition on them: submit, approve, reject, cancel, archive.
    Exactly one stage of an in-progress workflow is active and stages
    complete strictly in order.

Architecture position:
    Kernel > Services.  Called by WorkflowService, which owns the
    transaction.  Uses domain/ rules (authorization, templates), the
    SequenceService for numbers, the TemplateService for stage sources,
    a FileStore for the upload gate and an AuditSink for the trail.

Invariants enforced:
    - Single writer per workflow: every transition first locks the
      workflow row (SELECT ... FOR UPDATE) and re-reads its stages; the
      version_id_col on the header catches anything that slips past.
    - At most one in_progress stage; none unless the workflow is
      in_progress.
    - Cascading rejection guard: no stage is activated or approved while
      an earlier stage is rejected, whatever the workflow status says.
    - Stage order guard: no stage is activated or approved while an
      earlier stage is unfinished or another stage is in progress.
    - Final approval and workflow completion happen in one flush.
    - Stage lists are snapshots: instances copy definitions at creation.
    - Every transition appends to the workflow's audit chain in the same
      transaction.

Check order for approve/reject (first failure wins):
    lock / NotFound -> inactive identity -> workflow status -> stage
    status -> cascading and order guards -> role/department authorization
    -> upload gate (approve only).

Failure modes:
    - WorkflowNotFoundError, StageNotFoundError, TemplateNotFoundError.
    - InactiveIdentityError, NotRequesterError, RoleNotAuthorizedError,
      DepartmentNotVisibleError.
    - InvalidWorkflowStateError, StageNotActiveError,
      CascadingRejectionError, StageOrderViolationError.
    - CommentsRequiredError, ValidationError, UnknownSequenceTypeError.
    - MissingUploadError.

Audit relevance:
    One audit event per caller-visible transition (created, submitted,
    approved, rejected, cancelled, archived) plus one per automatically
    completed notification-only stage.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.authorization import (
    AuthorizationDenial,
    is_authorized,
    require_active,
    require_admin,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.protocols import FileStore
from approval_kernel.domain.templates import (
    select_stages_for_amount,
    validate_stage_definitions,
)
from approval_kernel.domain.workflow import (
    ApprovalAction,
    NewWorkflow,
    StageDefinition,
    StageEvent,
    StageEventKind,
    StageStatus,
    TransitionResult,
    WorkflowStatus,
    can_transition_stage,
    can_transition_workflow,
)
from approval_kernel.exceptions import (
    CascadingRejectionError,
    CommentsRequiredError,
    DepartmentNotVisibleError,
    InvalidWorkflowStateError,
    MissingUploadError,
    NotRequesterError,
    RoleNotAuthorizedError,
    StageNotActiveError,
    StageNotFoundError,
    StageOrderViolationError,
    UnknownSequenceTypeError,
    ValidationError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import ApprovalModel
from approval_kernel.models.workflow import StageInstanceModel, WorkflowInstanceModel
from approval_kernel.services.attachment_registry import AttachmentRegistry
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.services.sequence_service import SequenceService
from approval_kernel.services.template_service import TemplateService

logger = get_logger("services.stage_engine")

STAGE_SOURCE_AD_HOC = "ad_hoc"
STAGE_SOURCE_TEMPLATE = "template"
STAGE_SOURCE_DEFAULT_TEMPLATE = "default_template"
STAGE_SOURCE_BUILTIN = "builtin"

# Bound on numbers skipped because a reset made them collide.
_MAX_NUMBER_ATTEMPTS = 1000


class StageEngine:
    """
    Contract:
        Each public method performs one transition inside the caller's
        transaction and returns a ``TransitionResult`` with the
        authoritative post-transition state.  On any exception nothing
        has been flushed that the caller should keep; WorkflowService
        rolls back.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT deliver notifications; it returns the events.
        - Does NOT filter what a viewer can see (domain.visibility).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        sequences: SequenceService | None = None,
        templates: TemplateService | None = None,
        files: FileStore | None = None,
        builtin_types: Mapping[str, Any] | None = None,
    ):
        """
        Args:
            builtin_types: workflow type -> object with ``stages`` and
                ``bypass_upload_roles`` (e.g. ``approval_config``'s
                WorkflowTypeDef).  Used when no template applies.
        """
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._sequences = sequences or SequenceService(session, self._auditor, self._clock)
        self._templates = templates or TemplateService(session, self._auditor, self._clock)
        self._files = files or AttachmentRegistry(session, self._auditor, self._clock)
        self._builtin_types = dict(builtin_types or {})

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _lock_workflow(self, workflow_id: UUID) -> WorkflowInstanceModel:
        workflow = self._session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == workflow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return workflow

    def _load_stages(self, workflow_id: UUID) -> list[StageInstanceModel]:
        return list(
            self._session.execute(
                select(StageInstanceModel)
                .where(StageInstanceModel.workflow_id == workflow_id)
                .order_by(StageInstanceModel.stage_order)
                .execution_options(populate_existing=True)
            ).scalars().all()
        )

    def _result(
        self,
        workflow: WorkflowInstanceModel,
        stages: list[StageInstanceModel],
        approval: ApprovalModel | None = None,
        events: list[StageEvent] | None = None,
    ) -> TransitionResult:
        return TransitionResult(
            workflow=workflow.to_dto(),
            stages=tuple(s.to_dto() for s in stages),
            approval=approval.to_dto() if approval is not None else None,
            events=tuple(events or ()),
        )

    def get_state(self, workflow_id: UUID) -> TransitionResult:
        """Current state without locking or changing anything."""
        workflow = self._session.get(WorkflowInstanceModel, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return self._result(workflow, self._load_stages(workflow_id))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _resolve_stages(
        self, draft: NewWorkflow,
    ) -> tuple[tuple[StageDefinition, ...], frozenset[Role], str, UUID | None, int | None]:
        builtin = self._builtin_types.get(draft.workflow_type)
        builtin_bypass = frozenset(builtin.bypass_upload_roles) if builtin else frozenset()

        if draft.stages is not None:
            stages = validate_stage_definitions(draft.title, draft.stages)
            return stages, builtin_bypass, STAGE_SOURCE_AD_HOC, None, None

        if draft.template_id is not None:
            template = self._templates.get_template(draft.template_id)
            if not template.is_active:
                raise ValidationError(
                    f"Template {template.id} is inactive", field="template_id",
                )
            if template.workflow_type != draft.workflow_type:
                raise ValidationError(
                    f"Template {template.id} is for {template.workflow_type}, "
                    f"not {draft.workflow_type}",
                    field="template_id",
                )
            return (
                template.stages, template.bypass_upload_roles,
                STAGE_SOURCE_TEMPLATE, template.id, template.version,
            )

        template = self._templates.get_default_template(draft.workflow_type)
        if template is not None:
            return (
                template.stages, template.bypass_upload_roles,
                STAGE_SOURCE_DEFAULT_TEMPLATE, template.id, template.version,
            )

        if builtin is not None:
            return tuple(builtin.stages), builtin_bypass, STAGE_SOURCE_BUILTIN, None, None

        raise ValidationError(
            f"No stages configured for workflow type {draft.workflow_type!r}",
            field="workflow_type",
        )

    def _allocate_number(self, workflow_type: str) -> str:
        """Allocate a number not already held by a workflow.

        Numbers only collide after an administrative reset; those are skipped.
        """
        for _ in range(_MAX_NUMBER_ATTEMPTS):
            allocated = self._sequences.allocate(workflow_type)
            taken = self._session.execute(
                select(WorkflowInstanceModel.id).where(
                    WorkflowInstanceModel.workflow_number == allocated.number
                )
            ).first()
            if taken is None:
                return allocated.number
            logger.warning(
                "sequence_number_skipped",
                extra={"sequence_number": allocated.number},
            )
        raise ValidationError(
            f"Could not allocate a free {workflow_type} number", field="workflow_type",
        )

    def create_workflow(self, draft: NewWorkflow, actor: Identity) -> TransitionResult:
        """
        Create a draft workflow with cloned stages.

        Postconditions:
            - Workflow in ``draft`` with version 1; every stage ``pending``.
            - Stage orders contiguous from 1 after amount routing.
        """
        require_active(actor, "create workflow")
        if not draft.title or not draft.title.strip():
            raise ValidationError("Title is required", field="title")
        if not draft.department or not draft.department.strip():
            raise ValidationError("Department is required", field="department")
        amount = draft.estimated_amount
        if amount is not None:
            try:
                amount = Decimal(str(amount))
            except InvalidOperation:
                raise ValidationError(
                    f"Estimated amount {amount!r} is not a number", field="estimated_amount",
                ) from None
            if not amount.is_finite() or amount < 0:
                raise ValidationError(
                    "Estimated amount must be a finite, non-negative number",
                    field="estimated_amount",
                )
        if draft.workflow_type not in self._sequences.sequence_types:
            raise UnknownSequenceTypeError(draft.workflow_type, self._sequences.sequence_types)

        stages, bypass, source, template_id, template_version = self._resolve_stages(draft)
        routed = select_stages_for_amount(stages, amount)
        if not routed:
            raise ValidationError(
                "Workflow would have no stages for this amount", field="estimated_amount",
            )

        number = self._allocate_number(draft.workflow_type)
        now = self._clock.now()
        workflow = WorkflowInstanceModel(
            workflow_number=number,
            workflow_type=draft.workflow_type,
            template_id=template_id,
            template_version=template_version,
            title=draft.title.strip(),
            description=draft.description,
            department=draft.department.strip(),
            requester_id=actor.id,
            estimated_amount=amount,
            currency=draft.currency,
            overall_status=WorkflowStatus.DRAFT.value,
            current_stage_order=None,
            bypass_upload_roles=sorted(r.value for r in bypass),
            created_at=now,
            updated_at=now,
        )
        self._session.add(workflow)
        self._session.flush()

        stage_models = [StageInstanceModel.clone(workflow.id, d) for d in routed]
        self._session.add_all(stage_models)
        self._session.flush()

        result = self._result(workflow, stage_models)
        self._auditor.record_workflow_created(result.workflow, result.stages, actor.id, source)
        logger.info(
            "workflow_created",
            extra={
                "workflow_number": number,
                "workflow_type": draft.workflow_type,
                "stage_source": source,
                "stage_count": len(stage_models),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Stage activation
    # ------------------------------------------------------------------

    def _check_stage_order(
        self,
        workflow: WorkflowInstanceModel,
        stages: list[StageInstanceModel],
        order: int,
    ) -> None:
        """Stage ``order`` may act only once every earlier stage is completed
        and no other stage is in progress.  An earlier rejection wins."""
        for s in stages:
            if s.stage_order < order and s.status == StageStatus.REJECTED.value:
                raise CascadingRejectionError(str(workflow.id), s.stage_order, order)
        for s in stages:
            if s.stage_order == order:
                continue
            if (
                (s.stage_order < order and s.status != StageStatus.COMPLETED.value)
                or s.status == StageStatus.IN_PROGRESS.value
            ):
                raise StageOrderViolationError(str(workflow.id), order, s.stage_order, s.status)

    def _event(
        self,
        kind: StageEventKind,
        workflow: WorkflowInstanceModel,
        stage: StageInstanceModel | None,
        actor: Identity,
    ) -> StageEvent:
        return StageEvent(
            kind=kind,
            workflow_id=workflow.id,
            workflow_number=workflow.workflow_number,
            stage_id=stage.id if stage else None,
            stage_order=stage.stage_order if stage else None,
            stage_name=stage.stage_name if stage else None,
            actor_id=actor.id,
            notify_emails=tuple(stage.notify_emails or ()) if stage else (),
            occurred_at=self._clock.now(),
        )

    def _activate_from(
        self,
        workflow: WorkflowInstanceModel,
        stages: list[StageInstanceModel],
        order: int,
        actor: Identity,
        events: list[StageEvent],
    ) -> list[StageInstanceModel]:
        """
        Activate the stage at ``order``, passing notification-only stages.

        Completes the workflow when no stage remains.  Returns the stages
        that were completed automatically so the caller can audit them
        after its own entry.
        """
        by_order = {s.stage_order: s for s in stages}
        auto_completed: list[StageInstanceModel] = []
        now = self._clock.now()

        while True:
            stage = by_order.get(order)
            if stage is None:
                workflow.overall_status = WorkflowStatus.COMPLETED.value
                workflow.current_stage_order = None
                workflow.completed_at = now
                events.append(self._event(StageEventKind.WORKFLOW_COMPLETED, workflow, None, actor))
                return auto_completed

            self._check_stage_order(workflow, stages, order)
            current = StageStatus(stage.status)

            if not stage.approval_required:
                if not can_transition_stage(current, StageStatus.COMPLETED):
                    raise StageNotActiveError(str(stage.id), stage.status)
                stage.status = StageStatus.COMPLETED.value
                stage.started_at = now
                stage.completed_at = now
                auto_completed.append(stage)
                events.append(self._event(StageEventKind.STAGE_COMPLETED, workflow, stage, actor))
                order += 1
                continue

            if not can_transition_stage(current, StageStatus.IN_PROGRESS):
                raise StageNotActiveError(str(stage.id), stage.status)
            stage.status = StageStatus.IN_PROGRESS.value
            stage.started_at = now
            workflow.current_stage_order = order
            events.append(self._event(StageEventKind.STAGE_ACTIVATED, workflow, stage, actor))
            return auto_completed

    def _audit_auto_completed(self, stages: list[StageInstanceModel], actor: Identity) -> None:
        for stage in stages:
            self._auditor.record_stage_auto_completed(stage.to_dto(), actor.id)
            logger.info(
                "stage_auto_completed",
                extra={"stage_order": stage.stage_order},
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require_requester_or_admin(
        self, workflow: WorkflowInstanceModel, actor: Identity, action: str,
    ) -> None:
        if not actor.is_admin and actor.id != workflow.requester_id:
            raise NotRequesterError(actor.id, action, str(workflow.id))

    def submit(self, workflow_id: UUID, actor: Identity) -> TransitionResult:
        """draft -> in_progress; stage 1 becomes active."""
        workflow = self._lock_workflow(workflow_id)
        require_active(actor, "submit workflow")
        current = WorkflowStatus(workflow.overall_status)
        if not (current == WorkflowStatus.DRAFT
                and can_transition_workflow(current, WorkflowStatus.IN_PROGRESS)):
            raise InvalidWorkflowStateError(str(workflow.id), current.value, "submit")
        self._require_requester_or_admin(workflow, actor, "submit workflow")

        stages = self._load_stages(workflow.id)
        now = self._clock.now()
        workflow.overall_status = WorkflowStatus.IN_PROGRESS.value
        workflow.submitted_at = now
        workflow.updated_at = now

        events: list[StageEvent] = []
        auto_completed = self._activate_from(workflow, stages, 1, actor, events)
        self._session.flush()

        self._auditor.record_workflow_submitted(workflow.to_dto(), len(stages), actor.id)
        self._audit_auto_completed(auto_completed, actor)
        logger.info(
            "workflow_submitted",
            extra={
                "workflow_number": workflow.workflow_number,
                "active_stage_order": workflow.current_stage_order,
            },
        )
        return self._result(workflow, stages, events=events)

    def _guard_stage_action(
        self,
        stage_id: UUID,
        workflow_id: UUID,
        actor: Identity,
        action: str,
    ) -> tuple[WorkflowInstanceModel, list[StageInstanceModel], StageInstanceModel]:
        """Shared preconditions of approve and reject, in check order."""
        workflow = self._lock_workflow(workflow_id)
        stages = self._load_stages(workflow.id)
        stage = next((s for s in stages if s.id == stage_id), None)
        if stage is None:
            raise StageNotFoundError(str(stage_id), str(workflow_id))

        require_active(actor, action)

        if workflow.overall_status != WorkflowStatus.IN_PROGRESS.value:
            raise InvalidWorkflowStateError(str(workflow.id), workflow.overall_status, action)
        if stage.status != StageStatus.IN_PROGRESS.value:
            raise StageNotActiveError(str(stage.id), stage.status)

        self._check_stage_order(workflow, stages, stage.stage_order)

        decision = is_authorized(stage.to_dto(), actor, workflow.requester_id)
        if not decision.authorized:
            if decision.denial == AuthorizationDenial.DEPARTMENT:
                raise DepartmentNotVisibleError(actor.id, action, actor.department, str(stage.id))
            raise RoleNotAuthorizedError(actor.id, action, actor.role.value, str(stage.id))

        return workflow, stages, stage

    def _record_decision(
        self,
        workflow: WorkflowInstanceModel,
        stage: StageInstanceModel,
        actor: Identity,
        action: ApprovalAction,
        comments: str | None,
    ) -> ApprovalModel:
        approval = ApprovalModel(
            stage_id=stage.id,
            workflow_id=workflow.id,
            approver_id=actor.id,
            approver_role=actor.role.value,
            action=action.value,
            comments=comments,
            created_at=self._clock.now(),
        )
        self._session.add(approval)
        return approval

    def approve(
        self,
        stage_id: UUID,
        workflow_id: UUID,
        actor: Identity,
        comments: str | None = None,
    ) -> TransitionResult:
        """
        Approve the active stage and advance (or complete) the workflow.

        Postconditions:
            - One Approval(approved) row; the stage is ``completed``.
            - The next stage is ``in_progress``, or the workflow is
              ``completed`` with no active stage -- in the same flush.
        """
        workflow, stages, stage = self._guard_stage_action(
            stage_id, workflow_id, actor, "approve stage",
        )

        if stage.file_upload_required:
            bypass = {Role(r) for r in workflow.bypass_upload_roles or ()}
            if actor.role not in bypass and not self._files.has_file(
                workflow.id, stage.id, actor.id,
            ):
                raise MissingUploadError(str(stage.id), actor.id)

        text = comments.strip() if comments else None
        approval = self._record_decision(workflow, stage, actor, ApprovalAction.APPROVED, text)

        now = self._clock.now()
        stage.status = StageStatus.COMPLETED.value
        stage.completed_at = now
        workflow.updated_at = now
        events = [self._event(StageEventKind.STAGE_COMPLETED, workflow, stage, actor)]
        auto_completed = self._activate_from(workflow, stages, stage.stage_order + 1, actor, events)
        self._session.flush()

        completed = workflow.overall_status == WorkflowStatus.COMPLETED.value
        approval_dto = approval.to_dto()
        self._auditor.record_stage_approved(
            stage.to_dto(), approval_dto, workflow.current_stage_order, completed,
        )
        self._audit_auto_completed(auto_completed, actor)
        logger.info(
            "stage_approved",
            extra={
                "workflow_number": workflow.workflow_number,
                "stage_order": stage.stage_order,
                "workflow_completed": completed,
            },
        )
        return self._result(workflow, stages, approval, events)

    def reject(
        self,
        stage_id: UUID,
        workflow_id: UUID,
        actor: Identity,
        comments: str,
    ) -> TransitionResult:
        """
        Reject the active stage; the workflow becomes ``rejected`` (terminal).

        Raises:
            CommentsRequiredError: ``comments`` is empty after stripping;
                nothing is changed.
        """
        text = (comments or "").strip()
        if not text:
            raise CommentsRequiredError(str(stage_id))

        workflow, stages, stage = self._guard_stage_action(
            stage_id, workflow_id, actor, "reject stage",
        )
        approval = self._record_decision(workflow, stage, actor, ApprovalAction.REJECTED, text)

        now = self._clock.now()
        stage.status = StageStatus.REJECTED.value
        stage.completed_at = now
        workflow.overall_status = WorkflowStatus.REJECTED.value
        workflow.current_stage_order = None
        workflow.completed_at = now
        workflow.updated_at = now
        self._session.flush()

        self._auditor.record_stage_rejected(stage.to_dto(), approval.to_dto())
        logger.info(
            "stage_rejected",
            extra={
                "workflow_number": workflow.workflow_number,
                "stage_order": stage.stage_order,
            },
        )
        events = [self._event(StageEventKind.STAGE_REJECTED, workflow, stage, actor)]
        return self._result(workflow, stages, approval, events)

    def cancel(
        self,
        workflow_id: UUID,
        actor: Identity,
        reason: str | None = None,
    ) -> TransitionResult:
        """
        Withdraw a draft or in-progress workflow.

        The active stage (if any) returns to ``pending`` so no stage is
        left in progress; completed stages and approvals stay as they were.
        """
        workflow = self._lock_workflow(workflow_id)
        require_active(actor, "cancel workflow")
        current = WorkflowStatus(workflow.overall_status)
        if not can_transition_workflow(current, WorkflowStatus.CANCELLED):
            raise InvalidWorkflowStateError(str(workflow.id), current.value, "cancel")
        self._require_requester_or_admin(workflow, actor, "cancel workflow")

        stages = self._load_stages(workflow.id)
        for s in stages:
            if s.status == StageStatus.IN_PROGRESS.value:
                s.status = StageStatus.PENDING.value
                s.started_at = None

        now = self._clock.now()
        workflow.overall_status = WorkflowStatus.CANCELLED.value
        workflow.current_stage_order = None
        workflow.completed_at = now
        workflow.updated_at = now
        self._session.flush()

        self._auditor.record_workflow_cancelled(
            workflow.to_dto(), current.value, actor.id, (reason or "").strip() or None,
        )
        logger.info(
            "workflow_cancelled",
            extra={"workflow_number": workflow.workflow_number, "previous_status": current.value},
        )
        return self._result(workflow, stages)

    def archive(self, workflow_id: UUID, actor: Identity) -> TransitionResult:
        """
        Admin-only: move a completed, rejected or cancelled workflow to
        ``archived``.  Stages and approvals are left untouched.
        """
        workflow = self._lock_workflow(workflow_id)
        require_admin(actor, "archive workflow")
        current = WorkflowStatus(workflow.overall_status)
        if not can_transition_workflow(current, WorkflowStatus.ARCHIVED):
            raise InvalidWorkflowStateError(str(workflow.id), current.value, "archive")

        workflow.overall_status = WorkflowStatus.ARCHIVED.value
        workflow.updated_at = self._clock.now()
        self._session.flush()

        self._auditor.record_workflow_archived(workflow.to_dto(), current.value, actor.id)
        logger.info(
            "workflow_archived",
            extra={"workflow_number": workflow.workflow_number, "previous_status": current.value},
        )
        return self._result(workflow, self._load_stages(workflow.id))
