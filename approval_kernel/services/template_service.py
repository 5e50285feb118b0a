"""
TemplateService -- authoring of workflow templates.

Responsibility:
    Saves, updates, deactivates and looks up workflow templates.  A
    template is the stage list future workflows of its type are cloned
    from; editing it never touches workflows already created.

Architecture position:
    Kernel > Services.  Called by WorkflowService; read by StageEngine
    during workflow creation.

Invariants enforced:
    - Stage lists are validated (unique, contiguous from 1) before any
      row is written (TemplateValidationError).
    - At most one active default per workflow type: making a template
      the default demotes the previous one in the same transaction.
    - ``version`` increases by one on every update.
    - Admin only; every mutation is audited on the template's chain.

Failure modes:
    - TemplateValidationError, ValidationError (unknown workflow type).
    - TemplateNotFoundError.
    - ForbiddenError / InactiveIdentityError.
"""

from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.authorization import require_admin
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.templates import validate_stage_definitions
from approval_kernel.domain.workflow import StageDefinition, WorkflowTemplate
from approval_kernel.exceptions import TemplateNotFoundError, ValidationError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.models.workflow import TemplateStageModel, WorkflowTemplateModel
from approval_kernel.services.auditor_service import AuditorService

logger = get_logger("services.templates")


class TemplateService:
    """
    Contract:
        Mutations flush and audit; they never commit.  Lookups return
        frozen ``WorkflowTemplate`` DTOs.

    Non-goals:
        - Does NOT migrate existing workflows to a new template version.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        workflow_types: Iterable[str] | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._workflow_types = tuple(workflow_types) if workflow_types is not None else None

    def _check_type(self, workflow_type: str) -> None:
        if self._workflow_types is not None and workflow_type not in self._workflow_types:
            raise ValidationError(
                f"Unknown workflow type {workflow_type!r}", field="workflow_type",
            )

    def _load(self, template_id: UUID, lock: bool = False) -> WorkflowTemplateModel:
        stmt = select(WorkflowTemplateModel).where(WorkflowTemplateModel.id == template_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise TemplateNotFoundError(str(template_id))
        return model

    def _demote_defaults(self, workflow_type: str, keep_id: UUID, actor: Identity) -> UUID | None:
        """Clear is_default on every other template of the type."""
        others = self._session.execute(
            select(WorkflowTemplateModel)
            .where(
                WorkflowTemplateModel.workflow_type == workflow_type,
                WorkflowTemplateModel.is_default.is_(True),
                WorkflowTemplateModel.id != keep_id,
            )
            .with_for_update()
        ).scalars().all()
        demoted = None
        for other in others:
            other.is_default = False
            other.updated_at = self._clock.now()
            self._session.flush()
            self._auditor.record_template_change(
                other.to_dto(), AuditAction.TEMPLATE_UPDATED, actor.id,
            )
            demoted = other.id
        return demoted

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
        """Create a template (version 1)."""
        require_admin(actor, "save template")
        self._check_type(workflow_type)
        if not name or not name.strip():
            raise ValidationError("Template name is required", field="name")
        ordered = validate_stage_definitions(name, stages)

        now = self._clock.now()
        model = WorkflowTemplateModel(
            workflow_type=workflow_type,
            name=name.strip(),
            description=description,
            is_active=True,
            is_default=is_default,
            bypass_upload_roles=sorted(r.value for r in bypass_upload_roles),
            version=1,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            stages=[TemplateStageModel.from_definition(s) for s in ordered],
        )
        self._session.add(model)
        self._session.flush()

        demoted = self._demote_defaults(workflow_type, model.id, actor) if is_default else None
        dto = model.to_dto()
        self._auditor.record_template_change(
            dto, AuditAction.TEMPLATE_SAVED, actor.id, demoted_template_id=demoted,
        )
        logger.info(
            "template_saved",
            extra={
                "template_id": str(dto.id),
                "workflow_type": workflow_type,
                "stage_count": len(dto.stages),
                "is_default": is_default,
            },
        )
        return dto

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
        """Replace the given fields and bump the version."""
        require_admin(actor, "update template")
        model = self._load(template_id, lock=True)

        if name is not None:
            if not name.strip():
                raise ValidationError("Template name is required", field="name")
            model.name = name.strip()
        if description is not None:
            model.description = description
        if bypass_upload_roles is not None:
            model.bypass_upload_roles = sorted(r.value for r in bypass_upload_roles)
        if stages is not None:
            ordered = validate_stage_definitions(model.name, stages)
            # Remove old rows first; their (template_id, stage_order) keys are reused.
            model.stages.clear()
            self._session.flush()
            model.stages.extend(TemplateStageModel.from_definition(s) for s in ordered)

        demoted = None
        if is_default is not None:
            if is_default and not model.is_active:
                raise ValidationError(
                    "An inactive template cannot be the default", field="is_default",
                )
            model.is_default = is_default
            if is_default:
                demoted = self._demote_defaults(model.workflow_type, model.id, actor)

        model.version += 1
        model.updated_at = self._clock.now()
        self._session.flush()
        self._session.refresh(model)

        dto = model.to_dto()
        self._auditor.record_template_change(
            dto, AuditAction.TEMPLATE_UPDATED, actor.id, demoted_template_id=demoted,
        )
        logger.info(
            "template_updated",
            extra={"template_id": str(dto.id), "template_version": dto.version},
        )
        return dto

    def deactivate_template(self, template_id: UUID, actor: Identity) -> WorkflowTemplate:
        """Hide a template from creation; existing workflows are unaffected."""
        require_admin(actor, "deactivate template")
        model = self._load(template_id, lock=True)
        model.is_active = False
        model.is_default = False
        model.version += 1
        model.updated_at = self._clock.now()
        self._session.flush()

        dto = model.to_dto()
        self._auditor.record_template_change(dto, AuditAction.TEMPLATE_DEACTIVATED, actor.id)
        logger.info("template_deactivated", extra={"template_id": str(dto.id)})
        return dto

    def get_template(self, template_id: UUID) -> WorkflowTemplate:
        return self._load(template_id).to_dto()

    def get_default_template(self, workflow_type: str) -> WorkflowTemplate | None:
        model = self._session.execute(
            select(WorkflowTemplateModel)
            .where(
                WorkflowTemplateModel.workflow_type == workflow_type,
                WorkflowTemplateModel.is_default.is_(True),
                WorkflowTemplateModel.is_active.is_(True),
            )
            .order_by(WorkflowTemplateModel.updated_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_templates(
        self,
        workflow_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[WorkflowTemplate]:
        stmt = select(WorkflowTemplateModel)
        if workflow_type is not None:
            stmt = stmt.where(WorkflowTemplateModel.workflow_type == workflow_type)
        if not include_inactive:
            stmt = stmt.where(WorkflowTemplateModel.is_active.is_(True))
        stmt = stmt.order_by(WorkflowTemplateModel.workflow_type, WorkflowTemplateModel.name)
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]
