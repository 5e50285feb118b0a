"""
Module: approval_kernel.models.workflow
Responsibility: ORM persistence for workflow templates, their stage
    definitions, workflow instances and their cloned stage instances.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - Stage orders are unique per template and per workflow
      (UNIQUE(template_id, stage_order), UNIQUE(workflow_id, stage_order)).
    - Workflow numbers are unique.
    - Status columns are limited to their lifecycle values by CHECK
      constraints; the stage engine enforces the transitions.
    - WorkflowInstanceModel carries a version_id_col: every UPDATE bumps
      ``version`` and fails with StaleDataError if another transaction
      changed the row first.
    - StageInstanceModel holds ``workflow_id`` as a lookup key only; there
      is no ORM relationship back to the header.

Failure modes:
    - IntegrityError on duplicate workflow number or stage order.
    - StaleDataError when a workflow row was modified concurrently.

Audit relevance:
    These rows are the state the audit chain describes.  Every change to
    them is accompanied by an AuditEvent in the same transaction.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, TimestampedBase, UUIDString
from approval_kernel.domain.identity import Role
from approval_kernel.domain.workflow import (
    DEFAULT_CURRENCY,
    StageDefinition,
    StageInstance,
    StageStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTemplate,
)


def _roles_to_json(roles) -> list[str]:
    return sorted(r.value for r in roles)


def _roles_from_json(values) -> frozenset[Role]:
    return frozenset(Role(v) for v in values or ())


def _role_or_none(value: str | None) -> Role | None:
    return Role(value) if value else None


class _StageColumnsMixin:
    """Columns shared by template stages and the stage instances cloned from them."""

    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    required_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requires_one_of: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    visible_to_departments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    file_upload_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_emails: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approval_threshold: Mapped[Decimal | None] = mapped_column(nullable=True)

    def _definition_kwargs(self) -> dict:
        return {
            "description": self.description,
            "department": self.department,
            "required_role": _role_or_none(self.required_role),
            "requires_one_of": _roles_from_json(self.requires_one_of),
            "visible_to_departments": frozenset(self.visible_to_departments or ()),
            "approval_required": self.approval_required,
            "file_upload_required": self.file_upload_required,
            "notify_emails": tuple(self.notify_emails or ()),
            "approval_threshold": self.approval_threshold,
        }

    @staticmethod
    def _columns_from_definition(definition: StageDefinition) -> dict:
        return {
            "stage_order": definition.order,
            "stage_name": definition.name,
            "description": definition.description,
            "department": definition.department,
            "required_role": definition.required_role.value if definition.required_role else None,
            "requires_one_of": _roles_to_json(definition.requires_one_of),
            "visible_to_departments": sorted(definition.visible_to_departments),
            "approval_required": definition.approval_required,
            "file_upload_required": definition.file_upload_required,
            "notify_emails": list(definition.notify_emails),
            "approval_threshold": definition.approval_threshold,
        }


# =============================================================================
# Templates
# =============================================================================


class WorkflowTemplateModel(TimestampedBase):
    """Persistent, versioned stage list for a workflow type.

    Contract:
        At most one active default per workflow type; the template service
        demotes the previous default inside the same transaction.
        ``version`` increases by one on every save.
    """

    __tablename__ = "workflow_templates"

    __table_args__ = (
        Index("ix_workflow_templates_type", "workflow_type", "is_active", "is_default"),
    )

    workflow_type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bypass_upload_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    stages: Mapped[list[TemplateStageModel]] = relationship(
        "TemplateStageModel",
        order_by="TemplateStageModel.stage_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<WorkflowTemplate {self.workflow_type}:{self.name} v{self.version}>"

    def to_dto(self) -> WorkflowTemplate:
        return WorkflowTemplate(
            id=self.id,
            workflow_type=self.workflow_type,
            name=self.name,
            description=self.description,
            stages=tuple(s.to_dto() for s in self.stages),
            is_active=self.is_active,
            is_default=self.is_default,
            bypass_upload_roles=_roles_from_json(self.bypass_upload_roles),
            version=self.version,
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class TemplateStageModel(_StageColumnsMixin, Base):
    """One stage definition of a template."""

    __tablename__ = "template_stages"

    __table_args__ = (
        UniqueConstraint("template_id", "stage_order", name="uq_template_stage_order"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_templates.id"), nullable=False,
    )

    def to_dto(self) -> StageDefinition:
        return StageDefinition(
            order=self.stage_order,
            name=self.stage_name,
            **self._definition_kwargs(),
        )

    @classmethod
    def from_definition(cls, definition: StageDefinition) -> TemplateStageModel:
        return cls(**cls._columns_from_definition(definition))


# =============================================================================
# Instances
# =============================================================================


class WorkflowInstanceModel(TimestampedBase):
    """Persistent workflow header.

    Contract:
        Mutated only by the stage engine, under a row lock.  Every mutation
        touches ``updated_at`` so the version counter always bumps.
    """

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "overall_status IN ('draft', 'in_progress', 'completed', "
            "'rejected', 'cancelled', 'archived')",
            name="ck_workflow_instances_status",
        ),
        Index("ix_workflow_instances_requester", "requester_id"),
        Index("ix_workflow_instances_status", "overall_status"),
    )

    workflow_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    workflow_type: Mapped[str] = mapped_column(String(20), nullable=False)
    template_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    template_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    estimated_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    overall_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WorkflowStatus.DRAFT.value,
    )
    current_stage_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bypass_upload_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<WorkflowInstance {self.workflow_number} status={self.overall_status}>"

    @property
    def status(self) -> WorkflowStatus:
        return WorkflowStatus(self.overall_status)

    def to_dto(self) -> WorkflowInstance:
        return WorkflowInstance(
            id=self.id,
            workflow_number=self.workflow_number,
            workflow_type=self.workflow_type,
            title=self.title,
            description=self.description,
            department=self.department,
            requester_id=self.requester_id,
            estimated_amount=self.estimated_amount,
            currency=self.currency,
            overall_status=WorkflowStatus(self.overall_status),
            current_stage_order=self.current_stage_order,
            template_id=self.template_id,
            template_version=self.template_version,
            bypass_upload_roles=_roles_from_json(self.bypass_upload_roles),
            submitted_at=self.submitted_at,
            completed_at=self.completed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
        )


class StageInstanceModel(_StageColumnsMixin, Base):
    """One stage of a workflow, cloned from a definition at creation."""

    __tablename__ = "stage_instances"

    __table_args__ = (
        UniqueConstraint("workflow_id", "stage_order", name="uq_stage_instance_order"),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'rejected')",
            name="ck_stage_instances_status",
        ),
        Index("ix_stage_instances_workflow", "workflow_id"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_instances.id"), nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value,
    )
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<StageInstance {self.workflow_id}#{self.stage_order} status={self.status}>"

    @property
    def stage_status(self) -> StageStatus:
        return StageStatus(self.status)

    def to_dto(self) -> StageInstance:
        return StageInstance(
            id=self.id,
            workflow_id=self.workflow_id,
            stage_order=self.stage_order,
            stage_name=self.stage_name,
            status=StageStatus(self.status),
            started_at=self.started_at,
            completed_at=self.completed_at,
            **self._definition_kwargs(),
        )

    @classmethod
    def clone(cls, workflow_id: UUID, definition: StageDefinition) -> StageInstanceModel:
        """Copy every field of ``definition`` into a new pending stage."""
        return cls(
            workflow_id=workflow_id,
            status=StageStatus.PENDING.value,
            **cls._columns_from_definition(definition),
        )
