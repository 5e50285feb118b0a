"""ORM models for the approval kernel."""

from approval_kernel.models.approval import ApprovalModel
from approval_kernel.models.attached_file import AttachedFileModel
from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.models.comment import CommentModel
from approval_kernel.models.workflow import (
    StageInstanceModel,
    TemplateStageModel,
    WorkflowInstanceModel,
    WorkflowTemplateModel,
)


def import_all_models() -> None:
    """Import every module that registers tables on Base.metadata.

    The sequence counter table is defined next to the service that owns it.
    """
    import approval_kernel.services.sequence_service  # noqa: F401


__all__ = [
    "ApprovalModel",
    "AttachedFileModel",
    "AuditAction",
    "AuditEvent",
    "CommentModel",
    "StageInstanceModel",
    "TemplateStageModel",
    "WorkflowInstanceModel",
    "WorkflowTemplateModel",
    "import_all_models",
]
