"""Services for the approval kernel (write side)."""

from approval_kernel.services.attachment_registry import AttachmentRegistry
from approval_kernel.services.auditor_service import AuditorService, AuditTrace
from approval_kernel.services.comment_service import CommentService
from approval_kernel.services.identity_registry import StaticIdentityRegistry
from approval_kernel.services.notification import (
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
)
from approval_kernel.services.sequence_service import SequenceCounter, SequenceService
from approval_kernel.services.stage_engine import StageEngine
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.workflow_service import WorkflowService

__all__ = [
    "AttachmentRegistry",
    "AuditorService",
    "AuditTrace",
    "CommentService",
    "LoggingNotificationDispatcher",
    "RecordingNotificationDispatcher",
    "SequenceCounter",
    "SequenceService",
    "StageEngine",
    "StaticIdentityRegistry",
    "TemplateService",
    "WorkflowService",
]
