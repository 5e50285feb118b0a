"""
Pure domain layer.

Value objects and rules with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (an injected Clock is used instead)
- I/O
"""

from approval_kernel.domain.authorization import (
    AuthorizationDecision,
    AuthorizationDenial,
    is_authorized,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.identity import EXECUTIVE_ROLES, Identity, Role, parse_role
from approval_kernel.domain.sequence import AllocatedSequence, SequenceCounterInfo
from approval_kernel.domain.visibility import (
    AccessDecision,
    check_workflow_access,
    filter_visible_stages,
)
from approval_kernel.domain.workflow import (
    ApprovalAction,
    ApprovalRecord,
    AttachedFile,
    AuditRecord,
    CommentType,
    NewWorkflow,
    StageDefinition,
    StageEvent,
    StageEventKind,
    StageInstance,
    StageStatus,
    TransitionResult,
    WorkflowInstance,
    WorkflowComment,
    WorkflowStatus,
    WorkflowTemplate,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "Role",
    "EXECUTIVE_ROLES",
    "Identity",
    "parse_role",
    "AuthorizationDecision",
    "AuthorizationDenial",
    "is_authorized",
    "AccessDecision",
    "check_workflow_access",
    "filter_visible_stages",
    "AllocatedSequence",
    "SequenceCounterInfo",
    "ApprovalAction",
    "ApprovalRecord",
    "AttachedFile",
    "AuditRecord",
    "CommentType",
    "NewWorkflow",
    "StageDefinition",
    "StageEvent",
    "StageEventKind",
    "StageInstance",
    "StageStatus",
    "TransitionResult",
    "WorkflowInstance",
    "WorkflowComment",
    "WorkflowStatus",
    "WorkflowTemplate",
]
