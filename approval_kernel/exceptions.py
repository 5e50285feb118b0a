"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (RPC handlers, batch jobs, tests) must react to failures by KIND,
never by parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)
  4. Every exception has a USER_MESSAGE safe to show to an end user

Example - RIGHT way:
    try:
        service.approve(stage_id, workflow_id, actor)
    except MissingUploadError as e:
        show(e.user_message)                       # actionable
    except PreconditionFailedError:
        refetch_and_retry()                        # lost a race
    except StorageError:
        show("Something went wrong, try again")    # already logged

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalKernelError (base)
    |
    +-- UnauthenticatedError
    |
    +-- ForbiddenError
    |   +-- InactiveIdentityError
    |   +-- NotRequesterError
    |   +-- RoleNotAuthorizedError
    |   +-- DepartmentNotVisibleError
    |
    +-- PreconditionFailedError            (retryable)
    |   +-- InvalidWorkflowStateError
    |   +-- StageNotActiveError
    |   +-- CascadingRejectionError
    |   +-- StageOrderViolationError
    |   +-- ConcurrentTransitionError
    |
    +-- ValidationError
    |   +-- CommentsRequiredError
    |   +-- TemplateValidationError
    |   +-- UnknownSequenceTypeError
    |   +-- UnknownRoleError
    |
    +-- MissingUploadError
    |
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- StageNotFoundError
    |   +-- TemplateNotFoundError
    |   +-- AttachmentNotFoundError
    |
    +-- StorageError
    |
    +-- ImmutabilityViolationError
    +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                      | When Raised
----------------|---------------------------|-----------------------------------
Authentication  | UNAUTHENTICATED           | Credential missing or unknown
----------------|---------------------------|-----------------------------------
Authorization   | FORBIDDEN                 | Generic authorization failure
                | IDENTITY_INACTIVE         | Inactive identity attempts a write
                | NOT_REQUESTER             | Only requester/admin may act
                | ROLE_NOT_AUTHORIZED       | Role does not match the stage
                | DEPARTMENT_NOT_VISIBLE    | Stage scoped to other departments
----------------|---------------------------|-----------------------------------
State machine   | PRECONDITION_FAILED       | Generic guard violation
                | INVALID_STATE             | Workflow status forbids the action
                | STAGE_NOT_ACTIVE          | Stage is not in_progress
                | CASCADING_REJECTION       | An earlier stage was rejected
                | STAGE_ORDER_VIOLATION     | Earlier stage open, or two active
                | TRANSITION_RACE_LOST      | Concurrent modification detected
----------------|---------------------------|-----------------------------------
Validation      | VALIDATION_ERROR          | Malformed input
                | COMMENTS_REQUIRED         | Rejection without comments
                | TEMPLATE_INVALID          | Duplicate/gap stage orders, ...
                | UNKNOWN_SEQUENCE_TYPE     | Sequence type not configured
                | UNKNOWN_ROLE              | Role outside the closed enum
----------------|---------------------------|-----------------------------------
Upload gate     | MISSING_UPLOAD            | Stage requires a file from actor
----------------|---------------------------|-----------------------------------
Lookup          | WORKFLOW_NOT_FOUND        | Unknown workflow id
                | STAGE_NOT_FOUND           | Unknown stage id (or other wf)
                | TEMPLATE_NOT_FOUND        | Unknown template id
                | ATTACHMENT_NOT_FOUND      | Unknown or deleted attachment
----------------|---------------------------|-----------------------------------
Storage         | STORAGE_ERROR             | Persistence/allocator failure
----------------|---------------------------|-----------------------------------
Integrity       | IMMUTABILITY_VIOLATION    | Approval/audit row mutated
                | AUDIT_CHAIN_BROKEN        | Hash chain validation failed

===============================================================================
"""


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification and a `user_message` safe for end users.
    """

    code: str = "APPROVAL_KERNEL_ERROR"
    user_message: str = "The request could not be completed."
    retryable: bool = False


# Authentication


class UnauthenticatedError(ApprovalKernelError):
    """No identity could be resolved for the supplied credential."""

    code: str = "UNAUTHENTICATED"
    user_message: str = "Please sign in again."

    def __init__(self, reason: str = "Missing or invalid credential"):
        self.reason = reason
        super().__init__(reason)


# Authorization


class ForbiddenError(ApprovalKernelError):
    """Authenticated, but not allowed to perform this action."""

    code: str = "FORBIDDEN"
    user_message: str = "You are not allowed to perform this action."

    def __init__(self, actor_id: str, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


class InactiveIdentityError(ForbiddenError):
    """Inactive identities may view but never change state."""

    code: str = "IDENTITY_INACTIVE"
    user_message: str = "Your account is inactive; contact an administrator."

    def __init__(self, actor_id: str, action: str):
        super().__init__(actor_id, action, "identity is inactive")


class NotRequesterError(ForbiddenError):
    """Only the requester (or an admin) may perform this action."""

    code: str = "NOT_REQUESTER"
    user_message: str = "Only the requester or an administrator can do this."

    def __init__(self, actor_id: str, action: str, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            actor_id, action, f"not the requester of workflow {workflow_id}",
        )


class RoleNotAuthorizedError(ForbiddenError):
    """Actor role does not satisfy the stage's role requirement."""

    code: str = "ROLE_NOT_AUTHORIZED"
    user_message: str = "Your role is not authorized to act on this stage."

    def __init__(self, actor_id: str, action: str, actor_role: str, stage_id: str):
        self.actor_role = actor_role
        self.stage_id = stage_id
        super().__init__(
            actor_id, action,
            f"role {actor_role} not authorized for stage {stage_id}",
        )


class DepartmentNotVisibleError(ForbiddenError):
    """Stage is scoped to departments the actor does not belong to."""

    code: str = "DEPARTMENT_NOT_VISIBLE"
    user_message: str = "This stage belongs to another department."

    def __init__(
        self, actor_id: str, action: str, department: str | None, stage_id: str,
    ):
        self.department = department
        self.stage_id = stage_id
        super().__init__(
            actor_id, action,
            f"department {department!r} cannot see stage {stage_id}",
        )


# State machine guards


class PreconditionFailedError(ApprovalKernelError):
    """
    A state machine guard was violated.

    Raised for wrong statuses, lost races and the cascading-rejection
    guard.  Callers should refetch state and retry rather than display a
    hard error.
    """

    code: str = "PRECONDITION_FAILED"
    user_message: str = "This item changed in the meantime. Refresh and try again."
    retryable: bool = True

    def __init__(self, message: str):
        super().__init__(message)


class InvalidWorkflowStateError(PreconditionFailedError):
    """Workflow status does not allow the requested action."""

    code: str = "INVALID_STATE"

    def __init__(self, workflow_id: str, current_status: str, action: str):
        self.workflow_id = workflow_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} workflow {workflow_id} in status {current_status}"
        )


class StageNotActiveError(PreconditionFailedError):
    """Target stage is not the in-progress stage."""

    code: str = "STAGE_NOT_ACTIVE"

    def __init__(self, stage_id: str, current_status: str):
        self.stage_id = stage_id
        self.current_status = current_status
        super().__init__(
            f"Stage {stage_id} is {current_status}, expected in_progress"
        )


class CascadingRejectionError(PreconditionFailedError):
    """An earlier stage was rejected; later stages can never proceed."""

    code: str = "CASCADING_REJECTION"

    def __init__(self, workflow_id: str, rejected_stage_order: int, target_order: int):
        self.workflow_id = workflow_id
        self.rejected_stage_order = rejected_stage_order
        self.target_order = target_order
        super().__init__(
            f"Workflow {workflow_id}: stage {rejected_stage_order} is rejected, "
            f"stage {target_order} cannot proceed"
        )


class StageOrderViolationError(PreconditionFailedError):
    """An earlier stage is still open, or another stage is already active."""

    code: str = "STAGE_ORDER_VIOLATION"

    def __init__(self, workflow_id: str, target_order: int, blocking_order: int, blocking_status: str):
        self.workflow_id = workflow_id
        self.target_order = target_order
        self.blocking_order = blocking_order
        self.blocking_status = blocking_status
        super().__init__(
            f"Workflow {workflow_id}: stage {target_order} cannot proceed while "
            f"stage {blocking_order} is {blocking_status}"
        )


class ConcurrentTransitionError(PreconditionFailedError):
    """Another transaction modified the workflow first."""

    code: str = "TRANSITION_RACE_LOST"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow {workflow_id} was modified by another transaction"
        )


# Validation


class ValidationError(ApprovalKernelError):
    """Malformed or missing input."""

    code: str = "VALIDATION_ERROR"
    user_message: str = "Some of the submitted information is invalid."

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class CommentsRequiredError(ValidationError):
    """Rejections must explain themselves."""

    code: str = "COMMENTS_REQUIRED"
    user_message: str = "Please enter a reason for the rejection."

    def __init__(self, stage_id: str):
        self.stage_id = stage_id
        super().__init__(
            f"Rejecting stage {stage_id} requires non-empty comments",
            field="comments",
        )


class TemplateValidationError(ValidationError):
    """Template stage list is malformed."""

    code: str = "TEMPLATE_INVALID"
    user_message: str = "The stage list is invalid."

    def __init__(self, template_name: str, errors: list[str]):
        self.template_name = template_name
        self.errors = tuple(errors)
        super().__init__(
            f"Template {template_name!r} is invalid: " + "; ".join(errors),
            field="stages",
        )


class UnknownSequenceTypeError(ValidationError):
    """Sequence type is not configured."""

    code: str = "UNKNOWN_SEQUENCE_TYPE"

    def __init__(self, sequence_type: str, allowed: tuple[str, ...]):
        self.sequence_type = sequence_type
        self.allowed = allowed
        super().__init__(
            f"Unknown sequence type {sequence_type!r}; "
            f"expected one of {', '.join(allowed)}",
            field="sequence_type",
        )


class UnknownRoleError(ValidationError):
    """Role name is not part of the closed role enumeration."""

    code: str = "UNKNOWN_ROLE"

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Unknown role {role!r}", field="role")


# Upload gate


class MissingUploadError(ApprovalKernelError):
    """Stage requires a supporting file uploaded by the approver."""

    code: str = "MISSING_UPLOAD"
    user_message: str = "You must upload a form before approving this stage."

    def __init__(self, stage_id: str, actor_id: str):
        self.stage_id = stage_id
        self.actor_id = actor_id
        super().__init__(
            f"Stage {stage_id} requires a file uploaded by {actor_id}"
        )


# Lookup


class NotFoundError(ApprovalKernelError):
    """Base exception for unknown ids."""

    code: str = "NOT_FOUND"
    user_message: str = "The requested item does not exist."


class WorkflowNotFoundError(NotFoundError):
    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class StageNotFoundError(NotFoundError):
    code: str = "STAGE_NOT_FOUND"

    def __init__(self, stage_id: str, workflow_id: str | None = None):
        self.stage_id = stage_id
        self.workflow_id = workflow_id
        if workflow_id is None:
            super().__init__(f"Stage not found: {stage_id}")
        else:
            super().__init__(
                f"Stage {stage_id} not found in workflow {workflow_id}"
            )


class TemplateNotFoundError(NotFoundError):
    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class AttachmentNotFoundError(NotFoundError):
    code: str = "ATTACHMENT_NOT_FOUND"

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"Attachment not found: {file_id}")


# Storage


class StorageError(ApprovalKernelError):
    """Persistence or allocator failure.  Always logged for operators."""

    code: str = "STORAGE_ERROR"
    user_message: str = "Something went wrong on our side. Please try again."

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage failure during {operation}: {detail}")


# Integrity


class ImmutabilityViolationError(ApprovalKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(ApprovalKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, chain_key: str, event_id: str, expected_hash: str, actual_hash: str):
        self.chain_key = chain_key
        self.event_id = event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain {chain_key} broken at event {event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
