"""
Collaborator protocols (``approval_kernel.domain.protocols``).

The kernel depends on these structural interfaces only.  Concrete
implementations live in ``services/`` (``StaticIdentityRegistry``,
``AttachmentRegistry``, ``AuditorService``, ``LoggingNotificationDispatcher``);
hosts may substitute their own.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable
from uuid import UUID

from approval_kernel.domain.identity import Identity
from approval_kernel.domain.workflow import AttachedFile, AuditRecord, StageEvent


@runtime_checkable
class IdentityProvider(Protocol):
    def resolve(self, credential: str) -> Identity:
        """Return the identity for ``credential``; raise UnauthenticatedError."""
        ...


@runtime_checkable
class FileStore(Protocol):
    def has_file(self, workflow_id: UUID, stage_id: UUID, uploader_id: str) -> bool:
        ...

    def list_files(self, workflow_id: UUID, stage_id: UUID | None = None) -> list[AttachedFile]:
        ...


@runtime_checkable
class AuditSink(Protocol):
    def record(self, record: AuditRecord) -> object:
        """Append ``record`` inside the caller's transaction."""
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    def dispatch(self, event: StageEvent) -> None:
        """Deliver ``event``; called only after the transition committed."""
        ...
