"""
Stage authorization (``approval_kernel.domain.authorization``).

Responsibility
--------------
The single predicate deciding whether an identity may approve or reject
a stage.  The stage engine is the only caller that acts on a denial;
read paths use ``domain.visibility`` instead.

Architecture position
---------------------
**Kernel domain layer** -- pure function.  ZERO I/O.

Invariants enforced
-------------------
* Admin is always authorized.
* ``required_role`` and ``requires_one_of`` combine with OR; a stage with
  neither requirement is open to any role.
* A non-empty ``visible_to_departments`` additionally requires the
  actor's department to be listed, unless the actor is the workflow's
  requester or holds an executive role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from approval_kernel.domain.identity import Identity, Role
from approval_kernel.domain.workflow import StageDefinition, StageInstance
from approval_kernel.exceptions import ForbiddenError, InactiveIdentityError

# Either carries required_role, requires_one_of and visible_to_departments.
StageRequirements = StageDefinition | StageInstance


def require_active(actor: Identity, action: str) -> None:
    """Inactive identities may read but never change state."""
    if not actor.is_active:
        raise InactiveIdentityError(actor.id, action)


def require_admin(actor: Identity, action: str) -> None:
    require_active(actor, action)
    if not actor.is_admin:
        raise ForbiddenError(actor.id, action, "admin role required")


class AuthorizationDenial(str, Enum):
    ROLE = "role"
    DEPARTMENT = "department"


@dataclass(frozen=True)
class AuthorizationDecision:
    """Outcome of ``is_authorized``; ``denial`` is None when authorized."""

    authorized: bool
    reason: str
    denial: AuthorizationDenial | None = None

    def __bool__(self) -> bool:
        return self.authorized


def role_matches(stage: StageRequirements, role: Role) -> bool:
    """True if ``role`` satisfies the stage's role requirement."""
    if role == Role.ADMIN:
        return True
    if stage.required_role is None and not stage.requires_one_of:
        return True
    return role == stage.required_role or role in stage.requires_one_of


def is_authorized(
    stage: StageRequirements, actor: Identity, requester_id: str | None,
) -> AuthorizationDecision:
    """Decide whether ``actor`` may act on ``stage``.
    """
    if actor.is_admin:
        return AuthorizationDecision(True, "admin")

    if not role_matches(stage, actor.role):
        return AuthorizationDecision(
            False,
            f"role {actor.role.value} does not match the stage requirement",
            AuthorizationDenial.ROLE,
        )

    if stage.visible_to_departments:
        if actor.is_executive:
            return AuthorizationDecision(True, "executive role")
        if requester_id is not None and actor.id == requester_id:
            return AuthorizationDecision(True, "workflow requester")
        if actor.department not in stage.visible_to_departments:
            return AuthorizationDecision(
                False,
                f"department {actor.department!r} is not among the stage's departments",
                AuthorizationDenial.DEPARTMENT,
            )

    return AuthorizationDecision(True, "role matches")
