"""
Identity and role types (``approval_kernel.domain.identity``).

Responsibility
--------------
The closed set of organizational roles and the resolved ``Identity`` of
the person acting on a workflow.  Every authorization decision in the
kernel is made against these two types.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Roles form a closed enumeration; unknown role strings are rejected at
  the boundary (``parse_role`` raises ``UnknownRoleError``), never compared
  as free text deeper in the kernel.
* Executive roles (CEO, COO, CFO, admin) bypass department visibility.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from approval_kernel.exceptions import UnknownRoleError


class Role(str, Enum):
    """Organizational roles recognised by the approval engine."""

    ADMIN = "admin"
    CEO = "CEO"
    COO = "COO"
    CFO = "CFO"
    PPIC = "PPIC"
    PURCHASING = "Purchasing"
    GA = "GA"
    FINANCE = "Finance"
    PRODUCTION = "Production"
    LOGISTICS = "Logistics"


EXECUTIVE_ROLES: frozenset[Role] = frozenset({
    Role.CEO,
    Role.COO,
    Role.CFO,
    Role.ADMIN,
})


def parse_role(value: str | Role) -> Role:
    """Convert a role name to ``Role``; raises UnknownRoleError."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise UnknownRoleError(str(value)) from None


def parse_roles(values) -> frozenset[Role]:
    """Convert an iterable of role names; ``None`` means no roles."""
    if not values:
        return frozenset()
    return frozenset(parse_role(v) for v in values)


@dataclass(frozen=True)
class Identity:
    """A resolved person acting on the system.

    Contract: frozen.  ``department`` may be None for staff who are not
    attached to a department (they only see what they requested, unless
    they hold an executive role).
    """

    id: str
    email: str
    role: Role
    department: str | None = None
    is_active: bool = True
    full_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_executive(self) -> bool:
        return self.role in EXECUTIVE_ROLES
