"""
Module: approval_kernel.selectors.base
Responsibility: Base class for read-only query selectors.  Selectors are the
    read side of the kernel: they answer "what can this person see" without
    any mutation capability.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    the pure domain/ layer.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - DTO return convention: selectors return frozen dataclasses, never
      ORM instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Contract:
        Accepts a Session from the caller, performs read-only queries and
        returns DTOs.
    """

    def __init__(self, session: Session):
        self.session = session
