"""
Template rules (``approval_kernel.domain.templates``).

Responsibility
--------------
Validation of stage lists and amount-based stage routing.  Used by the
template service at save time, by the configuration loader for built-in
stage lists, and by workflow creation for ad-hoc stage lists.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.

Invariants enforced
-------------------
* Stage orders are unique and contiguous from 1.
* Routing keeps relative order and renumbers from 1, so an instantiated
  workflow satisfies the same invariant as its template.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from approval_kernel.domain.workflow import StageDefinition
from approval_kernel.exceptions import TemplateValidationError


def stage_list_errors(stages: Iterable[StageDefinition]) -> list[str]:
    """Return every problem with ``stages``; empty means valid."""
    stages = list(stages)
    errors: list[str] = []
    if not stages:
        return ["at least one stage is required"]

    orders = [s.order for s in stages]
    duplicates = sorted({o for o in orders if orders.count(o) > 1})
    if duplicates:
        errors.append(f"duplicate stage orders: {duplicates}")
    expected = list(range(1, len(stages) + 1))
    if sorted(orders) != expected and not duplicates:
        errors.append(
            f"stage orders must be contiguous from 1, got {sorted(orders)}"
        )

    for s in stages:
        if not s.name or not s.name.strip():
            errors.append(f"stage {s.order} has no name")
        if s.approval_threshold is not None and s.approval_threshold < 0:
            errors.append(f"stage {s.order} has a negative approval threshold")
    return errors


def validate_stage_definitions(template_name: str, stages: Iterable[StageDefinition]) -> tuple[StageDefinition, ...]:
    """Validate and return ``stages`` sorted by order.

    Raises:
        TemplateValidationError: Listing every problem found.
    """
    stages = tuple(stages)
    errors = stage_list_errors(stages)
    if errors:
        raise TemplateValidationError(template_name, errors)
    return tuple(sorted(stages, key=lambda s: s.order))


def select_stages_for_amount(
    stages: Iterable[StageDefinition],
    amount: Decimal | None,
) -> tuple[StageDefinition, ...]:
    """Drop threshold stages the amount does not exceed, then renumber.

    A stage with ``approval_threshold`` is kept only when ``amount`` is
    strictly greater than it; a missing amount never exceeds a threshold.
    """
    kept = [
        s for s in sorted(stages, key=lambda s: s.order)
        if s.approval_threshold is None
        or (amount is not None and amount > s.approval_threshold)
    ]
    return tuple(s.with_order(i) for i, s in enumerate(kept, start=1))
