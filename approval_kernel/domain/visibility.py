"""
Visibility filter (``approval_kernel.domain.visibility``).

Responsibility
--------------
Read-side projection of which stages of a workflow a viewer may see, and
whether the viewer may open the workflow at all.  Never used to gate
writes; the stage engine uses ``domain.authorization``.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.  Inputs are never
mutated and output order follows input order.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from approval_kernel.domain.authorization import StageRequirements
from approval_kernel.domain.identity import Identity
from approval_kernel.domain.workflow import WorkflowInstance

REASON_EXECUTIVE = "C-level or admin access"
REASON_REQUESTER = "Workflow requester"
REASON_NO_DEPARTMENT = "No department assigned"
REASON_VISIBLE_STAGE = "Visible stage for your department"
REASON_NO_VISIBLE_STAGE = "No visible stages for your department"


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    reason: str


def is_stage_visible(stage: StageRequirements, viewer: Identity, requester_id: str | None) -> bool:
    if viewer.is_executive:
        return True
    if requester_id is not None and viewer.id == requester_id:
        return True
    if not stage.visible_to_departments:
        return True
    return viewer.department in stage.visible_to_departments


def filter_visible_stages(
    stages: Iterable[StageRequirements],
    viewer: Identity,
    requester_id: str | None,
) -> tuple[StageRequirements, ...]:
    """Return the stages ``viewer`` may see, in input order."""
    return tuple(s for s in stages if is_stage_visible(s, viewer, requester_id))


def check_workflow_access(
    workflow: WorkflowInstance,
    stages: Iterable[StageRequirements],
    viewer: Identity,
) -> AccessDecision:
    """Decide whether ``viewer`` may open ``workflow``.

    Executives and the requester always may.  Anyone else needs a
    department and at least one stage visible to it.
    """
    if viewer.is_executive:
        return AccessDecision(True, REASON_EXECUTIVE)
    if viewer.id == workflow.requester_id:
        return AccessDecision(True, REASON_REQUESTER)
    if not viewer.department:
        return AccessDecision(False, REASON_NO_DEPARTMENT)
    if filter_visible_stages(stages, viewer, workflow.requester_id):
        return AccessDecision(True, REASON_VISIBLE_STAGE)
    return AccessDecision(False, REASON_NO_VISIBLE_STAGE)
