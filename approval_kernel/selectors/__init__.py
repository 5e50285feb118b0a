"""Read-only selectors."""

from approval_kernel.selectors.base import BaseSelector
from approval_kernel.selectors.workflow_selector import WorkflowSelector, WorkflowView

__all__ = ["BaseSelector", "WorkflowSelector", "WorkflowView"]
