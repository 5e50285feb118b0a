"""
Approval Kernel

A staged document-approval workflow core with:
- Strictly sequential stages, exactly one active at a time
- Role and department gated approvals
- Date-scoped document numbering
- Full auditability via hash chain
"""

__version__ = "0.1.0"
