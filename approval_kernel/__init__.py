"""
Approval Kernel - expense report approval workflow core.

A small, strictly layered workflow core with:
- Multi-level approval chains (fixed or role-resolved approvers)
- Time-boxed, single-hop delegation
- Optimistic concurrency on every approval write
- Append-only decision history
- Notification intents returned to the caller, never sent inline
"""

__version__ = "0.1.0"
