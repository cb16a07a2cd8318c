"""
Delegation resolution (``approval_kernel.domain.delegation``).

Pure functions over ``DelegationRule`` values.  ZERO I/O -- the service
layer loads the rules and passes them in.

Policy: at most one delegation may be active per approver at any instant.
Overlap is a configuration fault and raises ``AmbiguousDelegationError``.
Delegation is single hop: a delegate's own delegations are never followed,
so cycles cannot form.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from approval_kernel.domain.approval import DelegationRule
from approval_kernel.exceptions import AmbiguousDelegationError


def active_rules(
    rules: Iterable[DelegationRule],
    approver_id: str,
    at: datetime,
) -> list[DelegationRule]:
    """Rules for ``approver_id`` whose window covers ``at``, oldest first."""
    matching = [
        r for r in rules if r.approver_id == approver_id and r.covers(at)
    ]
    matching.sort(key=lambda r: (r.active_from, str(r.rule_id)))
    return matching


def resolve_acting_approver(
    rules: Iterable[DelegationRule],
    approver_id: str,
    at: datetime,
) -> str:
    """Return who acts for ``approver_id`` at ``at`` (the approver if nobody)."""
    matching = active_rules(rules, approver_id, at)
    if not matching:
        return approver_id
    if len(matching) > 1:
        raise AmbiguousDelegationError(
            approver_id, [str(r.rule_id) for r in matching],
        )
    return matching[0].delegate_id


def windows_overlap(a: DelegationRule, b: DelegationRule) -> bool:
    """True when two rules' half-open windows intersect."""
    a_end = a.active_until
    b_end = b.active_until
    starts_before_b_ends = b_end is None or a.active_from < b_end
    b_starts_before_a_ends = a_end is None or b.active_from < a_end
    return starts_before_b_ends and b_starts_before_a_ends
