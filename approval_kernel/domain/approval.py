"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow core.  Defines the per-step
and overall status enums, chain templates, the approval request record and
its append-only history, delegation rules, notification intents, and the
principal contract consumed from the authentication collaborator.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* ``0 <= current_step_index <= len(steps)``; equality means the request
  is terminal-approved.
* ``overall_status`` is only ever produced by ``derive_overall_status``
  (see ``domain/workflow.py``); ``check_request_invariants`` detects any
  divergence.
* At most one step is ``PENDING``; steps before the current index are
  ``APPROVED`` or ``DELEGATED``; steps after it are ``WAITING``.
* ``history`` is append-only with contiguous sequence numbers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =========================================================================
# Status Enums
# =========================================================================


class StepStatus(str, Enum):
    """Per-step decision status."""

    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    INFO_REQUESTED = "info_requested"
    DELEGATED = "delegated"


# A step in one of these statuses has been passed by the chain.
RESOLVED_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.DELEGATED,
})


class OverallStatus(str, Enum):
    """Request-level status, persisted for querying."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    INFO_REQUESTED = "info_requested"


TERMINAL_OVERALL_STATUSES: frozenset[OverallStatus] = frozenset({
    OverallStatus.APPROVED,
    OverallStatus.REJECTED,
})

OPEN_OVERALL_STATUSES: frozenset[OverallStatus] = frozenset(OverallStatus) - TERMINAL_OVERALL_STATUSES


class Decision(str, Enum):
    """Decision types that an approver can make."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_INFO = "request_info"


class HistoryAction(str, Enum):
    """Actions recorded in an approval request's history."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_INFO = "request_info"
    RESUME = "resume"


class NotificationKind(str, Enum):
    """Template kinds understood by the notification gateway."""

    APPROVAL_REQUIRED = "approval_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    INFO_REQUESTED = "info_requested"
    INFO_PROVIDED = "info_provided"


# =========================================================================
# Chain Definition
# =========================================================================


class ApproverKind(str, Enum):
    """How a step's approver is determined."""

    FIXED = "fixed"
    ROLE = "role"


@dataclass(frozen=True)
class ApproverSpec:
    """Tagged approver definition: a fixed user or a role resolved lazily."""

    kind: ApproverKind
    ref: str

    @property
    def is_role(self) -> bool:
        return self.kind == ApproverKind.ROLE

    def describe(self) -> str:
        return f"{self.kind.value}:{self.ref}"


def FixedApprover(approver_id: str) -> ApproverSpec:
    """Step bound to one specific user."""
    return ApproverSpec(kind=ApproverKind.FIXED, ref=approver_id)


def RoleApprover(role: str) -> ApproverSpec:
    """Step bound to whichever user holds ``role`` when the step becomes current."""
    return ApproverSpec(kind=ApproverKind.ROLE, ref=role)


@dataclass(frozen=True)
class ApprovalStep:
    """One position in a chain template."""

    approver: ApproverSpec
    name: str = ""


@dataclass(frozen=True)
class TemplateCriteria:
    """Matching criteria used to pick a template for an expense report.

    ``min_amount`` is inclusive, ``max_amount`` exclusive.  ``None`` fields
    match anything.
    """

    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    department: str | None = None
    priority: int = 100

    def matches(self, amount: Decimal | None, department: str | None) -> bool:
        if self.department is not None and department != self.department:
            return False
        if amount is None:
            return self.min_amount is None and self.max_amount is None
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount >= self.max_amount:
            return False
        return True


@dataclass(frozen=True)
class ApprovalChainTemplate:
    """Ordered approval levels required for a category of expense report.

    Immutable once referenced by an in-flight approval; requests snapshot
    ``steps`` and ``version`` at creation.
    """

    template_id: str
    steps: tuple[ApprovalStep, ...]
    name: str = ""
    version: int = 1
    criteria: TemplateCriteria = field(default_factory=TemplateCriteria)


# =========================================================================
# Request Record
# =========================================================================


@dataclass(frozen=True)
class StepState:
    """Runtime state of one chain step inside an approval request.

    ``assigned_approver_id`` is ``None`` for role-based steps that have not
    yet become current.  ``acting_approver_id`` is the user who actually
    decided (differs from the assignee when a delegate acted).
    """

    step_index: int
    approver: ApproverSpec
    status: StepStatus = StepStatus.WAITING
    assigned_approver_id: str | None = None
    acting_approver_id: str | None = None
    decided_at: datetime | None = None
    comment: str = ""
    name: str = ""


@dataclass(frozen=True)
class HistoryEntry:
    """One append-only history record. Immutable."""

    sequence: int
    occurred_at: datetime
    actor_id: str
    action: HistoryAction
    from_status: OverallStatus
    to_status: OverallStatus
    step_index: int
    comment: str = ""


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of an approval request.

    ``chain_template_id`` and ``chain_template_version`` are snapshotted at
    creation together with the resolved ``steps``; later template edits
    never alter an in-flight request.  ``version`` is the optimistic
    concurrency token assigned by the store.
    """

    request_id: UUID
    expense_report_id: str
    submitter_id: str
    chain_template_id: str
    chain_template_version: int
    steps: tuple[StepState, ...]
    current_step_index: int
    overall_status: OverallStatus
    created_at: datetime
    updated_at: datetime
    history: tuple[HistoryEntry, ...] = ()
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_OVERALL_STATUSES

    @property
    def current_step(self) -> StepState | None:
        if self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None


# =========================================================================
# Delegation
# =========================================================================


@dataclass(frozen=True)
class DelegationRule:
    """Time-boxed delegation of one approver's authority to a delegate.

    The active window is half-open: ``[active_from, active_until)``.
    ``active_until=None`` means open ended.
    """

    rule_id: UUID
    approver_id: str
    delegate_id: str
    active_from: datetime
    active_until: datetime | None = None
    created_by: str | None = None

    def covers(self, at: datetime) -> bool:
        if at < self.active_from:
            return False
        if self.active_until is not None and at >= self.active_until:
            return False
        return True


# =========================================================================
# Effects and Boundary Types
# =========================================================================


@dataclass(frozen=True)
class NotifyIntent:
    """A notification that must be sent as a result of a transition.

    Emitted by the engine, dispatched by the service facade.
    """

    recipient_id: str
    template_kind: NotificationKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Principal:
    """Pre-verified caller identity from the authentication collaborator."""

    id: str
    role: str
    is_delegate_of: str | None = None


@dataclass(frozen=True)
class ApprovalQuery:
    """Filter for store queries.  ``None`` fields are unconstrained.

    ``assigned_approver_id`` matches only the step at the current index,
    i.e. work that is actually waiting on that approver.
    ``open_only`` restricts to pending and info_requested requests.
    """

    assigned_approver_id: str | None = None
    overall_status: OverallStatus | None = None
    submitter_id: str | None = None
    expense_report_id: str | None = None
    chain_template_id: str | None = None
    open_only: bool = False
    limit: int | None = None
