"""
Approval state machine (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure transition functions for approval requests.  Each function takes an
immutable ``ApprovalRequest`` and returns a new one plus the notification
intents the transition produces.  Persistence and notification dispatch
belong to the caller.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Role lookup, delegation lookup and
the store are consulted by ``services/workflow_engine.py`` *before* these
functions run; the results are passed in as plain values.

Invariants enforced
-------------------
* ``overall_status`` and ``current_step_index`` are only ever set together
  by ``_finalize``, which derives the status from the steps.
* Every transition appends exactly one history entry and bumps
  ``updated_at`` strictly forward.
* Terminal requests are never transitioned.
* Rejection short-circuits: later steps stay ``WAITING`` forever.

Transition table
----------------
============  ==========================================================
decision      effect
============  ==========================================================
APPROVE       step -> APPROVED (DELEGATED when a delegate acts); advance
              to the next step and notify its approver, or finish the
              chain (APPROVED) and notify the submitter.
REJECT        step -> REJECTED; request REJECTED; notify submitter.
REQUEST_INFO  step -> INFO_REQUESTED; request INFO_REQUESTED; notify
              submitter; current step unchanged.
(resume)      INFO_REQUESTED step -> PENDING; notify the step's approver.
============  ==========================================================
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import UUID

from approval_kernel.domain.approval import (
    RESOLVED_STEP_STATUSES,
    ApprovalChainTemplate,
    ApprovalRequest,
    ApproverKind,
    Decision,
    HistoryAction,
    HistoryEntry,
    NotificationKind,
    NotifyIntent,
    OverallStatus,
    StepState,
    StepStatus,
)
from approval_kernel.exceptions import (
    ApprovalAlreadyResolvedError,
    InvalidApprovalTransitionError,
    InvalidChainError,
    NotAuthorizedError,
)


@dataclass(frozen=True)
class TransitionOutcome:
    """New request state plus the notifications the transition requires."""

    request: ApprovalRequest
    intents: tuple[NotifyIntent, ...] = ()


_DECISION_STEP_STATUS: dict[Decision, StepStatus] = {
    Decision.APPROVE: StepStatus.APPROVED,
    Decision.REJECT: StepStatus.REJECTED,
    Decision.REQUEST_INFO: StepStatus.INFO_REQUESTED,
}

_DECISION_HISTORY_ACTION: dict[Decision, HistoryAction] = {
    Decision.APPROVE: HistoryAction.APPROVE,
    Decision.REJECT: HistoryAction.REJECT,
    Decision.REQUEST_INFO: HistoryAction.REQUEST_INFO,
}


# =========================================================================
# Derivation
# =========================================================================


def derive_overall_status(
    steps: tuple[StepState, ...],
    current_step_index: int,
) -> OverallStatus:
    """Compute the request-level status from the step states."""
    if any(s.status == StepStatus.REJECTED for s in steps):
        return OverallStatus.REJECTED
    if current_step_index >= len(steps):
        return OverallStatus.APPROVED
    if steps[current_step_index].status == StepStatus.INFO_REQUESTED:
        return OverallStatus.INFO_REQUESTED
    return OverallStatus.PENDING


def validate_template(template: ApprovalChainTemplate) -> None:
    """Raise InvalidChainError unless the template can open a request."""
    if not template.steps:
        raise InvalidChainError(template.template_id, "template has zero steps")
    for index, step in enumerate(template.steps):
        approver = step.approver
        if not isinstance(approver.kind, ApproverKind):
            raise InvalidChainError(
                template.template_id,
                f"step {index} has unknown approver kind {approver.kind!r}",
            )
        if not approver.ref or not approver.ref.strip():
            raise InvalidChainError(
                template.template_id,
                f"step {index} names an empty {approver.kind.value}",
            )


def check_request_invariants(request: ApprovalRequest) -> list[str]:
    """Return a list of invariant violations (empty when consistent)."""
    violations: list[str] = []
    steps = request.steps
    idx = request.current_step_index

    if not 0 <= idx <= len(steps):
        violations.append(f"current_step_index {idx} outside 0..{len(steps)}")
        return violations

    expected = derive_overall_status(steps, idx)
    if expected != request.overall_status:
        violations.append(
            f"overall_status {request.overall_status.value} diverges from "
            f"derived {expected.value}"
        )

    pending = [s.step_index for s in steps if s.status == StepStatus.PENDING]
    if len(pending) > 1:
        violations.append(f"multiple pending steps: {pending}")

    for step in steps[:idx]:
        if step.status not in RESOLVED_STEP_STATUSES:
            violations.append(
                f"step {step.step_index} before current is {step.status.value}"
            )

    rejected = request.overall_status == OverallStatus.REJECTED
    for step in steps[idx + 1:]:
        if step.status != StepStatus.WAITING:
            violations.append(
                f"step {step.step_index} after current is {step.status.value}"
            )
        if step.decided_at is not None:
            violations.append(f"step {step.step_index} after current was decided")

    if idx < len(steps) and not rejected:
        current = steps[idx]
        if current.status not in (StepStatus.PENDING, StepStatus.INFO_REQUESTED):
            violations.append(
                f"current step {idx} is {current.status.value}"
            )

    for position, entry in enumerate(request.history, start=1):
        if entry.sequence != position:
            violations.append(
                f"history sequence {entry.sequence} at position {position}"
            )
            break

    if request.updated_at < request.created_at:
        violations.append("updated_at precedes created_at")

    return violations


# =========================================================================
# Transitions
# =========================================================================


def open_request(
    *,
    request_id: UUID,
    expense_report_id: str,
    submitter_id: str,
    template: ApprovalChainTemplate,
    first_approver_id: str,
    at: datetime,
) -> TransitionOutcome:
    """Build a new pending request from a chain template.

    Fixed approvers are assigned immediately; role-based steps after the
    first stay unassigned until they become current.
    """
    validate_template(template)

    steps: list[StepState] = []
    for index, step in enumerate(template.steps):
        if index == 0:
            status = StepStatus.PENDING
            assigned: str | None = first_approver_id
        else:
            status = StepStatus.WAITING
            assigned = None if step.approver.is_role else step.approver.ref
        steps.append(
            StepState(
                step_index=index,
                approver=step.approver,
                status=status,
                assigned_approver_id=assigned,
                name=step.name,
            )
        )

    step_tuple = tuple(steps)
    request = ApprovalRequest(
        request_id=request_id,
        expense_report_id=expense_report_id,
        submitter_id=submitter_id,
        chain_template_id=template.template_id,
        chain_template_version=template.version,
        steps=step_tuple,
        current_step_index=0,
        overall_status=derive_overall_status(step_tuple, 0),
        created_at=at,
        updated_at=at,
    )
    intent = _intent(
        request,
        first_approver_id,
        NotificationKind.APPROVAL_REQUIRED,
        step=step_tuple[0],
    )
    return TransitionOutcome(request=request, intents=(intent,))


def apply_decision(
    request: ApprovalRequest,
    *,
    actor_id: str,
    decision: Decision,
    comment: str,
    at: datetime,
    on_behalf: bool = False,
    next_approver_id: str | None = None,
) -> TransitionOutcome:
    """Apply one approver decision to the current step.

    Authorization is the caller's job; ``on_behalf`` marks that the actor
    is an active delegate of the assigned approver.  ``next_approver_id``
    must be supplied when approving a non-final step.
    """
    _require_open(request)
    if request.overall_status == OverallStatus.INFO_REQUESTED:
        raise InvalidApprovalTransitionError(
            str(request.request_id), request.overall_status.value, decision.value,
        )

    idx = request.current_step_index
    current = request.steps[idx]
    step_status = _DECISION_STEP_STATUS[decision]
    if decision == Decision.APPROVE and on_behalf:
        step_status = StepStatus.DELEGATED

    steps = list(request.steps)
    steps[idx] = replace(
        current,
        status=step_status,
        acting_approver_id=actor_id,
        decided_at=at,
        comment=comment,
    )

    intents: list[NotifyIntent] = []
    new_index = idx
    if decision == Decision.APPROVE:
        if idx + 1 < len(steps):
            if not next_approver_id:
                raise ValueError(
                    f"next_approver_id required to advance past step {idx}"
                )
            new_index = idx + 1
            steps[new_index] = replace(
                steps[new_index],
                status=StepStatus.PENDING,
                assigned_approver_id=next_approver_id,
            )
        else:
            new_index = len(steps)

    updated = _finalize(
        request,
        steps=tuple(steps),
        current_step_index=new_index,
        actor_id=actor_id,
        action=_DECISION_HISTORY_ACTION[decision],
        step_index=idx,
        comment=comment,
        at=at,
    )

    if decision == Decision.APPROVE and new_index < len(steps):
        intents.append(
            _intent(
                updated,
                next_approver_id,
                NotificationKind.APPROVAL_REQUIRED,
                step=updated.steps[new_index],
            )
        )
    else:
        kind = {
            OverallStatus.APPROVED: NotificationKind.APPROVED,
            OverallStatus.REJECTED: NotificationKind.REJECTED,
            OverallStatus.INFO_REQUESTED: NotificationKind.INFO_REQUESTED,
        }[updated.overall_status]
        intents.append(
            _intent(
                updated,
                updated.submitter_id,
                kind,
                step=updated.steps[idx],
                actor_id=actor_id,
                comment=comment,
            )
        )

    return TransitionOutcome(request=updated, intents=tuple(intents))


def resume(
    request: ApprovalRequest,
    *,
    actor_id: str,
    comment: str,
    at: datetime,
) -> TransitionOutcome:
    """Return an INFO_REQUESTED request to PENDING on the same step.

    Only the submitter may resume.
    """
    _require_open(request)
    if request.overall_status != OverallStatus.INFO_REQUESTED:
        raise InvalidApprovalTransitionError(
            str(request.request_id),
            request.overall_status.value,
            HistoryAction.RESUME.value,
        )
    if actor_id != request.submitter_id:
        raise NotAuthorizedError(
            str(request.request_id), actor_id, "only the submitter may resume",
        )

    idx = request.current_step_index
    steps = list(request.steps)
    steps[idx] = replace(
        steps[idx],
        status=StepStatus.PENDING,
        acting_approver_id=None,
        decided_at=None,
        comment="",
    )

    updated = _finalize(
        request,
        steps=tuple(steps),
        current_step_index=idx,
        actor_id=actor_id,
        action=HistoryAction.RESUME,
        step_index=idx,
        comment=comment,
        at=at,
    )
    approver = updated.steps[idx].assigned_approver_id or ""
    intent = _intent(
        updated,
        approver,
        NotificationKind.INFO_PROVIDED,
        step=updated.steps[idx],
        actor_id=actor_id,
        comment=comment,
    )
    return TransitionOutcome(request=updated, intents=(intent,))


# =========================================================================
# Helpers
# =========================================================================


def _require_open(request: ApprovalRequest) -> None:
    if request.is_terminal:
        raise ApprovalAlreadyResolvedError(
            str(request.request_id),
            request.overall_status.value,
            current_version=request.version,
        )


def _finalize(
    request: ApprovalRequest,
    *,
    steps: tuple[StepState, ...],
    current_step_index: int,
    actor_id: str,
    action: HistoryAction,
    step_index: int,
    comment: str,
    at: datetime,
) -> ApprovalRequest:
    """Single place where status, index, history and updated_at change together."""
    new_status = derive_overall_status(steps, current_step_index)
    updated_at = _monotonic(request.updated_at, at)
    entry = HistoryEntry(
        sequence=len(request.history) + 1,
        occurred_at=updated_at,
        actor_id=actor_id,
        action=action,
        from_status=request.overall_status,
        to_status=new_status,
        step_index=step_index,
        comment=comment,
    )
    return replace(
        request,
        steps=steps,
        current_step_index=current_step_index,
        overall_status=new_status,
        updated_at=updated_at,
        history=request.history + (entry,),
    )


def _monotonic(previous: datetime, at: datetime) -> datetime:
    if at > previous:
        return at
    return previous + timedelta(microseconds=1)


def _intent(
    request: ApprovalRequest,
    recipient_id: str,
    kind: NotificationKind,
    *,
    step: StepState,
    actor_id: str | None = None,
    comment: str = "",
) -> NotifyIntent:
    payload = {
        "request_id": str(request.request_id),
        "expense_report_id": request.expense_report_id,
        "overall_status": request.overall_status.value,
        "step_index": step.step_index,
        "step_name": step.name,
    }
    if actor_id is not None:
        payload["actor_id"] = actor_id
    if comment:
        payload["comment"] = comment
    return NotifyIntent(recipient_id=recipient_id, template_kind=kind, payload=payload)
