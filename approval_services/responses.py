"""
approval_services.responses -- Facade response envelope and error mapping.

The facade has no HTTP framework of its own; it returns ``FacadeResponse``
objects whose ``status_code`` follows HTTP conventions so that any web
layer can forward them unchanged.

Status mapping:
    400  malformed payload, invalid chain / delegation rule, unresolvable role
    403  actor not authorized
    404  approval, template or delegation rule not found
    409  stale state, terminal request, illegal transition, template in use,
         ambiguous delegation
    504  operation timed out -- outcome unknown
    500  anything else
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from approval_batch.domain.types import BatchItemResult, BatchRunResult
from approval_kernel.domain.approval import (
    ApprovalChainTemplate,
    ApprovalRequest,
    DelegationRule,
)
from approval_kernel.exceptions import (
    AmbiguousDelegationError,
    ApprovalKernelError,
    AuthorizationError,
    ChainTemplateNotFoundError,
    ConcurrencyError,
    DelegationError,
    DelegationRuleNotFoundError,
    ImmutabilityError,
    InvalidPayloadError,
    NotFoundError,
    TemplateInUseError,
    TransitionError,
    WorkflowConfigError,
    WorkflowTimeoutError,
)


@dataclass(frozen=True)
class FacadeResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


# Most specific classes first.
_STATUS_BY_ERROR: tuple[tuple[type[ApprovalKernelError], int], ...] = (
    (InvalidPayloadError, 400),
    (ChainTemplateNotFoundError, 404),
    (DelegationRuleNotFoundError, 404),
    (NotFoundError, 404),
    (TemplateInUseError, 409),
    (WorkflowConfigError, 400),
    (AuthorizationError, 403),
    (ConcurrencyError, 409),
    (TransitionError, 409),
    (AmbiguousDelegationError, 409),
    (DelegationError, 400),
    (ImmutabilityError, 409),
    (WorkflowTimeoutError, 504),
)

_DETAIL_TYPES = (str, int, float, bool, type(None))


def status_for(exc: ApprovalKernelError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_body(exc: ApprovalKernelError) -> dict[str, Any]:
    """``{error, message, ...attributes}`` for a kernel error."""
    body: dict[str, Any] = {"error": exc.code, "message": str(exc)}
    for key, value in vars(exc).items():
        if key.startswith("_"):
            continue
        if isinstance(value, _DETAIL_TYPES):
            body[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            body[key] = list(value)
    if isinstance(exc, WorkflowTimeoutError):
        body["outcome"] = "unknown"
        if exc.request_id:
            body["refetch"] = f"/approvals/{exc.request_id}"
    return body


def error_response(exc: ApprovalKernelError) -> FacadeResponse:
    return FacadeResponse(status_for(exc), error_body(exc))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_request(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "request_id": str(request.request_id),
        "expense_report_id": request.expense_report_id,
        "submitter_id": request.submitter_id,
        "chain_template_id": request.chain_template_id,
        "chain_template_version": request.chain_template_version,
        "current_step_index": request.current_step_index,
        "overall_status": request.overall_status.value,
        "version": request.version,
        "created_at": request.created_at.isoformat(),
        "updated_at": request.updated_at.isoformat(),
        "steps": [
            {
                "step_index": s.step_index,
                "name": s.name,
                "approver": s.approver.describe(),
                "status": s.status.value,
                "assigned_approver_id": s.assigned_approver_id,
                "acting_approver_id": s.acting_approver_id,
                "decided_at": s.decided_at.isoformat() if s.decided_at else None,
                "comment": s.comment,
            }
            for s in request.steps
        ],
        "history": [
            {
                "sequence": h.sequence,
                "occurred_at": h.occurred_at.isoformat(),
                "actor_id": h.actor_id,
                "action": h.action.value,
                "from_status": h.from_status.value,
                "to_status": h.to_status.value,
                "step_index": h.step_index,
                "comment": h.comment,
            }
            for h in request.history
        ],
    }


def serialize_batch_item(item: BatchItemResult) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "item_index": item.item_index,
        "request_id": str(item.request_id),
        "status": item.status.value,
    }
    if item.ok and item.request is not None:
        entry["status_code"] = 200
        entry["request"] = serialize_request(item.request)
    elif isinstance(item.error, ApprovalKernelError):
        entry["status_code"] = status_for(item.error)
        entry["error"] = error_body(item.error)
    else:
        entry["status_code"] = 500
        entry["error"] = {"error": item.error_code, "message": item.error_message}
    return entry


def serialize_batch(result: BatchRunResult) -> dict[str, Any]:
    return {
        "batch_id": str(result.batch_id),
        "status": result.status.value,
        "total_items": result.total_items,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "items": [serialize_batch_item(item) for item in result.items],
    }


def serialize_rule(rule: DelegationRule) -> dict[str, Any]:
    return {
        "rule_id": str(rule.rule_id),
        "approver_id": rule.approver_id,
        "delegate_id": rule.delegate_id,
        "active_from": rule.active_from.isoformat(),
        "active_until": rule.active_until.isoformat() if rule.active_until else None,
        "created_by": rule.created_by,
    }


def serialize_template(template: ApprovalChainTemplate) -> dict[str, Any]:
    return {
        "template_id": template.template_id,
        "name": template.name,
        "version": template.version,
        "steps": [
            {"name": s.name, "approver": s.approver.describe()} for s in template.steps
        ],
    }
