"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval callers (the service facade, batch coordinator, HTTP layer) must
react to failures precisely: a stale write is retried after a re-fetch, an
unauthorized decision is shown to the user, a configuration fault is paged
to an administrator.  Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.decide(request_id, actor_id, Decision.APPROVE)
    except Exception as e:
        if "modified" in str(e):  # FRAGILE - message might change
            refetch()

Example - RIGHT way (what this module enables):
    try:
        engine.decide(request_id, actor_id, Decision.APPROVE)
    except StaleStateError as e:
        log.info("stale", extra={"expected": e.expected_version})
        api_response(code=e.code, current_version=e.current_version)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalKernelError:

    ApprovalKernelError (base)
    |
    +-- WorkflowConfigError
    |   +-- InvalidChainError
    |   +-- ChainTemplateNotFoundError
    |   +-- TemplateInUseError
    |   +-- ApproverResolutionError
    |
    +-- AuthorizationError
    |   +-- NotAuthorizedError
    |       +-- SelfApprovalError
    |
    +-- ConcurrencyError
    |   +-- StaleStateError
    |   |   +-- ApprovalAlreadyResolvedError
    |   +-- DuplicateApprovalRequestError
    |
    +-- TransitionError
    |   +-- InvalidApprovalTransitionError
    |
    +-- DelegationError
    |   +-- AmbiguousDelegationError
    |   +-- InvalidDelegationRuleError
    |   +-- DelegationRuleNotFoundError
    |
    +-- NotFoundError
    |   +-- ApprovalNotFoundError
    |
    +-- InfrastructureError
    |   +-- WorkflowTimeoutError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- NotificationError
    |   +-- NotificationDeliveryError
    |
    +-- InvalidPayloadError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Config          | INVALID_CHAIN               | Template has no steps / malformed step
                | CHAIN_TEMPLATE_NOT_FOUND    | Template ID doesn't exist
                | TEMPLATE_IN_USE             | Edit/delete of a referenced template
                | APPROVER_UNRESOLVED         | No user holds the step's role
----------------|-----------------------------|-----------------------------------------
Authorization   | NOT_AUTHORIZED              | Actor is not approver or active delegate
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_STATE                 | Version conflict / replayed decision
                | APPROVAL_ALREADY_RESOLVED   | Decision on a terminal request
----------------|-----------------------------|-----------------------------------------
Transition      | INVALID_APPROVAL_TRANSITION | Decision not legal in current status
----------------|-----------------------------|-----------------------------------------
Delegation      | AMBIGUOUS_DELEGATION        | Overlapping active delegation rules
                | INVALID_DELEGATION_RULE     | Self-delegation, inverted window
                | DELEGATION_RULE_NOT_FOUND   | Rule ID doesn't exist
----------------|-----------------------------|-----------------------------------------
Not found       | APPROVAL_NOT_FOUND          | Request ID doesn't exist
----------------|-----------------------------|-----------------------------------------
Infrastructure  | OPERATION_TIMEOUT           | Facade budget exceeded, outcome unknown
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying append-only history
----------------|-----------------------------|-----------------------------------------
Notification    | NOTIFICATION_DELIVERY_FAILED| Gateway could not deliver (swallowed
                |                             | at the facade boundary)
----------------|-----------------------------|-----------------------------------------
Payload         | INVALID_PAYLOAD             | Malformed request body at the facade

===============================================================================
HANDLING PATTERNS
===============================================================================

1. BUSINESS-RULE VIOLATIONS ARE NEVER RETRIED:

    except NotAuthorizedError as e:
        return forbidden(e.code, actor=e.actor_id)

2. STALE STATE IS CALLER-RECOVERABLE:

    except StaleStateError:
        record, version = store.load(request_id)   # re-fetch first
        if still_relevant(record):
            engine.decide(..., expected_version=version)

3. TIMEOUT MEANS "OUTCOME UNKNOWN":

    except WorkflowTimeoutError:
        # never re-issue the same decision blindly
        return {"outcome": "unknown", "refetch": f"/approvals/{request_id}"}

===============================================================================
"""

from __future__ import annotations


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


# Configuration-related exceptions


class WorkflowConfigError(ApprovalKernelError):
    """Base exception for chain/template configuration errors."""

    code: str = "WORKFLOW_CONFIG_ERROR"


class InvalidChainError(WorkflowConfigError):
    """Chain template resolves to zero steps or contains a malformed step."""

    code: str = "INVALID_CHAIN"

    def __init__(self, chain_template_id: str, reason: str):
        self.chain_template_id = chain_template_id
        self.reason = reason
        super().__init__(f"Invalid approval chain {chain_template_id}: {reason}")


class ChainTemplateNotFoundError(WorkflowConfigError):
    """Chain template with given ID was not found."""

    code: str = "CHAIN_TEMPLATE_NOT_FOUND"

    def __init__(self, chain_template_id: str):
        self.chain_template_id = chain_template_id
        super().__init__(f"Chain template not found: {chain_template_id}")


class TemplateInUseError(WorkflowConfigError):
    """Template is referenced by approval requests and cannot change."""

    code: str = "TEMPLATE_IN_USE"

    def __init__(self, chain_template_id: str, reference_count: int):
        self.chain_template_id = chain_template_id
        self.reference_count = reference_count
        super().__init__(
            f"Chain template {chain_template_id} is referenced by "
            f"{reference_count} approval request(s)"
        )


class ApproverResolutionError(WorkflowConfigError):
    """No user could be resolved for a role-based step."""

    code: str = "APPROVER_UNRESOLVED"

    def __init__(self, role: str, step_index: int):
        self.role = role
        self.step_index = step_index
        super().__init__(
            f"No approver holds role '{role}' for step {step_index}"
        )


# Authorization-related exceptions


class AuthorizationError(ApprovalKernelError):
    """Base exception for authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class NotAuthorizedError(AuthorizationError):
    """Actor may not perform this action on this approval request."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, request_id: str, actor_id: str, reason: str):
        self.request_id = request_id
        self.actor_id = actor_id
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} not authorized on approval {request_id}: {reason}"
        )


class SelfApprovalError(NotAuthorizedError):
    """A submitter may never approve, or be routed, their own expense report.

    ``request_id`` names the approval request when one exists, otherwise
    the expense report being submitted.
    """

    code: str = "SELF_APPROVAL_FORBIDDEN"

    def __init__(self, request_id: str, submitter_id: str, step_index: int):
        self.step_index = step_index
        super().__init__(
            request_id,
            submitter_id,
            f"step {step_index} would be decided by the submitter",
        )


# Concurrency-related exceptions


class ConcurrencyError(ApprovalKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class StaleStateError(ConcurrencyError):
    """
    The approval request moved on since the caller last read it.

    Raised on an optimistic-concurrency conflict (the stored version no
    longer matches the version the write was based on) and when an actor
    replays a decision on a step the request has already left.  Callers
    must re-fetch before deciding whether to retry.
    """

    code: str = "STALE_STATE"

    def __init__(
        self,
        request_id: str,
        expected_version: int | None,
        current_version: int | None,
        reason: str = "approval request was modified by another transaction",
    ):
        self.request_id = request_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.reason = reason
        super().__init__(
            f"Stale state on approval {request_id} "
            f"(expected version {expected_version}, current {current_version}): "
            f"{reason}"
        )


class ApprovalAlreadyResolvedError(StaleStateError):
    """Approval request is terminal (approved or rejected) and immutable."""

    code: str = "APPROVAL_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str, current_version: int | None = None):
        self.status = status
        super().__init__(
            request_id,
            expected_version=None,
            current_version=current_version,
            reason=f"request is already {status}",
        )


class DuplicateApprovalRequestError(ConcurrencyError):
    """An expense report already has an open (pending or info_requested) request."""

    code: str = "DUPLICATE_APPROVAL_REQUEST"

    def __init__(self, expense_report_id: str, existing_request_id: str | None = None):
        self.expense_report_id = expense_report_id
        self.existing_request_id = existing_request_id
        super().__init__(
            f"Expense report {expense_report_id} already has an open approval "
            f"request {existing_request_id or ''}".rstrip()
        )


# Transition-related exceptions


class TransitionError(ApprovalKernelError):
    """Base exception for state machine errors."""

    code: str = "TRANSITION_ERROR"


class InvalidApprovalTransitionError(TransitionError):
    """The requested transition is not legal from the current status."""

    code: str = "INVALID_APPROVAL_TRANSITION"

    def __init__(self, request_id: str, from_status: str, action: str):
        self.request_id = request_id
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"Cannot {action} approval {request_id} while {from_status}"
        )


# Delegation-related exceptions


class DelegationError(ApprovalKernelError):
    """Base exception for delegation errors."""

    code: str = "DELEGATION_ERROR"


class AmbiguousDelegationError(DelegationError):
    """
    More than one delegation rule is active for an approver at one instant.

    This is an administrative fault; the resolver refuses to guess.
    """

    code: str = "AMBIGUOUS_DELEGATION"

    def __init__(self, approver_id: str, rule_ids: list[str]):
        self.approver_id = approver_id
        self.rule_ids = rule_ids
        super().__init__(
            f"Approver {approver_id} has {len(rule_ids)} overlapping active "
            f"delegation rules: {', '.join(rule_ids)}"
        )


class InvalidDelegationRuleError(DelegationError):
    """Delegation rule is malformed."""

    code: str = "INVALID_DELEGATION_RULE"

    def __init__(self, approver_id: str, reason: str):
        self.approver_id = approver_id
        self.reason = reason
        super().__init__(f"Invalid delegation rule for {approver_id}: {reason}")


class DelegationRuleNotFoundError(DelegationError):
    """Delegation rule with given ID was not found."""

    code: str = "DELEGATION_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Delegation rule not found: {rule_id}")


# Lookup-related exceptions


class NotFoundError(ApprovalKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class ApprovalNotFoundError(NotFoundError):
    """Approval request with given ID was not found."""

    code: str = "APPROVAL_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


# Infrastructure-related exceptions


class InfrastructureError(ApprovalKernelError):
    """Base exception for store / network faults."""

    code: str = "INFRASTRUCTURE_ERROR"


class WorkflowTimeoutError(InfrastructureError):
    """
    An operation exceeded the facade-enforced time budget.

    The underlying write may or may not have completed: the outcome is
    unknown and the caller must re-fetch authoritative state.
    """

    code: str = "OPERATION_TIMEOUT"

    def __init__(self, operation: str, timeout_seconds: float, request_id: str | None = None):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.request_id = request_id
        super().__init__(
            f"{operation} exceeded {timeout_seconds}s; outcome unknown"
        )


# Immutability-related exceptions


class ImmutabilityError(ApprovalKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Notification-related exceptions


class NotificationError(ApprovalKernelError):
    """Base exception for notification errors."""

    code: str = "NOTIFICATION_ERROR"


class NotificationDeliveryError(NotificationError):
    """A notification gateway failed to deliver a message."""

    code: str = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, recipient_id: str, template_kind: str, reason: str):
        self.recipient_id = recipient_id
        self.template_kind = template_kind
        self.reason = reason
        super().__init__(
            f"Notification {template_kind} to {recipient_id} failed: {reason}"
        )


# Payload-related exceptions


class InvalidPayloadError(ApprovalKernelError):
    """A request body failed validation at the service boundary."""

    code: str = "INVALID_PAYLOAD"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid payload field '{field}': {reason}")
