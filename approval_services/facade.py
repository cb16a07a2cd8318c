"""
approval_services.facade -- The only entry point for external callers.

Responsibility:
    Translates wire-level requests (a pre-verified ``Principal`` plus a
    plain dict payload) into Workflow Engine / Batch Coordinator /
    Delegation Resolver calls, and their results or errors into
    ``FacadeResponse`` objects.  Dispatches every notify-intent after the
    transition has committed.

Architecture position:
    Services -- above approval_kernel, approval_batch and approval_config.

Invariants enforced:
    - One transaction per operation: commit on success, rollback on error.
    - Notifications are dispatched only after commit; a delivery failure is
      logged and reported, never rolled back into the approval.
    - Every operation is bounded by ``operation_timeout_seconds``; on expiry
      the caller gets 504 with ``outcome: "unknown"`` and must re-fetch.
    - Notification dispatch runs after that window, on the calling thread,
      and is bounded separately: no attempt starts after
      ``notification_budget_seconds``, and one SMTP call can add at most
      ``smtp.timeout_seconds`` on top.

Failure modes:
    - Kernel errors are mapped to status codes (see responses.py).
    - Anything else propagates to the caller.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from approval_batch.services.coordinator import BatchCoordinator
from approval_config.loader import parse_template
from approval_config.schema import ApprovalConfigurationSet, ServiceSettings
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.approval import Decision, NotifyIntent, Principal
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import (
    ApprovalKernelError,
    InvalidChainError,
    InvalidPayloadError,
    NotAuthorizedError,
    WorkflowTimeoutError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.approval_store import ApprovalStore
from approval_kernel.services.chain_template_service import ChainTemplateService
from approval_kernel.services.delegation_resolver import DelegationResolver
from approval_kernel.services.directory import RoleDirectory
from approval_kernel.services.workflow_engine import WorkflowEngine
from approval_services.notifications import (
    NotificationGateway,
    SmtpNotificationGateway,
    dispatch_intents,
)
from approval_services.responses import (
    FacadeResponse,
    error_response,
    serialize_batch,
    serialize_request,
    serialize_rule,
    serialize_template,
)

logger = get_logger("services.facade")

T = TypeVar("T")

ADMIN_ROLE = "admin"
_BATCH_DECISIONS = frozenset({Decision.APPROVE, Decision.REJECT})


@dataclass(frozen=True)
class _Services:
    """Per-transaction service graph."""

    session: Session
    store: ApprovalStore
    templates: ChainTemplateService
    resolver: DelegationResolver
    engine: WorkflowEngine
    batch: BatchCoordinator


class ApprovalFacade:
    """Service facade over the approval workflow core."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: RoleDirectory,
        notifier: NotificationGateway,
        clock: Clock | None = None,
        settings: ServiceSettings | None = None,
        max_workers: int = 8,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._notifier = notifier
        self._clock = clock or SystemClock()
        self._settings = settings or ServiceSettings()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="approval-facade",
        )

    @classmethod
    def from_config(
        cls,
        session_factory: sessionmaker[Session],
        config: ApprovalConfigurationSet,
        notifier: NotificationGateway | None = None,
        clock: Clock | None = None,
    ) -> ApprovalFacade:
        """Build a facade from a configuration set (directory, SMTP, settings)."""
        return cls(
            session_factory,
            directory=config.role_directory(),
            notifier=notifier or SmtpNotificationGateway(
                config.settings.smtp, config.recipient_address,
            ),
            clock=clock,
            settings=config.settings,
        )

    def close(self) -> None:
        """Wait for in-flight operations and release worker threads."""
        self._executor.shutdown(wait=True)

    # -----------------------------------------------------------------
    # Approval operations
    # -----------------------------------------------------------------

    def create_approval(
        self, principal: Principal, payload: Mapping[str, Any],
    ) -> FacadeResponse:
        """Open an approval request for an expense report (201).

        Only admins may override the first approver with
        ``initial_approver_id``; the template decides for everyone else.
        """
        def work(s: _Services):
            template_id = _optional_str(payload, "chain_template_id")
            if template_id is None:
                amount = _optional_decimal(payload, "amount")
                department = _optional_str(payload, "department")
                template = s.templates.select_for(amount, department)
                if template is None:
                    raise InvalidChainError(
                        "(auto)",
                        f"no chain template matches amount={amount} "
                        f"department={department}",
                    )
                template_id = template.template_id
            return s.engine.create_request(
                expense_report_id=_required_str(payload, "expense_report_id"),
                chain_template_id=template_id,
                submitter_id=principal.id,
                initial_approver_id=initial_approver_id,
            )

        try:
            initial_approver_id = _optional_str(payload, "initial_approver_id")
            if initial_approver_id is not None and principal.role != ADMIN_ROLE:
                raise NotAuthorizedError(
                    "initial_approver_id", principal.id,
                    "only an admin may choose the first approver",
                )
            result = self._execute(principal, "create_approval", work)
        except ApprovalKernelError as exc:
            return self._error(principal, "create_approval", exc)
        return self._transition_response(201, result.request, result.intents)

    def decide(
        self,
        principal: Principal,
        request_id: str | UUID,
        payload: Mapping[str, Any],
    ) -> FacadeResponse:
        """Record the principal's decision on the current step (200)."""
        try:
            rid = _parse_uuid(request_id, "request_id")
            decision = _parse_decision(payload)
            comment = _optional_str(payload, "comment") or ""
            expected_version = _optional_int(payload, "expected_version")
            result = self._execute(
                principal,
                "decide",
                lambda s: s.engine.decide(
                    rid, principal.id, decision,
                    comment=comment, expected_version=expected_version,
                ),
                request_id=str(rid),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "decide", exc)
        return self._transition_response(200, result.request, result.intents)

    def resume_after_info(
        self,
        principal: Principal,
        request_id: str | UUID,
        payload: Mapping[str, Any] | None = None,
    ) -> FacadeResponse:
        """Submitter answers an info request; the step is pending again (200)."""
        payload = payload or {}
        try:
            rid = _parse_uuid(request_id, "request_id")
            comment = _optional_str(payload, "comment") or ""
            expected_version = _optional_int(payload, "expected_version")
            result = self._execute(
                principal,
                "resume_after_info",
                lambda s: s.engine.resume_after_info(
                    rid, principal.id, comment=comment, expected_version=expected_version,
                ),
                request_id=str(rid),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "resume_after_info", exc)
        return self._transition_response(200, result.request, result.intents)

    def apply_batch(
        self, principal: Principal, payload: Mapping[str, Any],
    ) -> FacadeResponse:
        """Apply one decision to many requests (207 multi-status)."""
        try:
            decision = _parse_decision(payload)
            if decision not in _BATCH_DECISIONS:
                raise InvalidPayloadError(
                    "decision", "batch decisions must be approve or reject",
                )
            comment = _optional_str(payload, "comment") or ""
            raw_ids = payload.get("request_ids")
            if not isinstance(raw_ids, (list, tuple)):
                raise InvalidPayloadError("request_ids", "must be a list")
            request_ids = [_parse_uuid(r, "request_ids") for r in raw_ids]
            result = self._execute(
                principal,
                "apply_batch",
                lambda s: s.batch.apply_batch(principal.id, decision, comment, request_ids),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "apply_batch", exc)

        body = serialize_batch(result)
        body["notifications"] = self._notify(result.intents)
        return FacadeResponse(207, body)

    def get_approval(
        self, principal: Principal, request_id: str | UUID,
    ) -> FacadeResponse:
        try:
            rid = _parse_uuid(request_id, "request_id")
            request = self._execute(
                principal, "get_approval",
                lambda s: s.engine.get_request(rid),
                request_id=str(rid),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "get_approval", exc)
        return FacadeResponse(200, {"approval": serialize_request(request)})

    def list_pending(self, principal: Principal) -> FacadeResponse:
        """Pending work for the principal, including delegated-in work."""
        try:
            requests = self._execute(
                principal, "list_pending",
                lambda s: s.engine.pending_for_actor(principal.id),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "list_pending", exc)
        return FacadeResponse(
            200, {"approvals": [serialize_request(r) for r in requests]},
        )

    # -----------------------------------------------------------------
    # Administration
    # -----------------------------------------------------------------

    def add_delegation(
        self, principal: Principal, payload: Mapping[str, Any],
    ) -> FacadeResponse:
        """Delegate an approver's authority for a window (201).

        Approvers manage their own delegations; admins manage anyone's.
        """
        try:
            approver_id = _optional_str(payload, "approver_id") or principal.id
            self._require_owner_or_admin(principal, approver_id)
            delegate_id = _required_str(payload, "delegate_id")
            active_from = _optional_datetime(payload, "active_from") or self._clock.now()
            active_until = _optional_datetime(payload, "active_until")
            rule = self._execute(
                principal,
                "add_delegation",
                lambda s: s.resolver.add_rule(
                    approver_id, delegate_id, active_from, active_until,
                    created_by=principal.id,
                ),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "add_delegation", exc)
        return FacadeResponse(201, {"delegation": serialize_rule(rule)})

    def remove_delegation(
        self, principal: Principal, rule_id: str | UUID,
    ) -> FacadeResponse:
        def work(s: _Services):
            rule = s.resolver.get_rule(rid)
            self._require_owner_or_admin(principal, rule.approver_id)
            return s.resolver.remove_rule(rid)

        try:
            rid = _parse_uuid(rule_id, "rule_id")
            self._execute(principal, "remove_delegation", work)
        except ApprovalKernelError as exc:
            return self._error(principal, "remove_delegation", exc)
        return FacadeResponse(204)

    def register_template(
        self, principal: Principal, payload: Mapping[str, Any],
    ) -> FacadeResponse:
        """Create or update a chain template (201).  Admin only."""
        try:
            if principal.role != ADMIN_ROLE:
                raise NotAuthorizedError(
                    "chain_templates", principal.id, "admin role required",
                )
            try:
                template = parse_template(dict(payload)).to_template()
            except (KeyError, TypeError, ValueError) as exc:
                raise InvalidPayloadError("template", str(exc)) from exc
            stored = self._execute(
                principal,
                "register_template",
                lambda s: s.templates.register(template),
            )
        except ApprovalKernelError as exc:
            return self._error(principal, "register_template", exc)
        return FacadeResponse(201, {"template": serialize_template(stored)})

    def seed_templates(self, config: ApprovalConfigurationSet) -> int:
        """Store every configured chain template that is not stored yet."""
        system = Principal(id="system", role=ADMIN_ROLE)
        return self._execute(
            system, "seed_templates", lambda s: s.templates.seed_from_config(config),
        )

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _build(self, session: Session) -> _Services:
        store = ApprovalStore(session)
        templates = ChainTemplateService(session, store)
        resolver = DelegationResolver(session, self._clock)
        engine = WorkflowEngine(store, templates, self._directory, resolver, self._clock)
        return _Services(
            session=session,
            store=store,
            templates=templates,
            resolver=resolver,
            engine=engine,
            batch=BatchCoordinator(session, engine, self._clock),
        )

    def _in_transaction(self, work: Callable[[_Services], T]) -> T:
        with session_scope(self._session_factory) as session:
            return work(self._build(session))

    def _execute(
        self,
        principal: Principal,
        operation: str,
        work: Callable[[_Services], T],
        request_id: str | None = None,
    ) -> T:
        """Run ``work`` in its own transaction on a worker thread, bounded in time."""
        timeout = self._settings.operation_timeout_seconds
        with LogContext.bind(
            correlation_id=uuid4().hex, actor_id=principal.id, request_id=request_id,
        ):
            ctx = contextvars.copy_context()
            future = self._executor.submit(ctx.run, self._in_transaction, work)
            try:
                return future.result(timeout=timeout)
            except FuturesTimeoutError:
                logger.error(
                    "operation_timed_out",
                    extra={"operation": operation, "timeout_seconds": timeout},
                )
                raise WorkflowTimeoutError(operation, timeout, request_id) from None

    def _transition_response(
        self, status_code: int, request, intents: tuple[NotifyIntent, ...],
    ) -> FacadeResponse:
        return FacadeResponse(
            status_code,
            {
                "approval": serialize_request(request),
                "notifications": self._notify(intents),
            },
        )

    def _notify(self, intents: tuple[NotifyIntent, ...]) -> list[dict[str, Any]]:
        reports = dispatch_intents(
            self._notifier,
            intents,
            self._settings.notification_max_attempts,
            budget_seconds=self._settings.notification_budget_seconds,
        )
        return [r.to_dict() for r in reports]

    def _error(
        self, principal: Principal, operation: str, exc: ApprovalKernelError,
    ) -> FacadeResponse:
        response = error_response(exc)
        logger.info(
            "facade_operation_rejected",
            extra={
                "operation": operation,
                "actor_id": principal.id,
                "error_code": exc.code,
                "status_code": response.status_code,
            },
        )
        return response

    @staticmethod
    def _require_owner_or_admin(principal: Principal, approver_id: str) -> None:
        if principal.id != approver_id and principal.role != ADMIN_ROLE:
            raise NotAuthorizedError(
                f"delegation:{approver_id}",
                principal.id,
                "only the approver or an admin may manage delegations",
            )


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def _parse_uuid(value: Any, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise InvalidPayloadError(field, f"not a UUID: {value!r}") from exc


def _parse_decision(payload: Mapping[str, Any]) -> Decision:
    raw = payload.get("decision")
    try:
        return Decision(raw)
    except ValueError as exc:
        allowed = ", ".join(d.value for d in Decision)
        raise InvalidPayloadError("decision", f"must be one of {allowed}") from exc


def _required_str(payload: Mapping[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(field, "required non-empty string")
    return value


def _optional_str(payload: Mapping[str, Any], field: str) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidPayloadError(field, "must be a string")
    return value


def _optional_int(payload: Mapping[str, Any], field: str) -> int | None:
    value = payload.get(field)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPayloadError(field, "must be an integer")
    return value


def _optional_decimal(payload: Mapping[str, Any], field: str) -> Decimal | None:
    value = payload.get(field)
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidPayloadError(field, f"not a number: {value!r}") from exc


def _optional_datetime(payload: Mapping[str, Any], field: str) -> datetime | None:
    value = payload.get(field)
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise InvalidPayloadError(field, f"not an ISO-8601 timestamp: {value!r}") from exc
    if not isinstance(value, datetime):
        raise InvalidPayloadError(field, "must be an ISO-8601 timestamp")
    if value.tzinfo is None:
        raise InvalidPayloadError(field, "timestamp must include a UTC offset")
    return value
