"""
approval_kernel.services.workflow_engine -- Approval request lifecycle.

Responsibility:
    Opens approval requests from chain templates, records approver
    decisions, and resumes requests after the submitter supplies requested
    information.  State transitions themselves are the pure functions in
    ``domain/workflow.py``; this service does the lookups around them
    (templates, role directory, delegation) and persists the result.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Exactly one store write per successful operation, based on the
      version that was loaded (optimistic concurrency).
    - Only the assigned approver of the current step, or that approver's
      active delegate, may decide.
    - The submitter never decides a step of their own request.
    - A role-based step is resolved to a user when it becomes current,
      never earlier.

Failure modes:
    - ApprovalNotFoundError if request_id not found.
    - ApprovalAlreadyResolvedError on a decision against a terminal request.
    - StaleStateError on a version mismatch or a replayed decision.
    - InvalidApprovalTransitionError when deciding while info is requested.
    - NotAuthorizedError when the actor may not decide.
    - AmbiguousDelegationError when the approver's delegations overlap.
    - ApproverResolutionError when nobody holds the next step's role.
    - ChainTemplateNotFoundError / InvalidChainError at creation.
    - DuplicateApprovalRequestError when the report already has an open request.
    - SelfApprovalError when a step would be decided by the submitter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from approval_kernel.domain.approval import (
    ApprovalQuery,
    ApprovalRequest,
    Decision,
    NotifyIntent,
    OverallStatus,
    StepState,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import (
    apply_decision,
    open_request,
    resume,
    validate_template,
)
from approval_kernel.exceptions import (
    AmbiguousDelegationError,
    ApprovalAlreadyResolvedError,
    ApproverResolutionError,
    DuplicateApprovalRequestError,
    InvalidApprovalTransitionError,
    NotAuthorizedError,
    SelfApprovalError,
    StaleStateError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.approval_store import ApprovalStore
from approval_kernel.services.chain_template_service import ChainTemplateService
from approval_kernel.services.delegation_resolver import DelegationResolver
from approval_kernel.services.directory import RoleDirectory

logger = get_logger("services.workflow_engine")


@dataclass(frozen=True)
class WorkflowResult:
    """Persisted request state plus the notifications to dispatch."""

    request: ApprovalRequest
    intents: tuple[NotifyIntent, ...] = ()


class WorkflowEngine:
    """Drives approval requests through their chains."""

    def __init__(
        self,
        store: ApprovalStore,
        templates: ChainTemplateService,
        directory: RoleDirectory,
        delegation_resolver: DelegationResolver,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._templates = templates
        self._directory = directory
        self._resolver = delegation_resolver
        self._clock = clock or SystemClock()

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    def create_request(
        self,
        expense_report_id: str,
        chain_template_id: str,
        submitter_id: str,
        initial_approver_id: str | None = None,
    ) -> WorkflowResult:
        """Open a pending approval request for an expense report.

        The template's steps and version are snapshotted onto the request.
        ``initial_approver_id``, when given, overrides the first step's
        configured approver.  A report may have only one open request, and
        no step may be routed to the submitter.
        """
        existing = self._store.query(
            ApprovalQuery(expense_report_id=expense_report_id, open_only=True, limit=1),
        )
        if existing:
            raise DuplicateApprovalRequestError(
                expense_report_id, str(existing[0].request_id),
            )

        template = self._templates.get(chain_template_id)
        validate_template(template)

        for index, step in enumerate(template.steps[1:], start=1):
            if not step.approver.is_role and step.approver.ref == submitter_id:
                raise SelfApprovalError(expense_report_id, submitter_id, index)

        first_approver_id = initial_approver_id or self._resolve_approver(
            template.steps[0].approver.ref,
            is_role=template.steps[0].approver.is_role,
            step_index=0,
            submitter_id=submitter_id,
            subject_id=expense_report_id,
        )
        if first_approver_id == submitter_id:
            raise SelfApprovalError(expense_report_id, submitter_id, 0)

        request_id = uuid4()
        with LogContext.bind(request_id=str(request_id), actor_id=submitter_id):
            outcome = open_request(
                request_id=request_id,
                expense_report_id=expense_report_id,
                submitter_id=submitter_id,
                template=template,
                first_approver_id=first_approver_id,
                at=self._clock.now(),
            )
            saved = self._store.save(outcome.request, expected_version=None)

            logger.info(
                "approval_request_created",
                extra={
                    "expense_report_id": expense_report_id,
                    "chain_template_id": template.template_id,
                    "chain_template_version": template.version,
                    "step_count": len(template.steps),
                    "first_approver_id": first_approver_id,
                },
            )
        return WorkflowResult(request=saved, intents=outcome.intents)

    def decide(
        self,
        request_id: UUID,
        actor_id: str,
        decision: Decision,
        comment: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        """Record ``actor_id``'s decision on the current step."""
        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            record, version = self._store.load(request_id)

            if record.is_terminal:
                raise ApprovalAlreadyResolvedError(
                    str(request_id), record.overall_status.value, current_version=version,
                )
            if expected_version is not None and expected_version != version:
                raise StaleStateError(str(request_id), expected_version, version)
            if record.overall_status == OverallStatus.INFO_REQUESTED:
                raise InvalidApprovalTransitionError(
                    str(request_id), record.overall_status.value, decision.value,
                )

            at = self._clock.now()
            current = record.current_step
            on_behalf = self._authorize(record, current, actor_id, at)

            next_approver_id = None
            idx = record.current_step_index
            if decision == Decision.APPROVE and idx + 1 < len(record.steps):
                next_step = record.steps[idx + 1]
                next_approver_id = next_step.assigned_approver_id or self._resolve_approver(
                    next_step.approver.ref,
                    is_role=next_step.approver.is_role,
                    step_index=idx + 1,
                    submitter_id=record.submitter_id,
                    subject_id=str(request_id),
                )

            outcome = apply_decision(
                record,
                actor_id=actor_id,
                decision=decision,
                comment=comment,
                at=at,
                on_behalf=on_behalf,
                next_approver_id=next_approver_id,
            )
            saved = self._store.save(outcome.request, expected_version=version)

            logger.info(
                "approval_decision_recorded",
                extra={
                    "decision": decision.value,
                    "step_index": idx,
                    "on_behalf_of": current.assigned_approver_id if on_behalf else None,
                    "from_status": record.overall_status.value,
                    "to_status": saved.overall_status.value,
                    "version": saved.version,
                },
            )
        return WorkflowResult(request=saved, intents=outcome.intents)

    def resume_after_info(
        self,
        request_id: UUID,
        actor_id: str,
        comment: str = "",
        expected_version: int | None = None,
    ) -> WorkflowResult:
        """Return an info-requested request to its approver.  Submitter only."""
        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            record, version = self._store.load(request_id)
            if expected_version is not None and expected_version != version:
                raise StaleStateError(str(request_id), expected_version, version)

            outcome = resume(
                record, actor_id=actor_id, comment=comment, at=self._clock.now(),
            )
            saved = self._store.save(outcome.request, expected_version=version)

            logger.info(
                "approval_info_resumed",
                extra={
                    "step_index": saved.current_step_index,
                    "version": saved.version,
                },
            )
        return WorkflowResult(request=saved, intents=outcome.intents)

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        record, _ = self._store.load(request_id)
        return record

    def pending_for_approver(self, approver_id: str) -> list[ApprovalRequest]:
        """Pending requests whose current step is assigned to ``approver_id``."""
        return self._store.query(
            ApprovalQuery(
                assigned_approver_id=approver_id,
                overall_status=OverallStatus.PENDING,
            )
        )

    def pending_for_actor(self, actor_id: str) -> list[ApprovalRequest]:
        """Own pending work plus work delegated to ``actor_id`` right now."""
        at = self._clock.now()
        found: dict[UUID, ApprovalRequest] = {
            r.request_id: r for r in self.pending_for_approver(actor_id)
        }
        for approver_id in self._resolver.approvers_delegating_to(actor_id, at):
            try:
                acting = self._resolver.resolve_acting_approver(approver_id, at)
            except AmbiguousDelegationError as exc:
                logger.warning(
                    "delegated_work_skipped",
                    extra={
                        "approver_id": approver_id,
                        "delegate_id": actor_id,
                        "error_code": exc.code,
                        "rule_ids": exc.rule_ids,
                    },
                )
                continue
            if acting != actor_id:
                continue
            for request in self.pending_for_approver(approver_id):
                if request.submitter_id != actor_id:
                    found.setdefault(request.request_id, request)
        return sorted(found.values(), key=lambda r: (r.created_at, str(r.request_id)))

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _authorize(
        self,
        record: ApprovalRequest,
        current: StepState,
        actor_id: str,
        at: datetime,
    ) -> bool:
        """Return True when ``actor_id`` acts as a delegate, False as assignee.

        Raises NotAuthorizedError, or StaleStateError when the actor already
        decided an earlier step and is replaying that decision.
        """
        if actor_id == record.submitter_id:
            logger.warning(
                "self_approval_denied",
                extra={"step_index": current.step_index},
            )
            raise SelfApprovalError(
                str(record.request_id), actor_id, current.step_index,
            )

        assignee = current.assigned_approver_id
        if actor_id == assignee:
            return False
        if assignee is not None and self._resolver.is_active_delegate(actor_id, assignee, at):
            return True

        passed = record.steps[:record.current_step_index]
        if any(s.acting_approver_id == actor_id for s in passed):
            raise StaleStateError(
                str(record.request_id),
                expected_version=None,
                current_version=record.version,
                reason=f"{actor_id} already decided an earlier step",
            )

        logger.warning(
            "approval_decision_denied",
            extra={
                "step_index": current.step_index,
                "assigned_approver_id": assignee,
            },
        )
        raise NotAuthorizedError(
            str(record.request_id),
            actor_id,
            f"not the approver of step {current.step_index} nor an active delegate",
        )

    def _resolve_approver(
        self,
        ref: str,
        *,
        is_role: bool,
        step_index: int,
        submitter_id: str,
        subject_id: str,
    ) -> str:
        if not is_role:
            approver_id = ref
        else:
            approver_id = self._directory.approver_for_role(ref, submitter_id)
            if not approver_id:
                raise ApproverResolutionError(ref, step_index)
        if approver_id == submitter_id:
            raise SelfApprovalError(subject_id, submitter_id, step_index)
        return approver_id
