"""
approval_kernel.services.approval_store -- Versioned persistence for approval requests.

Responsibility:
    Loads and saves ``ApprovalRequest`` records with optimistic concurrency.
    A save is one atomic unit: header, step rows, and new history rows are
    written inside a single SAVEPOINT.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - ``version`` increases by exactly one per successful save.
    - A save based on a stale version writes nothing.
    - History rows are only ever appended (ORM guard in models/approval.py).
    - Records that fail ``check_request_invariants`` are never written.

Failure modes:
    - ApprovalNotFoundError if request_id not found.
    - StaleStateError on version mismatch, or when inserting an id that
      already exists.
    - DuplicateApprovalRequestError when inserting a second open request for
      the same expense report.
    - ValueError when the record violates a structural invariant.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    OPEN_OVERALL_STATUSES,
    ApprovalQuery,
    ApprovalRequest,
    StepStatus,
)
from approval_kernel.domain.workflow import check_request_invariants
from approval_kernel.exceptions import (
    ApprovalNotFoundError,
    DuplicateApprovalRequestError,
    StaleStateError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalRequestModel,
    ApprovalStepModel,
)

logger = get_logger("services.approval_store")

_OPEN_STATUS_VALUES = sorted(s.value for s in OPEN_OVERALL_STATUSES)


class ApprovalStore:
    """Optimistically versioned store for approval requests.

    The store never commits; the caller owns the transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def load(self, request_id: UUID) -> tuple[ApprovalRequest, int]:
        """Return the current record and its version."""
        model = self._load_model(request_id)
        record = model.to_dto()
        return record, record.version

    def query(self, query: ApprovalQuery) -> list[ApprovalRequest]:
        """Return records matching every non-None filter, oldest first."""
        stmt = select(ApprovalRequestModel)

        if query.overall_status is not None:
            stmt = stmt.where(
                ApprovalRequestModel.overall_status == query.overall_status.value,
            )
        if query.submitter_id is not None:
            stmt = stmt.where(ApprovalRequestModel.submitter_id == query.submitter_id)
        if query.expense_report_id is not None:
            stmt = stmt.where(
                ApprovalRequestModel.expense_report_id == query.expense_report_id,
            )
        if query.chain_template_id is not None:
            stmt = stmt.where(
                ApprovalRequestModel.chain_template_id == query.chain_template_id,
            )
        if query.open_only:
            stmt = stmt.where(
                ApprovalRequestModel.overall_status.in_(_OPEN_STATUS_VALUES),
            )
        if query.assigned_approver_id is not None:
            # Only the step at the current index is waiting on someone.
            stmt = stmt.join(
                ApprovalStepModel,
                (ApprovalStepModel.request_id == ApprovalRequestModel.request_id)
                & (ApprovalStepModel.step_index == ApprovalRequestModel.current_step_index),
            ).where(
                ApprovalStepModel.assigned_approver_id == query.assigned_approver_id,
                ApprovalStepModel.status == StepStatus.PENDING.value,
            )

        stmt = stmt.order_by(
            ApprovalRequestModel.created_at, ApprovalRequestModel.request_id,
        ).execution_options(populate_existing=True)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        models = self._session.execute(stmt).scalars().all()
        return [m.to_dto() for m in models]

    def count_for_template(
        self, chain_template_id: str, *, open_only: bool = False,
    ) -> int:
        """Number of requests referencing a chain template."""
        stmt = select(func.count()).select_from(ApprovalRequestModel).where(
            ApprovalRequestModel.chain_template_id == chain_template_id,
        )
        if open_only:
            stmt = stmt.where(
                ApprovalRequestModel.overall_status.in_(_OPEN_STATUS_VALUES),
            )
        return self._session.execute(stmt).scalar_one()

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def save(
        self,
        request: ApprovalRequest,
        expected_version: int | None,
    ) -> ApprovalRequest:
        """Persist ``request`` and return it stamped with its new version.

        ``expected_version=None`` inserts a new record.  Otherwise the write
        only lands if the stored version still equals ``expected_version``.
        """
        violations = check_request_invariants(request)
        if violations:
            raise ValueError(
                f"Refusing to save approval {request.request_id}: "
                + "; ".join(violations)
            )

        try:
            with self._session.begin_nested():
                if expected_version is None:
                    new_version = self._insert(request)
                else:
                    new_version = self._update(request, expected_version)
                self._session.flush()
        except IntegrityError as exc:
            # uq_approval_requests_open_report: one open request per report.
            if expected_version is not None:
                raise
            raise DuplicateApprovalRequestError(request.expense_report_id) from exc

        logger.debug(
            "approval_request_saved",
            extra={
                "request_id": str(request.request_id),
                "version": new_version,
                "overall_status": request.overall_status.value,
                "current_step_index": request.current_step_index,
            },
        )
        return replace(request, version=new_version)

    def _insert(self, request: ApprovalRequest) -> int:
        current = self._current_version(request.request_id)
        if current is not None:
            raise StaleStateError(
                str(request.request_id),
                expected_version=None,
                current_version=current,
                reason="approval request already exists",
            )

        self._session.add(ApprovalRequestModel.from_dto(request, version=1))
        for step in request.steps:
            self._session.add(ApprovalStepModel.from_dto(request.request_id, step))
        for entry in request.history:
            self._session.add(ApprovalHistoryModel.from_dto(request.request_id, entry))
        return 1

    def _update(self, request: ApprovalRequest, expected_version: int) -> int:
        new_version = expected_version + 1
        result = self._session.execute(
            update(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.request_id == request.request_id,
                ApprovalRequestModel.version == expected_version,
            )
            .values(
                current_step_index=request.current_step_index,
                overall_status=request.overall_status.value,
                updated_at=request.updated_at,
                version=new_version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self._current_version(request.request_id)
            if current is None:
                raise ApprovalNotFoundError(str(request.request_id))
            logger.warning(
                "approval_save_conflict",
                extra={
                    "request_id": str(request.request_id),
                    "expected_version": expected_version,
                    "current_version": current,
                },
            )
            raise StaleStateError(
                str(request.request_id),
                expected_version=expected_version,
                current_version=current,
            )

        step_rows = {
            row.step_index: row
            for row in self._session.execute(
                select(ApprovalStepModel).where(
                    ApprovalStepModel.request_id == request.request_id,
                )
            ).scalars()
        }
        for step in request.steps:
            row = step_rows.get(step.step_index)
            if row is None:
                self._session.add(ApprovalStepModel.from_dto(request.request_id, step))
            else:
                row.apply_dto(step)

        stored = self._session.execute(
            select(func.max(ApprovalHistoryModel.sequence)).where(
                ApprovalHistoryModel.request_id == request.request_id,
            )
        ).scalar_one() or 0
        for entry in request.history:
            if entry.sequence > stored:
                self._session.add(
                    ApprovalHistoryModel.from_dto(request.request_id, entry),
                )
        return new_version

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _load_model(self, request_id: UUID) -> ApprovalRequestModel:
        model = self._session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.request_id == request_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise ApprovalNotFoundError(str(request_id))
        return model

    def _current_version(self, request_id: UUID) -> int | None:
        return self._session.execute(
            select(ApprovalRequestModel.version).where(
                ApprovalRequestModel.request_id == request_id,
            )
        ).scalar_one_or_none()
