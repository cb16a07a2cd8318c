"""
BatchCoordinator -- SAVEPOINT-per-item batch decisions.

Contract:
    Applies one decision (approve/reject) from one actor across a list of
    approval requests.  Each item is an independent ``WorkflowEngine.decide``
    call inside its own SAVEPOINT; a failing item is rolled back and
    recorded, and the remaining items carry on.

Architecture: approval_batch/services.  Imports from approval_batch.domain
    and kernel services.

Invariants enforced:
    - SAVEPOINT isolation per item (one failure doesn't abort the batch).
    - Items are processed in input order; results correspond one-to-one.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from approval_kernel.domain.approval import Decision
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import ApprovalKernelError
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.workflow_engine import WorkflowEngine

from approval_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
)

logger = get_logger("batch.coordinator")


class BatchCoordinator:
    """Batch decision runner with SAVEPOINT-per-item isolation.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT retry failed items; StaleStateError is reported, not
          masked.
    """

    def __init__(
        self,
        session: Session,
        engine: WorkflowEngine,
        clock: Clock | None = None,
    ):
        self._session = session
        self._engine = engine
        self._clock = clock or SystemClock()

    def apply_batch(
        self,
        actor_id: str,
        decision: Decision,
        comment: str,
        request_ids: Sequence[UUID],
    ) -> BatchRunResult:
        """Apply ``decision`` by ``actor_id`` to every request in order."""
        start_time = time.monotonic()
        started_at = self._clock.now()
        batch_id = uuid4()

        with LogContext.bind(batch_id=str(batch_id), actor_id=actor_id):
            logger.info(
                "batch_started",
                extra={
                    "decision": decision.value,
                    "total_items": len(request_ids),
                },
            )

            succeeded = 0
            failed = 0
            item_results: list[BatchItemResult] = []

            for index, request_id in enumerate(request_ids):
                item_result = self._apply_item(
                    index, request_id, actor_id, decision, comment,
                )
                if item_result.ok:
                    succeeded += 1
                else:
                    failed += 1
                item_results.append(item_result)

            if failed == 0:
                status = BatchRunStatus.COMPLETED
            elif succeeded == 0:
                status = BatchRunStatus.FAILED
            else:
                status = BatchRunStatus.PARTIALLY_COMPLETED

            completed_at = self._clock.now()
            total_duration = int((time.monotonic() - start_time) * 1000)

            logger.info(
                "batch_completed",
                extra={
                    "status": status.value,
                    "succeeded": succeeded,
                    "failed": failed,
                    "duration_ms": total_duration,
                },
            )

        return BatchRunResult(
            batch_id=batch_id,
            status=status,
            total_items=len(request_ids),
            succeeded=succeeded,
            failed=failed,
            items=tuple(item_results),
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=total_duration,
        )

    def _apply_item(
        self,
        index: int,
        request_id: UUID,
        actor_id: str,
        decision: Decision,
        comment: str,
    ) -> BatchItemResult:
        item_start = time.monotonic()
        item_started_at = self._clock.now()

        savepoint = self._session.begin_nested()
        try:
            result = self._engine.decide(
                request_id, actor_id, decision, comment=comment,
            )
            savepoint.commit()
        except ApprovalKernelError as exc:
            savepoint.rollback()
            return self._failed_item(
                index, request_id, exc, exc.code, item_start, item_started_at,
            )
        except Exception as exc:
            savepoint.rollback()
            return self._failed_item(
                index, request_id, exc, "UNHANDLED_EXCEPTION", item_start, item_started_at,
            )

        return BatchItemResult(
            item_index=index,
            request_id=request_id,
            status=BatchItemStatus.SUCCEEDED,
            request=result.request,
            intents=result.intents,
            duration_ms=int((time.monotonic() - item_start) * 1000),
            started_at=item_started_at,
            completed_at=self._clock.now(),
        )

    def _failed_item(
        self,
        index: int,
        request_id: UUID,
        exc: Exception,
        error_code: str,
        item_start: float,
        item_started_at: datetime,
    ) -> BatchItemResult:
        logger.warning(
            "batch_item_failed",
            extra={
                "item_index": index,
                "request_id": str(request_id),
                "error_code": error_code,
                "error_message": str(exc),
            },
        )
        return BatchItemResult(
            item_index=index,
            request_id=request_id,
            status=BatchItemStatus.FAILED,
            error=exc,
            error_code=error_code,
            error_message=str(exc),
            duration_ms=int((time.monotonic() - item_start) * 1000),
            started_at=item_started_at,
            completed_at=self._clock.now(),
        )
