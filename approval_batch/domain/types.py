"""
approval_batch.domain.types -- Pure frozen dataclasses for batch decisions.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - One BatchItemResult per input request id, in input order.
    - ``succeeded + failed == len(items)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from approval_kernel.domain.approval import ApprovalRequest, NotifyIntent
from approval_kernel.exceptions import ApprovalKernelError


class BatchItemStatus(str, Enum):
    """Per-item outcome within a batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BatchRunStatus(str, Enum):
    """Batch-level outcome."""

    COMPLETED = "completed"  # Every item succeeded (or the batch was empty)
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # No item succeeded


@dataclass(frozen=True)
class BatchItemResult:
    """Result of one ``decide`` call inside a batch.

    Each item runs in its own SAVEPOINT -- failure of one item does not
    abort the batch.  ``request`` is set on success, ``error`` on failure.
    """

    item_index: int  # 0-indexed position in the input
    request_id: UUID
    status: BatchItemStatus
    request: ApprovalRequest | None = None
    intents: tuple[NotifyIntent, ...] = ()
    error: ApprovalKernelError | Exception | None = field(
        default=None, compare=False, repr=False,
    )
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status == BatchItemStatus.SUCCEEDED


@dataclass(frozen=True)
class BatchRunResult:
    """Result of applying one decision across many approval requests.

    Returned by ``BatchCoordinator.apply_batch()``.
    """

    batch_id: UUID
    status: BatchRunStatus
    total_items: int
    succeeded: int
    failed: int
    items: tuple[BatchItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @property
    def intents(self) -> tuple[NotifyIntent, ...]:
        """Notify-intents from every succeeded item, in item order."""
        return tuple(
            intent for item in self.items if item.ok for intent in item.intents
        )
