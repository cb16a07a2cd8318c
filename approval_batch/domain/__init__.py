"""
approval_batch.domain -- Pure types for batch decisions.

ZERO I/O.  All types are frozen dataclasses.
"""

from approval_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
)

__all__ = [
    "BatchItemResult",
    "BatchItemStatus",
    "BatchRunResult",
    "BatchRunStatus",
]
