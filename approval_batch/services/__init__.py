"""approval_batch.services -- Batch decision runner."""

from approval_batch.services.coordinator import BatchCoordinator

__all__ = ["BatchCoordinator"]
