"""ORM models for the approval kernel."""

from approval_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalRequestModel,
    ApprovalStepModel,
)
from approval_kernel.models.chain_template import ChainTemplateModel
from approval_kernel.models.delegation import DelegationRuleModel

__all__ = [
    "ApprovalRequestModel",
    "ApprovalStepModel",
    "ApprovalHistoryModel",
    "ChainTemplateModel",
    "DelegationRuleModel",
    "import_all_models",
]


def import_all_models() -> None:
    """Ensure every model is registered on Base.metadata.

    Importing this package already does so; the function exists so callers
    that create tables have an explicit hook.
    """
