"""Services for the approval kernel (write side)."""

from approval_kernel.services.approval_store import ApprovalStore
from approval_kernel.services.chain_template_service import ChainTemplateService
from approval_kernel.services.delegation_resolver import DelegationResolver
from approval_kernel.services.directory import RoleDirectory, StaticRoleDirectory
from approval_kernel.services.workflow_engine import WorkflowEngine, WorkflowResult

__all__ = [
    "ApprovalStore",
    "ChainTemplateService",
    "DelegationResolver",
    "RoleDirectory",
    "StaticRoleDirectory",
    "WorkflowEngine",
    "WorkflowResult",
]
