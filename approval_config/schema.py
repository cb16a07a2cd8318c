"""
ApprovalConfigurationSet schema.

Defines the human-authored, reviewable source artifact for approval
configuration: chain templates and their selection criteria, the static
role directory, notification recipients, and service settings.  YAML
fragments are parsed into these types by the loader.

Key distinction:
  ChainTemplateDef       = source artifact (what the YAML says)
  ApprovalChainTemplate  = kernel value the Workflow Engine consumes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, unique
from typing import Mapping

from approval_kernel.domain.approval import (
    ApprovalChainTemplate,
    ApprovalStep,
    ApproverSpec,
    FixedApprover,
    RoleApprover,
    TemplateCriteria,
)
from approval_kernel.services.directory import StaticRoleDirectory


@unique
class ConfigStatus(str, Enum):
    """Lifecycle status for a configuration set.

    Only PUBLISHED sets are picked up by ``get_active_config()`` unless a
    set is requested by name.
    """

    DRAFT = "draft"
    PUBLISHED = "published"
    SUPERSEDED = "superseded"


# ---------------------------------------------------------------------------
# Chain templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainStepDef:
    """One configured chain step.  Exactly one of role / approver_id is set."""

    name: str = ""
    role: str | None = None
    approver_id: str | None = None

    def to_approver(self) -> ApproverSpec:
        if self.role is not None:
            return RoleApprover(self.role)
        return FixedApprover(self.approver_id or "")


@dataclass(frozen=True)
class TemplateCriteriaDef:
    """When a template applies.  ``min_amount`` inclusive, ``max_amount`` exclusive."""

    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    department: str | None = None
    priority: int = 100


@dataclass(frozen=True)
class ChainTemplateDef:
    """A configured approval chain template."""

    template_id: str
    steps: tuple[ChainStepDef, ...]
    name: str = ""
    version: int = 1
    criteria: TemplateCriteriaDef = field(default_factory=TemplateCriteriaDef)

    def to_template(self) -> ApprovalChainTemplate:
        return ApprovalChainTemplate(
            template_id=self.template_id,
            name=self.name,
            version=self.version,
            steps=tuple(
                ApprovalStep(approver=s.to_approver(), name=s.name)
                for s in self.steps
            ),
            criteria=TemplateCriteria(
                min_amount=self.criteria.min_amount,
                max_amount=self.criteria.max_amount,
                department=self.criteria.department,
                priority=self.criteria.priority,
            ),
        )


# ---------------------------------------------------------------------------
# Service settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SmtpSettings:
    """Outbound mail settings.  No host means log-only delivery."""

    host: str | None = None
    port: int = 587
    use_tls: bool = True
    username: str | None = None
    password: str | None = None
    sender: str = "approvals@localhost"
    timeout_seconds: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass(frozen=True)
class ServiceSettings:
    """Facade-level settings."""

    operation_timeout_seconds: float = 5.0
    notification_max_attempts: int = 1
    notification_budget_seconds: float = 10.0
    smtp: SmtpSettings = field(default_factory=SmtpSettings)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalConfigurationSet:
    """Human-authored, reviewable approval configuration.

    Attributes:
        config_id: Unique identifier (e.g., "EXPENSE-APPROVALS-DEFAULT")
        version: Configuration version number
        checksum: SHA-256 of canonical serialization
        status: Lifecycle status
        templates: Chain template definitions
        roles: Role -> approver id
        role_overrides: Submitter id -> {role: approver id}
        recipients: User id -> e-mail address for notifications
        recipient_domain: Mail domain for users without a ``recipients`` entry
        settings: Service settings
    """

    config_id: str
    version: int
    checksum: str
    status: ConfigStatus
    templates: tuple[ChainTemplateDef, ...]
    roles: Mapping[str, str] = field(default_factory=dict)
    role_overrides: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    recipients: Mapping[str, str] = field(default_factory=dict)
    recipient_domain: str | None = None
    settings: ServiceSettings = field(default_factory=ServiceSettings)

    def chain_templates(self) -> list[ApprovalChainTemplate]:
        """Kernel templates, highest priority (lowest number) first."""
        ordered = sorted(
            self.templates, key=lambda t: (t.criteria.priority, t.template_id),
        )
        return [t.to_template() for t in ordered]

    def template(self, template_id: str) -> ApprovalChainTemplate | None:
        for t in self.templates:
            if t.template_id == template_id:
                return t.to_template()
        return None

    def role_directory(self) -> StaticRoleDirectory:
        return StaticRoleDirectory(self.roles, self.role_overrides)

    def recipient_address(self, user_id: str) -> str | None:
        """Explicit ``recipients`` entry, else ``<user_id>@<recipient_domain>``."""
        address = self.recipients.get(user_id)
        if address is None and self.recipient_domain:
            address = f"{user_id}@{self.recipient_domain}"
        return address
