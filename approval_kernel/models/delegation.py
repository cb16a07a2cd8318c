"""
Module: approval_kernel.models.delegation
Responsibility: ORM persistence for time-boxed delegation rules.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - No self-delegation (check constraint; the resolver service also
      rejects it with a typed error before insert).
    - Window ordering: active_until, when present, is after active_from.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import DelegationRule


class DelegationRuleModel(Base):
    """Persistent delegation rule: ``approver_id`` -> ``delegate_id``."""

    __tablename__ = "delegation_rules"

    __table_args__ = (
        CheckConstraint(
            "approver_id <> delegate_id",
            name="ck_delegation_rules_not_self",
        ),
        CheckConstraint(
            "active_until IS NULL OR active_until > active_from",
            name="ck_delegation_rules_window",
        ),
        Index("ix_delegation_rules_approver", "approver_id", "active_from"),
        Index("ix_delegation_rules_delegate", "delegate_id", "active_from"),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    delegate_id: Mapped[str] = mapped_column(String(100), nullable=False)
    active_from: Mapped[datetime] = mapped_column(nullable=False)
    active_until: Mapped[datetime | None] = mapped_column(nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DelegationRule {self.rule_id} "
            f"{self.approver_id}->{self.delegate_id}>"
        )

    def to_dto(self) -> DelegationRule:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            DelegationRule as DelegationRuleDTO,
        )

        return DelegationRuleDTO(
            rule_id=self.rule_id,
            approver_id=self.approver_id,
            delegate_id=self.delegate_id,
            active_from=self.active_from,
            active_until=self.active_until,
            created_by=self.created_by,
        )

    @classmethod
    def from_dto(cls, dto: DelegationRule) -> DelegationRuleModel:
        """Create ORM model from domain DTO."""
        return cls(
            rule_id=dto.rule_id,
            approver_id=dto.approver_id,
            delegate_id=dto.delegate_id,
            active_from=dto.active_from,
            active_until=dto.active_until,
            created_by=dto.created_by,
        )
