"""
Module: approval_kernel.models.chain_template
Responsibility: ORM persistence for approval chain templates.

Architecture position: Kernel > Models.  May import from db/base.py only.

Steps are stored as a JSON list of ``{"kind", "ref", "name"}`` objects;
requests snapshot them at creation, so a stored template is only read when
a new request opens.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ApprovalChainTemplate


class ChainTemplateModel(Base):
    """Persistent chain template, keyed by ``template_id``."""

    __tablename__ = "approval_chain_templates"

    template_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True,
    )
    name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    min_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    max_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=100)

    def __repr__(self) -> str:
        return f"<ChainTemplate {self.template_id} v{self.version}>"

    def to_dto(self) -> ApprovalChainTemplate:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalChainTemplate as TemplateDTO,
            ApprovalStep,
            ApproverKind,
            ApproverSpec,
            TemplateCriteria,
        )

        return TemplateDTO(
            template_id=self.template_id,
            name=self.name,
            version=self.version,
            steps=tuple(
                ApprovalStep(
                    approver=ApproverSpec(
                        kind=ApproverKind(s["kind"]), ref=s["ref"],
                    ),
                    name=s.get("name", ""),
                )
                for s in self.steps
            ),
            criteria=TemplateCriteria(
                min_amount=self.min_amount,
                max_amount=self.max_amount,
                department=self.department,
                priority=self.priority,
            ),
        )

    @staticmethod
    def serialize_steps(template: ApprovalChainTemplate) -> list[dict[str, Any]]:
        return [
            {
                "kind": step.approver.kind.value,
                "ref": step.approver.ref,
                "name": step.name,
            }
            for step in template.steps
        ]

    @classmethod
    def from_dto(cls, dto: ApprovalChainTemplate) -> ChainTemplateModel:
        """Create ORM model from domain DTO."""
        return cls(
            template_id=dto.template_id,
            name=dto.name,
            version=dto.version,
            steps=cls.serialize_steps(dto),
            min_amount=dto.criteria.min_amount,
            max_amount=dto.criteria.max_amount,
            department=dto.criteria.department,
            priority=dto.criteria.priority,
        )
