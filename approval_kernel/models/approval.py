"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval requests, their per-step state,
    and their append-only history.

Architecture position: Kernel > Models.  May import from db/base.py only
    (domain DTOs are imported lazily inside to_dto/from_dto).

Invariants enforced:
    - Optimistic concurrency: ``version`` is bumped by the store on every
      save through a conditional UPDATE; it is never written from a DTO.
    - Step uniqueness: UNIQUE(request_id, step_index).
    - History is append-only: UNIQUE(request_id, sequence) plus ORM-level
      before_update / before_delete guards.

Failure modes:
    - IntegrityError on a duplicate step or history sequence.
    - ImmutabilityViolationError on history UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import (
        ApprovalRequest,
        HistoryEntry,
        StepState,
    )


# At most one open request per expense report.
_OPEN_STATUS_PREDICATE = "overall_status IN ('pending', 'info_requested')"


class ApprovalRequestModel(Base):
    """Persistent approval request header.

    Contract:
        ``overall_status`` and ``current_step_index`` are denormalized from
        the step rows for querying; the domain layer derives them.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "overall_status IN ('pending', 'approved', 'rejected', "
            "'info_requested')",
            name="ck_approval_requests_valid_status",
        ),
        CheckConstraint(
            "current_step_index >= 0",
            name="ck_approval_requests_step_index",
        ),
        Index(
            "ix_approval_requests_status_created",
            "overall_status", "created_at",
        ),
        Index("ix_approval_requests_submitter", "submitter_id"),
        Index("ix_approval_requests_expense_report", "expense_report_id"),
        Index(
            "uq_approval_requests_open_report",
            "expense_report_id",
            unique=True,
            sqlite_where=text(_OPEN_STATUS_PREDICATE),
            postgresql_where=text(_OPEN_STATUS_PREDICATE),
        ),
        Index("ix_approval_requests_template", "chain_template_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    expense_report_id: Mapped[str] = mapped_column(String(100), nullable=False)
    submitter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    chain_template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    chain_template_version: Mapped[int] = mapped_column(nullable=False)
    current_step_index: Mapped[int] = mapped_column(nullable=False, default=0)
    overall_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="pending",
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        "ApprovalStepModel",
        back_populates="request",
        primaryjoin="ApprovalRequestModel.request_id == ApprovalStepModel.request_id",
        order_by="ApprovalStepModel.step_index",
        lazy="selectin",
    )
    history: Mapped[list["ApprovalHistoryModel"]] = relationship(
        "ApprovalHistoryModel",
        primaryjoin="ApprovalRequestModel.request_id == ApprovalHistoryModel.request_id",
        order_by="ApprovalHistoryModel.sequence",
        lazy="selectin",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.request_id} "
            f"report={self.expense_report_id} "
            f"status={self.overall_status} v{self.version}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            OverallStatus,
        )

        return ApprovalRequestDTO(
            request_id=self.request_id,
            expense_report_id=self.expense_report_id,
            submitter_id=self.submitter_id,
            chain_template_id=self.chain_template_id,
            chain_template_version=self.chain_template_version,
            steps=tuple(s.to_dto() for s in self.steps),
            current_step_index=self.current_step_index,
            overall_status=OverallStatus(self.overall_status),
            created_at=self.created_at,
            updated_at=self.updated_at,
            history=tuple(h.to_dto() for h in self.history),
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRequest, version: int = 1) -> ApprovalRequestModel:
        """Create ORM header from domain DTO (steps and history are separate rows)."""
        return cls(
            request_id=dto.request_id,
            expense_report_id=dto.expense_report_id,
            submitter_id=dto.submitter_id,
            chain_template_id=dto.chain_template_id,
            chain_template_version=dto.chain_template_version,
            current_step_index=dto.current_step_index,
            overall_status=dto.overall_status.value,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
            version=version,
        )


class ApprovalStepModel(Base):
    """Runtime state of one chain step.  Mutable until the request is terminal."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "step_index",
            name="uq_approval_steps_request_index",
        ),
        CheckConstraint(
            "status IN ('waiting', 'pending', 'approved', 'rejected', "
            "'info_requested', 'delegated')",
            name="ck_approval_steps_valid_status",
        ),
        CheckConstraint(
            "approver_kind IN ('fixed', 'role')",
            name="ck_approval_steps_approver_kind",
        ),
        Index(
            "ix_approval_steps_assignee_status",
            "assigned_approver_id", "status",
        ),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.request_id"),
        nullable=False,
    )
    step_index: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    approver_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    approver_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    assigned_approver_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    acting_approver_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel",
        back_populates="steps",
        foreign_keys=[request_id],
        primaryjoin="ApprovalStepModel.request_id == ApprovalRequestModel.request_id",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalStep {self.request_id}#{self.step_index} "
            f"{self.approver_kind}:{self.approver_ref} status={self.status}>"
        )

    def to_dto(self) -> StepState:
        from approval_kernel.domain.approval import (
            ApproverKind,
            ApproverSpec,
            StepState as StepStateDTO,
            StepStatus,
        )

        return StepStateDTO(
            step_index=self.step_index,
            approver=ApproverSpec(
                kind=ApproverKind(self.approver_kind), ref=self.approver_ref,
            ),
            status=StepStatus(self.status),
            assigned_approver_id=self.assigned_approver_id,
            acting_approver_id=self.acting_approver_id,
            decided_at=self.decided_at,
            comment=self.comment,
            name=self.name,
        )

    @classmethod
    def from_dto(cls, request_id: UUID, dto: StepState) -> ApprovalStepModel:
        return cls(
            request_id=request_id,
            step_index=dto.step_index,
            name=dto.name,
            approver_kind=dto.approver.kind.value,
            approver_ref=dto.approver.ref,
            status=dto.status.value,
            assigned_approver_id=dto.assigned_approver_id,
            acting_approver_id=dto.acting_approver_id,
            decided_at=dto.decided_at,
            comment=dto.comment,
        )

    def apply_dto(self, dto: StepState) -> None:
        """Copy the mutable step fields from a DTO onto this row."""
        self.status = dto.status.value
        self.assigned_approver_id = dto.assigned_approver_id
        self.acting_approver_id = dto.acting_approver_id
        self.decided_at = dto.decided_at
        self.comment = dto.comment


class ApprovalHistoryModel(Base):
    """Persistent history entry. Append-only.

    Contract:
        Entries are immutable once created -- no UPDATE, no DELETE.
    """

    __tablename__ = "approval_history"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "sequence",
            name="uq_approval_history_sequence",
        ),
        Index("ix_approval_history_request_id", "request_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.request_id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    step_index: Mapped[int] = mapped_column(nullable=False)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalHistory {self.request_id}#{self.sequence} "
            f"{self.action} {self.from_status}->{self.to_status}>"
        )

    def to_dto(self) -> HistoryEntry:
        from approval_kernel.domain.approval import (
            HistoryAction,
            HistoryEntry as HistoryEntryDTO,
            OverallStatus,
        )

        return HistoryEntryDTO(
            sequence=self.sequence,
            occurred_at=self.occurred_at,
            actor_id=self.actor_id,
            action=HistoryAction(self.action),
            from_status=OverallStatus(self.from_status),
            to_status=OverallStatus(self.to_status),
            step_index=self.step_index,
            comment=self.comment,
        )

    @classmethod
    def from_dto(cls, request_id: UUID, dto: HistoryEntry) -> ApprovalHistoryModel:
        return cls(
            request_id=request_id,
            sequence=dto.sequence,
            occurred_at=dto.occurred_at,
            actor_id=dto.actor_id,
            action=dto.action.value,
            from_status=dto.from_status.value,
            to_status=dto.to_status.value,
            step_index=dto.step_index,
            comment=dto.comment,
        )


# =============================================================================
# ORM-Level Immutability for History (Append-Only)
# =============================================================================


@event.listens_for(ApprovalHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    """Prevent updates to approval history records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=f"{target.request_id}#{target.sequence}",
        reason="Approval history is append-only -- cannot modify",
    )


@event.listens_for(ApprovalHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """Prevent deletion of approval history records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=f"{target.request_id}#{target.sequence}",
        reason="Approval history is append-only -- cannot delete",
    )
