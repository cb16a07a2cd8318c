"""
approval_kernel.services.delegation_resolver -- Who may act for whom, and when.

Responsibility:
    Persists delegation rules and answers "who is acting for approver X at
    time t".  Rule evaluation is delegated to the pure functions in
    ``domain/delegation.py``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Single hop: a delegate's own delegations are never followed.
    - Overlapping active rules for one approver are a fault
      (AmbiguousDelegationError), never silently resolved.
    - The resolver never touches approval records.

Failure modes:
    - InvalidDelegationRuleError on self-delegation or an inverted window.
    - DelegationRuleNotFoundError on removing an unknown rule.
    - AmbiguousDelegationError when two rules are active at the same instant.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from approval_kernel.domain import delegation as delegation_rules
from approval_kernel.domain.approval import DelegationRule
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import (
    DelegationRuleNotFoundError,
    InvalidDelegationRuleError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.delegation import DelegationRuleModel

logger = get_logger("services.delegation_resolver")


class DelegationResolver:
    """Delegation rule registry and resolver."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    # -----------------------------------------------------------------
    # Resolution
    # -----------------------------------------------------------------

    def resolve_acting_approver(
        self, approver_id: str, at: datetime | None = None,
    ) -> str:
        """Return the delegate acting for ``approver_id`` (or the approver)."""
        at = at or self._clock.now()
        return delegation_rules.resolve_acting_approver(
            self.rules_for(approver_id), approver_id, at,
        )

    def is_active_delegate(
        self, actor_id: str, approver_id: str, at: datetime | None = None,
    ) -> bool:
        """True when ``actor_id`` currently acts for ``approver_id``.

        Raises AmbiguousDelegationError when the approver's rules overlap.
        """
        if actor_id == approver_id:
            return False
        return self.resolve_acting_approver(approver_id, at) == actor_id

    def approvers_delegating_to(
        self, delegate_id: str, at: datetime | None = None,
    ) -> list[str]:
        """Approvers whose active rule at ``at`` names ``delegate_id``."""
        at = at or self._clock.now()
        rows = self._session.execute(
            select(DelegationRuleModel).where(
                DelegationRuleModel.delegate_id == delegate_id,
                DelegationRuleModel.active_from <= at,
                or_(
                    DelegationRuleModel.active_until.is_(None),
                    DelegationRuleModel.active_until > at,
                ),
            ).order_by(DelegationRuleModel.approver_id)
        ).scalars().all()
        return sorted({row.approver_id for row in rows})

    # -----------------------------------------------------------------
    # Rule management
    # -----------------------------------------------------------------

    def rules_for(self, approver_id: str) -> list[DelegationRule]:
        rows = self._session.execute(
            select(DelegationRuleModel)
            .where(DelegationRuleModel.approver_id == approver_id)
            .order_by(DelegationRuleModel.active_from)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def add_rule(
        self,
        approver_id: str,
        delegate_id: str,
        active_from: datetime,
        active_until: datetime | None = None,
        created_by: str | None = None,
    ) -> DelegationRule:
        """Register a delegation rule.

        Overlap with an existing rule is allowed here and surfaces as
        AmbiguousDelegationError at resolution time; it is logged as a
        warning so administrators can fix it.
        """
        if approver_id == delegate_id:
            raise InvalidDelegationRuleError(approver_id, "cannot delegate to self")
        if active_until is not None and active_until <= active_from:
            raise InvalidDelegationRuleError(
                approver_id, "active_until must be after active_from",
            )

        rule = DelegationRule(
            rule_id=uuid4(),
            approver_id=approver_id,
            delegate_id=delegate_id,
            active_from=active_from,
            active_until=active_until,
            created_by=created_by,
        )

        overlapping = [
            str(existing.rule_id)
            for existing in self.rules_for(approver_id)
            if delegation_rules.windows_overlap(existing, rule)
        ]

        self._session.add(DelegationRuleModel.from_dto(rule))
        self._session.flush()

        if overlapping:
            logger.warning(
                "delegation_rule_overlap",
                extra={
                    "rule_id": str(rule.rule_id),
                    "approver_id": approver_id,
                    "overlapping_rule_ids": overlapping,
                },
            )
        logger.info(
            "delegation_rule_added",
            extra={
                "rule_id": str(rule.rule_id),
                "approver_id": approver_id,
                "delegate_id": delegate_id,
                "active_from": active_from,
                "active_until": active_until,
            },
        )
        return rule

    def get_rule(self, rule_id: UUID) -> DelegationRule:
        return self._load_model(rule_id).to_dto()

    def remove_rule(self, rule_id: UUID) -> DelegationRule:
        model = self._load_model(rule_id)
        rule = model.to_dto()
        self._session.delete(model)
        self._session.flush()
        logger.info(
            "delegation_rule_removed",
            extra={"rule_id": str(rule_id), "approver_id": rule.approver_id},
        )
        return rule

    def _load_model(self, rule_id: UUID) -> DelegationRuleModel:
        model = self._session.execute(
            select(DelegationRuleModel).where(DelegationRuleModel.rule_id == rule_id)
        ).scalar_one_or_none()
        if model is None:
            raise DelegationRuleNotFoundError(str(rule_id))
        return model
