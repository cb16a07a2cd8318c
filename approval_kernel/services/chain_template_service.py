"""
approval_kernel.services.chain_template_service -- Chain template registry.

Responsibility:
    Stores approval chain templates and guards their immutability once they
    are referenced by approval requests.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - A template is validated (non-empty, well-formed steps) before storage.
    - Changing the steps of a template referenced by an open request is
      refused; any other change bumps ``version``.
    - A template referenced by any request cannot be deleted.

Failure modes:
    - InvalidChainError on an empty or malformed template.
    - ChainTemplateNotFoundError on lookup of an unknown id.
    - TemplateInUseError on editing/deleting a referenced template.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import ApprovalChainTemplate
from approval_kernel.domain.workflow import validate_template
from approval_kernel.exceptions import (
    ChainTemplateNotFoundError,
    TemplateInUseError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.chain_template import ChainTemplateModel
from approval_kernel.services.approval_store import ApprovalStore

if TYPE_CHECKING:
    from approval_config.schema import ApprovalConfigurationSet

logger = get_logger("services.chain_templates")


class ChainTemplateService:
    """Persistent registry of approval chain templates."""

    def __init__(self, session: Session, store: ApprovalStore | None = None) -> None:
        self._session = session
        self._store = store or ApprovalStore(session)

    def get(self, template_id: str) -> ApprovalChainTemplate:
        return self._load_model(template_id).to_dto()

    def list_templates(self) -> list[ApprovalChainTemplate]:
        rows = self._session.execute(
            select(ChainTemplateModel).order_by(
                ChainTemplateModel.priority, ChainTemplateModel.template_id,
            )
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def select_for(
        self, amount: Decimal | None, department: str | None = None,
    ) -> ApprovalChainTemplate | None:
        """First template (by priority) whose criteria match, or None."""
        for template in self.list_templates():
            if template.criteria.matches(amount, department):
                return template
        return None

    def register(self, template: ApprovalChainTemplate) -> ApprovalChainTemplate:
        """Insert a new template or update an existing one.

        Returns the stored template (with its effective version).
        """
        validate_template(template)

        model = self._session.execute(
            select(ChainTemplateModel).where(
                ChainTemplateModel.template_id == template.template_id,
            )
        ).scalar_one_or_none()

        if model is None:
            self._session.add(ChainTemplateModel.from_dto(template))
            self._session.flush()
            logger.info(
                "chain_template_registered",
                extra={
                    "chain_template_id": template.template_id,
                    "version": template.version,
                    "step_count": len(template.steps),
                },
            )
            return template

        new_steps = ChainTemplateModel.serialize_steps(template)
        if new_steps != model.steps:
            in_use = self._store.count_for_template(
                template.template_id, open_only=True,
            )
            if in_use:
                raise TemplateInUseError(template.template_id, in_use)

        version = model.version + 1
        model.name = template.name
        model.steps = new_steps
        model.min_amount = template.criteria.min_amount
        model.max_amount = template.criteria.max_amount
        model.department = template.criteria.department
        model.priority = template.criteria.priority
        model.version = version
        self._session.flush()

        logger.info(
            "chain_template_updated",
            extra={
                "chain_template_id": template.template_id,
                "version": version,
                "step_count": len(template.steps),
            },
        )
        return replace(template, version=version)

    def delete(self, template_id: str) -> None:
        model = self._load_model(template_id)
        references = self._store.count_for_template(template_id)
        if references:
            raise TemplateInUseError(template_id, references)
        self._session.delete(model)
        self._session.flush()
        logger.info("chain_template_deleted", extra={"chain_template_id": template_id})

    def seed_from_config(self, config: ApprovalConfigurationSet) -> int:
        """Register every configured template that is not stored yet.

        Existing templates are left alone so that restarts never bump
        versions.  Returns the number of templates inserted.
        """
        inserted = 0
        for template in config.chain_templates():
            exists = self._session.execute(
                select(ChainTemplateModel.id).where(
                    ChainTemplateModel.template_id == template.template_id,
                )
            ).first()
            if exists is None:
                self.register(template)
                inserted += 1
        logger.info(
            "chain_templates_seeded",
            extra={"config_id": config.config_id, "inserted": inserted},
        )
        return inserted

    def _load_model(self, template_id: str) -> ChainTemplateModel:
        model = self._session.execute(
            select(ChainTemplateModel).where(
                ChainTemplateModel.template_id == template_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise ChainTemplateNotFoundError(template_id)
        return model
