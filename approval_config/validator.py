"""
Configuration Validator (``approval_config.validator``).

Validates an ``ApprovalConfigurationSet`` before it is handed to the
services.  Errors block use of the set; warnings are logged by the caller.

Checks:
  * Template ids are unique.
  * Every template has at least one step.
  * Every step names exactly one of ``role`` / ``approver_id``.
  * Roles used by templates are present in the directory (warning only:
    a deployment may plug in its own directory).
  * Amount bounds are ordered; settings are positive.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from approval_config.schema import ApprovalConfigurationSet


@dataclass
class ConfigValidationResult:
    """``is_valid`` is True only when ``errors`` is empty."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: ApprovalConfigurationSet) -> ConfigValidationResult:
    result = ConfigValidationResult()

    _validate_template_uniqueness(config, result)
    _validate_template_steps(config, result)
    _validate_criteria(config, result)
    _validate_role_coverage(config, result)
    _validate_settings(config, result)

    return result


def _validate_template_uniqueness(
    config: ApprovalConfigurationSet, result: ConfigValidationResult
) -> None:
    seen: set[str] = set()
    for template in config.templates:
        if template.template_id in seen:
            result.add_error(
                f"Duplicate chain template: {template.template_id} appears more than once"
            )
        seen.add(template.template_id)


def _validate_template_steps(
    config: ApprovalConfigurationSet, result: ConfigValidationResult
) -> None:
    for template in config.templates:
        if not template.steps:
            result.add_error(f"Chain template '{template.template_id}' has no steps")
        for index, step in enumerate(template.steps):
            named = [v for v in (step.role, step.approver_id) if v]
            if len(named) != 1:
                result.add_error(
                    f"Chain template '{template.template_id}' step {index}: "
                    "exactly one of 'role' or 'approver_id' is required"
                )


def _validate_criteria(
    config: ApprovalConfigurationSet, result: ConfigValidationResult
) -> None:
    for template in config.templates:
        c = template.criteria
        if c.min_amount is not None and c.max_amount is not None and c.min_amount >= c.max_amount:
            result.add_error(
                f"Chain template '{template.template_id}': min_amount "
                f"{c.min_amount} must be below max_amount {c.max_amount}"
            )


def _validate_role_coverage(
    config: ApprovalConfigurationSet, result: ConfigValidationResult
) -> None:
    for template in config.templates:
        for step in template.steps:
            if step.role and step.role not in config.roles:
                result.add_warning(
                    f"Role '{step.role}' used by '{template.template_id}' "
                    "has no directory entry"
                )


def _validate_settings(
    config: ApprovalConfigurationSet, result: ConfigValidationResult
) -> None:
    settings = config.settings
    if settings.operation_timeout_seconds <= 0:
        result.add_error("settings.operation_timeout_seconds must be positive")
    if settings.notification_max_attempts < 1:
        result.add_error("settings.notification_max_attempts must be at least 1")
    if settings.notification_budget_seconds <= 0:
        result.add_error("settings.notification_budget_seconds must be positive")
    if settings.smtp.timeout_seconds <= 0:
        result.add_error("settings.smtp.timeout_seconds must be positive")
