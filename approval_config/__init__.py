"""
approval_config -- single public entrypoint for approval configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``: chain templates and their selection criteria,
    the static role directory, notification recipients, and service
    settings (operation timeout, notification attempts, SMTP).

Architecture position:
    Configuration -- YAML-driven.  This package sits above
    ``approval_kernel`` and below ``approval_services``.  The kernel MUST
    NEVER import from ``approval_config`` at runtime.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Validation: a set with errors is never returned.
    - Deterministic checksum: same YAML always produces the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- no matching configuration set.
    - ``ValueError`` -- schema or structural validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``APPROVAL_CONFIG_TRACE`` log entry containing the config_id, version,
    checksum, and template count, tying approval requests back to the
    configuration that created them.
"""

from __future__ import annotations

from pathlib import Path

from approval_config.loader import load_configuration_set
from approval_config.schema import (
    ApprovalConfigurationSet,
    ConfigStatus,
    ServiceSettings,
    SmtpSettings,
)
from approval_config.validator import validate_configuration
from approval_kernel.logging_config import get_logger

_logger = get_logger("config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"

__all__ = [
    "ApprovalConfigurationSet",
    "ConfigStatus",
    "ServiceSettings",
    "SmtpSettings",
    "get_active_config",
]


def get_active_config(
    config_dir: Path | None = None,
    set_name: str | None = None,
) -> ApprovalConfigurationSet:
    """The ONLY public configuration entrypoint.

    Args:
        config_dir: Override path to configuration sets directory.
            Defaults to approval_config/sets/.
        set_name: Load this set regardless of status.  Otherwise the
            single PUBLISHED set is used.

    Raises:
        FileNotFoundError: If no matching configuration set is found.
        ValueError: If configuration validation fails, or several sets
            are published at once.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR

    config_set = _find_config(sets_dir, set_name)

    validation = validate_configuration(config_set)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning(
            "approval_config_warning",
            extra={"config_set_id": config_set.config_id, "warning": warning},
        )

    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "trace_type": "APPROVAL_CONFIG_TRACE",
            "config_set_id": config_set.config_id,
            "config_set_version": config_set.version,
            "checksum": config_set.checksum,
            "template_count": len(config_set.templates),
            "role_count": len(config_set.roles),
        },
    )
    return config_set


def _find_config(sets_dir: Path, set_name: str | None) -> ApprovalConfigurationSet:
    if not sets_dir.is_dir():
        raise FileNotFoundError(f"Configuration sets directory not found: {sets_dir}")

    if set_name is not None:
        set_dir = sets_dir / set_name
        if not (set_dir / "root.yaml").exists():
            raise FileNotFoundError(f"Configuration set not found: {set_dir}")
        return load_configuration_set(set_dir)

    published: list[ApprovalConfigurationSet] = []
    for subdir in sorted(sets_dir.iterdir()):
        if not (subdir / "root.yaml").exists():
            continue
        config_set = load_configuration_set(subdir)
        if config_set.status == ConfigStatus.PUBLISHED:
            published.append(config_set)

    if not published:
        raise FileNotFoundError(f"No published configuration set in {sets_dir}")
    if len(published) > 1:
        raise ValueError(
            "Multiple published configuration sets: "
            + ", ".join(c.config_id for c in published)
        )
    return published[0]
