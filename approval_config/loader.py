"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads a configuration set's ``root.yaml`` and parses it into typed
``approval_config.schema`` dataclass instances.  The single public entry
point for runtime config is ``approval_config.get_active_config()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends only on the kernel
domain types that the parsed templates become.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys in parsed dict  -> ``KeyError`` propagates.
* Non-numeric amount  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import (
    ApprovalConfigurationSet,
    ChainStepDef,
    ChainTemplateDef,
    ConfigStatus,
    ServiceSettings,
    SmtpSettings,
    TemplateCriteriaDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_amount(value: Any) -> Decimal | None:
    """Parse an optional money amount; floats go through str() first."""
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Cannot parse amount from {value!r}") from exc


def parse_step(data: dict[str, Any]) -> ChainStepDef:
    return ChainStepDef(
        name=data.get("name", ""),
        role=data.get("role"),
        approver_id=data.get("approver_id"),
    )


def parse_criteria(data: dict[str, Any] | None) -> TemplateCriteriaDef:
    data = data or {}
    return TemplateCriteriaDef(
        min_amount=parse_amount(data.get("min_amount")),
        max_amount=parse_amount(data.get("max_amount")),
        department=data.get("department"),
        priority=int(data.get("priority", 100)),
    )


def parse_template(data: dict[str, Any]) -> ChainTemplateDef:
    """Parse a ``ChainTemplateDef``; ``template_id`` and ``steps`` are required."""
    return ChainTemplateDef(
        template_id=data["template_id"],
        name=data.get("name", ""),
        version=int(data.get("version", 1)),
        steps=tuple(parse_step(s) for s in data["steps"] or ()),
        criteria=parse_criteria(data.get("criteria")),
    )


def parse_settings(data: dict[str, Any] | None) -> ServiceSettings:
    data = data or {}
    smtp = data.get("smtp") or {}
    return ServiceSettings(
        operation_timeout_seconds=float(data.get("operation_timeout_seconds", 5.0)),
        notification_max_attempts=int(data.get("notification_max_attempts", 1)),
        notification_budget_seconds=float(data.get("notification_budget_seconds", 10.0)),
        smtp=SmtpSettings(
            host=smtp.get("host"),
            port=int(smtp.get("port", 587)),
            use_tls=bool(smtp.get("use_tls", True)),
            username=smtp.get("username"),
            password=smtp.get("password"),
            sender=smtp.get("sender", "approvals@localhost"),
            timeout_seconds=float(smtp.get("timeout_seconds", 10.0)),
        ),
    )


def parse_configuration_set(data: dict[str, Any]) -> ApprovalConfigurationSet:
    """Build an ``ApprovalConfigurationSet`` from the parsed root document."""
    return ApprovalConfigurationSet(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        status=ConfigStatus(data.get("status", ConfigStatus.DRAFT.value)),
        templates=tuple(parse_template(t) for t in data.get("chain_templates") or ()),
        roles=dict(data.get("roles") or {}),
        role_overrides={
            submitter: dict(mapping or {})
            for submitter, mapping in (data.get("role_overrides") or {}).items()
        },
        recipients=dict(data.get("recipients") or {}),
        recipient_domain=data.get("recipient_domain"),
        settings=parse_settings(data.get("settings")),
    )


def load_configuration_set(set_dir: Path) -> ApprovalConfigurationSet:
    """Load ``<set_dir>/root.yaml``."""
    return parse_configuration_set(load_yaml_file(set_dir / "root.yaml"))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
