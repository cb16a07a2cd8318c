"""
Tests for approval_config -- YAML loading, validation and the public entrypoint.

Covers:
- get_active_config(): default set, trace log, deterministic checksum
- validation errors block a set; role coverage is a warning
- explicit set_name and multiple published sets
- the role directory and recipient addresses built from config
"""

import pytest
import yaml

from approval_config import ConfigStatus, get_active_config
from approval_config.loader import compute_checksum, parse_configuration_set
from approval_config.validator import validate_configuration
from approval_kernel.domain.approval import ApproverKind


def write_set(root, name, document):
    set_dir = root / name
    set_dir.mkdir(parents=True)
    (set_dir / "root.yaml").write_text(yaml.safe_dump(document))
    return set_dir


def minimal_document(**overrides):
    document = {
        "config_id": "TEST",
        "version": 1,
        "status": "published",
        "roles": {"manager": "usr-manager"},
        "chain_templates": [
            {
                "template_id": "standard",
                "steps": [{"name": "Manager", "role": "manager"}],
            }
        ],
    }
    document.update(overrides)
    return document


class TestDefaultSet:
    def test_loads_published_default(self, captured_logs):
        config = get_active_config()

        assert config.config_id == "EXPENSE-APPROVALS-DEFAULT"
        assert config.status == ConfigStatus.PUBLISHED
        assert {t.template_id for t in config.templates} == {
            "travel_small", "high_value", "standard",
        }
        assert not config.settings.smtp.enabled

        traces = [r for r in captured_logs() if r["message"] == "APPROVAL_CONFIG_TRACE"]
        assert traces and traces[-1]["checksum"] == config.checksum

    def test_checksum_is_deterministic(self):
        assert get_active_config().checksum == get_active_config().checksum
        assert compute_checksum({"b": 1, "a": 2}) == compute_checksum({"a": 2, "b": 1})

    def test_role_directory_and_recipients(self):
        config = get_active_config()
        directory = config.role_directory()
        assert directory.approver_for_role("finance", "anyone") == "usr-finance"
        assert config.recipient_address("usr-cfo") == "cfo@example.com"
        assert config.recipient_address("usr-employee") == "usr-employee@example.com"

    def test_no_recipient_domain_means_no_fallback(self):
        config = parse_configuration_set(
            minimal_document(recipients={"usr-manager": "boss@example.com"}),
        )
        assert config.recipient_address("usr-manager") == "boss@example.com"
        assert config.recipient_address("usr-employee") is None

    def test_steps_become_role_approvers(self):
        template = get_active_config().template("high_value")
        assert [s.approver.kind for s in template.steps] == [ApproverKind.ROLE] * 3
        assert [s.approver.ref for s in template.steps] == ["manager", "finance", "cfo"]


class TestValidation:
    def test_step_needs_exactly_one_approver(self):
        config = parse_configuration_set(
            minimal_document(
                chain_templates=[
                    {"template_id": "bad", "steps": [{"role": "manager", "approver_id": "x"}]},
                ]
            )
        )
        result = validate_configuration(config)
        assert not result.is_valid
        assert "exactly one" in result.errors[0]

    def test_duplicate_templates(self):
        template = {"template_id": "dup", "steps": [{"role": "manager"}]}
        config = parse_configuration_set(minimal_document(chain_templates=[template, template]))
        assert any("Duplicate" in e for e in validate_configuration(config).errors)

    def test_unknown_role_is_warning(self):
        config = parse_configuration_set(minimal_document(roles={}))
        result = validate_configuration(config)
        assert result.is_valid
        assert result.warnings

    def test_inverted_amount_bounds(self):
        config = parse_configuration_set(
            minimal_document(
                chain_templates=[
                    {
                        "template_id": "bounds",
                        "criteria": {"min_amount": "100", "max_amount": "50"},
                        "steps": [{"role": "manager"}],
                    }
                ]
            )
        )
        assert not validate_configuration(config).is_valid

    def test_notification_bounds_must_be_positive(self):
        config = parse_configuration_set(
            minimal_document(
                settings={"notification_budget_seconds": 0, "smtp": {"timeout_seconds": -1}},
            )
        )
        errors = validate_configuration(config).errors
        assert any("notification_budget_seconds" in e for e in errors)
        assert any("smtp.timeout_seconds" in e for e in errors)

    def test_invalid_set_is_never_returned(self, tmp_path):
        write_set(tmp_path, "broken", minimal_document(settings={"operation_timeout_seconds": 0}))
        with pytest.raises(ValueError, match="validation failed"):
            get_active_config(config_dir=tmp_path)


class TestSetDiscovery:
    def test_named_draft_set(self, tmp_path):
        write_set(tmp_path, "draft", minimal_document(config_id="DRAFT", status="draft"))
        assert get_active_config(config_dir=tmp_path, set_name="draft").config_id == "DRAFT"

    def test_no_published_set(self, tmp_path):
        write_set(tmp_path, "draft", minimal_document(status="draft"))
        with pytest.raises(FileNotFoundError):
            get_active_config(config_dir=tmp_path)

    def test_multiple_published_sets(self, tmp_path):
        write_set(tmp_path, "a", minimal_document(config_id="A"))
        write_set(tmp_path, "b", minimal_document(config_id="B"))
        with pytest.raises(ValueError, match="Multiple published"):
            get_active_config(config_dir=tmp_path)
