"""
Unit tests for escalation configuration.

Tests cover:
- Recipient resolution order in the role directory
- Snapshot source defaults and validation
- YAML loading and hot reload through EscalationConfigManager
"""

import pytest
from pydantic import ValidationError

from elevare.core import ConfigurationException
from elevare.escalation.domain import EscalationConfig, SnapshotSourceConfig
from elevare.escalation.infrastructure import EscalationConfigManager


class TestRecipientResolution:
    """Entity-type override, then role default, then global default."""

    def test_entity_type_override_wins(self, escalation_config) -> None:
        assert escalation_config.recipient_for("manager", "support_ticket") == "u-support-lead"

    def test_role_default_used_otherwise(self, escalation_config) -> None:
        assert escalation_config.recipient_for("manager", "maintenance") == "u-manager"

    def test_unknown_role_falls_back_to_default_recipient(self) -> None:
        config = EscalationConfig(default_recipient="u-admin")

        assert config.recipient_for("operations_head", "construction") == "u-admin"

    def test_no_recipient_at_all(self) -> None:
        assert EscalationConfig().recipient_for("director", "legal_case") is None

    def test_slack_channel_per_role(self, escalation_config) -> None:
        assert escalation_config.slack_channel_for("legal_head") == "#legal"
        assert escalation_config.slack_channel_for("manager") is None
        assert escalation_config.slack_channel_for(None) is None

    def test_channels_default_when_rule_names_none(self, escalation_config) -> None:
        assert escalation_config.channels_for(None) == ["in_app"]
        assert escalation_config.channels_for(["slack"]) == ["slack"]


class TestConfigValidation:
    """Bad configuration is rejected as a whole."""

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EscalationConfig(role_directory={"janitor": {"default": "u-1"}})

    def test_unknown_channel_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EscalationConfig(default_channels=["email"])

    def test_sql_identifiers_only(self) -> None:
        with pytest.raises(ValidationError):
            SnapshotSourceConfig(table="cases; DROP TABLE users")

    def test_source_overrides_merge_with_defaults(self) -> None:
        config = EscalationConfig(snapshot_sources={"legal_case": {"table": "matters"}})

        assert config.get_source("legal_case").table == "matters"
        assert config.get_source("maintenance").table == "maintenance_requests"
        assert config.get_source("compliance").priority_column is None


class TestEscalationConfigManager:
    """Loading and hot reload from YAML."""

    def test_load_from_yaml(self, tmp_path) -> None:
        path = tmp_path / "escalation.yaml"
        path.write_text(
            "default_recipient: u-ops\n"
            "role_directory:\n"
            "  director:\n"
            "    default: u-boss\n"
        )
        manager = EscalationConfigManager()

        config = manager.load(path)

        assert config.recipient_for("director", "inspection") == "u-boss"
        assert manager.get_config() is config

    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        manager = EscalationConfigManager()

        config = manager.load(tmp_path / "absent.yaml")

        assert config.default_channels == ["in_app"]

    def test_invalid_file_raises_configuration_error(self, tmp_path) -> None:
        path = tmp_path / "escalation.yaml"
        path.write_text("default_channels: [fax]\n")

        with pytest.raises(ConfigurationException):
            EscalationConfigManager().load(path)

    def test_reload_picks_up_changes(self, tmp_path) -> None:
        path = tmp_path / "escalation.yaml"
        path.write_text("default_recipient: u-first\n")
        manager = EscalationConfigManager()
        manager.load(path)

        path.write_text("default_recipient: u-second\n")

        assert manager.reload() is True
        assert manager.config.default_recipient == "u-second"

    def test_bad_reload_keeps_previous_config(self, tmp_path) -> None:
        """A broken edit never takes effect."""
        path = tmp_path / "escalation.yaml"
        path.write_text("default_recipient: u-first\n")
        manager = EscalationConfigManager()
        manager.load(path)

        path.write_text("role_directory: [unclosed\n")

        assert manager.reload() is False
        assert manager.config.default_recipient == "u-first"

    def test_reload_before_load_is_noop(self) -> None:
        assert EscalationConfigManager().reload() is False

    def test_unloaded_config_raises(self) -> None:
        with pytest.raises(RuntimeError):
            EscalationConfigManager().get_config()
