"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from sweeper.config import Config, ConfigurationError, deletion_enabled, is_guid

SUB = "12345678-1234-1234-1234-123456789012"
TENANT = "87654321-4321-4321-4321-210987654321"


def make_config(**overrides: object) -> Config:
    values: dict[str, object] = {
        "subscription_id": SUB,
        "tenant_id": TENANT,
        "client_id": "client",
    }
    values.update(overrides)
    return Config(**values)  # type: ignore[arg-type]


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration with defaults."""
        config = make_config()

        assert config.prefix == "acctest"
        assert config.exclusion_tag == "donotdelete"
        assert config.max_resource_groups == 1000
        assert config.dry_run is True
        assert config.poll_interval_seconds == 30.0
        assert config.poll_dropped_connections == 3
        assert config.sweep_timeout_seconds == 3600

    def test_secret_not_in_repr(self) -> None:
        """Test that the client secret never shows up in repr."""
        config = make_config(client_secret="hunter2")

        assert "hunter2" not in repr(config)

    def test_client_id_optional_without_secret(self) -> None:
        """Test that identity-based runs need no client id."""
        config = Config(subscription_id=SUB, tenant_id=TENANT)

        assert config.client_id == ""
        assert config.client_secret is None

    def test_secret_requires_client_id(self) -> None:
        """Test that a client secret without a client id raises error."""
        with pytest.raises(ConfigurationError, match="ARM_CLIENT_ID"):
            Config(subscription_id=SUB, tenant_id=TENANT, client_secret="hunter2")

    def test_invalid_subscription_id(self) -> None:
        """Test that a non-GUID subscription id raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(subscription_id="not-a-guid")

        assert "ARM_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_collects_all_errors(self) -> None:
        """Test that every validation error is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(tenant_id="", poll_interval_seconds=0.1, sweep_timeout_seconds=5)

        message = str(exc_info.value)
        assert "ARM_TENANT_ID" in message
        assert "POLL_INTERVAL" in message
        assert "SWEEP_TIMEOUT" in message

    def test_dropped_connections_must_be_at_least_one(self) -> None:
        """Test that a zero dropped-connection budget is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(poll_dropped_connections=0)

        assert "POLL_DROPPED_CONNECTIONS" in str(exc_info.value)

    def test_azure_stack_requires_endpoint(self) -> None:
        """Test that an Azure Stack environment needs ARM_ENDPOINT."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(environment="AzureStackHub")

        assert "ARM_ENDPOINT" in str(exc_info.value)

    def test_invalid_log_format(self) -> None:
        """Test that unknown log formats are rejected."""
        with pytest.raises(ConfigurationError):
            make_config(log_format="xml")

    def test_max_resource_groups_bounds(self) -> None:
        """Test the candidate limit bounds."""
        with pytest.raises(ConfigurationError):
            make_config(max_resource_groups=0)

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        profile = tmp_path / "profile.yaml"
        env = {
            "ARM_SUBSCRIPTION_ID": SUB,
            "ARM_TENANT_ID": TENANT,
            "ARM_CLIENT_ID": "client",
            "ARM_CLIENT_SECRET": "secret",
            "ARM_ENVIRONMENT": "usgovernment",
            "SWEEPER_PREFIX": "tftest",
            "POLL_INTERVAL": "5",
            "POLL_DROPPED_CONNECTIONS": "4",
            "SWEEP_TIMEOUT": "600",
            "SWEEPER_PROFILE": str(profile),
            "SWEEPER_LOG_FORMAT": "TEXT",
            "YES_I_REALLY_WANT_TO_DELETE_THINGS": "True",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.environment == "usgovernment"
        assert config.prefix == "tftest"
        assert config.poll_interval_seconds == 5.0
        assert config.poll_dropped_connections == 4
        assert config.sweep_timeout_seconds == 600
        assert config.profile_path == profile
        assert config.log_format == "text"
        assert config.dry_run is False

    def test_from_env_defaults_to_dry_run(self) -> None:
        """Test that deletion stays off without the switch."""
        env = {"ARM_SUBSCRIPTION_ID": SUB, "ARM_TENANT_ID": TENANT}

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.dry_run is True
        assert config.environment == "public"
        assert config.profile_path is None

    def test_from_env_non_integer(self) -> None:
        """Test that a malformed integer is a configuration error."""
        env = {"ARM_SUBSCRIPTION_ID": SUB, "ARM_TENANT_ID": TENANT, "SWEEP_TIMEOUT": "soon"}

        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigurationError) as exc_info:
            Config.from_env()

        assert "SWEEP_TIMEOUT must be an integer" in str(exc_info.value)


class TestDeleteSwitch:
    """Tests for the delete switch."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("true", True),
            ("TRUE", True),
            (" true ", True),
            ("1", False),
            ("yes", False),
            ("", False),
        ],
    )
    def test_deletion_enabled(self, value: str, expected: bool) -> None:
        """Test that only "true" (any case) enables deletion."""
        with patch.dict(os.environ, {"YES_I_REALLY_WANT_TO_DELETE_THINGS": value}, clear=True):
            assert deletion_enabled() is expected

    def test_unset_switch(self) -> None:
        """Test that an unset switch means dry run."""
        with patch.dict(os.environ, {}, clear=True):
            assert deletion_enabled() is False


class TestIsGuid:
    """Tests for GUID validation."""

    def test_is_guid(self) -> None:
        """Test GUID detection in either case."""
        assert is_guid(SUB)
        assert is_guid(SUB.upper())
        assert not is_guid("12345678")
