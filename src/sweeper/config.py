"""Configuration management with validation.

Real deletion is opt-in: unless YES_I_REALLY_WANT_TO_DELETE_THINGS is set to
"true" the sweeper runs in dry-run mode and only reports what it would do.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .models import DEFAULT_EXCLUSION_TAG, DEFAULT_MAX_CANDIDATES, DEFAULT_PREFIX


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Environment switch that unlocks real deletion
DELETE_SWITCH_ENV_VAR = "YES_I_REALLY_WANT_TO_DELETE_THINGS"

# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
MIN_POLL_INTERVAL_SECONDS = 1.0
MAX_POLL_INTERVAL_SECONDS = 600.0

DEFAULT_POLL_DROPPED_CONNECTIONS = 3
MIN_POLL_DROPPED_CONNECTIONS = 1
MAX_POLL_DROPPED_CONNECTIONS = 10

DEFAULT_SWEEP_TIMEOUT_SECONDS = 3600
MIN_SWEEP_TIMEOUT_SECONDS = 60
MAX_SWEEP_TIMEOUT_SECONDS = 86400

MAX_RESOURCE_GROUPS_LIMIT = 10000

MAX_GRAPH_QUERY_RESULTS = 1000
MAX_GRAPH_QUERY_TIMEOUT_SECONDS = 60

MAX_PROFILE_FILE_SIZE_BYTES = 64 * 1024

LOG_FORMATS = ("json", "text")

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


def is_guid(value: str) -> bool:
    return bool(re.match(VALID_GUID_PATTERN, value.lower()))


@dataclass(frozen=True)
class Config:
    """Sweeper configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-sweep.
    """

    # Required fields
    subscription_id: str
    tenant_id: str

    # Credentials, empty client id means managed identity or Azure CLI
    client_id: str = ""
    client_secret: str | None = field(default=None, repr=False)
    environment: str = "public"
    endpoint: str | None = None

    # Selection
    prefix: str = DEFAULT_PREFIX
    exclusion_tag: str = DEFAULT_EXCLUSION_TAG
    max_resource_groups: int = DEFAULT_MAX_CANDIDATES

    # Behavior
    dry_run: bool = True

    # Timing
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_dropped_connections: int = DEFAULT_POLL_DROPPED_CONNECTIONS
    sweep_timeout_seconds: int = DEFAULT_SWEEP_TIMEOUT_SECONDS

    # Optional sweep profile and logging
    profile_path: Path | None = None
    log_format: str = "json"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("ARM_SUBSCRIPTION_ID is required")
        elif not is_guid(self.subscription_id):
            errors.append(f"ARM_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.tenant_id:
            errors.append("ARM_TENANT_ID is required")
        elif not is_guid(self.tenant_id):
            errors.append(f"ARM_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if self.client_secret and not self.client_id:
            errors.append("ARM_CLIENT_ID is required when ARM_CLIENT_SECRET is set")

        if "stack" in self.environment.lower() and not self.endpoint:
            errors.append("ARM_ENDPOINT is required for Azure Stack environments")

        if not self.exclusion_tag:
            errors.append("Exclusion tag must not be empty")

        if not (1 <= self.max_resource_groups <= MAX_RESOURCE_GROUPS_LIMIT):
            errors.append(
                f"Max resource groups must be between 1 and {MAX_RESOURCE_GROUPS_LIMIT}"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_POLL_DROPPED_CONNECTIONS
            <= self.poll_dropped_connections
            <= MAX_POLL_DROPPED_CONNECTIONS
        ):
            errors.append(
                f"POLL_DROPPED_CONNECTIONS must be between {MIN_POLL_DROPPED_CONNECTIONS} "
                f"and {MAX_POLL_DROPPED_CONNECTIONS}"
            )

        if not (
            MIN_SWEEP_TIMEOUT_SECONDS <= self.sweep_timeout_seconds <= MAX_SWEEP_TIMEOUT_SECONDS
        ):
            errors.append(
                f"SWEEP_TIMEOUT must be between {MIN_SWEEP_TIMEOUT_SECONDS} "
                f"and {MAX_SWEEP_TIMEOUT_SECONDS} seconds"
            )

        if self.log_format not in LOG_FORMATS:
            errors.append(f"Log format must be one of {list(LOG_FORMATS)}: {self.log_format}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            ARM_SUBSCRIPTION_ID: Subscription to sweep
            ARM_TENANT_ID: Tenant to sweep directory objects from
            ARM_CLIENT_ID: Service principal (or user-assigned identity) client ID
            ARM_CLIENT_SECRET: Service principal secret (optional)
            ARM_ENVIRONMENT: public, usgovernment, china or an Azure Stack name
            ARM_ENDPOINT: Resource Manager endpoint for Azure Stack
            YES_I_REALLY_WANT_TO_DELETE_THINGS: "true" enables real deletion
            SWEEPER_PREFIX: Name prefix to sweep (default: acctest)
            SWEEPER_EXCLUSION_TAG: Tag key that protects a resource (default: donotdelete)
            SWEEPER_MAX_RESOURCE_GROUPS: Resource groups listed per run (default: 1000)
            POLL_INTERVAL: Seconds between status probes (default: 30)
            POLL_DROPPED_CONNECTIONS: Consecutive failed probes tolerated (default: 3)
            SWEEP_TIMEOUT: Overall run timeout in seconds (default: 3600)
            SWEEPER_PROFILE: Path to an optional YAML sweep profile
            SWEEPER_LOG_FORMAT: json or text (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            subscription_id=os.environ.get("ARM_SUBSCRIPTION_ID", ""),
            tenant_id=os.environ.get("ARM_TENANT_ID", ""),
            client_id=os.environ.get("ARM_CLIENT_ID", ""),
            client_secret=os.environ.get("ARM_CLIENT_SECRET") or None,
            environment=os.environ.get("ARM_ENVIRONMENT", "public") or "public",
            endpoint=os.environ.get("ARM_ENDPOINT") or None,
            prefix=os.environ.get("SWEEPER_PREFIX", DEFAULT_PREFIX),
            exclusion_tag=os.environ.get("SWEEPER_EXCLUSION_TAG", DEFAULT_EXCLUSION_TAG),
            max_resource_groups=get_int("SWEEPER_MAX_RESOURCE_GROUPS", DEFAULT_MAX_CANDIDATES),
            dry_run=not deletion_enabled(),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            poll_dropped_connections=get_int(
                "POLL_DROPPED_CONNECTIONS", DEFAULT_POLL_DROPPED_CONNECTIONS
            ),
            sweep_timeout_seconds=get_int("SWEEP_TIMEOUT", DEFAULT_SWEEP_TIMEOUT_SECONDS),
            profile_path=get_path("SWEEPER_PROFILE"),
            log_format=os.environ.get("SWEEPER_LOG_FORMAT", "json").lower(),
        )


def deletion_enabled() -> bool:
    """Whether the delete switch is set to "true" (case-insensitive)."""
    return os.environ.get(DELETE_SWITCH_ENV_VAR, "").strip().lower() == "true"
