"""Main entry point for the Azure test-account sweeper.

One run sweeps, in order:
1. Resource groups matching the prefix, each made deletable by the
   resource group cleaner pipeline first
2. Subscription-wide leftovers (soft-deleted HSMs, ML workspaces, NetApp)
3. Microsoft Graph directory objects in the tenant
4. Management groups created by test runs

Nothing is deleted unless YES_I_REALLY_WANT_TO_DELETE_THINGS=true; every
other run is a dry run that lists and logs what would be deleted.

Exit codes:
    0: Sweep finished without errors
    1: Configuration/setup error, timeout, or errors during the sweep
    2: Credentials or cloud environment could not be resolved
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .azure_clients import AzureClients
from .config import DELETE_SWITCH_ENV_VAR, Config, ConfigurationError
from .credentials import (
    CredentialError,
    EnvironmentResolutionError,
    build_credential,
    resolve_environment,
)
from .graph_objects import GraphObjectSource, build_graph_sources
from .models import SelectionPolicy, SweepOutcome
from .pipeline import CleanerPipeline, PipelineOrderError
from .poller import PollerFactory
from .profile_loader import ProfileLoadError, SweepProfile, load_profile, select_cleaners
from .resource_graph import ResourceGraphInventory
from .resource_group_cleaners import build_resource_group_cleaners
from .resource_groups import ManagementGroupSource, ResourceGroupSource
from .subscription_cleaners import build_subscription_cleaners
from .sweep import EmptyPrefixError, SweepDriver, require_prefix, run_subscription_cleaners

logger = logging.getLogger(__name__)

LOG_HANDLER_NAME = "sweeper"

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRIBUTES = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class SweepScope(str, Enum):
    """Which parts of the account a run sweeps."""

    ALL = "all"
    RESOURCE_GROUPS = "resource-groups"
    SUBSCRIPTION = "subscription"
    GRAPH = "graph"
    MANAGEMENT_GROUPS = "management-groups"

    def includes(self, other: SweepScope) -> bool:
        return self in (SweepScope.ALL, other)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(fmt: str = "json", verbose: bool = False) -> None:
    """Configure logging on stdout, as JSON lines or plain text."""
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(LOG_HANDLER_NAME)
    if fmt == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    # Reconfiguring replaces our handler instead of stacking a second one
    for existing in list(root_logger.handlers):
        if existing.get_name() == LOG_HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Sweep plan
# =============================================================================


@dataclass
class SweepPlan:
    """Everything one run will sweep, built before anything is touched."""

    subscription_id: str
    resource_groups: ResourceGroupSource | None = None
    resource_group_pipeline: CleanerPipeline | None = None
    subscription_pipeline: CleanerPipeline | None = None
    graph_sources: list[GraphObjectSource] = field(default_factory=list)
    management_groups: ManagementGroupSource | None = None


def build_selection_policy(config: Config, profile: SweepProfile) -> SelectionPolicy:
    return SelectionPolicy(
        prefix=config.prefix,
        exclusion_tag=profile.exclusion_tag or config.exclusion_tag,
        dry_run=config.dry_run,
        max_candidates=profile.max_candidates or config.max_resource_groups,
    )


def build_plan(
    clients: AzureClients,
    config: Config,
    policy: SelectionPolicy,
    profile: SweepProfile,
    scope: SweepScope = SweepScope.ALL,
) -> SweepPlan:
    """Assemble sources and pipelines for the selected scope.

    Raises:
        ProfileLoadError: If the profile names an unknown cleaner.
        PipelineOrderError: If the profile orders cleaners so locks do not run first.
    """
    plan = SweepPlan(subscription_id=config.subscription_id)

    if scope.includes(SweepScope.RESOURCE_GROUPS):
        inventory = ResourceGraphInventory(clients.resource_graph, config.subscription_id)
        cleaners = select_cleaners(
            build_resource_group_cleaners(clients, inventory), profile.resource_group_cleaners
        )
        plan.resource_groups = ResourceGroupSource(clients)
        plan.resource_group_pipeline = CleanerPipeline(cleaners, inventory=inventory)

    if scope.includes(SweepScope.SUBSCRIPTION):
        cleaners = select_cleaners(
            build_subscription_cleaners(clients, policy), profile.subscription_cleaners
        )
        plan.subscription_pipeline = CleanerPipeline(cleaners)

    if scope.includes(SweepScope.GRAPH):
        plan.graph_sources = build_graph_sources(
            clients.graph, config.tenant_id, profile.graph_object_kinds
        )

    if scope.includes(SweepScope.MANAGEMENT_GROUPS):
        plan.management_groups = ManagementGroupSource(clients, config.tenant_id)

    return plan


async def execute_plan(
    plan: SweepPlan, policy: SelectionPolicy, pollers: PollerFactory
) -> SweepOutcome:
    """Run every part of the plan in order, aggregating the outcomes."""
    outcome = SweepOutcome()

    if plan.resource_groups is not None:
        driver = SweepDriver(plan.resource_groups, policy, plan.resource_group_pipeline, pollers)
        outcome.merge(await driver.sweep())

    if plan.subscription_pipeline is not None:
        outcome.merge(
            await run_subscription_cleaners(
                plan.subscription_pipeline, plan.subscription_id, policy, pollers
            )
        )

    for source in plan.graph_sources:
        outcome.merge(await SweepDriver(source, policy, pollers=pollers).sweep())

    if plan.management_groups is not None:
        outcome.merge(await SweepDriver(plan.management_groups, policy, pollers=pollers).sweep())

    return outcome


# =============================================================================
# Entry point
# =============================================================================


async def main(
    *,
    prefix: str | None = None,
    max_resource_groups: int | None = None,
    profile_path: Path | None = None,
    scope: SweepScope = SweepScope.ALL,
    log_format: str | None = None,
    verbose: bool = False,
) -> int:
    """Run one sweep.

    Keyword arguments override the matching environment configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    overrides: dict[str, Any] = {}
    if prefix is not None:
        overrides["prefix"] = prefix
    if max_resource_groups is not None:
        overrides["max_resource_groups"] = max_resource_groups
    if profile_path is not None:
        overrides["profile_path"] = profile_path
    if log_format is not None:
        overrides["log_format"] = log_format

    try:
        config = replace(Config.from_env(), **overrides)
    except ConfigurationError as e:
        setup_logging(log_format or "json", verbose)
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_format, verbose)

    logger.info(
        "Starting Azure sweeper",
        extra={
            "subscription_id": config.subscription_id,
            "tenant_id": config.tenant_id,
            "environment": config.environment,
            "prefix": config.prefix,
            "scope": scope.value,
            "dry_run": config.dry_run,
        },
    )
    if config.dry_run:
        logger.warning(
            f"Dry run: nothing will be deleted unless {DELETE_SWITCH_ENV_VAR}=true is set"
        )

    try:
        profile = load_profile(config.profile_path)
        policy = build_selection_policy(config, profile)
        require_prefix(policy)
    except (ProfileLoadError, EmptyPrefixError) as e:
        logger.error("Invalid sweep settings", extra={"error": str(e)})
        return 1

    try:
        environment = resolve_environment(config.environment, config.endpoint)
        credential = build_credential(
            config.tenant_id, config.client_id, config.client_secret, environment
        )
    except (CredentialError, EnvironmentResolutionError) as e:
        logger.critical("Unable to authenticate", extra={"error": str(e)})
        return 2

    clients = AzureClients(credential, config.subscription_id, environment)

    try:
        plan = build_plan(clients, config, policy, profile, scope)
    except (ProfileLoadError, PipelineOrderError) as e:
        logger.error("Invalid cleaner selection", extra={"error": str(e)})
        return 1

    pollers = PollerFactory(
        interval_seconds=config.poll_interval_seconds,
        dropped_connections=config.poll_dropped_connections,
    )

    return await run_with_timeout(
        execute_plan(plan, policy, pollers), config.sweep_timeout_seconds
    )


async def run_with_timeout(sweep: Any, timeout_seconds: float) -> int:
    """Run the sweep under the global timeout, cancelling it on SIGINT/SIGTERM."""
    task = asyncio.ensure_future(asyncio.wait_for(sweep, timeout=timeout_seconds))

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling sweep", extra={"signal": sig.name})
        task.cancel()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        outcome: SweepOutcome = await task
    except TimeoutError:
        logger.error("Sweep timed out", extra={"timeout_seconds": timeout_seconds})
        return 1
    except asyncio.CancelledError:
        logger.warning("Sweep cancelled")
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    logger.info("Sweep finished", extra=outcome.summary())
    for identifier, error in outcome.errors:
        logger.error(
            "Sweep error",
            extra={"identifier": str(identifier), "error": str(error)},
        )

    return 0 if outcome.succeeded else 1


def run() -> None:
    """Entry point without command line options."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
