"""Azure test-account sweeper CLI.

Usage:
    azure-sweeper                                   # Dry run with defaults
    azure-sweeper --prefix acctest --scope graph    # Only directory objects
    azure-sweeper --profile sweep.yaml --verbose    # Narrowed by a sweep profile

Credentials and the subscription come from ARM_* environment variables.
Nothing is deleted unless YES_I_REALLY_WANT_TO_DELETE_THINGS=true.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import LOG_FORMATS, MAX_RESOURCE_GROUPS_LIMIT
from .main import SweepScope
from .main import main as run_sweep


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version="0.1.0", prog_name="azure-sweeper")
@click.option(
    "--prefix",
    "-prefix",
    default=None,
    help="Only delete objects whose name starts with this prefix (default: acctest)",
)
@click.option(
    "--max-resource-groups",
    type=click.IntRange(1, MAX_RESOURCE_GROUPS_LIMIT),
    default=None,
    help="Maximum number of candidates listed per source (default: 1000)",
)
@click.option(
    "--profile",
    "profile_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML sweep profile selecting cleaners and object kinds",
)
@click.option(
    "--scope",
    type=click.Choice([s.value for s in SweepScope]),
    default=SweepScope.ALL.value,
    show_default=True,
    help="What to sweep",
)
@click.option(
    "--log-format",
    type=click.Choice(LOG_FORMATS),
    default=None,
    help="Log output format (default: json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def cli(
    prefix: str | None,
    max_resource_groups: int | None,
    profile_path: Path | None,
    scope: str,
    log_format: str | None,
    verbose: bool,
) -> None:
    """Delete leftover acceptance-test objects from an Azure account."""
    exit_code = asyncio.run(
        run_sweep(
            prefix=prefix,
            max_resource_groups=max_resource_groups,
            profile_path=profile_path,
            scope=SweepScope(scope),
            log_format=log_format,
            verbose=verbose,
        )
    )
    sys.exit(exit_code)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
