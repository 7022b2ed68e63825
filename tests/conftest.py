"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

import pytest  # noqa: E402
from azure_mock import make_pollers  # noqa: E402

from sweeper.models import SelectionPolicy, SweepOutcome  # noqa: E402
from sweeper.poller import PollerFactory  # noqa: E402
from sweeper.remediator import RemediationContext  # noqa: E402


@pytest.fixture
def pollers() -> PollerFactory:
    """Pollers that probe without sleeping."""
    return make_pollers()


@pytest.fixture
def live_context(pollers: PollerFactory) -> RemediationContext:
    """Context for a real (non dry-run) remediation."""
    return RemediationContext(dry_run=False, pollers=pollers, outcome=SweepOutcome())


@pytest.fixture
def dry_context(pollers: PollerFactory) -> RemediationContext:
    """Context for a dry-run remediation."""
    return RemediationContext(dry_run=True, pollers=pollers, outcome=SweepOutcome())


@pytest.fixture
def live_policy() -> SelectionPolicy:
    """Default selection policy with deletion enabled."""
    return SelectionPolicy(dry_run=False)
