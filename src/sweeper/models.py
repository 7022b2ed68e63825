"""Data model shared by the sweep driver, remediators and pollers.

Everything here lives for a single sweep invocation. Candidates are built
fresh from list calls and nothing is persisted between runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .identifiers import ResourceIdentifier

DEFAULT_PREFIX = "acctest"
DEFAULT_EXCLUSION_TAG = "donotdelete"
DEFAULT_MAX_CANDIDATES = 1000


# =============================================================================
# Candidates & Selection
# =============================================================================


class ProvisioningState(str, Enum):
    """Provisioning state of a candidate as reported by the list call."""

    SUCCEEDED = "Succeeded"
    DELETING = "Deleting"
    FAILED = "Failed"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: str | None) -> ProvisioningState:
        if not value:
            return cls.OTHER
        for state in cls:
            if state.value.lower() == value.lower():
                return state
        return cls.OTHER


@dataclass(frozen=True)
class Candidate:
    """A container enumerated for possible deletion."""

    identifier: ResourceIdentifier
    name: str
    kind: str
    tags: dict[str, str] = field(default_factory=dict)
    provisioning_state: ProvisioningState = ProvisioningState.OTHER


@dataclass(frozen=True)
class SelectionPolicy:
    """Which candidates a sweep may touch, and whether it may change anything.

    A candidate is eligible when its name starts with ``prefix``
    (case-insensitive, skipped when the prefix is empty), it carries no tag
    whose key matches ``exclusion_tag`` and it is not already deleting.
    """

    prefix: str = DEFAULT_PREFIX
    exclusion_tag: str = DEFAULT_EXCLUSION_TAG
    dry_run: bool = True
    max_candidates: int = DEFAULT_MAX_CANDIDATES

    def __post_init__(self) -> None:
        if self.max_candidates < 1:
            raise ValueError("max_candidates must be at least 1")

    def matches_prefix(self, name: str | None) -> bool:
        if not self.prefix:
            return True
        return bool(name) and name.lower().startswith(self.prefix.lower())

    def protecting_tag(self, tags: dict[str, str] | None) -> str | None:
        """The tag key matching the exclusion tag (case-insensitive), if any."""
        excluded = self.exclusion_tag.lower()
        for key in tags or {}:
            if key.lower() == excluded:
                return key
        return None

    def ineligibility_reason(self, candidate: Candidate) -> str | None:
        """Return why a candidate must be skipped, or None when it is eligible."""
        if not self.matches_prefix(candidate.name):
            return f"name does not start with '{self.prefix}'"

        tag = self.protecting_tag(candidate.tags)
        if tag is not None:
            return f"tagged '{tag}'"

        if candidate.provisioning_state == ProvisioningState.DELETING:
            return "already deleting"

        return None

    def is_eligible(self, candidate: Candidate) -> bool:
        return self.ineligibility_reason(candidate) is None


# =============================================================================
# Polling
# =============================================================================


class PollStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class PollResult:
    """Outcome of a single probe."""

    status: PollStatus
    retry_after: float | None = None
    error: Exception | None = None

    @classmethod
    def in_progress(cls, retry_after: float | None = None) -> PollResult:
        return cls(status=PollStatus.IN_PROGRESS, retry_after=retry_after)

    @classmethod
    def succeeded(cls) -> PollResult:
        return cls(status=PollStatus.SUCCEEDED)

    @classmethod
    def failed(cls, error: Exception) -> PollResult:
        return cls(status=PollStatus.FAILED, error=error)


# =============================================================================
# Outcome
# =============================================================================


@dataclass(frozen=True)
class ChildFailure:
    """A remediation step that failed for one identifier.

    Any failure reported for a container suppresses that container's
    deletion for the rest of the run.
    """

    identifier: ResourceIdentifier
    error: Exception
    step: str


@dataclass(frozen=True)
class ActionRecord:
    """One destructive action, issued or (in dry-run) only intended."""

    action: str
    identifier: ResourceIdentifier
    dry_run: bool


@dataclass
class SweepOutcome:
    """Aggregated result of one or more sweeps.

    Attributes:
        attempted: Eligible candidates that entered remediation/deletion.
        deleted: Candidates whose delete call was issued.
        would_delete: Candidates a dry run would have deleted.
        skipped: Candidates rejected by the selection policy.
        errors: (identifier, error) pairs in the order they occurred.
        actions: Journal of every action issued or intended.
    """

    attempted: int = 0
    deleted: int = 0
    would_delete: int = 0
    skipped: int = 0
    errors: list[tuple[ResourceIdentifier, Exception]] = field(default_factory=list)
    actions: list[ActionRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def record_error(self, identifier: ResourceIdentifier, error: Exception) -> None:
        self.errors.append((identifier, error))

    def record_failures(self, failures: list[ChildFailure]) -> None:
        for failure in failures:
            self.record_error(failure.identifier, failure.error)

    def record_action(self, action: str, identifier: ResourceIdentifier, dry_run: bool) -> None:
        self.actions.append(ActionRecord(action=action, identifier=identifier, dry_run=dry_run))

    def merge(self, other: SweepOutcome) -> None:
        self.attempted += other.attempted
        self.deleted += other.deleted
        self.would_delete += other.would_delete
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        self.actions.extend(other.actions)

    def summary(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "deleted": self.deleted,
            "would_delete": self.would_delete,
            "skipped": self.skipped,
            "errors": len(self.errors),
            "actions": len(self.actions),
        }


# =============================================================================
# Resource Graph rows
# =============================================================================


class InventoryRow(BaseModel):
    """A row projected from the Resource Graph ``resources`` table."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(min_length=1)
    name: str | None = None
    type: str | None = None
    resource_group: str | None = Field(None, alias="resourceGroup")
    tags: dict[str, str] | None = None
