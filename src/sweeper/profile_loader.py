"""Sweep profile loading with validation.

A sweep profile is an optional YAML file that narrows what one run does:
which resource group and subscription cleaners run (and in which order),
which directory object kinds are swept, and overrides for the exclusion
tag and the candidate limit. Without a profile every built-in cleaner and
object kind runs.

Example:

    resourceGroupCleaners: [Locks, Data Protection, Recovery Services]
    subscriptionCleaners: [NetApp]
    graphObjectKinds: [applications, groups]
    exclusionTag: keep
    maxCandidates: 200
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_PROFILE_FILE_SIZE_BYTES, MAX_RESOURCE_GROUPS_LIMIT
from .graph_objects import BINDINGS_BY_NAME
from .pipeline import Cleaner

logger = logging.getLogger(__name__)


class ProfileLoadError(Exception):
    """Raised when a sweep profile cannot be loaded or fails validation."""

    pass


class SweepProfile(BaseModel):
    """Validated sweep profile. ``None`` fields keep the built-in defaults."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    resource_group_cleaners: list[str] | None = Field(None, alias="resourceGroupCleaners")
    subscription_cleaners: list[str] | None = Field(None, alias="subscriptionCleaners")
    graph_object_kinds: list[str] | None = Field(None, alias="graphObjectKinds")
    exclusion_tag: str | None = Field(None, alias="exclusionTag", min_length=1)
    max_candidates: int | None = Field(
        None, alias="maxCandidates", ge=1, le=MAX_RESOURCE_GROUPS_LIMIT
    )

    @field_validator("resource_group_cleaners", "subscription_cleaners", "graph_object_kinds")
    @classmethod
    def no_duplicates(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        duplicates = sorted({name for name in value if value.count(name) > 1})
        if duplicates:
            raise ValueError(f"listed more than once: {duplicates}")
        return value

    @field_validator("graph_object_kinds")
    @classmethod
    def known_graph_kinds(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        unknown = [name for name in value if name not in BINDINGS_BY_NAME]
        if unknown:
            raise ValueError(
                f"unknown kinds {unknown}, expected any of {sorted(BINDINGS_BY_NAME)}"
            )
        return value


def load_profile(path: Path | None) -> SweepProfile:
    """Load and validate a sweep profile from YAML.

    Args:
        path: Profile file, or None for the built-in defaults.

    Returns:
        Validated profile instance.

    Raises:
        ProfileLoadError: If the profile cannot be loaded or fails validation.
    """
    if path is None:
        return SweepProfile()

    if not path.exists():
        raise ProfileLoadError(f"Profile file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ProfileLoadError(f"Failed to stat profile file {path}: {e}") from e

    if file_size > MAX_PROFILE_FILE_SIZE_BYTES:
        raise ProfileLoadError(
            f"Profile file exceeds maximum size of {MAX_PROFILE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProfileLoadError(f"Failed to read profile file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ProfileLoadError(f"Invalid YAML in {path}: {e}") from e

    # An empty file is an empty profile
    if raw_data is None:
        raw_data = {}

    if not isinstance(raw_data, dict):
        raise ProfileLoadError(f"Profile file must contain a YAML mapping: {path}")

    try:
        profile = SweepProfile.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ProfileLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded sweep profile from %s", path)
    return profile


def select_cleaners(cleaners: Sequence[Cleaner], names: Sequence[str] | None) -> list[Cleaner]:
    """Pick cleaners by name, in the order the profile lists them.

    Raises:
        ProfileLoadError: If a name does not match any cleaner.
    """
    if names is None:
        return list(cleaners)

    by_name = {cleaner.name: cleaner for cleaner in cleaners}
    unknown = [name for name in names if name not in by_name]
    if unknown:
        raise ProfileLoadError(
            f"Unknown cleaners in profile: {unknown}. Known cleaners: {list(by_name)}"
        )
    return [by_name[name] for name in names]
