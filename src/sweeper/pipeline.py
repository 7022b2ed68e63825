"""Ordered cleaner pipeline run against every candidate before deletion.

The order of the cleaner list is itself a dependency statement: lock
removal must come before everything else, because a delete lock on the
container makes every other cleaner's delete calls fail. The pipeline is
built from an explicit list so tests and sweep profiles can substitute or
reorder cleaners without touching module state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .identifiers import InvalidResourceIdError, ResourceIdentifier
from .models import ChildFailure
from .remediator import RemediationContext, Remediator, Stage

logger = logging.getLogger(__name__)


class PipelineOrderError(Exception):
    """Raised when access-control cleaners do not run first."""

    pass


class Inventory(Protocol):
    """Cheap existence check used to skip cleaners with nothing to do."""

    async def contains_resource_types(
        self, container: ResourceIdentifier, resource_types: Sequence[str]
    ) -> bool: ...


@dataclass(frozen=True)
class Cleaner:
    """A named remediation applied to a candidate.

    Attributes:
        name: Human-readable name used in logs and sweep profiles.
        remediator: What to do with each container found.
        resource_types: ARM types this cleaner acts on. Empty means the
            cleaner cannot be answered by the inventory check (locks are
            not resources) and always runs.
        find_containers: Locates the containers of this cleaner's type
            inside the candidate. None means the candidate itself is the
            container.
    """

    name: str
    remediator: Remediator
    resource_types: tuple[str, ...] = ()
    find_containers: Callable[[ResourceIdentifier], Awaitable[list[str | None]]] | None = None

    @property
    def stage(self) -> Stage:
        return self.remediator.stage

    async def cleanup(
        self, scope: ResourceIdentifier, context: RemediationContext
    ) -> list[ChildFailure]:
        if self.find_containers is None:
            return await self.remediator.remediate(scope, context)

        failures: list[ChildFailure] = []
        for raw_id in await self.find_containers(scope):
            try:
                container = ResourceIdentifier.parse(raw_id)
            except InvalidResourceIdError as e:
                logger.warning(
                    "Skipping container with unparseable identifier",
                    extra={"cleaner": self.name, "raw_id": raw_id, "error": str(e)},
                )
                failures.append(ChildFailure(scope, e, self.name))
                continue

            logger.debug(
                "Remediating container",
                extra={"cleaner": self.name, "container": str(container)},
            )
            failures.extend(await self.remediator.remediate(container, context))
        return failures


class CleanerPipeline:
    """Runs an ordered list of cleaners against one container."""

    def __init__(self, cleaners: Sequence[Cleaner], inventory: Inventory | None = None) -> None:
        seen_other = None
        for cleaner in cleaners:
            if cleaner.stage == Stage.ACCESS_CONTROL and seen_other is not None:
                raise PipelineOrderError(
                    f"Cleaner '{cleaner.name}' removes access controls and must run "
                    f"before '{seen_other}'"
                )
            if cleaner.stage != Stage.ACCESS_CONTROL and seen_other is None:
                seen_other = cleaner.name

        self._cleaners = list(cleaners)
        self._inventory = inventory

    @property
    def cleaners(self) -> list[Cleaner]:
        return list(self._cleaners)

    @property
    def resource_types(self) -> list[str]:
        """Every resource type some cleaner cares about."""
        types = {t.lower() for cleaner in self._cleaners for t in cleaner.resource_types}
        return sorted(types)

    async def run_all(
        self, container: ResourceIdentifier, context: RemediationContext
    ) -> list[ChildFailure]:
        """Run every applicable cleaner, collecting failures from all of them."""
        failures: list[ChildFailure] = []

        for cleaner in await self._applicable_cleaners(container):
            logger.info(
                "Running cleaner",
                extra={"cleaner": cleaner.name, "container": str(container)},
            )
            try:
                cleaner_failures = await cleaner.cleanup(container, context)
            except Exception as e:
                logger.exception(
                    "Cleaner failed unexpectedly",
                    extra={"cleaner": cleaner.name, "container": str(container)},
                )
                cleaner_failures = [ChildFailure(container, e, cleaner.name)]

            failures.extend(cleaner_failures)

        return failures

    async def _applicable_cleaners(self, container: ResourceIdentifier) -> list[Cleaner]:
        resource_types = self.resource_types
        if self._inventory is None or not resource_types:
            return self._cleaners

        try:
            present = await self._inventory.contains_resource_types(container, resource_types)
        except Exception as e:
            logger.warning(
                "Inventory check failed, running every cleaner",
                extra={"container": str(container), "error": str(e)},
            )
            return self._cleaners

        if present:
            return self._cleaners

        logger.debug(
            "No resources of interest, running untyped cleaners only",
            extra={"container": str(container)},
        )
        return [cleaner for cleaner in self._cleaners if not cleaner.resource_types]
