"""Dependency-aware remediation of a single container.

A Remediator makes one container (a resource group, a vault, a rulestack,
the subscription itself) deletable by walking its children in a fixed
order and removing or detaching them:

1. ACCESS_CONTROL: locks that would block every later call
2. RELATIONSHIPS: pairings and references to other containers
3. RETENTION_POLICY: settings on the container itself (soft delete)
4. NESTED: child objects, leaf to root, in declaration order
5. RETAINED: soft-deleted shadows to undelete and re-delete, or purge

Each resource type is described declaratively by a table of steps; there is
no per-type remediation code beyond the SDK calls the steps bind to.

Failures of individual children are collected rather than raised so that
siblings still get cleaned up. Any failure suppresses the container's own
deletion for the rest of the run.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .azure_clients import is_long_running, is_not_found
from .credentials import log_audit_event
from .identifiers import InvalidResourceIdError, ResourceIdentifier
from .models import ChildFailure, SweepOutcome
from .poller import LongRunningOperationProbe, PollableOperation, PollerFactory

logger = logging.getLogger(__name__)


class Stage(IntEnum):
    """Remediation stages in the order they must run."""

    ACCESS_CONTROL = 1
    RELATIONSHIPS = 2
    RETENTION_POLICY = 3
    NESTED = 4
    RETAINED = 5


@dataclass(frozen=True)
class Child:
    """A child object as returned by a list call."""

    raw_id: str | None
    name: str | None = None
    payload: Any = None


ActionCall = Callable[[ResourceIdentifier, Child | None], Awaitable[Any]]
ProbeFactory = Callable[[ResourceIdentifier, Child | None], PollableOperation]


@dataclass(frozen=True)
class ChildAction:
    """A single destructive call against a child (or the container).

    ``call`` may return an SDK poller, which is then driven to completion.
    The ``probes`` run afterwards, in order, for eventually consistent APIs
    that report completion before the object is really gone.
    """

    verb: str
    call: ActionCall
    probes: tuple[ProbeFactory, ...] = ()


@dataclass(frozen=True)
class ChildStep:
    """Remove every child of one kind from the container."""

    name: str
    stage: Stage
    list_children: Callable[[ResourceIdentifier], Awaitable[list[Child]]]
    actions: tuple[ChildAction, ...]
    skip_when: Callable[[Child], str | None] | None = None


@dataclass(frozen=True)
class GateStep:
    """A change to the container itself that every later step depends on.

    When a gate fails no further calls are made for the container.
    """

    name: str
    stage: Stage
    action: ChildAction


Step = ChildStep | GateStep


@dataclass
class RemediationContext:
    """Per-candidate settings shared by every remediator in the pipeline."""

    dry_run: bool
    pollers: PollerFactory = field(default_factory=PollerFactory)
    outcome: SweepOutcome = field(default_factory=SweepOutcome)


class Remediator:
    """Generic remediator parameterized by a table of steps."""

    def __init__(
        self,
        name: str,
        steps: Sequence[Step] = (),
        *,
        delete_container: ChildAction | None = None,
    ) -> None:
        self.name = name
        # sorted() is stable, so declaration order holds within a stage
        self._steps: list[Step] = sorted(steps, key=lambda step: step.stage)
        self._delete_container = delete_container

    @property
    def steps(self) -> list[Step]:
        return list(self._steps)

    @property
    def stage(self) -> Stage:
        """Earliest stage this remediator acts in."""
        if not self._steps:
            return Stage.NESTED
        return self._steps[0].stage

    async def remediate(
        self, container: ResourceIdentifier, context: RemediationContext
    ) -> list[ChildFailure]:
        """Clear the container's children, then delete the container if owned.

        Returns:
            Failures collected along the way. Empty when everything succeeded.
        """
        failures: list[ChildFailure] = []

        for step in self._steps:
            if isinstance(step, GateStep):
                error = await self._perform(step.action, container, None, context)
                if error is not None:
                    logger.error(
                        "Gate step failed, leaving container untouched",
                        extra={
                            "remediator": self.name,
                            "step": step.name,
                            "container": str(container),
                            "error": str(error),
                        },
                    )
                    failures.append(ChildFailure(container, error, step.name))
                    return failures
                continue

            failures.extend(await self._run_child_step(step, container, context))

        if failures:
            logger.warning(
                "Not deleting container because remediation failed",
                extra={
                    "remediator": self.name,
                    "container": str(container),
                    "failures": len(failures),
                },
            )
            return failures

        if self._delete_container is not None:
            error = await self._perform(self._delete_container, container, None, context)
            if error is not None:
                failures.append(ChildFailure(container, error, f"{self.name}: container"))

        return failures

    async def _run_child_step(
        self,
        step: ChildStep,
        container: ResourceIdentifier,
        context: RemediationContext,
    ) -> list[ChildFailure]:
        failures: list[ChildFailure] = []

        try:
            children = await step.list_children(container)
        except Exception as e:
            if is_not_found(e):
                logger.debug(
                    "Container disappeared while listing children",
                    extra={"step": step.name, "container": str(container)},
                )
                return failures
            logger.error(
                "Listing children failed",
                extra={"step": step.name, "container": str(container), "error": str(e)},
            )
            return [ChildFailure(container, e, step.name)]

        for child in children:
            try:
                child_id = ResourceIdentifier.parse(child.raw_id)
            except InvalidResourceIdError as e:
                logger.warning(
                    "Skipping child with unparseable identifier",
                    extra={"step": step.name, "raw_id": child.raw_id, "error": str(e)},
                )
                failures.append(ChildFailure(container, e, step.name))
                continue

            if step.skip_when is not None:
                reason = step.skip_when(child)
                if reason:
                    logger.info(
                        "Skipping child",
                        extra={"step": step.name, "child": str(child_id), "reason": reason},
                    )
                    continue

            for action in step.actions:
                error = await self._perform(action, child_id, child, context)
                if error is not None:
                    logger.error(
                        "Child remediation failed",
                        extra={
                            "step": step.name,
                            "child": str(child_id),
                            "action": action.verb,
                            "error": str(error),
                        },
                    )
                    failures.append(ChildFailure(child_id, error, step.name))
                    break

        return failures

    async def _perform(
        self,
        action: ChildAction,
        target: ResourceIdentifier,
        child: Child | None,
        context: RemediationContext,
    ) -> Exception | None:
        """Issue one action and wait for it. Returns the error, if any."""
        context.outcome.record_action(action.verb, target, context.dry_run)

        if context.dry_run:
            logger.info(f"Would {action.verb} {target}")
            log_audit_event(action.verb, str(target), dry_run=True)
            return None

        logger.info(f"{action.verb.capitalize()} {target}..")
        try:
            result = await action.call(target, child)
            if is_long_running(result):
                await context.pollers.wait(
                    LongRunningOperationProbe(result, f"{action.verb} {target}")
                )
            for probe_factory in action.probes:
                await context.pollers.wait(probe_factory(target, child))
        except Exception as e:
            if is_not_found(e) or is_not_found(e.__cause__ or e):
                logger.debug(
                    "Target already gone", extra={"action": action.verb, "target": str(target)}
                )
                return None
            log_audit_event(action.verb, str(target), dry_run=False, result="failure")
            return e

        log_audit_event(action.verb, str(target), dry_run=False, result="success")
        return None
