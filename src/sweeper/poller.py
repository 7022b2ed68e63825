"""Polling state machine for asynchronous teardown.

A Poller repeatedly probes a PollableOperation until it reports a terminal
state:

    IN_PROGRESS --probe--> IN_PROGRESS | SUCCEEDED | FAILED

Probes run at a fixed interval (or the ``retry_after`` a probe asks for).
Transport errors, where the probe never got an answer, count against a
budget of consecutive dropped connections instead of failing the operation.
A probe that finds the target gone is a success: the goal is absence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .azure_clients import TRANSPORT_ERRORS, is_not_found, run_sync
from .config import DEFAULT_POLL_DROPPED_CONNECTIONS, DEFAULT_POLL_INTERVAL_SECONDS
from .identifiers import ResourceIdentifier, normalize_id
from .models import PollResult, PollStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PollingFailedError(Exception):
    """Raised when the polled operation reports failure."""

    pass


class PollingDroppedConnectionError(PollingFailedError):
    """Raised when too many consecutive probes could not reach the API."""

    pass


class PollableOperation(Protocol):
    """Anything that can report the current status of an asynchronous operation."""

    description: str

    async def probe(self) -> PollResult: ...


# =============================================================================
# Poller
# =============================================================================


class Poller:
    """Drives one PollableOperation to a terminal state."""

    def __init__(
        self,
        operation: PollableOperation,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        dropped_connections: int = DEFAULT_POLL_DROPPED_CONNECTIONS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if dropped_connections < 1:
            raise ValueError("dropped_connections must be at least 1")
        self._operation = operation
        self._interval = interval_seconds
        self._dropped_connections = dropped_connections
        self._sleep = sleep
        self.state = PollStatus.IN_PROGRESS
        self.ticks = 0

    async def poll_until_done(self) -> None:
        """Probe until the operation succeeds.

        Raises:
            PollingFailedError: If the operation failed.
            PollingDroppedConnectionError: If the dropped-connection budget ran out.
            asyncio.CancelledError: If the surrounding task was cancelled.
        """
        consecutive_drops = 0

        while True:
            self.ticks += 1
            try:
                result = await self._operation.probe()
            except TRANSPORT_ERRORS as e:
                consecutive_drops += 1
                logger.warning(
                    "Probe failed to reach the API",
                    extra={
                        "operation": self._operation.description,
                        "consecutive_drops": consecutive_drops,
                        "budget": self._dropped_connections,
                        "error": str(e),
                    },
                )
                if consecutive_drops >= self._dropped_connections:
                    self.state = PollStatus.FAILED
                    raise PollingDroppedConnectionError(
                        f"{self._operation.description}: gave up after "
                        f"{consecutive_drops} consecutive dropped connections"
                    ) from e
                await self._sleep(self._interval)
                continue
            except Exception as e:
                if is_not_found(e):
                    result = PollResult.succeeded()
                else:
                    result = PollResult.failed(e)

            consecutive_drops = 0
            self.state = result.status

            if result.status == PollStatus.SUCCEEDED:
                logger.debug(
                    "Operation completed",
                    extra={"operation": self._operation.description, "ticks": self.ticks},
                )
                return

            if result.status == PollStatus.FAILED:
                raise PollingFailedError(
                    f"{self._operation.description} failed: {result.error}"
                ) from result.error

            await self._sleep(
                result.retry_after if result.retry_after is not None else self._interval
            )


@dataclass(frozen=True)
class PollerFactory:
    """Builds pollers with shared settings."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    dropped_connections: int = DEFAULT_POLL_DROPPED_CONNECTIONS
    sleep: Sleep = asyncio.sleep

    def create(self, operation: PollableOperation) -> Poller:
        return Poller(
            operation,
            interval_seconds=self.interval_seconds,
            dropped_connections=self.dropped_connections,
            sleep=self.sleep,
        )

    async def wait(self, operation: PollableOperation) -> None:
        await self.create(operation).poll_until_done()


# =============================================================================
# Operations
# =============================================================================


class ResourceAbsentProbe:
    """Wait for an object to report not-found."""

    def __init__(self, get: Callable[[], Awaitable[Any]], description: str) -> None:
        self._get = get
        self.description = description

    async def probe(self) -> PollResult:
        try:
            await self._get()
        except Exception as e:
            if is_not_found(e):
                return PollResult.succeeded()
            raise
        return PollResult.in_progress()


class ListAbsenceProbe:
    """Wait for an identifier to disappear from a listing."""

    def __init__(
        self,
        list_ids: Callable[[], Awaitable[list[str | None]]],
        target: ResourceIdentifier,
        description: str,
    ) -> None:
        self._list_ids = list_ids
        self._target = target
        self.description = description

    async def probe(self) -> PollResult:
        try:
            ids = await self._list_ids()
        except Exception as e:
            if is_not_found(e):
                return PollResult.succeeded()
            raise
        present = any(raw and normalize_id(raw) == self._target.normalized for raw in ids)
        return PollResult.in_progress() if present else PollResult.succeeded()


class FieldClearedProbe:
    """Wait for a relationship field on an object to become empty.

    ``field_name`` may be a dotted path (``data_protection.replication``);
    a missing intermediate object counts as cleared.
    """

    def __init__(
        self, get: Callable[[], Awaitable[Any]], field_name: str, description: str
    ) -> None:
        self._get = get
        self._field_name = field_name
        self.description = description

    async def probe(self) -> PollResult:
        try:
            resource = await self._get()
        except Exception as e:
            if is_not_found(e):
                return PollResult.succeeded()
            raise
        value = resource
        for attribute in self._field_name.split("."):
            value = getattr(value, attribute, None)
            if value is None:
                break
        if value:
            return PollResult.in_progress()
        return PollResult.succeeded()


class LongRunningOperationProbe:
    """Adapt an Azure SDK LROPoller without blocking on ``result()``."""

    def __init__(self, sdk_poller: Any, description: str) -> None:
        self._sdk_poller = sdk_poller
        self.description = description

    async def probe(self) -> PollResult:
        if not self._sdk_poller.done():
            return PollResult.in_progress()
        try:
            await run_sync(self._sdk_poller.result)
        except TRANSPORT_ERRORS:
            raise
        except Exception as e:
            if is_not_found(e):
                return PollResult.succeeded()
            return PollResult.failed(e)
        return PollResult.succeeded()
