"""Tests for the polling state machine."""

import asyncio
from collections.abc import Sequence
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError
from azure_mock import FakePoller

from sweeper.identifiers import ResourceIdentifier
from sweeper.models import PollResult, PollStatus
from sweeper.poller import (
    FieldClearedProbe,
    ListAbsenceProbe,
    LongRunningOperationProbe,
    Poller,
    PollerFactory,
    PollingDroppedConnectionError,
    PollingFailedError,
    ResourceAbsentProbe,
)

ITEM_ID = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/acctest-rg/"
    "providers/Microsoft.RecoveryServices/vaults/vault1/backupFabrics/Azure/"
    "protectionContainers/c1/protectedItems/item1"
)


class ScriptedOperation:
    """Returns (or raises) the scripted results in order, repeating the last one."""

    description = "scripted operation"

    def __init__(self, script: Sequence[PollResult | BaseException]) -> None:
        self._script = list(script)
        self.calls = 0

    async def probe(self) -> PollResult:
        step = self._script[min(self.calls, len(self._script) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        return step


def make_poller(operation: ScriptedOperation, dropped_connections: int = 3) -> Poller:
    return Poller(
        operation, interval_seconds=7, dropped_connections=dropped_connections, sleep=AsyncMock()
    )


def http_error(status_code: int) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status_code}")
    error.status_code = status_code
    return error


class TestPoller:
    """Tests for Poller.poll_until_done."""

    @pytest.mark.asyncio
    async def test_not_found_is_success_in_one_tick(self) -> None:
        """Test that a target already gone finishes immediately."""
        operation = ScriptedOperation([ResourceNotFoundError("gone")])
        poller = make_poller(operation)

        await poller.poll_until_done()

        assert poller.state == PollStatus.SUCCEEDED
        assert poller.ticks == 1

    @pytest.mark.asyncio
    async def test_http_404_is_success(self) -> None:
        """Test that a bare 404 response counts as absence."""
        poller = make_poller(ScriptedOperation([http_error(404)]))

        await poller.poll_until_done()

        assert poller.state == PollStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_polls_until_success(self) -> None:
        """Test that in-progress results sleep for the interval."""
        operation = ScriptedOperation(
            [PollResult.in_progress(), PollResult.in_progress(), PollResult.succeeded()]
        )
        poller = make_poller(operation)

        await poller.poll_until_done()

        assert poller.ticks == 3
        assert poller._sleep.await_count == 2  # type: ignore[attr-defined]
        poller._sleep.assert_awaited_with(7)  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_retry_after_overrides_interval(self) -> None:
        """Test that a probe can ask for a longer wait."""
        operation = ScriptedOperation([PollResult.in_progress(42), PollResult.succeeded()])
        poller = make_poller(operation)

        await poller.poll_until_done()

        poller._sleep.assert_awaited_once_with(42)  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_failed_result_raises(self) -> None:
        """Test that a failed operation raises PollingFailedError."""
        poller = make_poller(ScriptedOperation([PollResult.failed(RuntimeError("conflict"))]))

        with pytest.raises(PollingFailedError, match="conflict"):
            await poller.poll_until_done()

        assert poller.state == PollStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_failure(self) -> None:
        """Test that a non-transport error from a probe fails the operation."""
        poller = make_poller(ScriptedOperation([http_error(409)]))

        with pytest.raises(PollingFailedError):
            await poller.poll_until_done()

    @pytest.mark.asyncio
    async def test_dropped_connection_budget(self) -> None:
        """Test that K consecutive transport errors fail the operation."""
        operation = ScriptedOperation([ServiceRequestError("connection reset")])
        poller = make_poller(operation, dropped_connections=3)

        with pytest.raises(PollingDroppedConnectionError):
            await poller.poll_until_done()

        assert operation.calls == 3
        assert poller.state == PollStatus.FAILED

    @pytest.mark.asyncio
    async def test_dropped_connection_counter_resets(self) -> None:
        """Test that a successful probe resets the consecutive-drop counter."""
        drop = ServiceRequestError("connection reset")
        operation = ScriptedOperation(
            [drop, drop, PollResult.in_progress(), drop, drop, PollResult.succeeded()]
        )
        poller = make_poller(operation, dropped_connections=3)

        await poller.poll_until_done()

        assert poller.state == PollStatus.SUCCEEDED
        assert operation.calls == 6

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        """Test that cancelling the task stops polling at the next suspension point."""
        operation = ScriptedOperation([PollResult.in_progress()])
        poller = Poller(operation, interval_seconds=60)

        task = asyncio.create_task(poller.poll_until_done())
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert operation.calls == 1

    def test_budget_must_be_positive(self) -> None:
        """Test that a zero dropped-connection budget is rejected."""
        with pytest.raises(ValueError):
            Poller(ScriptedOperation([PollResult.succeeded()]), dropped_connections=0)


class TestPollerFactory:
    """Tests for PollerFactory."""

    @pytest.mark.asyncio
    async def test_wait_uses_shared_settings(self) -> None:
        """Test that created pollers inherit the factory settings."""
        sleep = AsyncMock()
        factory = PollerFactory(interval_seconds=3, dropped_connections=2, sleep=sleep)

        await factory.wait(ScriptedOperation([PollResult.in_progress(), PollResult.succeeded()]))

        sleep.assert_awaited_once_with(3)


class TestProbes:
    """Tests for the probe implementations."""

    @pytest.mark.asyncio
    async def test_resource_absent_probe(self) -> None:
        """Test that a successful get means the object still exists."""
        present = ResourceAbsentProbe(AsyncMock(return_value=object()), "get")
        gone = ResourceAbsentProbe(AsyncMock(side_effect=ResourceNotFoundError("gone")), "get")

        assert (await present.probe()).status == PollStatus.IN_PROGRESS
        assert (await gone.probe()).status == PollStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_resource_absent_probe_reraises_other_errors(self) -> None:
        """Test that errors other than not-found reach the poller."""
        probe = ResourceAbsentProbe(AsyncMock(side_effect=http_error(500)), "get")

        with pytest.raises(HttpResponseError):
            await probe.probe()

    @pytest.mark.asyncio
    async def test_list_absence_probe(self) -> None:
        """Test that the target must vanish from the listing, case-insensitively."""
        target = ResourceIdentifier.parse(ITEM_ID)
        listed = ListAbsenceProbe(AsyncMock(return_value=[None, ITEM_ID.upper()]), target, "list")
        unlisted = ListAbsenceProbe(AsyncMock(return_value=["/subscriptions/x"]), target, "list")

        assert (await listed.probe()).status == PollStatus.IN_PROGRESS
        assert (await unlisted.probe()).status == PollStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_field_cleared_probe_dotted_path(self) -> None:
        """Test that a nested relationship field is followed."""
        replicated = SimpleNamespace(data_protection=SimpleNamespace(replication="remote"))
        cleared = SimpleNamespace(data_protection=SimpleNamespace(replication=None))
        no_parent = SimpleNamespace(data_protection=None)
        field = "data_protection.replication"

        assert (
            await FieldClearedProbe(AsyncMock(return_value=replicated), field, "get").probe()
        ).status == PollStatus.IN_PROGRESS
        assert (
            await FieldClearedProbe(AsyncMock(return_value=cleared), field, "get").probe()
        ).status == PollStatus.SUCCEEDED
        assert (
            await FieldClearedProbe(AsyncMock(return_value=no_parent), field, "get").probe()
        ).status == PollStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_long_running_operation_probe(self) -> None:
        """Test adapting SDK pollers."""
        running = MagicMock()
        running.done.return_value = False

        assert (
            await LongRunningOperationProbe(running, "lro").probe()
        ).status == PollStatus.IN_PROGRESS
        assert (
            await LongRunningOperationProbe(FakePoller(), "lro").probe()
        ).status == PollStatus.SUCCEEDED
        assert (
            await LongRunningOperationProbe(FakePoller(error=http_error(404)), "lro").probe()
        ).status == PollStatus.SUCCEEDED

        failed = await LongRunningOperationProbe(FakePoller(error=http_error(409)), "lro").probe()
        assert failed.status == PollStatus.FAILED
        assert failed.error is not None
