"""Tests for the SDK client gateway."""

from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure_mock import SUBSCRIPTION_ID, FakePoller, create_mock_credential

from sweeper.azure_clients import AzureClients, is_long_running, is_not_found, run_sync
from sweeper.credentials import PUBLIC_CLOUD


def http_error(status_code: int) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status_code}")
    error.status_code = status_code
    return error


class TestErrorHelpers:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ResourceNotFoundError("gone"), True),
            (http_error(404), True),
            (http_error(409), False),
            (RuntimeError("boom"), False),
        ],
    )
    def test_is_not_found(self, error: Exception, expected: bool) -> None:
        """Test which errors mean the target is already gone."""
        assert is_not_found(error) is expected

    def test_is_long_running(self) -> None:
        """Test that only poller-shaped results are waited on."""
        assert is_long_running(FakePoller())
        assert not is_long_running(None)
        assert not is_long_running({"id": "x"})


class TestRunSync:
    """Tests for run_sync."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        """Test that the blocking call's result is returned."""
        call = MagicMock(return_value=[1, 2])

        assert await run_sync(call) == [1, 2]
        call.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_propagates_errors(self) -> None:
        """Test that SDK errors reach the caller."""
        with pytest.raises(ResourceNotFoundError):
            await run_sync(MagicMock(side_effect=ResourceNotFoundError("gone")))


class TestAzureClients:
    """Tests for AzureClients."""

    def test_clients_are_created_once(self) -> None:
        """Test that each SDK client is constructed lazily and reused."""
        credential = create_mock_credential()
        clients = AzureClients(credential, SUBSCRIPTION_ID, PUBLIC_CLOUD)  # type: ignore[arg-type]

        assert clients.resources is clients.resources
        assert clients.locks is clients.locks
        assert clients.subscription_id == SUBSCRIPTION_ID
        assert clients.environment == PUBLIC_CLOUD
        # Construction alone never asks for a token
        assert credential.requested_scopes == []
