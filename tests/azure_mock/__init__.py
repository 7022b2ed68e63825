"""Azure API fakes for sweeper tests.

This package provides in-memory stand-ins for the pieces of the Azure SDK
the sweeper talks to, so sweeps can be exercised without connectivity.

Key Features:
- Mock credential that hands out fake tokens
- Resource Graph client answering ``resources`` queries from in-memory rows
- SDK-shaped objects and pollers for management-plane list/delete calls
- Call recording so tests can assert on the exact order of calls

Usage:
    from azure_mock import CallLog, sdk_object

    calls = CallLog()
    clients.locks.management_locks.delete_by_scope.side_effect = calls.record("delete lock")
    ...
    assert calls.labels == ["delete lock", "delete group"]
"""

from .credential import MockManagedIdentityCredential, create_mock_credential
from .graph import MockGraphResource, MockResourceGraphClient, create_mock_graph_client
from .sdk import (
    SUBSCRIPTION_ID,
    TENANT_ID,
    CallLog,
    FakePoller,
    graph_page,
    make_pollers,
    resource_group,
    resource_group_id,
    sdk_object,
)

__all__ = [
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "CallLog",
    "FakePoller",
    "MockGraphResource",
    "MockManagedIdentityCredential",
    "MockResourceGraphClient",
    "create_mock_credential",
    "create_mock_graph_client",
    "graph_page",
    "make_pollers",
    "resource_group",
    "resource_group_id",
    "sdk_object",
]
