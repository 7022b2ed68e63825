"""Remote resource gateway: Azure SDK clients and the helpers around them.

The management-plane SDKs are synchronous. Every call goes through
``run_sync`` so the sweep's event loop stays responsive to cancellation,
the same executor hop used for the Resource Graph queries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import cached_property
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.dataprotection import DataProtectionMgmtClient
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.machinelearningservices import MachineLearningServicesMgmtClient
from azure.mgmt.managementgroups import ManagementGroupsAPI
from azure.mgmt.netapp import NetAppManagementClient
from azure.mgmt.paloaltonetworksngfw import PaloAltoNetworksNgfwMgmtClient
from azure.mgmt.recoveryservices import RecoveryServicesClient
from azure.mgmt.recoveryservicesbackup.activestamp import RecoveryServicesBackupClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.locks import ManagementLockClient
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.servicebus import ServiceBusManagementClient
from msgraph import GraphServiceClient
from msgraph.generated.models.o_data_errors.o_data_error import ODataError

from .credentials import CloudEnvironment

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors raised when the request never got an answer. Pollers count these
# against their dropped-connection budget instead of failing outright.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    ServiceRequestError,
    ServiceResponseError,
    ConnectionError,
    TimeoutError,
)


async def run_sync(call: Callable[[], T]) -> T:
    """Run a blocking SDK call in the default executor."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, call)


def is_not_found(error: BaseException) -> bool:
    """Whether an error means the target no longer exists."""
    if isinstance(error, ResourceNotFoundError):
        return True
    if isinstance(error, HttpResponseError) and error.status_code == 404:
        return True
    if isinstance(error, ODataError) and error.response_status_code == 404:
        return True
    return False


def is_long_running(result: Any) -> bool:
    """Whether a call returned an SDK poller rather than a final result."""
    return callable(getattr(result, "done", None)) and callable(getattr(result, "result", None))


class AzureClients:
    """Lazily constructed SDK clients for one subscription.

    Clients are created on first use and reused for the rest of the run.
    They hold no cached data: every list call goes back to the API.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        environment: CloudEnvironment,
    ) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._environment = environment

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    @property
    def environment(self) -> CloudEnvironment:
        return self._environment

    def _management_kwargs(self) -> dict[str, Any]:
        return {
            "base_url": self._environment.resource_manager,
            "credential_scopes": [self._environment.resource_manager_scope],
        }

    def _subscription_client(self, client_class: type[T]) -> T:
        return client_class(  # type: ignore[call-arg]
            credential=self._credential,
            subscription_id=self._subscription_id,
            **self._management_kwargs(),
        )

    @cached_property
    def resources(self) -> ResourceManagementClient:
        return self._subscription_client(ResourceManagementClient)

    @cached_property
    def locks(self) -> ManagementLockClient:
        return self._subscription_client(ManagementLockClient)

    @cached_property
    def resource_graph(self) -> ResourceGraphClient:
        return ResourceGraphClient(credential=self._credential, **self._management_kwargs())

    @cached_property
    def management_groups(self) -> ManagementGroupsAPI:
        return ManagementGroupsAPI(credential=self._credential, **self._management_kwargs())

    @cached_property
    def data_protection(self) -> DataProtectionMgmtClient:
        return self._subscription_client(DataProtectionMgmtClient)

    @cached_property
    def recovery_services(self) -> RecoveryServicesClient:
        return self._subscription_client(RecoveryServicesClient)

    @cached_property
    def recovery_services_backup(self) -> RecoveryServicesBackupClient:
        return self._subscription_client(RecoveryServicesBackupClient)

    @cached_property
    def service_bus(self) -> ServiceBusManagementClient:
        return self._subscription_client(ServiceBusManagementClient)

    @cached_property
    def palo_alto(self) -> PaloAltoNetworksNgfwMgmtClient:
        return self._subscription_client(PaloAltoNetworksNgfwMgmtClient)

    @cached_property
    def key_vault(self) -> KeyVaultManagementClient:
        return self._subscription_client(KeyVaultManagementClient)

    @cached_property
    def machine_learning(self) -> MachineLearningServicesMgmtClient:
        return self._subscription_client(MachineLearningServicesMgmtClient)

    @cached_property
    def netapp(self) -> NetAppManagementClient:
        return self._subscription_client(NetAppManagementClient)

    @cached_property
    def graph(self) -> GraphServiceClient:
        client = GraphServiceClient(
            credentials=self._credential,
            scopes=[self._environment.graph_scope],
        )
        client.request_adapter.base_url = f"{self._environment.graph_endpoint}/v1.0"
        return client
