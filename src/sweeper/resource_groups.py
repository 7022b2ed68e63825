"""Subscription-scope candidate sources: resource groups and management groups."""

from __future__ import annotations

import logging
import re
from itertools import islice

from .azure_clients import AzureClients, run_sync
from .identifiers import ResourceIdentifier
from .models import Candidate, ProvisioningState, SelectionPolicy

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class ResourceGroupSource:
    """Resource groups of the configured subscription."""

    kind = "Resource Group"
    requires_prefix = True
    supports_purge = False

    def __init__(self, clients: AzureClients) -> None:
        self._clients = clients
        self.scope = ResourceIdentifier.for_subscription(clients.subscription_id)

    async def list_candidates(self, policy: SelectionPolicy) -> list[Candidate]:
        limit = policy.max_candidates
        groups = await run_sync(
            lambda: list(islice(self._clients.resources.resource_groups.list(top=limit), limit))
        )

        candidates = []
        for group in groups:
            identifier = ResourceIdentifier.try_parse(group.id) or (
                ResourceIdentifier.for_resource_group(self._clients.subscription_id, group.name)
            )
            state = group.properties.provisioning_state if group.properties else None
            candidates.append(
                Candidate(
                    identifier=identifier,
                    name=group.name,
                    kind=self.kind,
                    tags=dict(group.tags or {}),
                    provisioning_state=ProvisioningState.parse(state),
                )
            )
        return candidates

    async def delete(self, candidate: Candidate) -> None:
        # Fire and forget: no poller thread is started for the delete
        await run_sync(
            lambda: self._clients.resources.resource_groups.begin_delete(
                candidate.name, polling=False
            )
        )

    async def purge(self, candidate: Candidate) -> None:
        raise NotImplementedError("Resource groups have no purge phase")


class ManagementGroupSource:
    """Management groups created by test runs.

    Tests create management groups with a random UUID as the group name, so
    only UUID-named groups are ever candidates. The display name is what the
    prefix is matched against.
    """

    kind = "Management Group"
    requires_prefix = False
    supports_purge = False

    def __init__(self, clients: AzureClients, tenant_id: str) -> None:
        self._clients = clients
        # The tenant root group is named after the tenant
        self.scope = ResourceIdentifier.for_management_group(tenant_id)

    async def list_candidates(self, policy: SelectionPolicy) -> list[Candidate]:
        groups = await run_sync(
            lambda: list(self._clients.management_groups.management_groups.list())
        )

        candidates = []
        for group in groups:
            if not group.name or not UUID_PATTERN.match(group.name):
                logger.debug(
                    "Ignoring management group not named by UUID", extra={"group_name": group.name}
                )
                continue
            if group.name.lower() == self.scope.name.lower():
                continue
            candidates.append(
                Candidate(
                    identifier=ResourceIdentifier.try_parse(group.id)
                    or ResourceIdentifier.for_management_group(group.name),
                    name=group.display_name or "",
                    kind=self.kind,
                )
            )
        return candidates

    async def delete(self, candidate: Candidate) -> None:
        group_id = candidate.identifier.name
        await run_sync(
            lambda: self._clients.management_groups.management_groups.begin_delete(
                group_id, polling=False
            )
        )

    async def purge(self, candidate: Candidate) -> None:
        raise NotImplementedError("Management groups have no purge phase")
