"""Cleaners that act across the whole subscription.

Some leftovers outlive their resource group: soft-deleted Managed HSMs,
Machine Learning workspaces held in soft-delete, and NetApp accounts whose
volumes block the group delete. These cleaners run with the subscription
as their container and pick targets by the name of the resource group they
(originally) lived in, using the same prefix as the resource group sweep.
Workspaces and NetApp accounts in a group carrying the exclusion tag are
left alone, as the group itself is.
"""

from __future__ import annotations

import logging
from typing import Any

from .azure_clients import AzureClients, run_sync
from .identifiers import ResourceIdentifier
from .models import SelectionPolicy
from .pipeline import Cleaner
from .poller import FieldClearedProbe, ResourceAbsentProbe
from .remediator import Child, ChildAction, ChildStep, Remediator, Stage
from .resource_group_cleaners import group_name, list_children, segment_of, to_children

logger = logging.getLogger(__name__)


def resource_group_of(raw_id: str | None) -> str | None:
    identifier = ResourceIdentifier.try_parse(raw_id)
    return identifier.resource_group if identifier is not None else None


async def protected_groups(clients: AzureClients, policy: SelectionPolicy) -> set[str]:
    """Lower-cased names of resource groups carrying the exclusion tag."""
    groups = await run_sync(lambda: list(clients.resources.resource_groups.list()))
    return {
        group.name.lower()
        for group in groups
        if group.name and policy.protecting_tag(group.tags) is not None
    }


def in_matching_group(
    children: list[Child],
    policy: SelectionPolicy,
    kind: str,
    protected: set[str] | None = None,
) -> list[Child]:
    """Keep children whose resource group matches the prefix and is not protected."""
    selected = []
    for child in children:
        resource_group = resource_group_of(child.raw_id)
        if not policy.matches_prefix(resource_group):
            logger.debug(
                f"Ignoring {kind} outside the swept resource groups",
                extra={"id": child.raw_id, "prefix": policy.prefix},
            )
        elif protected and resource_group is not None and resource_group.lower() in protected:
            logger.info(
                f"Skipping {kind} in a protected resource group",
                extra={"id": child.raw_id, "exclusion_tag": policy.exclusion_tag},
            )
        else:
            selected.append(child)
    return selected


# =============================================================================
# Soft-deleted Managed HSMs
# =============================================================================


def build_managed_hsm_purge_cleaner(clients: AzureClients, policy: SelectionPolicy) -> Cleaner:
    """Purge soft-deleted Managed HSMs so their names can be reused."""
    managed_hsms = clients.key_vault.managed_hsms

    async def list_deleted(subscription: ResourceIdentifier) -> list[Child]:
        deleted = await list_children(managed_hsms.list_deleted)
        # The deleted HSM's own id has no resource group, its original id does
        selected = []
        for child in deleted:
            original_id = getattr(getattr(child.payload, "properties", None), "mhsm_id", None)
            if policy.matches_prefix(resource_group_of(original_id)):
                selected.append(child)
        return selected

    async def purge(deleted: ResourceIdentifier, child: Child | None) -> Any:
        location = segment_of(deleted, "locations")
        return await run_sync(lambda: managed_hsms.begin_purge_deleted(deleted.name, location))

    return Cleaner(
        name="Soft-Deleted Managed HSMs",
        remediator=Remediator(
            "Soft-Deleted Managed HSMs",
            [
                ChildStep(
                    name="deleted managed HSMs",
                    stage=Stage.RETAINED,
                    list_children=list_deleted,
                    actions=(ChildAction("purge", purge),),
                )
            ],
        ),
    )


# =============================================================================
# Machine Learning workspaces
# =============================================================================


def build_machine_learning_purge_cleaner(
    clients: AzureClients, policy: SelectionPolicy
) -> Cleaner:
    """Delete Machine Learning workspaces with purge, skipping soft-delete retention."""
    workspaces = clients.machine_learning.workspaces

    async def list_workspaces(subscription: ResourceIdentifier) -> list[Child]:
        found = await list_children(workspaces.list_by_subscription)
        protected = await protected_groups(clients, policy)
        return in_matching_group(found, policy, "Machine Learning workspace", protected)

    async def purge(workspace: ResourceIdentifier, child: Child | None) -> Any:
        return await run_sync(
            lambda: workspaces.begin_delete(
                group_name(workspace), workspace.name, force_to_purge=True
            )
        )

    return Cleaner(
        name="Machine Learning Workspaces",
        remediator=Remediator(
            "Machine Learning Workspaces",
            [
                ChildStep(
                    name="machine learning workspaces",
                    stage=Stage.RETAINED,
                    list_children=list_workspaces,
                    actions=(ChildAction("purge", purge),),
                )
            ],
        ),
    )


# =============================================================================
# NetApp
# =============================================================================


def build_netapp_cleaner(clients: AzureClients, policy: SelectionPolicy) -> Cleaner:
    """Tear down NetApp accounts: replication, volumes, pools, then the account."""
    netapp = clients.netapp

    async def find_accounts(subscription: ResourceIdentifier) -> list[str | None]:
        accounts = await list_children(netapp.accounts.list_by_subscription)
        protected = await protected_groups(clients, policy)
        selected = in_matching_group(accounts, policy, "NetApp account", protected)
        return [account.raw_id for account in selected]

    async def list_pools(account: ResourceIdentifier) -> list[Child]:
        return await list_children(lambda: netapp.pools.list(group_name(account), account.name))

    async def list_volumes(account: ResourceIdentifier) -> list[Child]:
        resource_group = group_name(account)

        def collect() -> list[Child]:
            volumes: list[Child] = []
            for pool in to_children(netapp.pools.list(resource_group, account.name)):
                pool_id = ResourceIdentifier.try_parse(pool.raw_id)
                if pool_id is None:
                    # Surface the bad pool id to the remediator as an unparseable child
                    volumes.append(pool)
                    continue
                pool_volumes = netapp.volumes.list(resource_group, account.name, pool_id.name)
                volumes.extend(to_children(pool_volumes))
            return volumes

        return await run_sync(collect)

    async def list_replicated_volumes(account: ResourceIdentifier) -> list[Child]:
        return [
            volume
            for volume in await list_volumes(account)
            if getattr(getattr(volume.payload, "data_protection", None), "replication", None)
        ]

    def volume_args(volume: ResourceIdentifier) -> tuple[str, str, str, str]:
        return (
            group_name(volume),
            segment_of(volume, "netAppAccounts"),
            segment_of(volume, "capacityPools"),
            volume.name,
        )

    async def delete_replication(volume: ResourceIdentifier, child: Child | None) -> Any:
        args = volume_args(volume)
        return await run_sync(lambda: netapp.volumes.begin_delete_replication(*args))

    def replication_cleared(volume: ResourceIdentifier, child: Child | None) -> FieldClearedProbe:
        args = volume_args(volume)
        return FieldClearedProbe(
            lambda: run_sync(lambda: netapp.volumes.get(*args)),
            "data_protection.replication",
            f"removing replication from {volume}",
        )

    async def delete_volume(volume: ResourceIdentifier, child: Child | None) -> Any:
        args = volume_args(volume)
        return await run_sync(lambda: netapp.volumes.begin_delete(*args, force_delete=True))

    async def delete_pool(pool: ResourceIdentifier, child: Child | None) -> Any:
        account_name = segment_of(pool, "netAppAccounts")
        return await run_sync(
            lambda: netapp.pools.begin_delete(group_name(pool), account_name, pool.name)
        )

    def pool_gone(pool: ResourceIdentifier, child: Child | None) -> ResourceAbsentProbe:
        account_name = segment_of(pool, "netAppAccounts")
        return ResourceAbsentProbe(
            lambda: run_sync(lambda: netapp.pools.get(group_name(pool), account_name, pool.name)),
            f"deleting {pool}",
        )

    async def delete_account(account: ResourceIdentifier, child: Child | None) -> Any:
        return await run_sync(
            lambda: netapp.accounts.begin_delete(group_name(account), account.name)
        )

    remediator = Remediator(
        "NetApp",
        [
            ChildStep(
                name="volume replication",
                stage=Stage.RELATIONSHIPS,
                list_children=list_replicated_volumes,
                actions=(
                    ChildAction("delete replication", delete_replication, (replication_cleared,)),
                ),
            ),
            ChildStep(
                name="volumes",
                stage=Stage.NESTED,
                list_children=list_volumes,
                actions=(ChildAction("delete", delete_volume),),
            ),
            ChildStep(
                name="capacity pools",
                stage=Stage.NESTED,
                list_children=list_pools,
                actions=(ChildAction("delete", delete_pool, (pool_gone,)),),
            ),
        ],
        delete_container=ChildAction("delete", delete_account),
    )

    return Cleaner(
        name="NetApp",
        remediator=remediator,
        resource_types=("Microsoft.NetApp/netAppAccounts",),
        find_containers=find_accounts,
    )


def build_subscription_cleaners(clients: AzureClients, policy: SelectionPolicy) -> list[Cleaner]:
    """Every subscription cleaner, in the order they run."""
    return [
        build_managed_hsm_purge_cleaner(clients, policy),
        build_machine_learning_purge_cleaner(clients, policy),
        build_netapp_cleaner(clients, policy),
    ]
