"""Cleaners run inside every resource group before it is deleted.

Each cleaner is a declarative binding of a Remediator to the SDK calls of
one resource type. The registry order matters: locks first, because a
delete lock blocks every other cleaner's delete calls.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from azure.core.exceptions import HttpResponseError
from azure.mgmt.dataprotection.models import (
    PatchBackupVaultInput,
    PatchResourceRequestInput,
    SecuritySettings,
    SoftDeleteSettings,
)

from .azure_clients import AzureClients, run_sync
from .identifiers import ResourceIdentifier
from .pipeline import Cleaner
from .poller import FieldClearedProbe, ListAbsenceProbe, ResourceAbsentProbe
from .remediator import Child, ChildAction, ChildStep, GateStep, Remediator, Stage
from .resource_graph import ResourceGraphInventory

logger = logging.getLogger(__name__)

NOTIFICATION_HUBS_API_VERSION = "2017-04-01"

# Backup fabric used for Azure workloads in a Recovery Services vault
RECOVERY_SERVICES_FABRIC = "Azure"
AZURE_STORAGE_CONTAINER_FILTER = "backupManagementType eq 'AzureStorage'"

SERVICE_BUS_SECONDARY_ROLE = "Secondary"

# Local rulestack list calls fail intermittently with these while the
# rulestack is being torn down; treat them as "nothing left to list".
RULESTACK_TRANSIENT_STATUS_CODES = (404, 500, 502)


def to_children(items: Iterable[Any]) -> list[Child]:
    return [Child(raw_id=item.id, name=item.name, payload=item) for item in items]


async def list_children(call: Callable[[], Iterable[Any]]) -> list[Child]:
    """Run a paged SDK list call to completion off the event loop."""
    return await run_sync(lambda: to_children(call()))


def group_name(identifier: ResourceIdentifier) -> str:
    resource_group = identifier.resource_group
    if resource_group is None:
        raise ValueError(f"{identifier} is not inside a resource group")
    return resource_group


def segment_of(identifier: ResourceIdentifier, key: str) -> str:
    value = identifier.segment(key)
    if value is None:
        raise ValueError(f"{identifier} has no '{key}' segment")
    return value


# =============================================================================
# Locks
# =============================================================================


def build_lock_cleaner(clients: AzureClients) -> Cleaner:
    """Remove management locks at (and below) resource group level."""
    locks = clients.locks.management_locks

    async def list_locks(container: ResourceIdentifier) -> list[Child]:
        resource_group = group_name(container)
        return await list_children(lambda: locks.list_at_resource_group_level(resource_group))

    async def delete_lock(lock_id: ResourceIdentifier, child: Child | None) -> Any:
        # The lock's scope is whatever it is attached to: the group or a resource in it
        scope = lock_id.parent
        return await run_sync(
            lambda: locks.delete_by_scope(scope=str(scope), lock_name=lock_id.name)
        )

    return Cleaner(
        name="Locks",
        remediator=Remediator(
            "Locks",
            [
                ChildStep(
                    name="management locks",
                    stage=Stage.ACCESS_CONTROL,
                    list_children=list_locks,
                    actions=(ChildAction("delete", delete_lock),),
                )
            ],
        ),
    )


# =============================================================================
# Data Protection backup vaults
# =============================================================================


def build_data_protection_cleaner(clients: AzureClients) -> Cleaner:
    """Empty Data Protection backup vaults, including soft-deleted instances."""
    client = clients.data_protection

    async def find_vaults(scope: ResourceIdentifier) -> list[str | None]:
        vaults = await list_children(
            lambda: client.backup_vaults.get_in_resource_group(group_name(scope))
        )
        return [vault.raw_id for vault in vaults]

    async def disable_soft_delete(vault: ResourceIdentifier, child: Child | None) -> Any:
        patch = PatchResourceRequestInput(
            properties=PatchBackupVaultInput(
                security_settings=SecuritySettings(
                    soft_delete_settings=SoftDeleteSettings(state="Off"),
                ),
            ),
        )
        return await run_sync(
            lambda: client.backup_vaults.begin_update(group_name(vault), vault.name, patch)
        )

    async def list_instances(vault: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: client.backup_instances.list(group_name(vault), vault.name)
        )

    async def delete_instance(instance: ResourceIdentifier, child: Child | None) -> Any:
        vault_name = segment_of(instance, "backupVaults")
        return await run_sync(
            lambda: client.backup_instances.begin_delete(
                group_name(instance), vault_name, instance.name
            )
        )

    async def list_deleted_instances(vault: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: client.deleted_backup_instances.list(group_name(vault), vault.name)
        )

    async def undelete_instance(instance: ResourceIdentifier, child: Child | None) -> Any:
        vault_name = segment_of(instance, "backupVaults")
        return await run_sync(
            lambda: client.deleted_backup_instances.begin_undelete(
                group_name(instance), vault_name, instance.name
            )
        )

    async def list_policies(vault: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: client.backup_policies.list(group_name(vault), vault.name)
        )

    async def delete_policy(policy: ResourceIdentifier, child: Child | None) -> Any:
        vault_name = segment_of(policy, "backupVaults")
        return await run_sync(
            lambda: client.backup_policies.delete(group_name(policy), vault_name, policy.name)
        )

    async def delete_vault(vault: ResourceIdentifier, child: Child | None) -> Any:
        return await run_sync(
            lambda: client.backup_vaults.begin_delete(group_name(vault), vault.name)
        )

    remediator = Remediator(
        "Data Protection",
        [
            GateStep(
                name="soft delete",
                stage=Stage.RETENTION_POLICY,
                action=ChildAction("disable soft delete", disable_soft_delete),
            ),
            ChildStep(
                name="backup instances",
                stage=Stage.NESTED,
                list_children=list_instances,
                actions=(ChildAction("delete", delete_instance),),
            ),
            ChildStep(
                name="deleted backup instances",
                stage=Stage.RETAINED,
                list_children=list_deleted_instances,
                actions=(
                    ChildAction("undelete", undelete_instance),
                    ChildAction("delete", delete_instance),
                ),
            ),
            # Policies stay until every instance referencing them, retained
            # ones included, is gone.
            ChildStep(
                name="backup policies",
                stage=Stage.RETAINED,
                list_children=list_policies,
                actions=(ChildAction("delete", delete_policy),),
            ),
        ],
        delete_container=ChildAction("delete", delete_vault),
    )

    return Cleaner(
        name="Data Protection",
        remediator=remediator,
        resource_types=("Microsoft.DataProtection/backupVaults",),
        find_containers=find_vaults,
    )


# =============================================================================
# Notification Hub namespaces
# =============================================================================


def build_notification_hubs_cleaner(
    clients: AzureClients, inventory: ResourceGraphInventory
) -> Cleaner:
    """Delete Notification Hub namespaces, which do not go away with their group."""
    resource_type = "Microsoft.NotificationHubs/namespaces"

    async def find_namespaces(scope: ResourceIdentifier) -> list[str | None]:
        return await inventory.find_resource_ids(group_name(scope), resource_type)

    async def delete_namespace(namespace: ResourceIdentifier, child: Child | None) -> Any:
        return await run_sync(
            lambda: clients.resources.resources.begin_delete_by_id(
                str(namespace), NOTIFICATION_HUBS_API_VERSION
            )
        )

    return Cleaner(
        name="Notification Hub Namespaces",
        remediator=Remediator(
            "Notification Hub Namespaces",
            delete_container=ChildAction("delete", delete_namespace),
        ),
        resource_types=(resource_type,),
        find_containers=find_namespaces,
    )


# =============================================================================
# Palo Alto local rulestacks
# =============================================================================


def build_palo_alto_cleaner(clients: AzureClients) -> Cleaner:
    """Empty Palo Alto local rulestacks so the group delete can remove them."""
    client = clients.palo_alto

    async def find_rulestacks(scope: ResourceIdentifier) -> list[str | None]:
        rulestacks = await list_children(
            lambda: client.local_rulestacks.list_by_resource_group(group_name(scope))
        )
        return [rulestack.raw_id for rulestack in rulestacks]

    def rulestack_lister(operations: Any) -> Callable[[ResourceIdentifier], Any]:
        async def list_objects(rulestack: ResourceIdentifier) -> list[Child]:
            try:
                resource_group = group_name(rulestack)
                return await list_children(
                    lambda: operations.list_by_local_rulestacks(resource_group, rulestack.name)
                )
            except HttpResponseError as e:
                if e.status_code in RULESTACK_TRANSIENT_STATUS_CODES:
                    logger.warning(
                        "Listing rulestack objects failed, treating as empty",
                        extra={"rulestack": str(rulestack), "status_code": e.status_code},
                    )
                    return []
                raise

        return list_objects

    def rulestack_deleter(operations: Any) -> Callable[..., Any]:
        async def delete_object(item: ResourceIdentifier, child: Child | None) -> Any:
            rulestack_name = segment_of(item, "localRulestacks")
            return await run_sync(
                lambda: operations.begin_delete(group_name(item), rulestack_name, item.name)
            )

        return delete_object

    async def clear_certificate_references(
        rulestack: ResourceIdentifier, child: Child | None
    ) -> Any:
        resource = await run_sync(
            lambda: client.local_rulestacks.get(group_name(rulestack), rulestack.name)
        )
        security = getattr(resource, "security_services", None)
        if security is None or not (
            security.outbound_trust_certificate or security.outbound_un_trust_certificate
        ):
            return None

        security.outbound_trust_certificate = None
        security.outbound_un_trust_certificate = None
        return await run_sync(
            lambda: client.local_rulestacks.begin_create_or_update(
                group_name(rulestack), rulestack.name, resource
            )
        )

    nested = [
        ("local rules", client.local_rules),
        ("FQDN lists", client.fqdn_list_local_rulestack),
        ("certificates", client.certificate_object_local_rulestack),
        ("prefix lists", client.prefix_list_local_rulestack),
    ]

    remediator = Remediator(
        "Palo Alto Local Rulestacks",
        [
            GateStep(
                name="certificate references",
                stage=Stage.RELATIONSHIPS,
                action=ChildAction("clear certificate references", clear_certificate_references),
            ),
            *(
                ChildStep(
                    name=name,
                    stage=Stage.NESTED,
                    list_children=rulestack_lister(operations),
                    actions=(ChildAction("delete", rulestack_deleter(operations)),),
                )
                for name, operations in nested
            ),
        ],
    )

    return Cleaner(
        name="Palo Alto Local Rulestacks",
        remediator=remediator,
        resource_types=("PaloAltoNetworks.Cloudngfw/localRulestacks",),
        find_containers=find_rulestacks,
    )


# =============================================================================
# Recovery Services vaults
# =============================================================================


def build_recovery_services_cleaner(
    clients: AzureClients, inventory: ResourceGraphInventory
) -> Cleaner:
    """Unregister storage containers and protected items, then delete the vault."""
    resource_type = "Microsoft.RecoveryServices/vaults"
    backup = clients.recovery_services_backup

    async def find_vaults(scope: ResourceIdentifier) -> list[str | None]:
        return await inventory.find_resource_ids(group_name(scope), resource_type)

    async def list_storage_containers(vault: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: backup.backup_protection_containers.list(
                vault.name, group_name(vault), filter=AZURE_STORAGE_CONTAINER_FILTER
            )
        )

    def container_args(container: ResourceIdentifier) -> tuple[str, str, str, str]:
        return (
            segment_of(container, "vaults"),
            group_name(container),
            segment_of(container, "backupFabrics"),
            segment_of(container, "protectionContainers"),
        )

    async def unregister_container(container: ResourceIdentifier, child: Child | None) -> Any:
        args = container_args(container)
        return await run_sync(lambda: backup.protection_containers.unregister(*args))

    def container_gone(container: ResourceIdentifier, child: Child | None) -> ResourceAbsentProbe:
        args = container_args(container)
        return ResourceAbsentProbe(
            lambda: run_sync(lambda: backup.protection_containers.get(*args)),
            f"unregistering {container}",
        )

    async def list_protected_items(vault: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: backup.backup_protected_items.list(vault.name, group_name(vault))
        )

    def item_args(item: ResourceIdentifier) -> tuple[str, str, str, str, str]:
        return (*container_args(item), segment_of(item, "protectedItems"))

    async def delete_item(item: ResourceIdentifier, child: Child | None) -> Any:
        args = item_args(item)
        return await run_sync(lambda: backup.protected_items.delete(*args))

    def item_gone(item: ResourceIdentifier, child: Child | None) -> ResourceAbsentProbe:
        args = item_args(item)
        return ResourceAbsentProbe(
            lambda: run_sync(lambda: backup.protected_items.get(*args)),
            f"deleting {item}",
        )

    def item_unlisted(item: ResourceIdentifier, child: Child | None) -> ListAbsenceProbe:
        vault_name, resource_group = segment_of(item, "vaults"), group_name(item)

        async def list_ids() -> list[str | None]:
            items = await list_children(
                lambda: backup.backup_protected_items.list(vault_name, resource_group)
            )
            return [listed.raw_id for listed in items]

        # Deletion is eventually consistent against the vault's item listing
        return ListAbsenceProbe(list_ids, item, f"removing {item} from the vault listing")

    async def delete_vault(vault: ResourceIdentifier, child: Child | None) -> Any:
        return await run_sync(
            lambda: clients.recovery_services.vaults.begin_delete(group_name(vault), vault.name)
        )

    remediator = Remediator(
        "Recovery Services",
        [
            ChildStep(
                name="storage protection containers",
                stage=Stage.NESTED,
                list_children=list_storage_containers,
                actions=(ChildAction("unregister", unregister_container, (container_gone,)),),
            ),
            ChildStep(
                name="protected items",
                stage=Stage.NESTED,
                list_children=list_protected_items,
                actions=(ChildAction("delete", delete_item, (item_gone, item_unlisted)),),
            ),
        ],
        delete_container=ChildAction("delete", delete_vault),
    )

    return Cleaner(
        name="Recovery Services",
        remediator=remediator,
        resource_types=(resource_type,),
        find_containers=find_vaults,
    )


# =============================================================================
# Service Bus namespace pairing
# =============================================================================


def build_service_bus_pairing_cleaner(clients: AzureClients) -> Cleaner:
    """Break geo-disaster-recovery pairings from the primary side."""
    client = clients.service_bus

    async def find_namespaces(scope: ResourceIdentifier) -> list[str | None]:
        namespaces = await list_children(
            lambda: client.namespaces.list_by_resource_group(group_name(scope))
        )
        return [namespace.raw_id for namespace in namespaces]

    async def list_configs(namespace: ResourceIdentifier) -> list[Child]:
        return await list_children(
            lambda: client.disaster_recovery_configs.list(group_name(namespace), namespace.name)
        )

    def secondary_side(child: Child) -> str | None:
        role = getattr(child.payload, "role", None)
        if role is None:
            return "pairing role unknown"
        if str(getattr(role, "value", role)).lower() == SERVICE_BUS_SECONDARY_ROLE.lower():
            return "secondary side of the pairing, the primary breaks it"
        return None

    def config_args(config: ResourceIdentifier) -> tuple[str, str, str]:
        return (group_name(config), segment_of(config, "namespaces"), config.name)

    async def break_pairing(config: ResourceIdentifier, child: Child | None) -> Any:
        args = config_args(config)
        return await run_sync(lambda: client.disaster_recovery_configs.break_pairing(*args))

    def partner_cleared(config: ResourceIdentifier, child: Child | None) -> FieldClearedProbe:
        args = config_args(config)
        return FieldClearedProbe(
            lambda: run_sync(lambda: client.disaster_recovery_configs.get(*args)),
            "partner_namespace",
            f"breaking pairing {config}",
        )

    return Cleaner(
        name="Service Bus Namespace Pairings",
        remediator=Remediator(
            "Service Bus Namespace Pairings",
            [
                ChildStep(
                    name="disaster recovery configs",
                    stage=Stage.RELATIONSHIPS,
                    list_children=list_configs,
                    actions=(ChildAction("break pairing", break_pairing, (partner_cleared,)),),
                    skip_when=secondary_side,
                )
            ],
        ),
        resource_types=("Microsoft.ServiceBus/namespaces",),
        find_containers=find_namespaces,
    )


# =============================================================================
# Registry
# =============================================================================


def build_resource_group_cleaners(
    clients: AzureClients, inventory: ResourceGraphInventory
) -> list[Cleaner]:
    """Every resource group cleaner, in the order they must run."""
    return [
        build_lock_cleaner(clients),
        build_data_protection_cleaner(clients),
        build_notification_hubs_cleaner(clients, inventory),
        build_palo_alto_cleaner(clients),
        build_recovery_services_cleaner(clients, inventory),
        build_service_bus_pairing_cleaner(clients),
    ]
