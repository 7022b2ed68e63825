"""Tests for the subscription-wide cleaners."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure_mock import SUBSCRIPTION_ID, CallLog, resource_group, resource_group_id, sdk_object

from sweeper.identifiers import ResourceIdentifier
from sweeper.models import SelectionPolicy
from sweeper.pipeline import CleanerPipeline
from sweeper.remediator import Child, RemediationContext
from sweeper.subscription_cleaners import (
    build_machine_learning_purge_cleaner,
    build_managed_hsm_purge_cleaner,
    build_netapp_cleaner,
    build_subscription_cleaners,
    in_matching_group,
    protected_groups,
    resource_group_of,
)

SUBSCRIPTION = ResourceIdentifier.for_subscription(SUBSCRIPTION_ID)
POLICY = SelectionPolicy(dry_run=False)


@pytest.fixture
def clients() -> MagicMock:
    clients = MagicMock()
    clients.subscription_id = SUBSCRIPTION_ID
    return clients


class TestHelpers:
    """Tests for resource group selection helpers."""

    def test_resource_group_of(self) -> None:
        """Test extracting the group from an id."""
        assert resource_group_of(resource_group_id("acctest-rg") + "/x/y") == "acctest-rg"
        assert resource_group_of(None) is None
        assert resource_group_of("garbage") is None

    def test_in_matching_group(self) -> None:
        """Test that only children in prefixed groups are kept."""
        children = [
            Child(raw_id=resource_group_id("ACCTEST-one") + "/providers/A.B/c/d"),
            Child(raw_id=resource_group_id("prod") + "/providers/A.B/c/d"),
            Child(raw_id=None),
        ]

        selected = in_matching_group(children, POLICY, "thing")

        assert selected == children[:1]

    def test_in_matching_group_skips_protected(self) -> None:
        """Test that children of a protected group are left alone."""
        children = [
            Child(raw_id=resource_group_id("acctest-keep") + "/providers/A.B/c/d"),
            Child(raw_id=resource_group_id("acctest-one") + "/providers/A.B/c/d"),
        ]

        selected = in_matching_group(children, POLICY, "thing", {"acctest-keep"})

        assert selected == children[1:]

    @pytest.mark.asyncio
    async def test_protected_groups(self, clients: MagicMock) -> None:
        """Test that only groups carrying the exclusion tag are protected."""
        clients.resources.resource_groups.list.return_value = [
            resource_group("ACCTEST-Keep", tags={"DoNotDelete": ""}),
            resource_group("acctest-one", tags={"owner": "ci"}),
            resource_group("acctest-two"),
        ]

        assert await protected_groups(clients, POLICY) == {"acctest-keep"}

    def test_registry(self, clients: MagicMock) -> None:
        """Test the subscription cleaner order."""
        cleaners = build_subscription_cleaners(clients, POLICY)

        assert [c.name for c in CleanerPipeline(cleaners).cleaners] == [
            "Soft-Deleted Managed HSMs",
            "Machine Learning Workspaces",
            "NetApp",
        ]


class TestManagedHsmPurge:
    """Tests for the soft-deleted Managed HSM cleaner."""

    @staticmethod
    def deleted_hsm(name: str, resource_group: str) -> SimpleNamespace:
        return sdk_object(
            f"/subscriptions/{SUBSCRIPTION_ID}/providers/Microsoft.KeyVault/locations/"
            f"westeurope/deletedManagedHSMs/{name}",
            properties=SimpleNamespace(
                mhsm_id=resource_group_id(resource_group)
                + f"/providers/Microsoft.KeyVault/managedHSMs/{name}"
            ),
        )

    @pytest.mark.asyncio
    async def test_purges_by_original_resource_group(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test that only HSMs from prefixed groups are purged, by name and location."""
        calls = CallLog()
        managed_hsms = clients.key_vault.managed_hsms
        managed_hsms.list_deleted.return_value = [
            self.deleted_hsm("hsm1", "acctest-rg"),
            self.deleted_hsm("hsm2", "prod-rg"),
        ]
        managed_hsms.begin_purge_deleted.side_effect = calls.record("purge")

        cleaner = build_managed_hsm_purge_cleaner(clients, POLICY)
        failures = await cleaner.cleanup(SUBSCRIPTION, live_context)

        assert failures == []
        assert calls.args_of("purge") == [("hsm1", "westeurope")]


class TestMachineLearningPurge:
    """Tests for the Machine Learning workspace cleaner."""

    @pytest.mark.asyncio
    async def test_deletes_with_purge(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test that workspaces are deleted with force_to_purge."""
        calls = CallLog()
        workspaces = clients.machine_learning.workspaces
        workspaces.list_by_subscription.return_value = [
            sdk_object(
                resource_group_id("acctest-rg")
                + "/providers/Microsoft.MachineLearningServices/workspaces/ws1"
            ),
            sdk_object(
                resource_group_id("prod-rg")
                + "/providers/Microsoft.MachineLearningServices/workspaces/ws2"
            ),
        ]
        workspaces.begin_delete.side_effect = calls.record("delete")

        cleaner = build_machine_learning_purge_cleaner(clients, POLICY)
        await cleaner.cleanup(SUBSCRIPTION, live_context)

        assert calls.calls == [("delete", ("acctest-rg", "ws1"), {"force_to_purge": True})]

    @pytest.mark.asyncio
    async def test_protected_group_is_left_alone(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test that a workspace in a DoNotDelete-tagged group is not purged."""
        clients.resources.resource_groups.list.return_value = [
            resource_group("acctest-keep", tags={"DoNotDelete": ""})
        ]
        workspaces = clients.machine_learning.workspaces
        workspaces.list_by_subscription.return_value = [
            sdk_object(
                resource_group_id("acctest-keep")
                + "/providers/Microsoft.MachineLearningServices/workspaces/ws1"
            )
        ]

        cleaner = build_machine_learning_purge_cleaner(clients, POLICY)
        failures = await cleaner.cleanup(SUBSCRIPTION, live_context)

        assert failures == []
        workspaces.begin_delete.assert_not_called()


class TestNetApp:
    """Tests for the NetApp cleaner."""

    ACCOUNT_ID = (
        resource_group_id("acctest-rg") + "/providers/Microsoft.NetApp/netAppAccounts/acct1"
    )
    POOL_ID = f"{ACCOUNT_ID}/capacityPools/pool1"
    VOLUME_ID = f"{POOL_ID}/volumes/vol1"

    def configure(self, clients: MagicMock, calls: CallLog) -> MagicMock:
        netapp = clients.netapp
        other_account = (
            resource_group_id("prod-rg") + "/providers/Microsoft.NetApp/netAppAccounts/acct2"
        )
        netapp.accounts.list_by_subscription.return_value = [
            sdk_object(self.ACCOUNT_ID),
            sdk_object(other_account),
        ]
        netapp.pools.list.side_effect = lambda rg, account: (
            [sdk_object(self.POOL_ID)] if account == "acct1" else []
        )
        netapp.volumes.list.return_value = [
            sdk_object(
                self.VOLUME_ID,
                data_protection=SimpleNamespace(replication=SimpleNamespace(remote="x")),
            )
        ]
        netapp.volumes.begin_delete_replication.side_effect = calls.record("delete replication")
        netapp.volumes.get.return_value = SimpleNamespace(
            data_protection=SimpleNamespace(replication=None)
        )
        netapp.volumes.begin_delete.side_effect = calls.record("delete volume")
        netapp.pools.begin_delete.side_effect = calls.record("delete pool")
        netapp.pools.get.side_effect = ResourceNotFoundError("gone")
        netapp.accounts.begin_delete.side_effect = calls.record("delete account")
        return netapp

    @pytest.mark.asyncio
    async def test_teardown_order(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test replication, volumes, pools, then the account."""
        calls = CallLog()
        self.configure(clients, calls)

        failures = await build_netapp_cleaner(clients, POLICY).cleanup(SUBSCRIPTION, live_context)

        assert failures == []
        assert calls.labels == [
            "delete replication",
            "delete volume",
            "delete pool",
            "delete account",
        ]
        assert calls.calls[1] == (
            "delete volume",
            ("acctest-rg", "acct1", "pool1", "vol1"),
            {"force_delete": True},
        )
        assert calls.args_of("delete account") == [("acctest-rg", "acct1")]

    @pytest.mark.asyncio
    async def test_volume_failure_keeps_account(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test that a volume that will not delete blocks the account delete."""
        calls = CallLog()
        netapp = self.configure(clients, calls)
        netapp.volumes.list.return_value = [sdk_object(self.VOLUME_ID, data_protection=None)]
        netapp.volumes.begin_delete.side_effect = calls.record(
            "delete volume", error=RuntimeError("busy")
        )

        failures = await build_netapp_cleaner(clients, POLICY).cleanup(SUBSCRIPTION, live_context)

        assert calls.labels == ["delete volume", "delete pool"]
        assert [f.step for f in failures] == ["volumes"]

    @pytest.mark.asyncio
    async def test_protected_group_is_left_alone(
        self, clients: MagicMock, live_context: RemediationContext
    ) -> None:
        """Test that an account in a DoNotDelete-tagged group is not torn down."""
        calls = CallLog()
        self.configure(clients, calls)
        clients.resources.resource_groups.list.return_value = [
            resource_group("acctest-rg", tags={"donotdelete": "true"})
        ]

        failures = await build_netapp_cleaner(clients, POLICY).cleanup(SUBSCRIPTION, live_context)

        assert failures == []
        assert calls.labels == []
