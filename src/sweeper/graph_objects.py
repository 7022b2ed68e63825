"""Tenant-scope candidate sources backed by Microsoft Graph.

Acceptance tests leave directory objects behind: applications, groups,
users, conditional access policies, entitlement management objects. Each
kind is described by a GraphObjectBinding and swept by the same driver as
resource groups, with no remediation pipeline.

Applications and groups are soft-deleted by Graph and stay in the
directory's deleted items for 30 days, so those sources also purge them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from msgraph import GraphServiceClient

from .identifiers import ResourceIdentifier
from .models import Candidate, SelectionPolicy

logger = logging.getLogger(__name__)

MANAGED_IDENTITY_SERVICE_PRINCIPAL_TYPE = "ManagedIdentity"

ItemBuilder = Callable[[GraphServiceClient, str], Any]
CollectionBuilder = Callable[[GraphServiceClient], Any]


def display_name_of(item: Any) -> str | None:
    return getattr(item, "display_name", None)


def access_package_name_of(request: Any) -> str | None:
    """Assignment requests have no name of their own."""
    access_package = getattr(request, "access_package", None)
    return getattr(access_package, "display_name", None)


def managed_identity_reason(service_principal: Any) -> str | None:
    if getattr(service_principal, "service_principal_type", None) == (
        MANAGED_IDENTITY_SERVICE_PRINCIPAL_TYPE
    ):
        return "linked to a managed identity"
    return None


@dataclass(frozen=True)
class GraphObjectBinding:
    """How to list and delete one kind of directory object.

    Attributes:
        name: Short name used in sweep profiles.
        kind: Human-readable kind used in logs.
        path: Collection path relative to the Graph base URL.
        collection: Returns the collection request builder.
        item: Returns the request builder for one object by id.
        server_filter: Whether the collection supports
            ``startswith(displayName, ...)`` so listing can be narrowed.
        expand: Optional ``$expand`` for the listing.
        name_of: Extracts the name matched against the prefix.
        exclude: Returns a reason when an object must never be deleted.
        supports_purge: Whether deleted objects land in deleted items.
    """

    name: str
    kind: str
    path: str
    collection: CollectionBuilder
    item: ItemBuilder
    server_filter: bool = False
    expand: str | None = None
    name_of: Callable[[Any], str | None] = display_name_of
    exclude: Callable[[Any], str | None] | None = None
    supports_purge: bool = False

    def list_url(self, base_url: str, prefix: str) -> str:
        query: list[str] = []
        if self.server_filter and prefix:
            escaped = prefix.replace("'", "''")
            query.append("$filter=" + quote(f"startswith(displayName,'{escaped}')"))
        if self.expand:
            query.append("$expand=" + quote(self.expand))
        url = f"{base_url.rstrip('/')}/{self.path}"
        return f"{url}?{'&'.join(query)}" if query else url


def _entitlement(client: GraphServiceClient) -> Any:
    return client.identity_governance.entitlement_management


def _conditional_access(client: GraphServiceClient) -> Any:
    return client.identity.conditional_access


# Deletion order: objects that reference others go first.
GRAPH_OBJECT_BINDINGS: tuple[GraphObjectBinding, ...] = (
    GraphObjectBinding(
        name="accessPackages",
        kind="Access Package",
        path="identityGovernance/entitlementManagement/accessPackages",
        collection=lambda c: _entitlement(c).access_packages,
        item=lambda c, i: _entitlement(c).access_packages.by_access_package_id(i),
    ),
    GraphObjectBinding(
        name="accessPackageAssignmentPolicies",
        kind="Access Package Assignment Policy",
        path="identityGovernance/entitlementManagement/assignmentPolicies",
        collection=lambda c: _entitlement(c).assignment_policies,
        item=lambda c, i: (
            _entitlement(c).assignment_policies.by_access_package_assignment_policy_id(i)
        ),
    ),
    GraphObjectBinding(
        name="accessPackageAssignmentRequests",
        kind="Access Package Assignment Request",
        path="identityGovernance/entitlementManagement/assignmentRequests",
        collection=lambda c: _entitlement(c).assignment_requests,
        item=lambda c, i: (
            _entitlement(c).assignment_requests.by_access_package_assignment_request_id(i)
        ),
        expand="accessPackage",
        name_of=access_package_name_of,
    ),
    GraphObjectBinding(
        name="accessPackageCatalogs",
        kind="Access Package Catalog",
        path="identityGovernance/entitlementManagement/catalogs",
        collection=lambda c: _entitlement(c).catalogs,
        item=lambda c, i: _entitlement(c).catalogs.by_access_package_catalog_id(i),
    ),
    GraphObjectBinding(
        name="conditionalAccessPolicies",
        kind="Conditional Access Policy",
        path="identity/conditionalAccess/policies",
        collection=lambda c: _conditional_access(c).policies,
        item=lambda c, i: _conditional_access(c).policies.by_conditional_access_policy_id(i),
    ),
    GraphObjectBinding(
        name="connectedOrganizations",
        kind="Connected Organization",
        path="identityGovernance/entitlementManagement/connectedOrganizations",
        collection=lambda c: _entitlement(c).connected_organizations,
        item=lambda c, i: (
            _entitlement(c).connected_organizations.by_connected_organization_id(i)
        ),
    ),
    GraphObjectBinding(
        name="namedLocations",
        kind="Named Location",
        path="identity/conditionalAccess/namedLocations",
        collection=lambda c: _conditional_access(c).named_locations,
        item=lambda c, i: _conditional_access(c).named_locations.by_named_location_id(i),
    ),
    GraphObjectBinding(
        name="authenticationStrengthPolicies",
        kind="Authentication Strength Policy",
        path="policies/authenticationStrengthPolicies",
        collection=lambda c: c.policies.authentication_strength_policies,
        item=lambda c, i: (
            c.policies.authentication_strength_policies.by_authentication_strength_policy_id(i)
        ),
    ),
    GraphObjectBinding(
        name="servicePrincipals",
        kind="Service Principal",
        path="servicePrincipals",
        collection=lambda c: c.service_principals,
        item=lambda c, i: c.service_principals.by_service_principal_id(i),
        server_filter=True,
        exclude=managed_identity_reason,
    ),
    GraphObjectBinding(
        name="applications",
        kind="Application",
        path="applications",
        collection=lambda c: c.applications,
        item=lambda c, i: c.applications.by_application_id(i),
        server_filter=True,
        supports_purge=True,
    ),
    GraphObjectBinding(
        name="groups",
        kind="Group",
        path="groups",
        collection=lambda c: c.groups,
        item=lambda c, i: c.groups.by_group_id(i),
        server_filter=True,
        supports_purge=True,
    ),
    GraphObjectBinding(
        name="users",
        kind="User",
        path="users",
        collection=lambda c: c.users,
        item=lambda c, i: c.users.by_user_id(i),
        server_filter=True,
    ),
    GraphObjectBinding(
        name="termsOfUseAgreements",
        kind="Terms of Use Agreement",
        path="identityGovernance/termsOfUse/agreements",
        collection=lambda c: c.identity_governance.terms_of_use.agreements,
        item=lambda c, i: c.identity_governance.terms_of_use.agreements.by_agreement_id(i),
    ),
)

BINDINGS_BY_NAME: dict[str, GraphObjectBinding] = {b.name: b for b in GRAPH_OBJECT_BINDINGS}


class GraphObjectSource:
    """Directory objects of one kind in the configured tenant."""

    requires_prefix = True

    def __init__(
        self, binding: GraphObjectBinding, client: GraphServiceClient, tenant_id: str
    ) -> None:
        self._binding = binding
        self._client = client
        self._tenant_id = tenant_id
        self.kind = f"Microsoft Graph {binding.kind}"
        self.scope = ResourceIdentifier.for_tenant(tenant_id)
        self.supports_purge = binding.supports_purge

    @property
    def binding(self) -> GraphObjectBinding:
        return self._binding

    async def list_candidates(self, policy: SelectionPolicy) -> list[Candidate]:
        binding = self._binding
        collection = binding.collection(self._client)
        url: str | None = binding.list_url(self._client.request_adapter.base_url, policy.prefix)

        candidates: list[Candidate] = []
        while url and len(candidates) < policy.max_candidates:
            page = await collection.with_url(url).get()
            if page is None:
                break
            for item in page.value or []:
                candidate = self._to_candidate(item)
                if candidate is not None:
                    candidates.append(candidate)
            url = page.odata_next_link

        return candidates

    def _to_candidate(self, item: Any) -> Candidate | None:
        object_id = getattr(item, "id", None)
        if not object_id:
            logger.warning(f"Skipping {self.kind} without an id")
            return None

        if self._binding.exclude is not None:
            reason = self._binding.exclude(item)
            if reason:
                logger.debug(
                    f"Ignoring {self.kind}", extra={"id": object_id, "reason": reason}
                )
                return None

        return Candidate(
            identifier=ResourceIdentifier.for_tenant_object(
                self._tenant_id, self._binding.name, object_id
            ),
            name=self._binding.name_of(item) or "",
            kind=self.kind,
        )

    async def delete(self, candidate: Candidate) -> None:
        await self._binding.item(self._client, candidate.identifier.name).delete()

    async def purge(self, candidate: Candidate) -> None:
        """Permanently delete from the directory's deleted items."""
        if not self.supports_purge:
            raise NotImplementedError(f"{self.kind} has no purge phase")
        object_id = candidate.identifier.name
        await self._client.directory.deleted_items.by_directory_object_id(object_id).delete()


def select_bindings(names: Sequence[str] | None = None) -> list[GraphObjectBinding]:
    """Pick bindings by name, in the given order. None selects all of them.

    Raises:
        ValueError: If a name is not a known directory object kind.
    """
    if names is None:
        return list(GRAPH_OBJECT_BINDINGS)

    unknown = [name for name in names if name not in BINDINGS_BY_NAME]
    if unknown:
        raise ValueError(
            f"Unknown directory object kinds: {unknown}. "
            f"Known kinds: {sorted(BINDINGS_BY_NAME)}"
        )
    return [BINDINGS_BY_NAME[name] for name in names]


def build_graph_sources(
    client: GraphServiceClient, tenant_id: str, names: Sequence[str] | None = None
) -> list[GraphObjectSource]:
    return [GraphObjectSource(binding, client, tenant_id) for binding in select_bindings(names)]
