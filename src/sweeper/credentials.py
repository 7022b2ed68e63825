"""Cloud environment resolution and credential construction.

Credentials come from the ``ARM_*`` environment variables used by the
acceptance test suites that leave resources behind:

- ARM_CLIENT_ID / ARM_CLIENT_SECRET: service principal (client secret flow)
- ARM_TENANT_ID: directory the principal lives in
- ARM_ENVIRONMENT: public, usgovernment, china, or an Azure Stack name
- ARM_ENDPOINT: Azure Stack Resource Manager endpoint (Stack only)

Without a client secret the sweeper falls back to a managed identity (for
scheduled runs inside Azure) and then to the Azure CLI login (for local runs).

Any failure here is fatal: the sweep must not touch anything when it cannot
tell which cloud it is talking to or who it is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.core.rest import HttpRequest
from azure.identity import (
    AzureAuthorityHosts,
    AzureCliCredential,
    ChainedTokenCredential,
    ClientSecretCredential,
    ManagedIdentityCredential,
)

logger = logging.getLogger(__name__)

STACK_METADATA_API_VERSION = "2015-01-01"


class CredentialError(Exception):
    """Raised when credentials cannot be constructed."""

    pass


class EnvironmentResolutionError(Exception):
    """Raised when the cloud environment cannot be determined."""

    pass


@dataclass(frozen=True)
class CloudEnvironment:
    """Endpoints for one Azure cloud."""

    name: str
    authority_host: str
    resource_manager: str
    resource_manager_audience: str
    graph_endpoint: str

    @property
    def resource_manager_scope(self) -> str:
        return self.resource_manager_audience.rstrip("/") + "/.default"

    @property
    def graph_scope(self) -> str:
        return self.graph_endpoint.rstrip("/") + "/.default"


PUBLIC_CLOUD = CloudEnvironment(
    name="public",
    authority_host=AzureAuthorityHosts.AZURE_PUBLIC_CLOUD,
    resource_manager="https://management.azure.com",
    resource_manager_audience="https://management.azure.com",
    graph_endpoint="https://graph.microsoft.com",
)

US_GOVERNMENT_CLOUD = CloudEnvironment(
    name="usgovernment",
    authority_host=AzureAuthorityHosts.AZURE_GOVERNMENT,
    resource_manager="https://management.usgovcloudapi.net",
    resource_manager_audience="https://management.usgovcloudapi.net",
    graph_endpoint="https://graph.microsoft.us",
)

CHINA_CLOUD = CloudEnvironment(
    name="china",
    authority_host=AzureAuthorityHosts.AZURE_CHINA,
    resource_manager="https://management.chinacloudapi.cn",
    resource_manager_audience="https://management.chinacloudapi.cn",
    graph_endpoint="https://microsoftgraph.chinacloudapi.cn",
)

KNOWN_ENVIRONMENTS: dict[str, CloudEnvironment] = {
    "": PUBLIC_CLOUD,
    "public": PUBLIC_CLOUD,
    "global": PUBLIC_CLOUD,
    "azurepubliccloud": PUBLIC_CLOUD,
    "usgovernment": US_GOVERNMENT_CLOUD,
    "usgov": US_GOVERNMENT_CLOUD,
    "azureusgovernmentcloud": US_GOVERNMENT_CLOUD,
    "china": CHINA_CLOUD,
    "azurechinacloud": CHINA_CLOUD,
}


def is_azure_stack(environment_name: str) -> bool:
    return "stack" in environment_name.lower()


def fetch_stack_metadata(endpoint: str) -> dict[str, Any]:
    """Fetch the Resource Manager metadata document of an Azure Stack instance."""
    client: PipelineClient = PipelineClient(base_url=endpoint)
    request = HttpRequest(
        "GET",
        f"{endpoint.rstrip('/')}/metadata/endpoints",
        params={"api-version": STACK_METADATA_API_VERSION},
    )
    with client:
        response = client.send_request(request)
        response.raise_for_status()
        return response.json()


def environment_from_stack_metadata(
    name: str, endpoint: str, metadata: dict[str, Any]
) -> CloudEnvironment:
    authentication = metadata.get("authentication") or {}
    login_endpoint = authentication.get("loginEndpoint")
    audiences = authentication.get("audiences") or []
    graph_endpoint = metadata.get("graphEndpoint")

    missing = [
        key
        for key, value in (
            ("authentication.loginEndpoint", login_endpoint),
            ("authentication.audiences", audiences),
            ("graphEndpoint", graph_endpoint),
        )
        if not value
    ]
    if missing:
        raise EnvironmentResolutionError(
            f"Azure Stack metadata from {endpoint} is missing: {', '.join(missing)}"
        )

    return CloudEnvironment(
        name=name,
        authority_host=login_endpoint.rstrip("/"),
        resource_manager=endpoint.rstrip("/"),
        resource_manager_audience=audiences[0],
        graph_endpoint=graph_endpoint.rstrip("/"),
    )


def resolve_environment(
    environment_name: str,
    endpoint: str | None = None,
    fetch_metadata: Any = fetch_stack_metadata,
) -> CloudEnvironment:
    """Resolve ARM_ENVIRONMENT (and ARM_ENDPOINT for Azure Stack) to endpoints.

    Raises:
        EnvironmentResolutionError: If the environment is unknown or the
            Azure Stack metadata cannot be loaded.
    """
    if is_azure_stack(environment_name):
        if not endpoint:
            raise EnvironmentResolutionError(
                f"ARM_ENDPOINT is required for Azure Stack environment '{environment_name}'"
            )
        try:
            metadata = fetch_metadata(endpoint)
        except AzureError as e:
            raise EnvironmentResolutionError(
                f"Loading environment from endpoint {endpoint} failed: {e}"
            ) from e
        if not isinstance(metadata, dict):
            raise EnvironmentResolutionError(f"Unexpected metadata document from {endpoint}")
        environment = environment_from_stack_metadata(environment_name, endpoint, metadata)
    else:
        environment = KNOWN_ENVIRONMENTS.get(environment_name.strip().lower())
        if environment is None:
            known = sorted(name for name in KNOWN_ENVIRONMENTS if name)
            raise EnvironmentResolutionError(
                f"Unknown environment '{environment_name}'. Known environments: {known}"
            )

    logger.info(
        "Resolved cloud environment",
        extra={
            "environment": environment.name,
            "resource_manager": environment.resource_manager,
        },
    )
    return environment


def _truncate(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


def build_credential(
    tenant_id: str,
    client_id: str,
    client_secret: str | None,
    environment: CloudEnvironment,
) -> TokenCredential:
    """Build the credential used for both Resource Manager and Microsoft Graph.

    Raises:
        CredentialError: If the credential cannot be constructed.
    """
    try:
        if client_secret:
            logger.info(
                "Using client secret credential",
                extra={"client_id": _truncate(client_id), "tenant_id": tenant_id},
            )
            return ClientSecretCredential(
                tenant_id=tenant_id,
                client_id=client_id,
                client_secret=client_secret,
                authority=environment.authority_host,
            )

        logger.info(
            "No client secret configured, using managed identity or Azure CLI",
            extra={"client_id": _truncate(client_id) if client_id else None},
        )
        return ChainedTokenCredential(
            ManagedIdentityCredential(client_id=client_id or None),
            AzureCliCredential(tenant_id=tenant_id),
        )
    except (ValueError, AzureError) as e:
        raise CredentialError(f"Unable to build credentials: {e}") from e


def log_audit_event(
    action: str,
    target: str,
    dry_run: bool,
    result: str | None = None,
) -> None:
    """Log a destructive (or would-be destructive) action.

    Audit records carry a fixed ``audit`` marker so they can be filtered out
    of the JSON log stream.
    """
    logger.info(
        f"Audit: {action}",
        extra={
            "audit": True,
            "action": action,
            "target": target,
            "dry_run": dry_run,
            "result": result,
        },
    )
