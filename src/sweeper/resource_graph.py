"""Azure Resource Graph inventory queries.

Resource Graph answers "what is in this resource group" in a single query,
which lets the pipeline skip cleaners that would find nothing and lets
cleaners locate containers without a type-specific list call.

Rows are decoded into InventoryRow models. A row that does not decode, or
whose id is not a resource identifier, is skipped and logged: one odd row
must not hide every other result of the query.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)
from pydantic import ValidationError

from .config import MAX_GRAPH_QUERY_RESULTS, MAX_GRAPH_QUERY_TIMEOUT_SECONDS
from .identifiers import ResourceIdentifier
from .models import InventoryRow

logger = logging.getLogger(__name__)


def _quote(value: str) -> str:
    """Quote a value for use in a KQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def decode_rows(rows: Sequence[Any]) -> list[InventoryRow]:
    """Decode query rows, dropping any that are malformed."""
    decoded: list[InventoryRow] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            logger.warning(
                "Skipping Resource Graph row that is not an object",
                extra={"row_index": index, "row_type": type(row).__name__},
            )
            continue
        try:
            item = InventoryRow.model_validate(row)
        except ValidationError as e:
            logger.warning(
                "Skipping malformed Resource Graph row",
                extra={"row_index": index, "error": str(e)},
            )
            continue
        if ResourceIdentifier.try_parse(item.id) is None:
            logger.warning(
                "Skipping Resource Graph row with unparseable id",
                extra={"row_index": index, "id": item.id},
            )
            continue
        decoded.append(item)
    return decoded


class ResourceGraphInventory:
    """Resource Graph queries scoped to one subscription."""

    def __init__(
        self,
        client: ResourceGraphClient,
        subscription_id: str,
        timeout_seconds: float = MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._subscription_id = subscription_id
        self._timeout_seconds = timeout_seconds

    async def contains_resource_types(
        self, container: ResourceIdentifier, resource_types: Sequence[str]
    ) -> bool:
        """Whether the resource group holds any resource of the given types."""
        if not resource_types or container.resource_group is None:
            return False

        type_list = ", ".join(_quote(t.lower()) for t in resource_types)
        query = f"""
        resources
        | where type in~ ({type_list})
        | where resourceGroup =~ {_quote(container.resource_group)}
        | project id
        | limit 1
        """
        rows = decode_rows(await self._execute_query(query.strip()))
        return len(rows) > 0

    async def find_resources(self, resource_group: str, resource_type: str) -> list[InventoryRow]:
        """List resources of one type inside a resource group, sorted by id."""
        query = f"""
        resources
        | where type =~ {_quote(resource_type)}
        | where resourceGroup =~ {_quote(resource_group)}
        | project id, name, type, resourceGroup, tags
        | sort by tolower(tostring(id)) asc
        """
        return decode_rows(await self._execute_query(query.strip()))

    async def find_resource_ids(self, resource_group: str, resource_type: str) -> list[str | None]:
        return [row.id for row in await self.find_resources(resource_group, resource_type)]

    async def _execute_query(self, query: str) -> list[Any]:
        """Execute a Resource Graph query.

        Args:
            query: KQL query string.

        Returns:
            List of raw result rows.

        Raises:
            HttpResponseError: If the query fails or times out.
        """
        request = QueryRequest(
            subscriptions=[self._subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_event_loop()
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self._client.resources(request)),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Resource Graph query timed out",
                extra={"timeout_seconds": self._timeout_seconds},
            )
            raise HttpResponseError(message="Resource Graph query timed out") from e
        except AzureError as e:
            logger.error("Resource Graph query failed", extra={"error": str(e)})
            raise

        if response.data is None:
            return []

        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if isinstance(response.data, list):
            return response.data

        logger.warning(
            "Unexpected Resource Graph payload",
            extra={"data_type": type(response.data).__name__},
        )
        return []
