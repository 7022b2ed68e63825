"""Typed view over Azure resource identifiers.

ARM identifiers are hierarchical key/value paths:

    /subscriptions/{sub}/resourceGroups/{rg}/providers/{ns}/{type}/{name}[/{type}/{name}...]

Extension resources (locks, role assignments) nest a second ``providers``
segment under the resource they attach to. Management groups live under
``/providers/Microsoft.Management/managementGroups/{id}`` and directory
objects are addressed as ``/tenants/{tenant}/{objectType}/{objectId}``.

Comparison is always case-insensitive on the normalized form; ``str()``
returns the identifier with its original casing so it can be sent back to
the API unchanged.
"""

from __future__ import annotations

from typing import Any

ROOT_KEYS: tuple[str, ...] = ("subscriptions", "tenants", "providers")

RESOURCES_NAMESPACE = "Microsoft.Resources"


class InvalidResourceIdError(ValueError):
    """Raised when a string cannot be parsed as a resource identifier."""

    pass


def normalize_id(value: str) -> str:
    """Return the comparison form of an identifier string."""
    return "/" + value.strip().strip("/").lower()


class ResourceIdentifier:
    """Parsed resource identifier.

    Instances are immutable and hashable. Two identifiers are equal when
    their normalized forms match, regardless of casing or trailing slashes.
    """

    __slots__ = ("_pairs", "_text")

    def __init__(self, pairs: tuple[tuple[str, str], ...]) -> None:
        if not pairs:
            raise InvalidResourceIdError("Resource identifier must have at least one segment")
        self._pairs = pairs
        self._text = "/" + "/".join(f"{key}/{value}" for key, value in pairs)

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def parse(cls, value: Any) -> ResourceIdentifier:
        """Parse an identifier string.

        Raises:
            InvalidResourceIdError: If the value is not a well-formed identifier.
        """
        if not isinstance(value, str) or not value.strip().strip("/"):
            raise InvalidResourceIdError(f"Not a resource identifier: {value!r}")

        parts = value.strip().strip("/").split("/")
        if any(not part for part in parts):
            raise InvalidResourceIdError(f"Empty segment in resource identifier: {value!r}")
        if len(parts) % 2 != 0:
            raise InvalidResourceIdError(f"Unbalanced resource identifier: {value!r}")

        pairs = tuple((parts[i], parts[i + 1]) for i in range(0, len(parts), 2))
        if pairs[0][0].lower() not in ROOT_KEYS:
            raise InvalidResourceIdError(
                f"Resource identifier must start with one of {list(ROOT_KEYS)}: {value!r}"
            )
        # Every provider namespace must be followed by at least one type/name pair
        if pairs[-1][0].lower() == "providers":
            raise InvalidResourceIdError(f"Provider namespace without a resource: {value!r}")

        return cls(pairs)

    @classmethod
    def try_parse(cls, value: Any) -> ResourceIdentifier | None:
        try:
            return cls.parse(value)
        except InvalidResourceIdError:
            return None

    @classmethod
    def for_subscription(cls, subscription_id: str) -> ResourceIdentifier:
        return cls((("subscriptions", subscription_id),))

    @classmethod
    def for_resource_group(cls, subscription_id: str, resource_group: str) -> ResourceIdentifier:
        return cls((("subscriptions", subscription_id), ("resourceGroups", resource_group)))

    @classmethod
    def for_management_group(cls, group_id: str) -> ResourceIdentifier:
        return cls(
            (("providers", "Microsoft.Management"), ("managementGroups", group_id)),
        )

    @classmethod
    def for_tenant(cls, tenant_id: str) -> ResourceIdentifier:
        return cls((("tenants", tenant_id),))

    @classmethod
    def for_tenant_object(
        cls, tenant_id: str, object_type: str, object_id: str
    ) -> ResourceIdentifier:
        return cls((("tenants", tenant_id), (object_type, object_id)))

    def child(self, type_name: str, name: str) -> ResourceIdentifier:
        """Return the identifier of a nested resource below this one."""
        return ResourceIdentifier((*self._pairs, (type_name, name)))

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def segment(self, key: str) -> str | None:
        """Return the value following ``key`` (case-insensitive), or None."""
        wanted = key.lower()
        for pair_key, pair_value in self._pairs:
            if pair_key.lower() == wanted:
                return pair_value
        return None

    @property
    def subscription_id(self) -> str | None:
        return self.segment("subscriptions")

    @property
    def tenant_id(self) -> str | None:
        return self.segment("tenants")

    @property
    def resource_group(self) -> str | None:
        return self.segment("resourceGroups")

    @property
    def provider(self) -> str | None:
        """Namespace of the innermost ``providers`` segment."""
        index = self._last_provider_index()
        return self._pairs[index][1] if index is not None else None

    @property
    def resource_type(self) -> str:
        """Fully qualified type, e.g. ``Microsoft.DataProtection/backupVaults/backupInstances``."""
        index = self._last_provider_index()
        if index is not None:
            types = [key for key, _ in self._pairs[index + 1 :]]
            return "/".join([self._pairs[index][1], *types])

        last_key = self._pairs[-1][0]
        if last_key.lower() in ("subscriptions", "resourcegroups"):
            return f"{RESOURCES_NAMESPACE}/{last_key}"
        return last_key

    @property
    def name(self) -> str:
        return self._pairs[-1][1]

    @property
    def parent(self) -> ResourceIdentifier | None:
        """Identifier one level up, skipping the provider namespace segment."""
        pairs = self._pairs[:-1]
        if pairs and pairs[-1][0].lower() == "providers":
            pairs = pairs[:-1]
        if not pairs:
            return None
        return ResourceIdentifier(pairs)

    @property
    def is_tenant_object(self) -> bool:
        return self._pairs[0][0].lower() == "tenants"

    def _last_provider_index(self) -> int | None:
        for index in range(len(self._pairs) - 1, -1, -1):
            if self._pairs[index][0].lower() == "providers":
                return index
        return None

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    @property
    def normalized(self) -> str:
        return normalize_id(self._text)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResourceIdentifier):
            return self.normalized == other.normalized
        if isinstance(other, str):
            return self.normalized == normalize_id(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.normalized)

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"ResourceIdentifier({self._text!r})"
