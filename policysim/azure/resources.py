"""Subscription resource inventory and per-resource detail fetches.

``ResourceInventory`` lists the subscription's resources and acts as the
details provider for ``PropertyAccessor``: expanded resource bodies and
supplementary typed fetches are each fetched at most once per run and
cached by resource ID (plus qualifier).
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..policy.models import Resource
from ..policy.values import lookup_key, navigate
from .cache import RunCache, cache_key
from .errors import ArmError, ArmNotFoundError
from .hierarchy import subscription_scope


logger = logging.getLogger(__name__)


RESOURCE_LIST_API_VERSION = "2021-04-01"
PROVIDER_API_VERSION = "2021-04-01"
NETWORK_INTERFACE_API_VERSION = "2023-09-01"

# Used when a provider does not advertise versions for a type
FALLBACK_API_VERSION = "2021-04-01"

NETWORK_INTERFACE_TYPE = "microsoft.network/networkinterfaces"


def split_resource_type(resource_type: str) -> tuple:
    """Split ``Microsoft.Sql/servers/databases`` into (``Microsoft.Sql``, ``servers/databases``)."""
    namespace, _, type_name = resource_type.partition('/')
    return namespace, type_name


def select_api_version(versions: Iterable[str]) -> Optional[str]:
    """Pick the newest stable API version, or the newest preview if none is stable."""
    candidates = sorted((v for v in versions if isinstance(v, str) and v), reverse=True)
    stable = [v for v in candidates if 'preview' not in v.lower()]
    if stable:
        return stable[0]
    return candidates[0] if candidates else None


def parse_resource_types(value: Optional[str]) -> List[str]:
    """Parse a comma-separated resource-type filter."""
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


class ResourceInventory:
    """Lists resources and serves cached expanded and supplementary fetches."""

    def __init__(self, client, subscription_id: str, cache: Optional[RunCache] = None):
        self.client = client
        self.subscription_id = subscription_id
        self.cache = cache or RunCache()
        self._supplementary_loaders: Dict[str, Callable[[Resource], Optional[Dict[str, Any]]]] = {
            'publicipaddresses': self._load_network_interface,
        }

    def list_resources(self) -> List[Resource]:
        """List every resource in the subscription, following pagination."""
        raw_items = self.client.get_all(
            f"{subscription_scope(self.subscription_id)}/resources",
            params={"api-version": RESOURCE_LIST_API_VERSION},
        )

        resources = []
        for raw in raw_items:
            try:
                resource = Resource.from_api(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed resource entry: {e}")
                continue
            if resource.id:
                resources.append(resource)

        logger.info(f"Listed {len(resources)} resources in subscription {self.subscription_id}")
        return resources

    def get_resource(self, resource_id: str) -> Resource:
        """Fetch a single resource by ID."""
        resource_type = self._type_from_id(resource_id)
        api_version = self.api_version_for(resource_type) if resource_type else FALLBACK_API_VERSION
        raw = self.client.get(resource_id, params={"api-version": api_version or FALLBACK_API_VERSION})
        if not isinstance(raw, dict):
            raise ArmError(f"Unexpected resource payload for {resource_id}")
        resource = Resource.from_api(raw)
        self.cache.put(RunCache.RESOURCES, resource.key, raw)
        return resource

    @staticmethod
    def _type_from_id(resource_id: str) -> Optional[str]:
        """Derive ``Namespace/type[/child]`` from a resource ID."""
        parts = [part for part in resource_id.split('/') if part]
        lowered = [part.lower() for part in parts]
        if 'providers' not in lowered:
            return None
        index = len(lowered) - 1 - lowered[::-1].index('providers')
        remainder = parts[index + 1:]
        if len(remainder) < 3:
            return None
        # Namespace, then alternating type/name pairs
        return '/'.join([remainder[0]] + remainder[1::2])

    def _provider_types(self, namespace: str) -> List[Dict[str, Any]]:
        def load() -> List[Dict[str, Any]]:
            raw = self.client.get(
                f"{subscription_scope(self.subscription_id)}/providers/{namespace}",
                params={"api-version": PROVIDER_API_VERSION},
            )
            found, types = lookup_key(raw, 'resourceTypes') if isinstance(raw, dict) else (False, None)
            return [item for item in types if isinstance(item, dict)] if found and isinstance(types, list) else []

        return self.cache.get_or_load(RunCache.API_VERSIONS, cache_key('provider', namespace), load)

    def api_version_for(self, resource_type: str) -> Optional[str]:
        """Latest stable API version the provider advertises for a resource type."""
        def load() -> Optional[str]:
            namespace, type_name = split_resource_type(resource_type)
            try:
                types = self._provider_types(namespace)
            except ArmError as e:
                logger.warning(f"Could not read API versions for {namespace}: {e}")
                return None

            for entry in types:
                _, name = lookup_key(entry, 'resourceType')
                if isinstance(name, str) and name.lower() == type_name.lower():
                    _, versions = lookup_key(entry, 'apiVersions')
                    return select_api_version(versions or [])
            return None

        return self.cache.get_or_load(RunCache.API_VERSIONS, cache_key('type', resource_type), load)

    def get_expanded(self, resource: Resource) -> Optional[Dict[str, Any]]:
        """Full resource representation, fetched once per resource ID.

        Returns None when the fetch fails; the failure is cached so the
        resource is not retried for every policy.
        """
        def load() -> Optional[Dict[str, Any]]:
            api_version = self.api_version_for(resource.type) or FALLBACK_API_VERSION
            try:
                raw = self.client.get(resource.id, params={"api-version": api_version})
            except ArmError as e:
                logger.warning(f"Could not expand {resource.id}: {e}")
                return None
            return raw if isinstance(raw, dict) else None

        return self.cache.get_or_load(RunCache.RESOURCES, resource.key, load)

    def get_supplementary(self, resource: Resource, qualifier: str) -> Optional[Dict[str, Any]]:
        """Dedicated typed fetch for values the generic expansion does not carry."""
        loader = self._supplementary_loaders.get(qualifier.lower())
        if loader is None:
            logger.debug(f"No supplementary fetch registered for '{qualifier}'")
            return None

        return self.cache.get_or_load(
            RunCache.SUPPLEMENTARY,
            cache_key(resource.id, qualifier),
            lambda: loader(resource),
        )

    def _load_network_interface(self, resource: Resource) -> Optional[Dict[str, Any]]:
        if resource.type.lower() != NETWORK_INTERFACE_TYPE:
            return None
        try:
            raw = self.client.get(resource.id, params={"api-version": NETWORK_INTERFACE_API_VERSION})
        except ArmError as e:
            logger.warning(f"Could not fetch network interface {resource.id}: {e}")
            return None
        return raw if isinstance(raw, dict) else None

    def has_public_ip(self, resource: Resource) -> bool:
        """Check whether a network interface has any public IP association."""
        details = self.get_supplementary(resource, 'publicIpAddresses')
        ids = navigate(details, 'ipConfigurations[*].publicIPAddress.id')
        return any(ids or [])


# Portal-mode predicates by lower-cased resource type
PORTAL_MODE_FILTERS: Dict[str, Callable[[Resource, ResourceInventory], bool]] = {
    NETWORK_INTERFACE_TYPE: lambda resource, inventory: inventory.has_public_ip(resource),
}


def filter_resources(
    resources: List[Resource],
    resource_types: Optional[List[str]] = None,
    resource_id: Optional[str] = None,
) -> List[Resource]:
    """Apply the resource-type and single-resource filters."""
    filtered = resources

    if resource_types:
        wanted = {resource_type.lower() for resource_type in resource_types}
        filtered = [resource for resource in filtered if resource.type.lower() in wanted]

    if resource_id:
        filtered = [resource for resource in filtered if resource.key == resource_id.rstrip('/').lower()]

    return filtered


def apply_portal_mode(resources: List[Resource], inventory: ResourceInventory) -> List[Resource]:
    """Narrow resource types the portal filters to their business-relevant subset."""
    kept = []
    for resource in resources:
        predicate = PORTAL_MODE_FILTERS.get(resource.type.lower())
        if predicate is None or predicate(resource, inventory):
            kept.append(resource)

    dropped = len(resources) - len(kept)
    if dropped:
        logger.info(f"Portal mode excluded {dropped} resources")
    return kept


def load_resources(
    inventory: ResourceInventory,
    resource_types: Optional[List[str]] = None,
    resource_id: Optional[str] = None,
    portal_mode: bool = False,
) -> List[Resource]:
    """List, filter and optionally portal-narrow the subscription's resources.

    A single-resource test ID not present in the listing is fetched
    directly; if it does not exist the result is empty.
    """
    resources = filter_resources(inventory.list_resources(), resource_types, resource_id)

    if resource_id and not resources:
        try:
            resources = filter_resources([inventory.get_resource(resource_id)], resource_types)
        except ArmNotFoundError:
            logger.warning(f"Resource {resource_id} was not found")
            resources = []

    if portal_mode:
        resources = apply_portal_mode(resources, inventory)

    return resources
