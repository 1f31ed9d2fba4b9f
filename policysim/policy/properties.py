"""Resource property accessor.

Maps policy alias strings to live values on a resource. Fixed aliases read
resource metadata; ``tags[...]`` forms read a single tag; everything else is
a ``<Namespace>/<type>/<property.path>`` alias navigated into the expanded
property bag.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from .models import Resource
from .values import lookup_key, navigate


logger = logging.getLogger(__name__)


# Aliases answered directly from resource metadata
FIXED_ALIASES = ('type', 'location', 'name', 'id', 'kind', 'tags')

_TAG_ALIAS_RE = re.compile(
    r"""^tags(?:\[\s*'(?P<single>[^']*)'\s*\]
              |\[\s*"(?P<double>[^"]*)"\s*\]
              |\[(?P<bare>[^\]'"]+)\]
              |\.(?P<dotted>.+))$""",
    re.IGNORECASE | re.VERBOSE,
)

# Aliases whose values only a dedicated typed fetch returns, mapped to the
# qualifier passed to the details provider
SUPPLEMENTARY_ALIASES: Dict[str, str] = {
    'microsoft.network/networkinterfaces/ipconfigurations[*].publicipaddress.id': 'publicIpAddresses',
}


def parse_tag_alias(alias: str) -> Optional[str]:
    """Return the tag name from a ``tags['X']``-style alias, or None."""
    match = _TAG_ALIAS_RE.match(alias.strip())
    if not match:
        return None
    for group in ('single', 'double', 'bare', 'dotted'):
        if match.group(group) is not None:
            return match.group(group).strip()
    return None


def split_alias(alias: str) -> Tuple[str, str]:
    """Split ``Microsoft.Storage/storageAccounts/sku.name`` into type and property path.

    The property path is the last ``/`` segment; everything before it is the
    resource type the alias belongs to. Nested types
    (``Microsoft.Sql/servers/databases/...``) keep every segment.
    """
    resource_type, _, path = alias.strip().rpartition('/')
    return resource_type, path


class PropertyAccessor:
    """Resolves alias values for resources.

    ``details`` is an optional provider exposing ``get_expanded(resource)``
    and ``get_supplementary(resource, qualifier)``; both are expected to
    cache per resource ID. Without one, the resource's listing payload is
    used as its property bag.
    """

    def __init__(self, details=None):
        self.details = details

    def get_value(self, resource: Resource, alias: str) -> Optional[Any]:
        """Return the live value for an alias, or None if the resource has no such value."""
        if not alias:
            return None

        text = alias.strip()
        lowered = text.lower()

        if lowered in FIXED_ALIASES:
            return self._fixed_value(resource, lowered)

        tag_name = parse_tag_alias(text)
        if tag_name is not None:
            found, value = lookup_key(resource.tags, tag_name)
            return value if found else None

        resource_type, path = split_alias(text)
        if not resource_type or not path:
            logger.debug(f"Unrecognised alias shape '{alias}'")
            return None

        if resource_type.lower() != (resource.type or '').lower():
            # Alias belongs to another resource type
            return None

        qualifier = SUPPLEMENTARY_ALIASES.get(lowered)
        if qualifier is not None and self.details is not None:
            return self._supplementary_value(resource, qualifier, path)

        return navigate(self._property_bag(resource), path)

    def _fixed_value(self, resource: Resource, alias: str) -> Optional[Any]:
        if alias == 'tags':
            return dict(resource.tags)
        value = getattr(resource, alias)
        return value if value not in ('', None) else None

    def _property_bag(self, resource: Resource) -> Dict[str, Any]:
        if self.details is None:
            return resource.raw
        expanded = self.details.get_expanded(resource)
        return expanded if expanded is not None else resource.raw

    def _supplementary_value(self, resource: Resource, qualifier: str, path: str) -> Optional[Any]:
        supplementary = self.details.get_supplementary(resource, qualifier)
        if supplementary is None:
            return None
        return navigate(supplementary, path)
