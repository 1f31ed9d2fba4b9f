"""Management group hierarchy walker.

Follows parent links one group at a time from a starting management group
up to the tenant root. A group that cannot be fetched truncates the walk
with a warning; only failure to fetch the starting group is fatal.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..policy.values import navigate
from .cache import RunCache
from .errors import ArmError, HierarchyError


logger = logging.getLogger(__name__)


MANAGEMENT_GROUP_API_VERSION = "2021-04-01"
MANAGEMENT_GROUP_PREFIX = "/providers/Microsoft.Management/managementGroups/"


def management_group_scope(name: str) -> str:
    """Scope path of a management group."""
    return f"{MANAGEMENT_GROUP_PREFIX}{name}"


def subscription_scope(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


@dataclass
class ManagementGroup:
    name: str
    display_name: str = ""
    parent_name: Optional[str] = None

    @property
    def scope(self) -> str:
        return management_group_scope(self.name)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "ManagementGroup":
        parent_name = navigate(raw, 'properties.details.parent.name')
        if not parent_name:
            parent_id = navigate(raw, 'properties.details.parent.id')
            if isinstance(parent_id, str) and parent_id:
                parent_name = parent_id.rstrip('/').rsplit('/', 1)[-1]
        return cls(
            name=navigate(raw, 'name') or "",
            display_name=navigate(raw, 'properties.displayName') or navigate(raw, 'name') or "",
            parent_name=parent_name or None,
        )


@dataclass
class Hierarchy:
    """Ordered chain of management groups, starting group first."""
    groups: List[ManagementGroup] = field(default_factory=list)
    truncated: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [group.name for group in self.groups]

    @property
    def scopes(self) -> List[str]:
        return [group.scope for group in self.groups]


class HierarchyWalker:
    """Builds the inherited scope chain for a management group."""

    def __init__(self, client, cache: Optional[RunCache] = None):
        self.client = client
        self.cache = cache or RunCache()

    def _fetch(self, name: str) -> ManagementGroup:
        def load() -> ManagementGroup:
            raw = self.client.get(
                management_group_scope(name),
                params={"api-version": MANAGEMENT_GROUP_API_VERSION},
            )
            if not isinstance(raw, dict):
                raise ArmError(f"Unexpected management group payload for {name}")
            group = ManagementGroup.from_api(raw)
            if not group.name:
                group.name = name
            return group

        return self.cache.get_or_load(RunCache.MANAGEMENT_GROUPS, name.lower(), load)

    def get_hierarchy(self, start_group: str) -> Hierarchy:
        """Walk from ``start_group`` to the root.

        Raises:
            HierarchyError: If the starting group itself cannot be fetched
        """
        hierarchy = Hierarchy()
        seen = set()
        current: Optional[str] = start_group

        while current:
            if current.lower() in seen:
                message = f"Management group cycle detected at '{current}'; stopping walk"
                logger.warning(message)
                hierarchy.warnings.append(message)
                hierarchy.truncated = True
                break
            seen.add(current.lower())

            try:
                group = self._fetch(current)
            except ArmError as e:
                if not hierarchy.groups:
                    raise HierarchyError(f"Cannot resolve management group '{start_group}': {e}") from e
                message = f"Hierarchy walk truncated at '{current}': {e}"
                logger.warning(message)
                hierarchy.warnings.append(message)
                hierarchy.truncated = True
                break

            hierarchy.groups.append(group)
            current = group.parent_name

        logger.info(f"Hierarchy for '{start_group}': {' -> '.join(hierarchy.names)}")
        return hierarchy
