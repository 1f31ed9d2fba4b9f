"""Policy exemption fetching and matching."""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..policy.models import Exemption
from .errors import ArmError
from .hierarchy import MANAGEMENT_GROUP_PREFIX, subscription_scope


logger = logging.getLogger(__name__)


EXEMPTION_API_VERSION = "2022-07-01-preview"


def scope_contains(scope: str, resource_id: str) -> bool:
    """Check whether ``resource_id`` is the scope itself or nested under it.

    Comparison is case-insensitive and respects path boundaries, so
    ``/subscriptions/S/resourceGroups/RG`` does not contain
    ``/subscriptions/S/resourceGroups/RG2/...``.
    """
    prefix = scope.rstrip('/').lower()
    target = resource_id.rstrip('/').lower()
    if not prefix:
        return False
    return target == prefix or target.startswith(prefix + '/')


class ExemptionMatcher:
    """Finds the exemption, if any, covering a resource for one assignment.

    Exemptions scoped to a management group cover a resource when that
    group is part of the hierarchy the subscription sits under; every other
    scope is matched by path containment.
    """

    def __init__(self, exemptions: Iterable[Exemption], hierarchy_scopes: Optional[Iterable[str]] = None):
        self.exemptions = list(exemptions)
        self._hierarchy = {scope.rstrip('/').lower() for scope in (hierarchy_scopes or [])}
        self._lock = threading.Lock()
        self._stats = {"lookups": 0, "matches": 0}

    def covers(self, exemption: Exemption, resource_id: str) -> bool:
        scope = exemption.scope.rstrip('/').lower()
        if scope.startswith(MANAGEMENT_GROUP_PREFIX.lower()):
            return scope in self._hierarchy
        return scope_contains(exemption.scope, resource_id)

    def match(
        self,
        resource_id: str,
        policy_assignment_id: str,
        policy_definition_reference_id: Optional[str] = None,
    ) -> Optional[Exemption]:
        """Return the first matching exemption, or None."""
        assignment = policy_assignment_id.lower()
        reference = policy_definition_reference_id.lower() if policy_definition_reference_id else None
        found = None

        for exemption in self.exemptions:
            if exemption.policy_assignment_id.lower() != assignment:
                continue
            if reference and exemption.policy_definition_reference_ids:
                if reference not in {ref.lower() for ref in exemption.policy_definition_reference_ids}:
                    continue
            if not self.covers(exemption, resource_id):
                continue
            found = exemption
            break

        with self._lock:
            self._stats["lookups"] += 1
            if found is not None:
                self._stats["matches"] += 1
        return found

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
        stats["exemptions"] = len(self.exemptions)
        stats["expired"] = sum(1 for exemption in self.exemptions if exemption.is_expired)
        return stats


class ExemptionCollector:
    """Fetches exemptions relevant to a subscription and its hierarchy."""

    def __init__(self, client):
        self.client = client

    def _fetch(self, scope: str, exact: bool) -> List[Exemption]:
        params = {"api-version": EXEMPTION_API_VERSION}
        if exact:
            params["$filter"] = "atExactScope()"

        raw_items = self.client.get_all(
            f"{scope.rstrip('/')}/providers/Microsoft.Authorization/policyExemptions",
            params=params,
        )

        exemptions = []
        for raw in raw_items:
            try:
                exemptions.append(Exemption.from_api(raw))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed exemption at {scope}: {e}")
        return exemptions

    def collect(self, subscription_id: str, hierarchy_scopes: Iterable[str] = ()) -> List[Exemption]:
        """Collect exemptions at and below the subscription, plus those on hierarchy groups.

        A level that cannot be listed is logged and skipped; exemptions only
        refine labels, so their absence is never fatal.
        """
        levels = [(subscription_scope(subscription_id), False)]
        levels.extend((scope, True) for scope in hierarchy_scopes)

        collected: List[Exemption] = []
        seen = set()
        for scope, exact in levels:
            try:
                fetched = self._fetch(scope, exact)
            except ArmError as e:
                logger.warning(f"Could not list exemptions at {scope}: {e}")
                continue

            for exemption in fetched:
                if exemption.id.lower() in seen:
                    continue
                seen.add(exemption.id.lower())
                collected.append(exemption)

        expired = sum(1 for exemption in collected if exemption.is_expired)
        logger.info(f"Collected {len(collected)} exemptions ({expired} expired)")
        return collected
