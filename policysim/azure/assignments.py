"""Policy and initiative assignment resolution.

Collects the assignments placed exactly at each scope of the inherited
chain, deduplicates them by ID, fetches their definitions and expands
initiatives into one ``EffectivePolicy`` per member policy with its
parameter context and resolved effect.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..policy.models import (
    EffectivePolicy,
    InitiativeDefinition,
    PolicyAssignment,
    PolicyDefinition,
    PolicyDefinitionReference,
)
from ..policy.parameters import ParameterContext, ParameterResolver, resolve_effect
from .cache import RunCache
from .errors import ArmError, AssignmentResolutionError


logger = logging.getLogger(__name__)


ASSIGNMENT_API_VERSION = "2022-06-01"
DEFINITION_API_VERSION = "2021-06-01"


@dataclass
class AssignmentResolution:
    """Outcome of resolving the assignments of one scope chain."""
    assignments: List[PolicyAssignment] = field(default_factory=list)
    policies: List[EffectivePolicy] = field(default_factory=list)
    failed_scopes: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def assignment_keys(self) -> set:
        return {assignment.key for assignment in self.assignments}


class AssignmentResolver:
    """Resolves applicable assignments and their effective policies."""

    def __init__(self, client, cache: Optional[RunCache] = None, resolver: Optional[ParameterResolver] = None):
        self.client = client
        self.cache = cache or RunCache()
        self.resolver = resolver or ParameterResolver()

    def list_assignments_at(self, scope: str) -> List[PolicyAssignment]:
        """Fetch assignments placed exactly at ``scope`` (inherited ones are excluded)."""
        raw_items = self.client.get_all(
            f"{scope.rstrip('/')}/providers/Microsoft.Authorization/policyAssignments",
            params={"api-version": ASSIGNMENT_API_VERSION, "$filter": "atScope()"},
        )

        wanted = scope.rstrip('/').lower()
        assignments = []
        for raw in raw_items:
            try:
                assignment = PolicyAssignment.from_api(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed assignment at {scope}: {e}")
                continue
            if assignment.scope.rstrip('/').lower() == wanted:
                assignments.append(assignment)
        return assignments

    def collect_assignments(self, scopes: List[str]) -> AssignmentResolution:
        """Collect deduplicated assignments across scope levels, nearest level first.

        Raises:
            AssignmentResolutionError: If no level could be listed at all
        """
        resolution = AssignmentResolution()
        seen: Dict[str, PolicyAssignment] = {}

        for scope in scopes:
            try:
                level = self.list_assignments_at(scope)
            except ArmError as e:
                logger.warning(f"Could not list assignments at {scope}: {e}")
                resolution.failed_scopes.append(scope)
                continue

            for assignment in level:
                if assignment.key in seen:
                    continue
                seen[assignment.key] = assignment
                resolution.assignments.append(assignment)

        if scopes and len(resolution.failed_scopes) == len(scopes):
            raise AssignmentResolutionError(
                f"Could not list assignments at any of {len(scopes)} scopes"
            )

        logger.info(f"Collected {len(resolution.assignments)} assignments across {len(scopes)} scopes")
        return resolution

    def get_definition(self, definition_id: str) -> PolicyDefinition:
        """Fetch a policy definition, cached by ID for the run."""
        def load() -> PolicyDefinition:
            raw = self.client.get(definition_id, params={"api-version": DEFINITION_API_VERSION})
            if not isinstance(raw, dict):
                raise ArmError(f"Unexpected policy definition payload for {definition_id}")
            return PolicyDefinition.from_api(raw)

        return self.cache.get_or_load(RunCache.DEFINITIONS, definition_id.lower(), load)

    def get_initiative(self, initiative_id: str) -> InitiativeDefinition:
        """Fetch an initiative (policy set) definition, cached by ID for the run."""
        def load() -> InitiativeDefinition:
            raw = self.client.get(initiative_id, params={"api-version": DEFINITION_API_VERSION})
            if not isinstance(raw, dict):
                raise ArmError(f"Unexpected initiative payload for {initiative_id}")
            return InitiativeDefinition.from_api(raw)

        return self.cache.get_or_load(RunCache.INITIATIVES, initiative_id.lower(), load)

    def _effective_policy(
        self,
        assignment: PolicyAssignment,
        definition: PolicyDefinition,
        initiative: Optional[InitiativeDefinition] = None,
        reference: Optional[PolicyDefinitionReference] = None,
    ) -> EffectivePolicy:
        parameters = ParameterContext(
            assignment_values=dict(assignment.parameter_values),
            initiative_bindings=dict(reference.parameter_bindings) if reference else {},
            initiative_defaults=dict(initiative.parameter_defaults) if initiative else {},
            policy_defaults=dict(definition.parameter_defaults),
        )
        effect = resolve_effect(
            definition.raw_effect,
            parameters,
            enforcement_mode=assignment.enforcement_mode.value,
            resolver=self.resolver,
        )
        return EffectivePolicy(
            assignment=assignment,
            definition=definition,
            initiative=initiative,
            reference=reference,
            parameters=parameters,
            effect=effect.effect,
            raw_effect=effect.raw_effect,
            effect_source=effect.source_trail,
        )

    def expand(self, assignment: PolicyAssignment) -> List[EffectivePolicy]:
        """Expand one assignment into its effective policies.

        Initiative members that fail to load are logged and skipped; the
        rest of the initiative is still expanded.
        """
        if not assignment.policy_definition_id:
            logger.warning(f"Assignment {assignment.id} has no policy definition reference; skipping")
            return []

        if not assignment.is_initiative:
            definition = self.get_definition(assignment.policy_definition_id)
            return [self._effective_policy(assignment, definition)]

        initiative = self.get_initiative(assignment.policy_definition_id)
        policies = []
        for reference in initiative.references:
            try:
                definition = self.get_definition(reference.policy_definition_id)
            except (ArmError, ValidationError) as e:
                logger.warning(
                    f"Skipping member {reference.reference_id or reference.policy_definition_id} "
                    f"of initiative {initiative.display_name or initiative.id}: {e}"
                )
                continue
            policies.append(self._effective_policy(assignment, definition, initiative, reference))

        return policies

    def resolve(self, scopes: List[str]) -> AssignmentResolution:
        """Collect assignments for a scope chain and expand them into effective policies."""
        resolution = self.collect_assignments(scopes)

        for assignment in resolution.assignments:
            try:
                resolution.policies.extend(self.expand(assignment))
            except (ArmError, ValidationError) as e:
                logger.warning(f"Excluding assignment {assignment.display_name or assignment.id}: {e}")
                resolution.skipped.append(assignment.id)

        logger.info(
            f"Resolved {len(resolution.policies)} effective policies from "
            f"{len(resolution.assignments)} assignments ({len(resolution.skipped)} excluded)"
        )
        return resolution
