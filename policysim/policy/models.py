"""Pydantic models for the policy simulation.

Definitions, assignments, exemptions and resources are read-only mirrors of
remote API state. Each model ingests the raw ARM JSON shape once through a
``from_api`` constructor, which is where parameter references and condition
trees are parsed into their typed forms.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .conditions import ConditionNode, UnsupportedCondition, parse_condition
from .parameters import (
    ParameterContext,
    parse_parameter_defaults,
    parse_parameter_value,
    parse_parameter_values,
)
from .values import lookup_key


class EnforcementMode(str, Enum):
    """Assignment enforcement modes."""
    DEFAULT = "Default"
    DO_NOT_ENFORCE = "DoNotEnforce"

    @classmethod
    def parse(cls, value: Optional[str]) -> "EnforcementMode":
        if value and value.strip().lower() == "donotenforce":
            return cls.DO_NOT_ENFORCE
        return cls.DEFAULT


class OutputMode(str, Enum):
    """Which evaluation results are emitted."""
    VIOLATIONS_ONLY = "violations-only"
    COMPLIANT_ONLY = "compliant-only"
    ALL = "all"


class ComplianceState(str, Enum):
    """Predicted compliance label for one (resource, policy) pair."""
    NON_COMPLIANT = "NonCompliant"
    COMPLIANT = "Compliant"
    INDETERMINATE = "Indeterminate"
    ERROR = "Error"


class WaiverStatus(str, Enum):
    """Exemption status column of the export."""
    EXISTING = "Existente"      # violation already covered by an exemption
    REVIEW = "Revisar"          # violation with no exemption
    NOT_APPLICABLE = "N/A"


class AssignmentChange(str, Enum):
    """Whether an assignment is new for the subscription after the move."""
    NEW = "New"
    EXISTING = "Existing"
    UNKNOWN = "Unknown"


class MigrationVerdict(str, Enum):
    """Overall classification of a simulated move."""
    SAFE = "SAFE"
    REVIEW = "REVIEW"
    BLOCKED = "BLOCKED"


def _properties(raw: Dict[str, Any]) -> Dict[str, Any]:
    found, properties = lookup_key(raw, 'properties')
    return properties if found and isinstance(properties, dict) else {}


def _get(node: Dict[str, Any], key: str, default: Any = None) -> Any:
    found, value = lookup_key(node, key)
    return value if found and value is not None else default


def scope_of(resource_id: str, marker: str) -> str:
    """Return the scope prefix of an extension resource ID.

    ``/subscriptions/S/providers/Microsoft.Authorization/policyExemptions/x``
    has scope ``/subscriptions/S`` for marker
    ``/providers/Microsoft.Authorization/policyExemptions/``.
    """
    index = resource_id.lower().rfind(marker.lower())
    if index <= 0:
        return ""
    return resource_id[:index]


class PolicyDefinition(BaseModel):
    """A policy definition with its parsed rule."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    name: str = ""
    display_name: str = ""
    policy_type: Optional[str] = None
    mode: Optional[str] = None
    condition: ConditionNode = Field(default_factory=lambda: UnsupportedCondition(reason="empty rule"))
    raw_effect: Any = None
    parameter_defaults: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "PolicyDefinition":
        properties = _properties(raw)
        rule = _get(properties, 'policyRule', {})
        then = _get(rule, 'then', {}) if isinstance(rule, dict) else {}

        return cls(
            id=_get(raw, 'id', ''),
            name=_get(raw, 'name', ''),
            display_name=_get(properties, 'displayName', '') or _get(raw, 'name', ''),
            policy_type=_get(properties, 'policyType'),
            mode=_get(properties, 'mode'),
            condition=parse_condition(_get(rule, 'if') if isinstance(rule, dict) else None),
            raw_effect=parse_parameter_value(_get(then, 'effect') if isinstance(then, dict) else None),
            parameter_defaults=parse_parameter_defaults(_get(properties, 'parameters', {})),
        )


class PolicyDefinitionReference(BaseModel):
    """One member of an initiative, with its initiative-to-policy parameter bindings."""

    model_config = ConfigDict(frozen=True)

    policy_definition_id: str
    reference_id: Optional[str] = None
    parameter_bindings: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "PolicyDefinitionReference":
        return cls(
            policy_definition_id=_get(raw, 'policyDefinitionId', ''),
            reference_id=_get(raw, 'policyDefinitionReferenceId'),
            parameter_bindings=parse_parameter_values(_get(raw, 'parameters', {})),
        )


class InitiativeDefinition(BaseModel):
    """A policy set definition (initiative)."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    display_name: str = ""
    policy_type: Optional[str] = None
    references: List[PolicyDefinitionReference] = Field(default_factory=list)
    parameter_defaults: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "InitiativeDefinition":
        properties = _properties(raw)
        references = [
            PolicyDefinitionReference.from_api(item)
            for item in _get(properties, 'policyDefinitions', [])
            if isinstance(item, dict)
        ]
        return cls(
            id=_get(raw, 'id', ''),
            name=_get(raw, 'name', ''),
            display_name=_get(properties, 'displayName', '') or _get(raw, 'name', ''),
            policy_type=_get(properties, 'policyType'),
            references=references,
            parameter_defaults=parse_parameter_defaults(_get(properties, 'parameters', {})),
        )


class PolicyAssignment(BaseModel):
    """Binding of a policy or initiative to a scope."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    display_name: str = ""
    scope: str = ""
    policy_definition_id: str = ""
    parameter_values: Dict[str, Any] = Field(default_factory=dict)
    enforcement_mode: EnforcementMode = EnforcementMode.DEFAULT
    not_scopes: List[str] = Field(default_factory=list)

    @property
    def is_initiative(self) -> bool:
        return "/policysetdefinitions/" in self.policy_definition_id.lower()

    @property
    def key(self) -> str:
        return self.id.lower()

    def excludes(self, resource_id: str) -> bool:
        """Check whether a resource sits under one of the assignment's notScopes."""
        lowered = resource_id.lower()
        for not_scope in self.not_scopes:
            prefix = not_scope.rstrip('/').lower()
            if lowered == prefix or lowered.startswith(prefix + '/'):
                return True
        return False

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "PolicyAssignment":
        properties = _properties(raw)
        assignment_id = _get(raw, 'id', '')
        scope = _get(properties, 'scope') or scope_of(
            assignment_id, '/providers/Microsoft.Authorization/policyAssignments/'
        )
        return cls(
            id=assignment_id,
            name=_get(raw, 'name', ''),
            display_name=_get(properties, 'displayName', '') or _get(raw, 'name', ''),
            scope=scope,
            policy_definition_id=_get(properties, 'policyDefinitionId', ''),
            parameter_values=parse_parameter_values(_get(properties, 'parameters', {})),
            enforcement_mode=EnforcementMode.parse(_get(properties, 'enforcementMode')),
            not_scopes=list(_get(properties, 'notScopes', []) or []),
        )


class Exemption(BaseModel):
    """A policy exemption (waiver) bound to one assignment."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    display_name: str = ""
    description: Optional[str] = None
    scope: str = ""
    policy_assignment_id: str = ""
    policy_definition_reference_ids: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    expires_on: Optional[datetime] = None

    @field_validator('expires_on', mode='before')
    @classmethod
    def parse_expiry(cls, v):
        """Accept ISO timestamps with a trailing 'Z'."""
        if isinstance(v, str):
            text = v.strip()
            if not text:
                return None
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            return datetime.fromisoformat(text)
        return v

    @property
    def is_expired(self) -> bool:
        if self.expires_on is None:
            return False
        expires = self.expires_on
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires < datetime.now(timezone.utc)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Exemption":
        properties = _properties(raw)
        exemption_id = _get(raw, 'id', '')
        return cls(
            id=exemption_id,
            name=_get(raw, 'name', ''),
            display_name=_get(properties, 'displayName', '') or _get(raw, 'name', ''),
            description=_get(properties, 'description'),
            scope=scope_of(exemption_id, '/providers/Microsoft.Authorization/policyExemptions/'),
            policy_assignment_id=_get(properties, 'policyAssignmentId', ''),
            policy_definition_reference_ids=list(_get(properties, 'policyDefinitionReferenceIds', []) or []),
            category=_get(properties, 'exemptionCategory'),
            expires_on=_get(properties, 'expiresOn'),
        )


class Resource(BaseModel):
    """A subscription resource as listed by the inventory API."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    type: str = ""
    location: Optional[str] = None
    kind: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.id.lower()

    @property
    def resource_group(self) -> Optional[str]:
        parts = self.id.split('/')
        for index, part in enumerate(parts[:-1]):
            if part.lower() == 'resourcegroups':
                return parts[index + 1]
        return None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Resource":
        tags = _get(raw, 'tags', {}) or {}
        return cls(
            id=_get(raw, 'id', ''),
            name=_get(raw, 'name', ''),
            type=_get(raw, 'type', ''),
            location=_get(raw, 'location'),
            kind=_get(raw, 'kind'),
            tags={str(k): "" if v is None else str(v) for k, v in tags.items()} if isinstance(tags, dict) else {},
            raw=raw,
        )


class EffectivePolicy(BaseModel):
    """One policy as it applies through one assignment.

    For initiative assignments there is one EffectivePolicy per member
    policy, carrying the initiative's bindings for that member.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    assignment: PolicyAssignment
    definition: PolicyDefinition
    initiative: Optional[InitiativeDefinition] = None
    reference: Optional[PolicyDefinitionReference] = None
    parameters: ParameterContext
    effect: str
    raw_effect: str
    effect_source: str

    @property
    def key(self) -> str:
        reference_id = self.reference.reference_id if self.reference else ""
        return f"{self.assignment.key}|{self.definition.id.lower()}|{(reference_id or '').lower()}"

    @property
    def reference_id(self) -> Optional[str]:
        return self.reference.reference_id if self.reference else None


class EvaluationResult(BaseModel):
    """Outcome of one (resource, effective policy) pair."""

    # Context
    subscription_id: str = ""
    source_group: Optional[str] = None
    target_group: str = ""

    # Resource identity
    resource_id: str
    resource_name: str = ""
    resource_type: str = ""
    resource_location: Optional[str] = None

    # Policy identity
    assignment_id: str = ""
    assignment_name: str = ""
    assignment_scope: str = ""
    assignment_change: AssignmentChange = AssignmentChange.UNKNOWN
    enforcement_mode: EnforcementMode = EnforcementMode.DEFAULT
    policy_definition_id: str = ""
    policy_display_name: str = ""
    initiative_id: Optional[str] = None
    initiative_display_name: Optional[str] = None
    policy_reference_id: Optional[str] = None

    # Effect
    effect: str = ""
    raw_effect: str = ""
    effect_source: str = ""

    # Parameter contexts, serialized for export
    assignment_parameters: Dict[str, Any] = Field(default_factory=dict)
    initiative_parameters: Dict[str, Any] = Field(default_factory=dict)
    policy_parameters: Dict[str, Any] = Field(default_factory=dict)

    # Verdict
    violates: bool = False
    indeterminate: bool = False
    indeterminate_reasons: List[str] = Field(default_factory=list)
    compliance_state: ComplianceState = ComplianceState.COMPLIANT
    impact: str = ""

    # Exemption
    waiver_status: WaiverStatus = WaiverStatus.NOT_APPLICABLE
    exemption_id: Optional[str] = None
    exemption_name: Optional[str] = None
    exemption_category: Optional[str] = None
    exemption_reason: Optional[str] = None
    exemption_expires_on: Optional[datetime] = None

    error: Optional[str] = None

    @property
    def is_exempt(self) -> bool:
        return self.exemption_id is not None


class PolicyStatistics(BaseModel):
    """Aggregated counts for one effective policy."""

    key: str
    assignment_name: str = ""
    policy_display_name: str = ""
    initiative_display_name: Optional[str] = None
    effect: str = ""
    violating_count: int = 0
    compliant_count: int = 0
    indeterminate_count: int = 0
    error_count: int = 0
    violating_resource_types: List[str] = Field(default_factory=list)


class EvaluationSummary(BaseModel):
    """Summary of a full evaluation pass."""

    total_resources: int = 0
    total_policies: int = 0
    total_pairs: int = 0
    skipped_pairs: int = 0
    violations: int = 0
    exempted_violations: int = 0
    blocking_violations: int = 0
    compliant: int = 0
    indeterminate: int = 0
    errors: int = 0
    emitted_results: int = 0
    verdict: MigrationVerdict = MigrationVerdict.SAFE
    execution_time_ms: float = 0.0
    parallel_workers_used: int = 1


class EvaluationRun(BaseModel):
    """Complete output of one evaluation pass."""

    results: List[EvaluationResult] = Field(default_factory=list)
    summary: EvaluationSummary = Field(default_factory=EvaluationSummary)
    policy_statistics: List[PolicyStatistics] = Field(default_factory=list)
    evaluation_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
