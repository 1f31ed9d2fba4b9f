"""Parameter resolution for policy effects and condition operands.

Policy documents reference parameters with the string form
``[parameters('name')]``. Those strings are parsed once, at ingestion, into
``ParameterReference`` values; resolution then walks a fixed precedence
order:

1. assignment-level value (supplied by the operator at assignment time)
2. initiative-supplied value (the initiative's binding for the member
   policy, or the initiative's own default)
3. the policy definition's declared default

A resolved value may itself be another reference; resolution is repeated up
to ``MAX_RESOLUTION_DEPTH`` hops and then stops, returning whatever was
reached last.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)


MAX_RESOLUTION_DEPTH = 5

_PARAMETER_RE = re.compile(r"^\[\s*parameters\(\s*'(?P<name>[^']+)'\s*\)\s*\]$", re.IGNORECASE)


@dataclass(frozen=True)
class ParameterReference:
    """A symbolic reference to a named parameter."""
    name: str

    def __str__(self) -> str:
        return f"[parameters('{self.name}')]"


class _Unresolved:
    """Sentinel for a parameter that no source could supply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Unresolved, ())


UNRESOLVED = _Unresolved()


def is_symbolic(value: Any) -> bool:
    """True when a value is still a reference or could not be resolved."""
    return value is UNRESOLVED or isinstance(value, ParameterReference)


def parse_parameter_value(raw: Any) -> Any:
    """Parse a raw document value, turning reference strings into ParameterReference.

    Object-wrapped values (``{"value": ...}``) are unwrapped first. Lists and
    other literals are returned unchanged.
    """
    if isinstance(raw, dict) and set(raw.keys()) <= {'value'} and 'value' in raw:
        raw = raw['value']

    if isinstance(raw, str):
        match = _PARAMETER_RE.match(raw.strip())
        if match:
            return ParameterReference(match.group('name'))

    return raw


def parse_parameter_values(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Parse an assignment or binding map ``{name: {"value": x}}``."""
    if not isinstance(raw, dict):
        return {}
    return {name: parse_parameter_value(value) for name, value in raw.items()}


def parse_parameter_defaults(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Extract declared defaults from a parameter schema ``{name: {"defaultValue": x}}``."""
    defaults: Dict[str, Any] = {}
    if not isinstance(raw, dict):
        return defaults

    for name, schema in raw.items():
        if isinstance(schema, dict) and 'defaultValue' in schema:
            defaults[name] = parse_parameter_value(schema['defaultValue'])

    return defaults


class ParameterSource:
    """Labels for where a resolved value came from."""
    LITERAL = "Literal"
    ASSIGNMENT = "Assignment"
    INITIATIVE = "Initiative"
    INITIATIVE_DEFAULT = "InitiativeDefault"
    POLICY_DEFAULT = "PolicyDefault"
    UNRESOLVED = "Unresolved"
    DEPTH_LIMIT = "DepthLimit"


@dataclass
class ParameterContext:
    """All parameter values visible to one (assignment, policy) pair.

    Lookups are case-insensitive, matching how the platform treats
    parameter names.
    """
    assignment_values: Dict[str, Any] = field(default_factory=dict)
    initiative_bindings: Dict[str, Any] = field(default_factory=dict)
    initiative_defaults: Dict[str, Any] = field(default_factory=dict)
    policy_defaults: Dict[str, Any] = field(default_factory=dict)

    def tiers(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Sources in precedence order, highest first."""
        return [
            (ParameterSource.ASSIGNMENT, self.assignment_values),
            (ParameterSource.INITIATIVE, self.initiative_bindings),
            (ParameterSource.INITIATIVE_DEFAULT, self.initiative_defaults),
            (ParameterSource.POLICY_DEFAULT, self.policy_defaults),
        ]

    def lookup(self, name: str) -> Tuple[Optional[str], Any]:
        """Find the highest-precedence value for a parameter name."""
        lowered = name.lower()
        for source, values in self.tiers():
            for candidate, value in values.items():
                if candidate.lower() == lowered:
                    return source, value
        return None, UNRESOLVED


@dataclass
class Resolution:
    """Outcome of resolving one value, with the trail of sources visited."""
    value: Any
    trail: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return not is_symbolic(self.value)

    @property
    def trail_text(self) -> str:
        return " -> ".join(self.trail) if self.trail else ParameterSource.LITERAL


class ParameterResolver:
    """Resolves literals and parameter references against a ParameterContext."""

    def __init__(self, max_depth: int = MAX_RESOLUTION_DEPTH):
        self.max_depth = max_depth

    def resolve(self, value: Any, context: ParameterContext) -> Resolution:
        """Resolve a value, following reference chains up to the depth bound."""
        if not isinstance(value, ParameterReference):
            return Resolution(value=value, trail=[ParameterSource.LITERAL])

        trail: List[str] = []
        current: Any = value

        for _ in range(self.max_depth):
            if not isinstance(current, ParameterReference):
                return Resolution(value=current, trail=trail)

            source, found = context.lookup(current.name)
            if source is None:
                trail.append(f"{ParameterSource.UNRESOLVED}({current.name})")
                return Resolution(value=UNRESOLVED, trail=trail)

            trail.append(f"{source}({current.name})")
            current = found

        if isinstance(current, ParameterReference):
            logger.warning(
                f"Parameter chain exceeded depth {self.max_depth}; "
                f"leaving {current} unresolved"
            )
            trail.append(ParameterSource.DEPTH_LIMIT)

        return Resolution(value=current, trail=trail)

    def resolve_value(self, value: Any, context: ParameterContext) -> Any:
        """Convenience wrapper returning only the resolved value."""
        return self.resolve(value, context).value


# Canonical spelling for every effect the platform defines
KNOWN_EFFECTS = {
    name.lower(): name
    for name in (
        "Append", "Audit", "AuditIfNotExists", "Deny", "DenyAction",
        "DeployIfNotExists", "Disabled", "Manual", "Modify",
    )
}

UNRESOLVED_EFFECT = "Unresolved"

# Substitutions applied when an assignment is set to DoNotEnforce
DO_NOT_ENFORCE_OVERRIDES = {
    "Deny": "Audit",
    "DenyAction": "Audit",
    "DeployIfNotExists": "AuditIfNotExists",
    "Modify": "AuditIfNotExists",
}

BLOCKING_EFFECTS = frozenset({"Deny", "DenyAction"})


def canonical_effect(value: Any) -> Optional[str]:
    """Map a resolved effect value to its canonical name, or None if unknown."""
    if isinstance(value, str):
        return KNOWN_EFFECTS.get(value.strip().lower())
    return None


def apply_enforcement_mode(effect: str, enforcement_mode: str) -> str:
    """Apply the DoNotEnforce degrade table to an already-resolved effect."""
    if (enforcement_mode or "").lower() != "donotenforce":
        return effect
    return DO_NOT_ENFORCE_OVERRIDES.get(effect, effect)


@dataclass
class EffectResolution:
    """Resolved effect of one policy within one assignment."""
    effect: str
    raw_effect: str
    resolved_value: Any
    source_trail: str
    enforcement_override: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.effect != UNRESOLVED_EFFECT


def resolve_effect(
    raw_effect: Any,
    context: ParameterContext,
    enforcement_mode: str = "Default",
    resolver: Optional[ParameterResolver] = None,
) -> EffectResolution:
    """Resolve a policy's `then.effect` and apply the enforcement-mode override.

    Unresolvable or unrecognised values yield the `Unresolved` effect, which
    is never substituted by the enforcement override.
    """
    resolver = resolver or ParameterResolver()
    resolution = resolver.resolve(raw_effect, context)
    effect = canonical_effect(resolution.value)

    if effect is None:
        if resolution.resolved:
            logger.debug(f"Unrecognised effect value {resolution.value!r} for {raw_effect}")
        return EffectResolution(
            effect=UNRESOLVED_EFFECT,
            raw_effect=str(raw_effect),
            resolved_value=resolution.value,
            source_trail=resolution.trail_text,
        )

    overridden = apply_enforcement_mode(effect, enforcement_mode)
    trail = resolution.trail_text
    if overridden != effect:
        trail = f"{trail} -> DoNotEnforce({effect}->{overridden})"

    return EffectResolution(
        effect=overridden,
        raw_effect=str(raw_effect),
        resolved_value=resolution.value,
        source_trail=trail,
        enforcement_override=overridden != effect,
    )
