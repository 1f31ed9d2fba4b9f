"""Policy rule condition trees and their evaluation.

A policy's ``if`` block is parsed once into a small typed tree (``AllOf``,
``AnyOf``, ``Not``, field/value leaves). The evaluator walks that tree for a
single resource. Conditions it cannot decide (missing field, unsupported
alias or operator, unresolved operand) fail closed to ``False``; every such
decision is recorded on an ``EvaluationTrace`` so callers can tell a
confirmed non-match from an undecidable one.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .parameters import (
    ParameterContext,
    ParameterReference,
    ParameterResolver,
    is_symbolic,
    parse_parameter_value,
)
from .values import lookup_key, path_enumerates_array


logger = logging.getLogger(__name__)


# Canonical operator names keyed by their lower-case spelling
OPERATORS = {
    name.lower(): name
    for name in (
        "equals", "notEquals",
        "like", "notLike",
        "in", "notIn",
        "contains", "notContains",
        "containsKey", "notContainsKey",
        "match", "notMatch",
        "matchInsensitively", "notMatchInsensitively",
        "greater", "less", "greaterOrEquals", "lessOrEquals",
        "exists",
    )
}

_TAG_PARAMETER_FIELD_RE = re.compile(
    r"^\[\s*concat\(\s*'tags\[',\s*parameters\(\s*'(?P<name>[^']+)'\s*\)\s*,\s*'\]'\s*\)\s*\]$",
    re.IGNORECASE,
)


class ConditionNode:
    """Base class for parsed condition nodes."""
    pass


@dataclass(frozen=True)
class AllOf(ConditionNode):
    conditions: Tuple[ConditionNode, ...] = ()


@dataclass(frozen=True)
class AnyOf(ConditionNode):
    conditions: Tuple[ConditionNode, ...] = ()


@dataclass(frozen=True)
class Not(ConditionNode):
    condition: ConditionNode


@dataclass(frozen=True)
class FieldRef:
    """Target of a field leaf: a literal alias or a tag name taken from a parameter."""
    alias: Optional[str] = None
    tag_parameter: Optional[ParameterReference] = None

    def __str__(self) -> str:
        if self.tag_parameter is not None:
            return f"tags[{self.tag_parameter}]"
        return self.alias or ""


@dataclass(frozen=True)
class FieldCondition(ConditionNode):
    field: FieldRef
    operator: str
    operand: Any = None


@dataclass(frozen=True)
class ValueCondition(ConditionNode):
    value: Any
    operator: str
    operand: Any = None


@dataclass(frozen=True)
class UnsupportedCondition(ConditionNode):
    """A condition shape the evaluator cannot decide."""
    reason: str
    source: str = ""


def _find_operator(node: Dict[str, Any], reserved: str) -> Tuple[Optional[str], Any]:
    for key, value in node.items():
        if key.lower() == reserved:
            continue
        canonical = OPERATORS.get(key.lower())
        if canonical:
            return canonical, value
    return None, None


def _parse_field(raw: Any) -> Optional[FieldRef]:
    if not isinstance(raw, str) or not raw.strip():
        return None

    text = raw.strip()
    match = _TAG_PARAMETER_FIELD_RE.match(text)
    if match:
        return FieldRef(tag_parameter=ParameterReference(match.group('name')))

    if text.startswith('[') and not text.startswith('[['):
        # Template expressions other than the tag form are not evaluated
        return None

    return FieldRef(alias=text)


def parse_condition(raw: Any) -> ConditionNode:
    """Parse a raw ``if`` block into a ConditionNode tree."""
    if not isinstance(raw, dict) or not raw:
        return UnsupportedCondition(reason="condition is not an object", source=repr(raw)[:200])

    keys = {key.lower(): key for key in raw.keys()}

    if 'allof' in keys:
        children = raw[keys['allof']]
        if not isinstance(children, list):
            return UnsupportedCondition(reason="allOf is not a list", source=repr(children)[:200])
        return AllOf(tuple(parse_condition(child) for child in children))

    if 'anyof' in keys:
        children = raw[keys['anyof']]
        if not isinstance(children, list):
            return UnsupportedCondition(reason="anyOf is not a list", source=repr(children)[:200])
        return AnyOf(tuple(parse_condition(child) for child in children))

    if 'not' in keys:
        return Not(parse_condition(raw[keys['not']]))

    if 'count' in keys:
        return UnsupportedCondition(reason="count expressions are not supported", source=repr(raw)[:200])

    if 'field' in keys:
        field_ref = _parse_field(raw[keys['field']])
        if field_ref is None:
            return UnsupportedCondition(
                reason=f"unsupported field expression {raw[keys['field']]!r}",
                source=repr(raw)[:200],
            )
        operator, operand = _find_operator(raw, 'field')
        if operator is None:
            return UnsupportedCondition(reason="unknown operator", source=repr(raw)[:200])
        return FieldCondition(field=field_ref, operator=operator, operand=parse_parameter_value(operand))

    if 'value' in keys:
        operator, operand = _find_operator(raw, 'value')
        if operator is None:
            return UnsupportedCondition(reason="unknown operator", source=repr(raw)[:200])
        return ValueCondition(
            value=parse_parameter_value(raw[keys['value']]),
            operator=operator,
            operand=parse_parameter_value(operand),
        )

    return UnsupportedCondition(reason="unrecognised condition shape", source=repr(raw)[:200])


@dataclass
class EvaluationTrace:
    """Fail-closed decisions taken while evaluating one condition tree."""
    indeterminate: List[str] = field(default_factory=list)

    def mark(self, reason: str) -> None:
        self.indeterminate.append(reason)

    @property
    def is_indeterminate(self) -> bool:
        return bool(self.indeterminate)


def wildcard_match(value: str, pattern: str) -> bool:
    """Case-insensitive match where '*' matches any run of characters."""
    regex = '.*'.join(re.escape(part) for part in pattern.split('*'))
    return re.fullmatch(regex, value, re.IGNORECASE | re.DOTALL) is not None


def pattern_match(value: str, pattern: str, ignore_case: bool = False) -> bool:
    """Platform `match` semantics: '#' a digit, '?' a letter, '.' any character."""
    parts = []
    for char in pattern:
        if char == '#':
            parts.append(r'\d')
        elif char == '?':
            parts.append(r'[A-Za-z]')
        elif char == '.':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    flags = re.IGNORECASE if ignore_case else 0
    return re.fullmatch(''.join(parts), value, flags | re.DOTALL) is not None


def _is_template_expression(value: Any) -> bool:
    return isinstance(value, str) and value.startswith('[') and value.endswith(']') and not value.startswith('[[')


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, dict):
        return {str(key).lower(): _normalize(item) for key, item in value.items()}
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Platform equality: strings compare case-insensitively; bools match 'true'/'false'."""
    if isinstance(left, bool) and isinstance(right, str):
        return str(left).lower() == right.lower()
    if isinstance(right, bool) and isinstance(left, str):
        return str(right).lower() == left.lower()
    return _normalize(left) == _normalize(right)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def compare_typed(left: Any, right: Any) -> Optional[int]:
    """Three-way compare by typed value; None when the types are not comparable."""
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return (left_number > right_number) - (left_number < right_number)

    left_date, right_date = _as_datetime(left), _as_datetime(right)
    if left_date is not None and right_date is not None:
        try:
            return (left_date > right_date) - (left_date < right_date)
        except TypeError:
            # naive vs aware timestamps
            return None

    if isinstance(left, str) and isinstance(right, str):
        a, b = left.lower(), right.lower()
        return (a > b) - (a < b)

    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    return None


def apply_operator(operator: str, live: Any, operand: Any) -> Optional[bool]:
    """Apply one comparison operator. Returns None when the pair is undecidable."""
    if operator == "equals":
        return values_equal(live, operand)
    if operator == "notEquals":
        return not values_equal(live, operand)

    if operator in ("like", "notLike"):
        if not isinstance(operand, str) or isinstance(live, (list, dict)):
            return None
        matched = wildcard_match(str(live).lower() if isinstance(live, bool) else str(live), operand)
        return matched if operator == "like" else not matched

    if operator in ("in", "notIn"):
        if not isinstance(operand, list):
            return None
        member = any(values_equal(live, candidate) for candidate in operand)
        return member if operator == "in" else not member

    if operator in ("contains", "notContains"):
        if isinstance(live, list):
            found = any(values_equal(item, operand) for item in live)
        elif isinstance(live, str) and isinstance(operand, str):
            found = wildcard_match(live, f"*{operand}*")
        else:
            return None
        return found if operator == "contains" else not found

    if operator in ("containsKey", "notContainsKey"):
        if not isinstance(live, dict) or not isinstance(operand, str):
            return None
        found, _ = lookup_key(live, operand)
        return found if operator == "containsKey" else not found

    if operator in ("match", "notMatch", "matchInsensitively", "notMatchInsensitively"):
        if not isinstance(live, str) or not isinstance(operand, str):
            return None
        matched = pattern_match(live, operand, ignore_case=operator.endswith("Insensitively"))
        return not matched if operator.startswith("not") else matched

    if operator in ("greater", "less", "greaterOrEquals", "lessOrEquals"):
        order = compare_typed(live, operand)
        if order is None:
            return None
        return {
            "greater": order > 0,
            "less": order < 0,
            "greaterOrEquals": order >= 0,
            "lessOrEquals": order <= 0,
        }[operator]

    return None


class ConditionEvaluator:
    """Evaluates parsed condition trees against resources.

    The property accessor is any object exposing
    ``get_value(resource, alias)``.
    """

    def __init__(self, accessor, resolver: Optional[ParameterResolver] = None):
        self.accessor = accessor
        self.resolver = resolver or ParameterResolver()

    def evaluate(
        self,
        condition: ConditionNode,
        resource: Any,
        parameters: Optional[ParameterContext] = None,
        trace: Optional[EvaluationTrace] = None,
    ) -> bool:
        """Evaluate a condition for a resource. Undecidable leaves yield False."""
        parameters = parameters or ParameterContext()
        trace = trace if trace is not None else EvaluationTrace()

        if isinstance(condition, AllOf):
            for child in condition.conditions:
                if not self.evaluate(child, resource, parameters, trace):
                    return False
            return True

        if isinstance(condition, AnyOf):
            for child in condition.conditions:
                if self.evaluate(child, resource, parameters, trace):
                    return True
            return False

        if isinstance(condition, Not):
            return not self.evaluate(condition.condition, resource, parameters, trace)

        if isinstance(condition, FieldCondition):
            return self._evaluate_field(condition, resource, parameters, trace)

        if isinstance(condition, ValueCondition):
            return self._evaluate_value(condition, parameters, trace)

        if isinstance(condition, UnsupportedCondition):
            trace.mark(condition.reason)
            return False

        trace.mark(f"unknown node {type(condition).__name__}")
        return False

    def _resolve_operand(self, operand: Any, parameters: ParameterContext, trace: EvaluationTrace) -> Tuple[bool, Any]:
        value = self.resolver.resolve_value(operand, parameters)
        if is_symbolic(value):
            trace.mark(f"unresolved operand {operand}")
            return False, None
        if _is_template_expression(value):
            trace.mark(f"unsupported operand expression {value}")
            return False, None
        return True, value

    def _resolve_alias(self, field_ref: FieldRef, parameters: ParameterContext, trace: EvaluationTrace) -> Optional[str]:
        if field_ref.tag_parameter is None:
            return field_ref.alias

        tag_name = self.resolver.resolve_value(field_ref.tag_parameter, parameters)
        if is_symbolic(tag_name) or not isinstance(tag_name, str):
            trace.mark(f"unresolved tag name {field_ref.tag_parameter}")
            return None
        return f"tags['{tag_name}']"

    def _evaluate_field(
        self,
        condition: FieldCondition,
        resource: Any,
        parameters: ParameterContext,
        trace: EvaluationTrace,
    ) -> bool:
        alias = self._resolve_alias(condition.field, parameters, trace)
        if alias is None:
            return False

        ok, operand = self._resolve_operand(condition.operand, parameters, trace)
        if not ok:
            return False

        live = self.accessor.get_value(resource, alias)
        enumerates = path_enumerates_array(alias) and isinstance(live, list)

        if condition.operator == "exists":
            expected = _as_bool(operand)
            if expected is None:
                trace.mark(f"exists expects a boolean, got {operand!r}")
                return False
            if enumerates:
                present = bool(live) and all(element is not None for element in live)
            else:
                present = live is not None
            return present == expected

        if live is None or (enumerates and not live):
            trace.mark(f"missing field {alias}")
            return False

        if enumerates:
            outcomes = [
                None if element is None else apply_operator(condition.operator, element, operand)
                for element in live
            ]
            if any(outcome is False for outcome in outcomes):
                return False
            if any(element is None for element in live):
                trace.mark(f"missing field {alias} on some elements")
                return False
            if any(outcome is None for outcome in outcomes):
                trace.mark(f"undecidable {condition.operator} on {alias}")
                return False
            return True

        outcome = apply_operator(condition.operator, live, operand)
        if outcome is None:
            trace.mark(f"undecidable {condition.operator} on {alias}")
            return False
        return outcome

    def _evaluate_value(self, condition: ValueCondition, parameters: ParameterContext, trace: EvaluationTrace) -> bool:
        ok, value = self._resolve_operand(condition.value, parameters, trace)
        if not ok:
            return False

        ok, operand = self._resolve_operand(condition.operand, parameters, trace)
        if not ok:
            return False

        if condition.operator == "exists":
            expected = _as_bool(operand)
            if expected is None:
                trace.mark(f"exists expects a boolean, got {operand!r}")
                return False
            return (value is not None) == expected

        outcome = apply_operator(condition.operator, value, operand)
        if outcome is None:
            trace.mark(f"undecidable {condition.operator} on value")
            return False
        return outcome
