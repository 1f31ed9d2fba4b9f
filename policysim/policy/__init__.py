"""Policy evaluation core.

This package parses policy documents into typed forms, resolves parameters
and effects, and evaluates policy conditions against resources. It performs
no network access; remote state is supplied by ``policysim.azure``.
"""

from .models import (
    # Enums
    EnforcementMode,
    OutputMode,
    ComplianceState,
    WaiverStatus,
    AssignmentChange,
    MigrationVerdict,

    # Core models
    PolicyDefinition,
    PolicyDefinitionReference,
    InitiativeDefinition,
    PolicyAssignment,
    Exemption,
    Resource,
    EffectivePolicy,
    EvaluationResult,
    PolicyStatistics,
    EvaluationSummary,
    EvaluationRun,
)

from .parameters import (
    ParameterReference,
    ParameterContext,
    ParameterResolver,
    EffectResolution,
    UNRESOLVED,
    resolve_effect,
)

from .conditions import (
    ConditionEvaluator,
    EvaluationTrace,
    parse_condition,
)

from .properties import PropertyAccessor

from .evaluator import (
    EvaluationContext,
    PolicyEvaluationEngine,
)

__all__ = [
    # Enums
    'EnforcementMode',
    'OutputMode',
    'ComplianceState',
    'WaiverStatus',
    'AssignmentChange',
    'MigrationVerdict',

    # Core models
    'PolicyDefinition',
    'PolicyDefinitionReference',
    'InitiativeDefinition',
    'PolicyAssignment',
    'Exemption',
    'Resource',
    'EffectivePolicy',
    'EvaluationResult',
    'PolicyStatistics',
    'EvaluationSummary',
    'EvaluationRun',

    # Parameters
    'ParameterReference',
    'ParameterContext',
    'ParameterResolver',
    'EffectResolution',
    'UNRESOLVED',
    'resolve_effect',

    # Conditions
    'ConditionEvaluator',
    'EvaluationTrace',
    'parse_condition',

    # Evaluation
    'PropertyAccessor',
    'EvaluationContext',
    'PolicyEvaluationEngine',
]
