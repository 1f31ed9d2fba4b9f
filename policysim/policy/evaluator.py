"""Evaluation orchestrator for the resource x policy cross product.

Coordinates pair selection (notScopes, disabled effects), condition
evaluation, exemption lookup, per-policy aggregation and output-mode
filtering. Parallel evaluation fans out across the resource dimension in
batches; each worker returns its own partial list and results are ordered
deterministically afterwards, so the output does not depend on the
execution strategy.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .conditions import ConditionEvaluator, EvaluationTrace
from .models import (
    AssignmentChange,
    ComplianceState,
    EffectivePolicy,
    EvaluationResult,
    EvaluationRun,
    EvaluationSummary,
    MigrationVerdict,
    OutputMode,
    PolicyStatistics,
    Resource,
    WaiverStatus,
)
from .parameters import BLOCKING_EFFECTS, UNRESOLVED_EFFECT, ParameterReference, ParameterResolver
from .properties import PropertyAccessor


logger = logging.getLogger(__name__)


# Human-readable consequence of a violation, per resolved effect
IMPACT_DESCRIPTIONS = {
    "Deny": "Create and update requests for this resource would be denied",
    "DenyAction": "Delete requests for this resource would be blocked",
    "Audit": "Resource would be reported as non-compliant",
    "AuditIfNotExists": "Resource would be reported as non-compliant if the related resource is missing",
    "DeployIfNotExists": "A remediation deployment would run for this resource",
    "Modify": "Properties or tags would be changed on create, update or remediation",
    "Append": "Fields would be appended on create or update",
    "Manual": "Compliance must be attested manually",
    "Disabled": "Policy is disabled and has no effect",
    UNRESOLVED_EFFECT: "Effect could not be resolved; review the assignment parameters",
}

NO_IMPACT = "No impact"
INDETERMINATE_IMPACT = "Condition could not be fully evaluated"


@dataclass
class EvaluationContext:
    """Context for one evaluation pass."""

    subscription_id: str = ""
    source_group: Optional[str] = None
    target_group: str = ""

    output_mode: OutputMode = OutputMode.VIOLATIONS_ONLY
    include_disabled: bool = False

    # Execution strategy
    parallel: bool = False
    max_workers: Optional[int] = None

    # Object exposing match(resource_id, assignment_id, reference_id) -> Exemption | None
    exemptions: Any = None

    # Lower-cased assignment ID -> whether the assignment is new after the move
    assignment_changes: Dict[str, AssignmentChange] = field(default_factory=dict)

    # Performance tracking
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


def _serializable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        name: str(value) if isinstance(value, ParameterReference) else value
        for name, value in values.items()
    }


def emitted(result: EvaluationResult, mode: OutputMode) -> bool:
    """Check whether a result passes the output-mode filter."""
    if mode == OutputMode.VIOLATIONS_ONLY:
        return result.violates
    if mode == OutputMode.COMPLIANT_ONLY:
        return not result.violates and not result.indeterminate and result.error is None
    return True


def classify_verdict(results: List[EvaluationResult]) -> MigrationVerdict:
    """SAFE, REVIEW or BLOCKED, from unexempted violations."""
    verdict = MigrationVerdict.SAFE
    for result in results:
        if not result.violates or result.is_exempt or result.effect == "Disabled":
            continue
        if result.effect in BLOCKING_EFFECTS:
            return MigrationVerdict.BLOCKED
        verdict = MigrationVerdict.REVIEW
    return verdict


class PolicyEvaluationEngine:
    """Evaluates every applicable (resource, effective policy) pair."""

    # Resources per worker batch when running in parallel
    min_batch_size = 4

    def __init__(self, accessor: Optional[PropertyAccessor] = None, resolver: Optional[ParameterResolver] = None):
        self.accessor = accessor or PropertyAccessor()
        self.resolver = resolver or ParameterResolver()
        self.conditions = ConditionEvaluator(self.accessor, self.resolver)

    def evaluate(
        self,
        resources: List[Resource],
        policies: List[EffectivePolicy],
        context: EvaluationContext,
    ) -> EvaluationRun:
        """Evaluate the full cross product and aggregate the results.

        Args:
            resources: Subscription resources, already filtered
            policies: Effective policies from the assignment resolver
            context: Evaluation options

        Returns:
            Results filtered by output mode, plus summary and per-policy statistics
        """
        context.start_time = datetime.now(timezone.utc)
        started = time.time()

        active = self._filter_policies(policies, context)
        workers = self._worker_count(context, len(resources))

        if workers > 1:
            indexed = self._evaluate_parallel(resources, active, context, workers)
        else:
            indexed = self._evaluate_batch(list(enumerate(resources)), active, context)

        indexed.sort(key=lambda item: item[0])
        all_results = [result for _, result in indexed]

        context.end_time = datetime.now(timezone.utc)

        total_pairs = len(resources) * len(active)
        run = self._aggregate_results(all_results, active, resources, context)
        run.summary.total_pairs = total_pairs
        run.summary.skipped_pairs = total_pairs - len(all_results)
        run.summary.execution_time_ms = (time.time() - started) * 1000
        run.summary.parallel_workers_used = workers

        logger.info(
            f"Evaluated {len(all_results)} pairs ({run.summary.skipped_pairs} skipped) "
            f"across {len(resources)} resources and {len(active)} policies: "
            f"{run.summary.violations} violations, verdict {run.summary.verdict.value}"
        )
        return run

    def evaluate_pair(
        self,
        resource: Resource,
        policy: EffectivePolicy,
        context: EvaluationContext,
    ) -> EvaluationResult:
        """Evaluate one policy against one resource.

        Failures are isolated to the pair: the returned result carries the
        error instead of raising.
        """
        result = self._base_result(resource, policy, context)

        try:
            trace = EvaluationTrace()
            violates = self.conditions.evaluate(
                policy.definition.condition, resource, policy.parameters, trace
            )

            reasons = list(trace.indeterminate)
            if policy.effect == UNRESOLVED_EFFECT:
                reasons.append(f"unresolved effect {policy.raw_effect}")

            result.violates = violates
            result.indeterminate = bool(reasons)
            result.indeterminate_reasons = reasons

            if violates:
                result.compliance_state = ComplianceState.NON_COMPLIANT
                result.impact = IMPACT_DESCRIPTIONS.get(policy.effect, IMPACT_DESCRIPTIONS[UNRESOLVED_EFFECT])
                self._apply_exemption(result, resource, policy, context)
            elif reasons:
                result.compliance_state = ComplianceState.INDETERMINATE
                result.impact = INDETERMINATE_IMPACT
            else:
                result.compliance_state = ComplianceState.COMPLIANT
                result.impact = NO_IMPACT

        except Exception as e:
            logger.warning(
                f"Evaluation failed for {resource.id} against {policy.definition.id}: {e}"
            )
            result.violates = False
            result.indeterminate = True
            result.indeterminate_reasons = [f"evaluation error: {e}"]
            result.compliance_state = ComplianceState.ERROR
            result.impact = INDETERMINATE_IMPACT
            result.error = str(e)

        return result

    def _base_result(self, resource: Resource, policy: EffectivePolicy, context: EvaluationContext) -> EvaluationResult:
        assignment = policy.assignment
        initiative = policy.initiative

        return EvaluationResult(
            subscription_id=context.subscription_id,
            source_group=context.source_group,
            target_group=context.target_group,
            resource_id=resource.id,
            resource_name=resource.name,
            resource_type=resource.type,
            resource_location=resource.location,
            assignment_id=assignment.id,
            assignment_name=assignment.display_name or assignment.name,
            assignment_scope=assignment.scope,
            assignment_change=context.assignment_changes.get(assignment.key, AssignmentChange.UNKNOWN),
            enforcement_mode=assignment.enforcement_mode,
            policy_definition_id=policy.definition.id,
            policy_display_name=policy.definition.display_name,
            initiative_id=initiative.id if initiative else None,
            initiative_display_name=initiative.display_name if initiative else None,
            policy_reference_id=policy.reference_id,
            effect=policy.effect,
            raw_effect=policy.raw_effect,
            effect_source=policy.effect_source,
            assignment_parameters=_serializable(policy.parameters.assignment_values),
            initiative_parameters=_serializable(policy.parameters.initiative_bindings),
            policy_parameters=_serializable(policy.parameters.policy_defaults),
        )

    def _apply_exemption(
        self,
        result: EvaluationResult,
        resource: Resource,
        policy: EffectivePolicy,
        context: EvaluationContext,
    ) -> None:
        exemption = None
        if context.exemptions is not None:
            exemption = context.exemptions.match(resource.id, policy.assignment.id, policy.reference_id)

        if exemption is None:
            result.waiver_status = WaiverStatus.REVIEW
            return

        result.waiver_status = WaiverStatus.EXISTING
        result.exemption_id = exemption.id
        result.exemption_name = exemption.display_name or exemption.name
        result.exemption_category = exemption.category
        result.exemption_reason = exemption.description
        result.exemption_expires_on = exemption.expires_on

    def _filter_policies(self, policies: List[EffectivePolicy], context: EvaluationContext) -> List[EffectivePolicy]:
        """Drop Disabled policies unless explicitly requested."""
        if context.include_disabled:
            return list(policies)

        active = [policy for policy in policies if policy.effect != "Disabled"]
        dropped = len(policies) - len(active)
        if dropped:
            logger.info(f"Skipping {dropped} policies with a Disabled effect")
        return active

    def _worker_count(self, context: EvaluationContext, resource_count: int) -> int:
        if not context.parallel or resource_count < 2:
            return 1
        return max(1, min(context.max_workers or os.cpu_count() or 1, resource_count))

    def _evaluate_batch(
        self,
        batch: List[Tuple[int, Resource]],
        policies: List[EffectivePolicy],
        context: EvaluationContext,
    ) -> List[Tuple[Tuple[int, int], EvaluationResult]]:
        """Evaluate every policy for a batch of resources within one worker."""
        partial = []

        for resource_index, resource in batch:
            for policy_index, policy in enumerate(policies):
                if policy.assignment.excludes(resource.id):
                    continue
                result = self.evaluate_pair(resource, policy, context)
                partial.append(((resource_index, policy_index), result))

        return partial

    def _evaluate_parallel(
        self,
        resources: List[Resource],
        policies: List[EffectivePolicy],
        context: EvaluationContext,
        max_workers: int,
    ) -> List[Tuple[Tuple[int, int], EvaluationResult]]:
        """Fan out across resources in batches; each worker returns a partial list."""
        indexed_resources = list(enumerate(resources))
        batch_size = max(self.min_batch_size, len(indexed_resources) // max_workers)
        batches = [
            indexed_resources[i:i + batch_size]
            for i in range(0, len(indexed_resources), batch_size)
        ]

        collected = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_batch = {
                executor.submit(self._evaluate_batch, batch, policies, context): batch
                for batch in batches
            }

            for future in as_completed(future_to_batch):
                batch = future_to_batch[future]
                try:
                    collected.extend(future.result())
                except Exception as e:
                    # evaluate_pair isolates its own failures; this covers the batch loop itself
                    logger.error(f"Batch of {len(batch)} resources failed: {e}")
                    for resource_index, resource in batch:
                        for policy_index, policy in enumerate(policies):
                            if policy.assignment.excludes(resource.id):
                                continue
                            result = self._base_result(resource, policy, context)
                            result.indeterminate = True
                            result.indeterminate_reasons = [f"batch error: {e}"]
                            result.compliance_state = ComplianceState.ERROR
                            result.error = str(e)
                            collected.append(((resource_index, policy_index), result))

        return collected

    def _aggregate_results(
        self,
        results: List[EvaluationResult],
        policies: List[EffectivePolicy],
        resources: List[Resource],
        context: EvaluationContext,
    ) -> EvaluationRun:
        """Aggregate pair results into summary, per-policy statistics and the emitted list."""
        statistics: Dict[str, PolicyStatistics] = {}
        for policy in policies:
            if policy.key not in statistics:
                statistics[policy.key] = PolicyStatistics(
                    key=policy.key,
                    assignment_name=policy.assignment.display_name or policy.assignment.name,
                    policy_display_name=policy.definition.display_name,
                    initiative_display_name=policy.initiative.display_name if policy.initiative else None,
                    effect=policy.effect,
                )

        summary = EvaluationSummary(
            total_resources=len(resources),
            total_policies=len(policies),
        )

        for result in results:
            stats = statistics.get(self._result_key(result))

            if result.error is not None:
                summary.errors += 1
                if stats:
                    stats.error_count += 1
            elif result.violates:
                summary.violations += 1
                if result.is_exempt:
                    summary.exempted_violations += 1
                elif result.effect in BLOCKING_EFFECTS:
                    summary.blocking_violations += 1
                if stats:
                    stats.violating_count += 1
                    if result.resource_type not in stats.violating_resource_types:
                        stats.violating_resource_types.append(result.resource_type)
            elif not result.indeterminate:
                summary.compliant += 1
                if stats:
                    stats.compliant_count += 1

            if result.indeterminate and result.error is None:
                summary.indeterminate += 1
                if stats:
                    stats.indeterminate_count += 1

        summary.verdict = classify_verdict(results)

        emitted_results = [result for result in results if emitted(result, context.output_mode)]
        summary.emitted_results = len(emitted_results)

        return EvaluationRun(
            results=emitted_results,
            summary=summary,
            policy_statistics=list(statistics.values()),
            evaluation_time=context.end_time or datetime.now(timezone.utc),
        )

    @staticmethod
    def _result_key(result: EvaluationResult) -> str:
        return f"{result.assignment_id.lower()}|{result.policy_definition_id.lower()}|{(result.policy_reference_id or '').lower()}"
