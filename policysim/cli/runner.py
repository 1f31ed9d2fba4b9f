"""CLI runner for the policy move simulation with exit code mapping.

Drives one simulation end to end: hierarchy walk, assignment resolution,
exemption and resource collection, evaluation, export and summary. The
migration verdict maps onto CI-friendly exit codes.
"""

import logging
import sys
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..azure.assignments import AssignmentResolver
from ..azure.cache import RunCache
from ..azure.client import ArmClient
from ..azure.errors import ArmError, AssignmentResolutionError, HierarchyError
from ..azure.exemptions import ExemptionCollector, ExemptionMatcher
from ..azure.hierarchy import Hierarchy, HierarchyWalker, subscription_scope
from ..azure.resources import ResourceInventory, load_resources
from ..azure.retry import Retrier, RetryPolicy
from ..policy.evaluator import EvaluationContext, PolicyEvaluationEngine
from ..policy.models import AssignmentChange, EvaluationRun, MigrationVerdict, PolicyAssignment
from ..policy.properties import PropertyAccessor
from ..reporting.exports import ExportService
from ..reporting.summary import SummaryReporter
from .config import SimulatorConfiguration


logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """CLI exit codes for CI/CD integration."""
    SUCCESS = 0           # Safe to migrate
    REVIEW_REQUIRED = 1   # Unexempted violations that need review
    BLOCKED = 2           # Unexempted Deny/DenyAction violations
    CONFIG_ERROR = 3      # Configuration or setup error
    RUNTIME_ERROR = 4     # Fatal error during execution


VERDICT_EXIT_CODES = {
    MigrationVerdict.SAFE: ExitCode.SUCCESS,
    MigrationVerdict.REVIEW: ExitCode.REVIEW_REQUIRED,
    MigrationVerdict.BLOCKED: ExitCode.BLOCKED,
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the root logger once for a CLI invocation."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def assignment_changes(
    target: List[PolicyAssignment],
    source: Optional[List[PolicyAssignment]],
) -> Dict[str, AssignmentChange]:
    """Label each target assignment as new or already applying today."""
    if source is None:
        return {assignment.key: AssignmentChange.UNKNOWN for assignment in target}

    existing = {assignment.key for assignment in source}
    return {
        assignment.key: AssignmentChange.EXISTING if assignment.key in existing else AssignmentChange.NEW
        for assignment in target
    }


class SimulationRunner:
    """Runs one policy move simulation."""

    def __init__(
        self,
        config: SimulatorConfiguration,
        client=None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the runner.

        Args:
            config: Effective configuration
            client: Optional pre-built ARM client (tests inject one)
            sleep: Optional sleep function for retry backoff
        """
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self.cache = RunCache()
        self.run_result: Optional[EvaluationRun] = None
        self.matcher: Optional[ExemptionMatcher] = None

        self.summary_reporter = SummaryReporter(
            output_format=config.output.summary_format,
            verbose=config.output.verbose,
            quiet=config.output.quiet,
        )

    @property
    def client(self):
        if self._client is None:
            policy = RetryPolicy(
                max_attempts=self.config.execution.max_retries,
                base_delay=self.config.execution.base_delay,
                max_delay=self.config.execution.max_delay,
            )
            retrier = Retrier(policy, sleep=self._sleep) if self._sleep else Retrier(policy)
            self._client = ArmClient(
                base_url=self.config.azure.base_url,
                timeout=self.config.azure.timeout_seconds,
                retrier=retrier,
            )
        return self._client

    def run(self) -> ExitCode:
        """Run the simulation and print the summary.

        Returns:
            Exit code derived from the migration verdict
        """
        summary = self.summary_reporter.summary
        summary.start_time = datetime.now(timezone.utc)
        summary.subscription_id = self.config.azure.subscription_id
        summary.source_group = self.config.azure.source_group
        summary.target_group = self.config.azure.target_group

        try:
            exit_code = self._simulate()
        except (HierarchyError, AssignmentResolutionError) as e:
            logger.error(f"Simulation aborted: {e}")
            self.summary_reporter.add_error(str(e))
            exit_code = ExitCode.RUNTIME_ERROR
        except ArmError as e:
            logger.error(f"Management API failure: {e}")
            self.summary_reporter.add_error(str(e))
            exit_code = ExitCode.RUNTIME_ERROR
        except OSError as e:
            logger.error(f"Could not write output: {e}")
            self.summary_reporter.add_error(str(e))
            exit_code = ExitCode.RUNTIME_ERROR
        except Exception as e:
            logger.exception(f"Runtime error: {e}")
            self.summary_reporter.add_error(f"Runtime error: {e}")
            exit_code = ExitCode.RUNTIME_ERROR
        finally:
            self._collect_diagnostics()
            if self._owns_client and self._client is not None:
                self._client.close()

        summary.end_time = datetime.now(timezone.utc)
        self.summary_reporter.set_exit_code(int(exit_code))
        self.summary_reporter.print_summary()
        return exit_code

    def _walk(self, group: str) -> Hierarchy:
        return HierarchyWalker(self.client, self.cache).get_hierarchy(group)

    def _scopes(self, hierarchy: Hierarchy) -> List[str]:
        scopes = []
        if self.config.azure.include_subscription_scope:
            scopes.append(subscription_scope(self.config.azure.subscription_id))
        scopes.extend(hierarchy.scopes)
        return scopes

    def _source_assignments(self, resolver: AssignmentResolver) -> Optional[List[PolicyAssignment]]:
        """Assignments applying today, or None when the source side cannot be resolved."""
        source_group = self.config.azure.source_group
        if not source_group:
            return None

        try:
            hierarchy = self._walk(source_group)
            self.summary_reporter.summary.source_hierarchy = hierarchy.names
            return resolver.collect_assignments(self._scopes(hierarchy)).assignments
        except ArmError as e:
            message = f"Source group '{source_group}' could not be resolved; assignment changes unknown: {e}"
            logger.warning(message)
            self.summary_reporter.add_warning(message)
            return None

    def _simulate(self) -> ExitCode:
        summary = self.summary_reporter.summary
        azure = self.config.azure

        target = self._walk(azure.target_group)
        summary.target_hierarchy = target.names
        summary.hierarchy_truncated = target.truncated
        for warning in target.warnings:
            self.summary_reporter.add_warning(warning)

        resolver = AssignmentResolver(self.client, self.cache)
        resolution = resolver.resolve(self._scopes(target))
        for scope in resolution.failed_scopes:
            self.summary_reporter.add_warning(f"Assignments at {scope} could not be listed")

        changes = assignment_changes(resolution.assignments, self._source_assignments(resolver))
        summary.assignments = len(resolution.assignments)
        summary.new_assignments = sum(1 for change in changes.values() if change == AssignmentChange.NEW)
        summary.effective_policies = len(resolution.policies)

        inventory = ResourceInventory(self.client, azure.subscription_id, self.cache)
        if resolution.policies:
            resources = load_resources(
                inventory,
                resource_types=self.config.filters.resource_types,
                resource_id=self.config.filters.resource_id,
                portal_mode=self.config.filters.portal_mode,
            )
            exemptions = ExemptionCollector(self.client).collect(azure.subscription_id, target.scopes)
        else:
            logger.info("No applicable policies in the target hierarchy; nothing to evaluate")
            resources, exemptions = [], []
        summary.resources = len(resources)

        self.matcher = ExemptionMatcher(exemptions, target.scopes)
        context = EvaluationContext(
            subscription_id=azure.subscription_id,
            source_group=azure.source_group,
            target_group=azure.target_group,
            output_mode=self.config.output.mode,
            include_disabled=self.config.execution.include_disabled,
            parallel=self.config.execution.parallel,
            max_workers=self.config.execution.max_workers,
            exemptions=self.matcher,
            assignment_changes=changes,
        )

        engine = PolicyEvaluationEngine(PropertyAccessor(inventory))
        self.run_result = engine.evaluate(resources, resolution.policies, context)
        summary.run = self.run_result

        if self.config.output.export:
            exporter = ExportService(self.config.output.output_dir or Path.cwd())
            path = exporter.export(self.run_result, self.config.output.export_format)
            self.summary_reporter.add_output_file(path)

        return VERDICT_EXIT_CODES[self.run_result.summary.verdict]

    def _collect_diagnostics(self) -> None:
        diagnostics = self.summary_reporter.summary.diagnostics
        diagnostics["cache"] = self.cache.get_stats()
        if self._client is not None and hasattr(self._client, "get_stats"):
            diagnostics["requests"] = self._client.get_stats()
        if self.matcher is not None:
            diagnostics["exemptions"] = self.matcher.get_stats()


def run_simulation(config: SimulatorConfiguration, client=None) -> ExitCode:
    """Convenience wrapper around SimulationRunner."""
    return SimulationRunner(config, client=client).run()
