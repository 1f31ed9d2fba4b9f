"""Run summary output and formatting.

Summaries are rendered as human-readable text, JSON or YAML, covering the
resolved hierarchy, evaluation counts, per-policy statistics, the migration
verdict and run diagnostics (cache and retry statistics, warnings).
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import yaml

from ..policy.models import EvaluationRun, MigrationVerdict


# Per-policy rows shown in text summaries
TOP_POLICIES = 10

# Verdict reported when the run aborted before evaluation
FAILED_VERDICT = "FAILED"


class SummaryData:
    """Container for simulation summary data."""

    def __init__(self):
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.subscription_id: Optional[str] = None
        self.source_group: Optional[str] = None
        self.target_group: Optional[str] = None
        self.target_hierarchy: List[str] = []
        self.source_hierarchy: List[str] = []
        self.hierarchy_truncated: bool = False
        self.assignments: int = 0
        self.new_assignments: int = 0
        self.effective_policies: int = 0
        self.resources: int = 0
        self.run: Optional[EvaluationRun] = None
        self.output_files: List[Path] = []
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.diagnostics: Dict[str, Any] = {}
        self.exit_code: Optional[int] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if not self.start_time or not self.end_time:
            return None
        return self.end_time - self.start_time

    @property
    def duration_seconds(self) -> float:
        duration = self.duration
        return duration.total_seconds() if duration else 0.0

    @property
    def failed(self) -> bool:
        return self.run is None and bool(self.errors)

    @property
    def verdict(self) -> Optional[MigrationVerdict]:
        """Migration verdict, or None when no evaluation completed."""
        if not self.run:
            return None
        return self.run.summary.verdict

    @property
    def verdict_label(self) -> Optional[str]:
        if self.failed:
            return FAILED_VERDICT
        return self.verdict.value if self.verdict else None


class SummaryFormatter:
    """Formats summary data into text, JSON or YAML."""

    def __init__(self, format_type: str = "text", verbose: bool = False):
        self.format_type = format_type.lower()
        self.verbose = verbose

    def format_summary(self, summary: SummaryData) -> str:
        if self.format_type == "json":
            return json.dumps(self._as_dict(summary), indent=2, default=str)
        elif self.format_type == "yaml":
            return yaml.safe_dump(self._as_dict(summary), default_flow_style=False, sort_keys=True)
        else:
            return self._format_text(summary)

    def _as_dict(self, summary: SummaryData) -> Dict[str, Any]:
        evaluation: Dict[str, Any] = {"evaluated": summary.run is not None}
        policies: List[Dict[str, Any]] = []

        if summary.run:
            evaluation.update(summary.run.summary.model_dump(mode="json"))
            policies = [stats.model_dump(mode="json") for stats in summary.run.policy_statistics]

        return {
            "summary": {
                "start_time": summary.start_time.isoformat() if summary.start_time else None,
                "end_time": summary.end_time.isoformat() if summary.end_time else None,
                "duration_seconds": summary.duration_seconds,
                "subscription_id": summary.subscription_id,
                "source_group": summary.source_group,
                "target_group": summary.target_group,
                "verdict": summary.verdict_label,
            },
            "hierarchy": {
                "target": summary.target_hierarchy,
                "source": summary.source_hierarchy,
                "truncated": summary.hierarchy_truncated,
            },
            "assignments": {
                "total": summary.assignments,
                "new": summary.new_assignments,
                "effective_policies": summary.effective_policies,
            },
            "resources": summary.resources,
            "evaluation": evaluation,
            "policies": policies,
            "output": {
                "files": [str(f) for f in summary.output_files]
            },
            "diagnostics": summary.diagnostics,
            "warnings": summary.warnings,
            "errors": summary.errors,
            "exit_code": summary.exit_code,
        }

    def _format_text(self, summary: SummaryData) -> str:
        lines = []

        lines.append("🛡️  POLICY MOVE SIMULATION")
        lines.append("=" * 50)
        if summary.subscription_id:
            lines.append(f"Subscription: {summary.subscription_id}")
        if summary.source_group:
            lines.append(f"Source Group: {summary.source_group}")
        if summary.target_group:
            lines.append(f"Target Group: {summary.target_group}")
        if summary.start_time:
            lines.append(f"Start Time: {summary.start_time.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        lines.append(f"Duration: {summary.duration_seconds:.1f} seconds")
        lines.append("")

        lines.append("🌳 HIERARCHY")
        lines.append("-" * 20)
        lines.append(f"Target: {' -> '.join(summary.target_hierarchy) or '(none)'}")
        if summary.source_hierarchy:
            lines.append(f"Source: {' -> '.join(summary.source_hierarchy)}")
        if summary.hierarchy_truncated:
            lines.append("⚠️  Hierarchy walk was truncated")
        lines.append("")

        lines.append("📜 ASSIGNMENTS")
        lines.append("-" * 20)
        lines.append(f"Assignments: {summary.assignments}")
        if summary.source_group:
            lines.append(f"New after move: {summary.new_assignments}")
        lines.append(f"Effective Policies: {summary.effective_policies}")
        lines.append(f"Resources: {summary.resources}")
        lines.append("")

        if summary.run:
            lines.extend(self._format_evaluation_text(summary.run))

        if self.verbose and summary.diagnostics:
            lines.append("🔧 DIAGNOSTICS")
            lines.append("-" * 20)
            for key, value in summary.diagnostics.items():
                lines.append(f"{key}: {json.dumps(value, default=str)}")
            lines.append("")

        if summary.output_files:
            lines.append("📄 OUTPUT FILES")
            lines.append("-" * 20)
            for output_file in summary.output_files:
                lines.append(f"• {output_file}")
            lines.append("")

        if summary.warnings:
            lines.append("⚠️  WARNINGS")
            lines.append("-" * 20)
            for warning in summary.warnings:
                lines.append(f"• {warning}")
            lines.append("")

        if summary.errors:
            lines.append("❌ ERRORS")
            lines.append("-" * 20)
            for error in summary.errors:
                lines.append(f"• {error}")
            lines.append("")

        lines.append("🏁 VERDICT")
        lines.append("-" * 20)
        if summary.failed:
            lines.append("❌ SIMULATION FAILED")
        elif summary.verdict is None:
            lines.append("➖ NOT EVALUATED")
        elif summary.verdict == MigrationVerdict.BLOCKED:
            lines.append("🚨 BLOCKED: unexempted Deny violations")
        elif summary.verdict == MigrationVerdict.REVIEW:
            lines.append("⚠️  REVIEW: unexempted violations")
        else:
            lines.append("✅ SAFE TO MIGRATE")

        if summary.exit_code is not None:
            lines.append(f"Exit Code: {summary.exit_code}")

        return "\n".join(lines)

    def _format_evaluation_text(self, run: EvaluationRun) -> List[str]:
        lines = []
        stats = run.summary

        lines.append("⚖️  EVALUATION")
        lines.append("-" * 20)
        lines.append(f"Pairs Evaluated: {stats.total_pairs - stats.skipped_pairs}")
        if stats.skipped_pairs:
            lines.append(f"Skipped (notScopes): {stats.skipped_pairs}")
        lines.append(f"❌ Violations: {stats.violations}")
        if stats.exempted_violations:
            lines.append(f"🎫 Exempted: {stats.exempted_violations}")
        if stats.blocking_violations:
            lines.append(f"🚨 Blocking: {stats.blocking_violations}")
        lines.append(f"✅ Compliant: {stats.compliant}")
        if stats.indeterminate:
            lines.append(f"❓ Indeterminate: {stats.indeterminate}")
        if stats.errors:
            lines.append(f"💥 Errors: {stats.errors}")
        lines.append(f"Emitted Results: {stats.emitted_results}")

        if stats.execution_time_ms < 1000:
            lines.append(f"⏱️  Execution: {stats.execution_time_ms:.0f}ms")
        else:
            lines.append(f"⏱️  Execution: {stats.execution_time_ms / 1000:.1f}s")
        lines.append("")

        violating = sorted(
            (policy for policy in run.policy_statistics if policy.violating_count),
            key=lambda policy: policy.violating_count,
            reverse=True,
        )
        if violating:
            lines.append("📋 POLICIES WITH VIOLATIONS")
            lines.append("-" * 20)
            limit = len(violating) if self.verbose else TOP_POLICIES
            for policy in violating[:limit]:
                lines.append(f"• [{policy.effect}] {policy.policy_display_name}: {policy.violating_count}")
                if self.verbose and policy.violating_resource_types:
                    lines.append(f"   Types: {', '.join(policy.violating_resource_types)}")
            if len(violating) > limit:
                lines.append(f"... and {len(violating) - limit} more policies")
            lines.append("")

        return lines


class SummaryReporter:
    """Collects and outputs the run summary."""

    def __init__(self, output_format: str = "text", verbose: bool = False, quiet: bool = False):
        self.formatter = SummaryFormatter(output_format, verbose)
        self.quiet = quiet
        self.summary = SummaryData()

    def add_output_file(self, file_path: Path):
        self.summary.output_files.append(file_path)

    def add_warning(self, warning: str):
        self.summary.warnings.append(warning)

    def add_error(self, error: str):
        self.summary.errors.append(error)

    def set_exit_code(self, exit_code: int):
        self.summary.exit_code = exit_code

    def generate_summary(self) -> str:
        if not self.summary.end_time:
            self.summary.end_time = datetime.now(timezone.utc)

        return self.formatter.format_summary(self.summary)

    def print_summary(self, output_stream: TextIO = sys.stdout):
        """Print summary to output stream."""
        if self.quiet:
            return

        print(self.generate_summary(), file=output_stream)

    def write_summary_file(self, file_path: Path):
        """Write summary to file."""
        summary_text = self.generate_summary()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(summary_text, encoding='utf-8')
