"""Tabular exports of evaluation results.

One row per emitted ``EvaluationResult``, written as CSV (default) or as an
XLSX workbook with a results sheet and a per-policy statistics sheet.
"""

import csv
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from io import StringIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import xlsxwriter

from ..policy.models import EvaluationResult, EvaluationRun, PolicyStatistics


logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Supported export formats."""
    CSV = "csv"
    XLSX = "xlsx"


def _json(values: Dict[str, Any]) -> str:
    return json.dumps(values, sort_keys=True, default=str) if values else ''


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ''


def _text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


# Column header and the extractor producing its cell value
RESULT_COLUMNS: List[Tuple[str, Callable[[EvaluationResult], Any]]] = [
    ('subscription_id', lambda r: r.subscription_id),
    ('source_management_group', lambda r: r.source_group),
    ('target_management_group', lambda r: r.target_group),
    ('resource_id', lambda r: r.resource_id),
    ('resource_name', lambda r: r.resource_name),
    ('resource_type', lambda r: r.resource_type),
    ('resource_location', lambda r: r.resource_location),
    ('assignment_name', lambda r: r.assignment_name),
    ('assignment_id', lambda r: r.assignment_id),
    ('assignment_scope', lambda r: r.assignment_scope),
    ('assignment_change', lambda r: r.assignment_change),
    ('enforcement_mode', lambda r: r.enforcement_mode),
    ('initiative_name', lambda r: r.initiative_display_name),
    ('initiative_id', lambda r: r.initiative_id),
    ('policy_reference_id', lambda r: r.policy_reference_id),
    ('policy_name', lambda r: r.policy_display_name),
    ('policy_definition_id', lambda r: r.policy_definition_id),
    ('effect', lambda r: r.effect),
    ('raw_effect', lambda r: r.raw_effect),
    ('effect_source', lambda r: r.effect_source),
    ('assignment_parameters', lambda r: _json(r.assignment_parameters)),
    ('initiative_parameters', lambda r: _json(r.initiative_parameters)),
    ('policy_parameters', lambda r: _json(r.policy_parameters)),
    ('violates', lambda r: r.violates),
    ('compliance_state', lambda r: r.compliance_state),
    ('indeterminate', lambda r: r.indeterminate),
    ('indeterminate_reasons', lambda r: '; '.join(r.indeterminate_reasons)),
    ('impact', lambda r: r.impact),
    ('waiver_status', lambda r: r.waiver_status),
    ('exemption_name', lambda r: r.exemption_name),
    ('exemption_category', lambda r: r.exemption_category),
    ('exemption_reason', lambda r: r.exemption_reason),
    ('exemption_expires_on', lambda r: _timestamp(r.exemption_expires_on)),
    ('error', lambda r: r.error),
]

STATISTICS_COLUMNS: List[Tuple[str, Callable[[PolicyStatistics], Any]]] = [
    ('assignment_name', lambda s: s.assignment_name),
    ('initiative_name', lambda s: s.initiative_display_name),
    ('policy_name', lambda s: s.policy_display_name),
    ('effect', lambda s: s.effect),
    ('violating', lambda s: s.violating_count),
    ('compliant', lambda s: s.compliant_count),
    ('indeterminate', lambda s: s.indeterminate_count),
    ('errors', lambda s: s.error_count),
    ('violating_resource_types', lambda s: ', '.join(s.violating_resource_types)),
]


def result_headers() -> List[str]:
    return [header for header, _ in RESULT_COLUMNS]


def result_row(result: EvaluationResult) -> List[str]:
    """Convert one result to its export row."""
    return [_text(extract(result)) for _, extract in RESULT_COLUMNS]


def results_to_csv(results: List[EvaluationResult]) -> str:
    """Render results as CSV text with a header row."""
    output = StringIO()
    writer = csv.writer(output)

    writer.writerow(result_headers())
    for result in results:
        writer.writerow(result_row(result))

    content = output.getvalue()
    output.close()
    return content


def default_export_name(run: EvaluationRun, export_format: ExportFormat) -> str:
    """File name like ``policysim_<subscription>_<target>_<UTC timestamp>.csv``."""
    first = run.results[0] if run.results else None
    subscription = (first.subscription_id if first else '') or 'subscription'
    target = (first.target_group if first else '') or 'target'
    stamp = (run.evaluation_time or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%SZ')
    return f"policysim_{subscription}_{target}_{stamp}.{export_format.value}"


class ExportService:
    """Writes evaluation runs to disk."""

    def __init__(self, output_dir: Union[str, Path] = '.'):
        self.output_dir = Path(output_dir)

    def export(
        self,
        run: EvaluationRun,
        export_format: ExportFormat = ExportFormat.CSV,
        filename: Optional[str] = None,
    ) -> Path:
        """Write the run's emitted results and return the file path."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / (filename or default_export_name(run, export_format))

        if export_format == ExportFormat.XLSX:
            self._write_xlsx(run, path)
        else:
            path.write_text(results_to_csv(run.results), encoding='utf-8', newline='')

        logger.info(f"Exported {len(run.results)} results to {path}")
        return path

    def _write_xlsx(self, run: EvaluationRun, path: Path) -> None:
        workbook = xlsxwriter.Workbook(str(path))
        try:
            header_format = workbook.add_format({
                'bold': True,
                'font_color': 'white',
                'bg_color': '#4472C4',
                'valign': 'vcenter',
                'text_wrap': True,
                'border': 1,
            })
            cell_format = workbook.add_format({'valign': 'top', 'border': 1})

            results_sheet = workbook.add_worksheet("Results")
            headers = result_headers()
            results_sheet.write_row(0, 0, headers, header_format)
            for row_index, result in enumerate(run.results, 1):
                results_sheet.write_row(row_index, 0, result_row(result), cell_format)
            results_sheet.set_column(0, len(headers) - 1, 24)
            results_sheet.freeze_panes(1, 0)
            results_sheet.autofilter(0, 0, max(len(run.results), 1), len(headers) - 1)

            stats_sheet = workbook.add_worksheet("Policies")
            stats_headers = [header for header, _ in STATISTICS_COLUMNS]
            stats_sheet.write_row(0, 0, stats_headers, header_format)
            for row_index, stats in enumerate(run.policy_statistics, 1):
                stats_sheet.write_row(
                    row_index, 0,
                    [extract(stats) if isinstance(extract(stats), int) else _text(extract(stats))
                     for _, extract in STATISTICS_COLUMNS],
                    cell_format,
                )
            stats_sheet.set_column(0, len(stats_headers) - 1, 28)
            stats_sheet.freeze_panes(1, 0)
        finally:
            workbook.close()
