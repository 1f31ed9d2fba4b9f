"""Result exports and run summaries."""

from .exports import ExportFormat, ExportService, results_to_csv
from .summary import SummaryData, SummaryFormatter, SummaryReporter

__all__ = [
    'ExportFormat',
    'ExportService',
    'results_to_csv',
    'SummaryData',
    'SummaryFormatter',
    'SummaryReporter',
]
