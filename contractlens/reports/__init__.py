"""Report generation and baseline reconciliation."""

from contractlens.reports.baseline import BaselineDiff, load_baseline, reconcile
from contractlens.reports.generator import FORMATS, Report, ReportSummary, generate, generate_sarif

__all__ = [
    "FORMATS",
    "BaselineDiff",
    "Report",
    "ReportSummary",
    "generate",
    "generate_sarif",
    "load_baseline",
    "reconcile",
]
