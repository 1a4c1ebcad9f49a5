"""Logging configuration and utilities."""

from vizql_copilot.shared.logging.config import setup_logging, log_phase_transition, StructuredFormatter
from vizql_copilot.shared.logging.analysis_log import (
    AnalysisLog,
    get_or_create_analysis_log,
    remove_analysis_log,
    calculate_cost,
)

__all__ = [
    "setup_logging",
    "log_phase_transition",
    "StructuredFormatter",
    "AnalysisLog",
    "get_or_create_analysis_log",
    "remove_analysis_log",
    "calculate_cost",
]
