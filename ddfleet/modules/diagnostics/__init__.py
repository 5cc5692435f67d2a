"""
Diagnostics Module - Black Box Interface

Purpose: Datadog Agent diagnostics on top of the fleet coordinator
Interface: AgentDiagnostics.status(), diagnose(), run_check(), check_details(),
           configured_checks(), read_file(), list_files()
Hidden: Agent CLI arguments, output formatting, section selection

Formatters are the seam between raw command output and the JSON documents
returned to callers.
"""

from .agent import AgentDiagnostics
from .formatters import (
    Formatter,
    JsonFormatter,
    LinesFormatter,
    StatLinesFormatter,
    TextFormatter,
    filter_keys,
    is_error,
    select_section,
)

__all__ = [
    "AgentDiagnostics",
    "Formatter",
    "JsonFormatter",
    "LinesFormatter",
    "StatLinesFormatter",
    "TextFormatter",
    "filter_keys",
    "is_error",
    "select_section",
]
