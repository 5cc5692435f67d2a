"""
Formatters turn a per-pod ExecOutcome into a JSON-ready value.

Failed outcomes always render as {"error": <message>} with the remote error
text preserved verbatim.
"""

import json
from typing import Any, Dict, List, Optional, Protocol

from ddfleet.modules.fleet.models import ExecOutcome


class Formatter(Protocol):
    """Renders a single outcome."""

    def format(self, outcome: ExecOutcome) -> Any:
        ...


def error_document(outcome: ExecOutcome, fallback: Optional[str] = None) -> Dict[str, Any]:
    """Build the error value for a failed outcome."""
    document: Dict[str, Any] = {"error": fallback or outcome.error_message or "command failed"}
    if fallback and outcome.error_message:
        document["detail"] = outcome.error_message
    if outcome.status.value != "failed":
        document["status"] = outcome.status.value
    return document


class TextFormatter:
    """Raw stdout."""

    def format(self, outcome: ExecOutcome) -> Any:
        if not outcome.ok:
            return error_document(outcome)
        return outcome.stdout


class LinesFormatter:
    """Non-empty stdout lines."""

    def format(self, outcome: ExecOutcome) -> Any:
        if not outcome.ok:
            return error_document(outcome)
        return [line for line in outcome.stdout.splitlines() if line]


class JsonFormatter:
    """stdout parsed as a single JSON document."""

    def __init__(self, failure_message: Optional[str] = None):
        self.failure_message = failure_message

    def format(self, outcome: ExecOutcome) -> Any:
        if not outcome.ok:
            return error_document(outcome, self.failure_message)
        try:
            return json.loads(outcome.stdout)
        except json.JSONDecodeError as e:
            return {"error": f"Invalid JSON output: {e}", "output": outcome.stdout}


class StatLinesFormatter:
    """
    One entry per `stat -c '%s|%a|%Y|%F|%n'` line.

    The name comes last and may itself contain '|'. Lines that do not split
    into five fields with numeric size and mtime are kept as {"raw": line}.
    """

    def format(self, outcome: ExecOutcome) -> Any:
        if not outcome.ok:
            return error_document(outcome)
        entries: List[Dict[str, Any]] = []
        for line in outcome.stdout.splitlines():
            if not line.strip():
                continue
            entries.append(parse_stat_line(line))
        return entries


def parse_stat_line(line: str) -> Dict[str, Any]:
    """Parse a size|mode|mtime|type|path record."""
    fields = line.split("|", 4)
    if len(fields) != 5:
        return {"raw": line}
    size, mode, mtime, file_type, path = fields
    try:
        return {
            "path": path,
            "size": int(size),
            "mode": mode,
            "mtime": int(mtime),
            "type": file_type,
        }
    except ValueError:
        return {"raw": line}


def select_section(document: Any, section: Optional[str]) -> Any:
    """
    Pick one top-level section out of a JSON object.

    Exact key match wins; otherwise a unique case-insensitive substring
    match is used.
    """
    if not section or not isinstance(document, dict) or is_error(document):
        return document

    if section in document:
        return document[section]

    needle = section.lower()
    matches = [key for key in document if needle in key.lower()]
    if len(matches) == 1:
        return document[matches[0]]
    if len(matches) > 1:
        return {"error": "Multiple sections match", "matches": matches}
    return {"error": "Section not found", "available_sections": sorted(document)}


def filter_keys(mapping: Any, needle: Optional[str]) -> Any:
    """Keep entries whose key contains needle (case-insensitive)."""
    if not needle or not isinstance(mapping, dict):
        return mapping
    needle = needle.lower()
    return {key: value for key, value in mapping.items() if needle in key.lower()}


def is_error(value: Any) -> bool:
    """Check whether a formatted value is an error document."""
    return isinstance(value, dict) and "error" in value
