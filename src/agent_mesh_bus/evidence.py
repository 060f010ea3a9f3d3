# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Append-only JSON-lines log of anomalies, trimmed from the head."""

import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path

from .metrics import BusMetrics

log = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 5000
RECENT_WINDOW = timedelta(hours=1)


class EvidenceType:
    ROUTING_FAILURE = "routing_failure"
    MISSING_SESSION = "missing_session"
    INVALID_FRONTMATTER = "invalid_frontmatter"
    HARDCODED_FALLBACK = "hardcoded_fallback"
    MESH_NOT_FOUND = "mesh_not_found"
    AGENT_NOT_FOUND = "agent_not_found"
    ORPHANED_MESSAGE = "orphaned_message"
    DUPLICATE_PROCESSING = "duplicate_processing"
    QUEUE_STUCK = "queue_stuck"
    CONFIG_INVALID = "config_invalid"
    DIRECTORY_MISSING = "directory_missing"
    VALIDATION_FAILURE = "validation_failure"
    PARSE_ERROR = "parse_error"
    INVALID_MESSAGE = "invalid_message"
    PROCESSING_ERROR = "processing_error"


class EvidenceRecorder:
    def __init__(
        self, path: Path, max_lines: int = DEFAULT_MAX_LINES, metrics: BusMetrics | None = None
    ):
        self.path = Path(path)
        self.max_lines = max_lines
        self.metrics = metrics

    def init(self) -> None:
        """Create the log file. Errors propagate: startup must not continue without it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def record(self, evidence_type: str, description: str, **context) -> dict:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "type": evidence_type,
            "description": description,
            "context": {k: v for k, v in context.items() if v is not None},
        }
        log.warning(f"Evidence [{evidence_type}] {description}")
        if self.metrics:
            self.metrics.inc("mesh_bus_evidence_recorded_total")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
            self._trim()
        except OSError as e:
            log.error(f"Failed to write evidence to {self.path}: {e}")
        return entry

    def _trim(self) -> None:
        lines = self.path.read_text().splitlines()
        if len(lines) <= self.max_lines:
            return
        self.path.write_text("\n".join(lines[-self.max_lines :]) + "\n")

    def _entries(self) -> list[dict]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                log.debug(f"Skipping malformed evidence line: {line[:80]}")
        return entries

    def tail(
        self, n: int = 50, evidence_type: str | None = None, domain: str | None = None
    ) -> list[dict]:
        """Most recent entries first, optionally filtered."""
        entries = self._entries()
        if evidence_type:
            entries = [e for e in entries if e.get("type") == evidence_type]
        if domain:
            entries = [e for e in entries if e.get("context", {}).get("domain") == domain]
        return list(reversed(entries))[:n]

    def summary(self) -> dict:
        entries = self._entries()
        cutoff = datetime.now() - RECENT_WINDOW
        recent = 0
        for entry in entries:
            try:
                if datetime.fromisoformat(entry["timestamp"]) >= cutoff:
                    recent += 1
            except (KeyError, ValueError):
                continue
        return {
            "total": len(entries),
            "by_type": dict(Counter(e.get("type") for e in entries)),
            "by_domain": dict(
                Counter(
                    e["context"]["domain"]
                    for e in entries
                    if e.get("context", {}).get("domain")
                )
            ),
            "recent_count": recent,
            "oldest": entries[0]["timestamp"] if entries else None,
            "newest": entries[-1]["timestamp"] if entries else None,
        }

    def clear(self) -> None:
        self.path.write_text("")
