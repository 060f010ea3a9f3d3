"""Tests for the evidence recorder."""

import json

import pytest

from agent_mesh_bus.evidence import EvidenceRecorder, EvidenceType
from agent_mesh_bus.metrics import BusMetrics


@pytest.fixture
def recorder(tmp_path):
    recorder = EvidenceRecorder(tmp_path / "logs" / "evidence.jsonl", max_lines=5)
    recorder.init()
    return recorder


def test_record_appends_json_line(recorder):
    entry = recorder.record(
        EvidenceType.MESH_NOT_FOUND, "Domain 'x' not found", domain="d", file="f.md", queue=None
    )
    lines = recorder.path.read_text().splitlines()
    assert len(lines) == 1
    stored = json.loads(lines[0])
    assert stored == entry
    assert stored["context"] == {"domain": "d", "file": "f.md"}


def test_trims_from_head(recorder):
    for i in range(8):
        recorder.record(EvidenceType.QUEUE_STUCK, f"stuck {i}")
    lines = recorder.path.read_text().splitlines()
    assert len(lines) == 5
    assert json.loads(lines[0])["description"] == "stuck 3"


def test_tail_newest_first_with_filters(recorder):
    recorder.record(EvidenceType.PARSE_ERROR, "one", domain="a")
    recorder.record(EvidenceType.MISSING_SESSION, "two", domain="b")
    recorder.record(EvidenceType.PARSE_ERROR, "three", domain="b")

    assert [e["description"] for e in recorder.tail()] == ["three", "two", "one"]
    assert [e["description"] for e in recorder.tail(n=1)] == ["three"]
    parse_errors = recorder.tail(evidence_type="parse_error")
    assert [e["description"] for e in parse_errors] == ["three", "one"]
    assert [e["description"] for e in recorder.tail(domain="b")] == ["three", "two"]


def test_summary(recorder):
    recorder.record(EvidenceType.PARSE_ERROR, "one", domain="a")
    recorder.record(EvidenceType.PARSE_ERROR, "two", domain="b")
    recorder.record(EvidenceType.HARDCODED_FALLBACK, "three")

    summary = recorder.summary()
    assert summary["total"] == 3
    assert summary["by_type"] == {"parse_error": 2, "hardcoded_fallback": 1}
    assert summary["by_domain"] == {"a": 1, "b": 1}
    assert summary["recent_count"] == 3
    assert summary["oldest"] <= summary["newest"]


def test_clear_and_empty_summary(recorder):
    recorder.record(EvidenceType.PARSE_ERROR, "one")
    recorder.clear()
    assert recorder.tail() == []
    assert recorder.summary()["oldest"] is None


def test_metrics_counted(tmp_path):
    metrics = BusMetrics()
    recorder = EvidenceRecorder(tmp_path / "evidence.jsonl", metrics=metrics)
    recorder.record(EvidenceType.ROUTING_FAILURE, "bad address")
    assert metrics.get("mesh_bus_evidence_recorded_total") == 1


def test_init_failure_is_raised(tmp_path):
    blocker = tmp_path / "logs"
    blocker.write_text("a file where the directory should be")
    with pytest.raises(OSError):
        EvidenceRecorder(blocker / "evidence.jsonl").init()
