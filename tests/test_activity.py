"""Tests for the activity log."""

from __future__ import annotations

import json
from pathlib import Path

from flow_runner.activity import ActivityLogger


class TestActivityLogger:
    def test_newest_first_and_bounded(self):
        log = ActivityLogger(max_entries=3)
        for i in range(5):
            log.log(f"event {i}", "custom")
        assert [e["action"] for e in log.recent()] == ["event 4", "event 3", "event 2"]
        assert [e["action"] for e in log.recent(limit=1)] == ["event 4"]
        assert log.recent(limit=-1) == []

    def test_engine_hooks(self):
        log = ActivityLogger()
        log.run_status("run-1", "flow", "running")
        log.node_completed("run-1", "flow", "n1", "completed", latency_ms=3.0)
        log.node_completed("run-2", "flow", "n1", "error", error="boom")
        log.run_status("run-1", "flow", "completed")

        entries = log.for_run("run-1")
        assert [e["action"] for e in entries] == ["Run run-1 running", "Node n1 completed", "Run run-1 completed"]
        assert entries[1]["details"]["latency_ms"] == 3.0
        assert len(log.by_type("workflow_node")) == 2

    def test_entries_without_details(self):
        entry = ActivityLogger().log("Imported flow", "workflow_imported")
        assert "details" not in entry
        assert set(entry) == {"id", "action", "type", "timestamp"}

    def test_jsonl_mirror(self, tmp_path: Path):
        path = tmp_path / "state" / "activity.jsonl"
        log = ActivityLogger(path=path)
        log.run_status("run-1", "flow", "completed")
        log.log("Generated workflow", "workflow_generated", flow_id="f")

        lines = path.read_text().splitlines()
        assert json.loads(lines[0])["type"] == "workflow_run"
        assert [e["type"] for e in log.load()] == ["workflow_run", "workflow_generated"]
        assert log.load(limit=1)[0]["details"] == {"flow_id": "f"}

        log.clear()
        assert log.recent() == []
        assert len(log.load()) == 2

    def test_no_path_loads_nothing(self):
        assert ActivityLogger().load() == []
