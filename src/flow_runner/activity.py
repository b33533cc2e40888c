"""Activity/audit log for workflow runs.

The engine reports once per node completion and once per run-level status
transition.  Entries are kept in a bounded in-memory buffer (newest first)
and, when a path is given, appended to a JSONL file.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

from .io_utils import _append_jsonl, _read_jsonl
from .utils import _now_iso


class ActivitySink(Protocol):
    def node_completed(self, run_id: str, flow_id: str, node_id: str, status: str, **details: Any) -> None: ...

    def run_status(self, run_id: str, flow_id: str, status: str, **details: Any) -> None: ...


class ActivityLogger:
    """Bounded audit trail with an optional JSONL mirror."""

    def __init__(self, path: Optional[Path] = None, max_entries: int = 100) -> None:
        self.path = path
        self.max_entries = max_entries
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def log(self, action: str, activity_type: str, **details: Any) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "action": action,
            "type": activity_type,
            "timestamp": _now_iso(),
        }
        if details:
            entry["details"] = details
        with self._lock:
            self._entries.appendleft(entry)
        logger.debug("[activity] {}: {}", activity_type, action)
        if self.path is not None:
            try:
                _append_jsonl(self.path, entry)
            except OSError:
                logger.exception("Failed to append activity entry to {}", self.path)
        return entry

    # -- engine hooks --------------------------------------------------------

    def node_completed(self, run_id: str, flow_id: str, node_id: str, status: str, **details: Any) -> None:
        self.log(f"Node {node_id} {status}", "workflow_node",
                 run_id=run_id, flow_id=flow_id, node_id=node_id, status=status, **details)

    def run_status(self, run_id: str, flow_id: str, status: str, **details: Any) -> None:
        self.log(f"Run {run_id} {status}", "workflow_run",
                 run_id=run_id, flow_id=flow_id, status=status, **details)

    # -- queries -------------------------------------------------------------

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._entries)[:max(limit, 0)]

    def by_type(self, activity_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [e for e in self._entries if e["type"] == activity_type]

    def for_run(self, run_id: str) -> list[dict[str, Any]]:
        """Entries for *run_id*, oldest first."""
        with self._lock:
            entries = [e for e in self._entries if e.get("details", {}).get("run_id") == run_id]
        return list(reversed(entries))

    def load(self, limit: int = 100) -> list[dict[str, Any]]:
        """Read persisted entries (oldest first) from the JSONL mirror."""
        if self.path is None:
            return []
        return _read_jsonl(self.path, limit=limit)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
