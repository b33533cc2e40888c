"""FlowScript persistence keyed by project id.

Two implementations share the :class:`FlowStore` protocol: an in-memory store
for tests and embedding, and a YAML file store (``flows.yaml`` inside the
project's ``.flow_runner/`` directory) guarded by an exclusive file lock.
Both hand out deep copies, so callers can never mutate stored flows.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from loguru import logger

from .constants import FLOWS_FILE, FLOWS_LOCK_FILE
from .flowscript.model import FlowScript
from .io_utils import FileLock, _atomic_write_yaml, _load_data_with_error

STORE_VERSION = 1


class FlowStore(Protocol):
    def get(self, project_id: str) -> Optional[FlowScript]: ...

    def save(self, project_id: str, flow: FlowScript) -> FlowScript: ...

    def delete(self, project_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...


class InMemoryFlowStore:
    def __init__(self) -> None:
        self._flows: dict[str, FlowScript] = {}
        self._lock = threading.Lock()

    def get(self, project_id: str) -> Optional[FlowScript]:
        with self._lock:
            flow = self._flows.get(project_id)
            return flow.clone() if flow is not None else None

    def save(self, project_id: str, flow: FlowScript) -> FlowScript:
        with self._lock:
            self._flows[project_id] = flow.clone()
        return flow.clone()

    def delete(self, project_id: str) -> bool:
        with self._lock:
            return self._flows.pop(project_id, None) is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._flows)


class YamlFlowStore:
    """File-backed store; every operation reloads under the lock.

    Parameters
    ----------
    state_dir:
        Path to the ``.flow_runner/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / FLOWS_FILE
        self._lock = FileLock(state_dir / FLOWS_LOCK_FILE)

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> dict[str, dict[str, Any]]:
        data, err = _load_data_with_error(self._store_path, {})
        if err:
            logger.warning("Ignoring unreadable flow store {}: {}", self._store_path, err)
            return {}
        flows = data.get("flows") if isinstance(data, dict) else None
        return dict(flows) if isinstance(flows, dict) else {}

    def _save(self, flows: dict[str, dict[str, Any]]) -> None:
        _atomic_write_yaml(self._store_path, {"version": STORE_VERSION, "flows": flows})

    @contextmanager
    def _transaction(self) -> Iterator[dict[str, dict[str, Any]]]:
        with self._lock:
            flows = self._load()
            before = dict(flows)
            yield flows
            if flows != before:
                self._save(flows)

    # -- public API ---------------------------------------------------------

    def get(self, project_id: str) -> Optional[FlowScript]:
        with self._lock:
            raw = self._load().get(project_id)
        if raw is None:
            return None
        return FlowScript.from_dict(raw)

    def save(self, project_id: str, flow: FlowScript) -> FlowScript:
        with self._transaction() as flows:
            flows[project_id] = flow.to_dict()
        logger.debug("Saved flow {} for project {}", flow.id, project_id)
        return flow.clone()

    def delete(self, project_id: str) -> bool:
        with self._transaction() as flows:
            return flows.pop(project_id, None) is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._load())
