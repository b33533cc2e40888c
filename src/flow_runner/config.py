"""Load optional engine configuration from `.flow_runner/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .constants import (
    AI_API_KEY_ENV,
    CONFIG_FILE,
    DEFAULT_AI_ENDPOINT,
    DEFAULT_AI_MODEL,
    DEFAULT_GENERATION_MODEL,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    RUNS_DIR,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_float(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine settings (config file values over defaults)."""

    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    sandbox_root: Optional[Path] = None
    ai_endpoint: str = DEFAULT_AI_ENDPOINT
    ai_model: str = DEFAULT_AI_MODEL
    generation_model: str = DEFAULT_GENERATION_MODEL
    ai_api_key: Optional[str] = None
    runs_dir: Optional[Path] = None


def get_engine_config(config: dict[str, Any], project_dir: Optional[Path] = None) -> EngineConfig:
    """Extract the `engine` and `ai` blocks from the config mapping.

    Relative `sandbox_root` paths are resolved against *project_dir*. The AI
    key comes from `ai.api_key` or the `OPENAI_API_KEY` environment variable.
    """
    engine = _get_nested(config, "engine")
    engine = engine if isinstance(engine, dict) else {}
    ai = _get_nested(config, "ai")
    ai = ai if isinstance(ai, dict) else {}

    base = (project_dir or Path(".")).resolve()
    raw_root = engine.get("sandbox_root")
    if isinstance(raw_root, str) and raw_root:
        root = Path(raw_root)
        sandbox_root = root if root.is_absolute() else base / root
    else:
        sandbox_root = base / STATE_DIR_NAME / "sandbox"

    runs_dir = None
    if project_dir is not None:
        runs_dir = base / STATE_DIR_NAME / RUNS_DIR

    api_key = ai.get("api_key") or os.environ.get(AI_API_KEY_ENV) or None

    return EngineConfig(
        tool_timeout_seconds=_positive_float(engine.get("tool_timeout_seconds"), DEFAULT_TOOL_TIMEOUT_SECONDS),
        max_concurrency=_positive_int(engine.get("max_concurrency"), DEFAULT_MAX_CONCURRENCY),
        sandbox_root=sandbox_root,
        ai_endpoint=str(ai.get("endpoint") or DEFAULT_AI_ENDPOINT),
        ai_model=str(ai.get("model") or DEFAULT_AI_MODEL),
        generation_model=str(ai.get("generation_model") or DEFAULT_GENERATION_MODEL),
        ai_api_key=api_key,
        runs_dir=runs_dir,
    )
