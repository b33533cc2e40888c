"""Command-line entry point: validate, order, run and test FlowScripts."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger
from pydantic import ValidationError

from .errors import CycleError, InvalidFlowError
from .flowscript.model import ExecutionMode, FlowScript
from .logging_utils import pretty, summarize_runtime, summarize_trace
from .service import FlowService


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Optional[Path]:
    return Path(project_dir).expanduser().resolve() if project_dir else None


def _load_flow(path: str) -> FlowScript:
    """Read a FlowScript from a JSON or YAML file."""
    file_path = Path(path)
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{file_path.name}: expected a FlowScript object")
    return FlowScript.from_dict(data)


def _parse_vars(pairs: list[str]) -> dict[str, Any]:
    """``key=value`` pairs; values are parsed as JSON when possible."""
    out: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --var '{pair}', expected key=value")
        try:
            out[key] = json.loads(raw)
        except json.JSONDecodeError:
            out[key] = raw
    return out


def _service(args: argparse.Namespace) -> FlowService:
    return FlowService(_resolve_project_dir(args.project_dir))


def _validate(args: argparse.Namespace) -> int:
    flow = _load_flow(args.file)
    errors = _service(args).validate(flow)
    if not errors:
        sys.stdout.write(f"{flow.id}: OK ({len(flow.nodes)} nodes, {len(flow.edges)} edges)\n")
        return 0
    for err in errors:
        where = f" [{err.node_id}]" if err.node_id else ""
        sys.stdout.write(f"{err.code}{where}: {err.message}\n")
    return 1


def _order(args: argparse.Namespace) -> int:
    flow = _load_flow(args.file)
    try:
        order = _service(args).order(flow)
    except CycleError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    sys.stdout.write("\n".join(order) + ("\n" if order else ""))
    return 0


def _run(args: argparse.Namespace) -> int:
    flow = _load_flow(args.file)
    service = _service(args)
    try:
        runtime = asyncio.run(
            service.execute(flow, args.mode, variables=_parse_vars(args.var), wait_background=True)
        )
    except InvalidFlowError as exc:
        for err in exc.errors:
            sys.stderr.write(f"{err}\n")
        return 1
    if args.json:
        sys.stdout.write(pretty(runtime.to_dict()) + "\n")
    else:
        for trace in runtime.traces:
            sys.stdout.write(pretty(summarize_trace(trace), indent=None) + "\n")
        sys.stdout.write(pretty(summarize_runtime(runtime)) + "\n")
    return 0 if runtime.status.value == "completed" else 1


def _test(args: argparse.Namespace) -> int:
    flow = _load_flow(args.file)
    try:
        results = asyncio.run(_service(args).run_testcases(flow, args.mode))
    except InvalidFlowError as exc:
        for err in exc.errors:
            sys.stderr.write(f"{err}\n")
        return 1
    if not results:
        sys.stdout.write(f"{flow.id}: no test cases\n")
        return 0
    for result in results:
        mark = "PASS" if result.passed else "FAIL"
        sys.stdout.write(f"{mark} {result.name}\n")
        for failure in result.failures:
            sys.stdout.write(f"    {failure}\n")
    failed = sum(1 for r in results if not r.passed)
    sys.stdout.write(f"{len(results) - failed}/{len(results)} passed\n")
    return 0 if failed == 0 else 1


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'flow-runner[server]'\n")
        return 1

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir) or Path.cwd())
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flow Runner - FlowScript workflow engine")
    parser.add_argument("--project-dir", default=None,
                        help="Project directory for config, stored flows and run traces")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Check a FlowScript for structural errors")
    validate.add_argument("file")
    validate.set_defaults(func=_validate)

    order = subparsers.add_parser("order", help="Print the execution order")
    order.add_argument("file")
    order.set_defaults(func=_order)

    run = subparsers.add_parser("run", help="Execute a FlowScript")
    run.add_argument("file")
    run.add_argument("--mode", default=ExecutionMode.SIMULATE.value,
                     choices=[m.value for m in ExecutionMode])
    run.add_argument("--var", action="append", default=[], metavar="KEY=VALUE",
                     help="Seed a context variable (repeatable)")
    run.add_argument("--json", action="store_true", help="Print the full runtime as JSON")
    run.set_defaults(func=_run)

    test = subparsers.add_parser("test", help="Run the FlowScript's embedded test cases")
    test.add_argument("file")
    test.add_argument("--mode", default=ExecutionMode.SIMULATE.value,
                      choices=[m.value for m in ExecutionMode])
    test.set_defaults(func=_test)

    server = subparsers.add_parser("server", help="Start the HTTP API")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.add_argument("--reload", action="store_true")
    server.set_defaults(func=_server)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as exc:
        sys.stderr.write(f"{type(exc).__name__}: {exc}\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
