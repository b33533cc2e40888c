"""``@nodeId.field`` reference lookup and substitution.

Inputs may reference earlier outputs anywhere inside nested JSON.  A string
that is exactly one reference is replaced by the referenced value with its
original type; references embedded in longer strings are rendered as text.
Unresolvable references are left untouched.
"""

from __future__ import annotations

import json
import re
from typing import Any

_PATH = r"[A-Za-z_][\w-]*(?:\.[\w-]+)*"
REFERENCE_RE = re.compile(rf"(?<![\w@])@({_PATH})")
_WHOLE_REFERENCE_RE = re.compile(rf"^@({_PATH})$")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def lookup(context: dict[str, Any], path: str) -> Any:
    """Walk a dotted *path* through *context*; return :data:`MISSING` if absent."""
    cur: Any = context
    for part in path.split("."):
        if isinstance(cur, dict):
            if part not in cur:
                return MISSING
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit():
            idx = int(part)
            if idx >= len(cur):
                return MISSING
            cur = cur[idx]
        else:
            return MISSING
    return cur


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if value is None:
        return "null"
    return str(value)


def resolve_references(value: Any, context: dict[str, Any]) -> Any:
    """Return a copy of *value* with every reference substituted from *context*."""
    if isinstance(value, dict):
        return {k: resolve_references(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, context) for v in value]
    if not isinstance(value, str) or "@" not in value:
        return value

    whole = _WHOLE_REFERENCE_RE.match(value)
    if whole:
        found = lookup(context, whole.group(1))
        return value if found is MISSING else found

    def _sub(match: re.Match[str]) -> str:
        found = lookup(context, match.group(1))
        return match.group(0) if found is MISSING else _render(found)

    return REFERENCE_RE.sub(_sub, value)


def referenced_roots(value: Any) -> set[str]:
    """Names of the context entries (first path segment) *value* refers to."""
    roots: set[str] = set()
    if isinstance(value, dict):
        for v in value.values():
            roots |= referenced_roots(v)
    elif isinstance(value, list):
        for v in value:
            roots |= referenced_roots(v)
    elif isinstance(value, str):
        for match in REFERENCE_RE.finditer(value):
            roots.add(match.group(1).split(".", 1)[0])
    return roots
