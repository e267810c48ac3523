"""Context store: the per-session fact map.

Values are written by the tool gateway (tool results under their canonical
key) and by the interpreter (extracted entities).  Reads go through dotted
paths such as ``context.orderStatus.minutesLate``; templates embed the same
paths as ``{context.orderStatus.minutesLate}`` placeholders.

``None`` is treated exactly like an absent key everywhere: path resolution
returns ``MISSING`` for it and templates leave its placeholder verbatim.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Final

log = logging.getLogger(__name__)

__all__ = [
    "CONTEXT_PREFIX",
    "MISSING",
    "ContextStore",
    "format_value",
    "has_error_marker",
    "placeholder_paths",
    "resolve_path",
    "split_path",
]

CONTEXT_PREFIX: Final[str] = "context."

_PLACEHOLDER_RE: Final[re.Pattern[str]] = re.compile(r"\{context\.([^{}\s]+)\}")


class _Missing:
    """Sentinel for a path that does not resolve to a value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()


def split_path(path: str) -> tuple[str, ...]:
    """Split ``context.a.b`` (or ``a.b``) into its segments."""
    if path.startswith(CONTEXT_PREFIX):
        path = path[len(CONTEXT_PREFIX):]
    return tuple(path.split("."))


def resolve_path(data: Mapping[str, Any], segments: Sequence[str]) -> Any:
    """Walk *segments* through nested mappings and lists.

    Numeric segments index into lists.  Returns ``MISSING`` when any segment
    is absent or any value on the way (including the leaf) is ``None``.
    """
    current: Any = data
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list | tuple) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
        if current is None:
            return MISSING
    return current


def has_error_marker(value: Any) -> bool:
    """Return True if *value* is a mapping whose ``error`` field is truthy."""
    return isinstance(value, Mapping) and bool(value.get("error"))


def format_value(value: Any) -> str:
    """Render a context value for display inside a message."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Mapping | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


def placeholder_paths(template: str) -> list[str]:
    """Return the dotted paths (without prefix) referenced by *template*."""
    return _PLACEHOLDER_RE.findall(template)


class ContextStore(Mapping[str, Any]):
    """Mutable key/value store with dotted-path reads.

    Parameters
    ----------
    initial : Mapping[str, Any] | None
        Seed values, copied on construction.
    """

    __slots__ = ("_data",)

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def __contains__(self, key: object) -> bool:
        return key in self._data and self._data[key] is not None

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if value is None:
            raise KeyError(key)
        return value

    def __iter__(self) -> Iterator[str]:
        return (k for k, v in self._data.items() if v is not None)

    def __len__(self) -> int:
        return sum(1 for v in self._data.values() if v is not None)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ContextStore):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"ContextStore({self._data!r})"

    # ── reads ─────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key)
        return default if value is None else value

    def resolve(self, path: str) -> Any:
        """Resolve a dotted path; returns ``MISSING`` when unresolvable."""
        return resolve_path(self._data, split_path(path))

    def has(self, path: str) -> bool:
        return self.resolve(path) is not MISSING

    def is_failed(self, key: str) -> bool:
        """True if the value stored under *key* carries an error marker."""
        return has_error_marker(self._data.get(key))

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the current contents."""
        return copy.deepcopy(self._data)

    def subset(self, keys: Sequence[str]) -> dict[str, Any]:
        """Copy of the values stored under *keys*, skipping absent ones."""
        return {
            k: copy.deepcopy(self._data[k])
            for k in keys
            if self._data.get(k) is not None
        }

    # ── writes ────────────────────────────────────────────

    def set(self, key: str, value: Any) -> None:
        if not key:
            raise ValueError("context key cannot be empty")
        log.debug("context[%s] <- %r", key, value)
        self._data[key] = value

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def copy(self) -> ContextStore:
        return ContextStore(self.snapshot())

    # ── templates ─────────────────────────────────────────

    def render(self, template: str) -> str:
        """Substitute ``{context.x.y}`` placeholders.

        Placeholders whose path does not resolve are left verbatim.
        """

        def _sub(match: re.Match[str]) -> str:
            value = resolve_path(self._data, match.group(1).split("."))
            if value is MISSING:
                return match.group(0)
            return format_value(value)

        return _PLACEHOLDER_RE.sub(_sub, template)
