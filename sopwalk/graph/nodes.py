"""Procedure graph: node variants and arena-backed storage.

A procedure is a set of uniquely-identified nodes plus a start node id.
Nodes are one of three immutable variants:

- ``ActionNode``: optional tool call, optional message template, at most one
  successor.
- ``DecisionNode``: a parsed condition and exactly two successors
  (index 0 when true, index 1 otherwise).
- ``EndNode``: terminal, optional template, no successors.

Nodes loaded from a document remember which document fields it set in
``written``; equality ignores it.

``ProcedureGraph`` stores nodes in a tuple with an id-to-index map and checks
every edge when it is constructed, so a graph instance that exists is always
structurally sound.  Graphs are never mutated and may be shared by any number
of sessions.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, Final

from sopwalk.engine.conditions import Condition
from sopwalk.engine.context import placeholder_paths, split_path
from sopwalk.exceptions import GraphValidationError, UnknownNodeError

log = logging.getLogger(__name__)

__all__ = [
    "ActionNode",
    "DecisionNode",
    "EndNode",
    "Node",
    "NodeKind",
    "ParamKind",
    "ProcedureGraph",
    "ToolParam",
    "ToolRef",
    "canonical_result_key",
    "find_structural_errors",
]


class NodeKind(StrEnum):
    ACTION = "action"
    DECISION = "decision"
    END = "end"


class ParamKind(StrEnum):
    """How a tool parameter gets its value."""

    LITERAL = "literal"  # used as-is
    REFERENCE = "reference"  # whole value is one context path, raw value passed
    TEMPLATE = "template"  # string with embedded {context.x} placeholders


_VERB_RE: Final = re.compile(r"[A-Za-z][a-z0-9]*")


def canonical_result_key(tool_name: str) -> str:
    """Derive the context key a tool's result is stored under.

    ``getOrderStatus`` -> ``orderStatus``; ``cancelOrder`` -> ``cancelResult``.
    """
    if tool_name.startswith("get") and len(tool_name) > 3:
        rest = tool_name[3:]
        if rest[0].isupper() or rest[0] == "_":
            rest = rest.lstrip("_")
            if rest:
                return rest[0].lower() + rest[1:]
    m = _VERB_RE.match(tool_name)
    verb = m.group(0) if m else tool_name
    return verb[0].lower() + verb[1:] + "Result"


@dataclass(slots=True, frozen=True)
class ToolParam:
    """One bound-at-call-time tool parameter.

    Attributes
    ----------
    name : str
        Argument name passed to the tool.
    kind : ParamKind
        Binding strategy.
    value : Any
        Literal value, dotted context path, or template string.
    raw : Any
        The value exactly as written in the definition (for round-trips).
    """

    name: str
    kind: ParamKind
    value: Any
    raw: Any

    @property
    def context_paths(self) -> tuple[str, ...]:
        if self.kind is ParamKind.REFERENCE:
            return (self.value,)
        if self.kind is ParamKind.TEMPLATE:
            return tuple(placeholder_paths(self.value))
        return ()


@dataclass(slots=True, frozen=True)
class ToolRef:
    """Tool name, parameter mapping, and the context key for its result."""

    name: str
    params: tuple[ToolParam, ...] = ()
    result_key: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("tool name cannot be empty")
        if not self.result_key:
            object.__setattr__(self, "result_key", canonical_result_key(self.name))

    @property
    def context_keys(self) -> tuple[str, ...]:
        keys: list[str] = []
        for param in self.params:
            keys.extend(split_path(p)[0] for p in param.context_paths)
        return tuple(dict.fromkeys(keys))


@dataclass(slots=True, frozen=True)
class ActionNode:
    id: str
    tool: ToolRef | None = None
    template: str | None = None
    next: tuple[str, ...] = ()
    description: str = ""
    written: frozenset[str] = field(default=frozenset(), compare=False, repr=False)

    kind: ClassVar[NodeKind] = NodeKind.ACTION


@dataclass(slots=True, frozen=True)
class DecisionNode:
    id: str
    condition: Condition
    next: tuple[str, ...]
    description: str = ""
    written: frozenset[str] = field(default=frozenset(), compare=False, repr=False)

    kind: ClassVar[NodeKind] = NodeKind.DECISION

    @property
    def on_true(self) -> str:
        return self.next[0]

    @property
    def on_false(self) -> str:
        return self.next[1]


@dataclass(slots=True, frozen=True)
class EndNode:
    id: str
    template: str | None = None
    description: str = ""
    written: frozenset[str] = field(default=frozenset(), compare=False, repr=False)

    kind: ClassVar[NodeKind] = NodeKind.END
    next: ClassVar[tuple[str, ...]] = ()


Node = ActionNode | DecisionNode | EndNode


def find_structural_errors(
    start: str,
    nodes: Sequence[Node],
    *,
    known_ids: Iterable[str] | None = None,
) -> list[str]:
    """Return every edge/arity problem in *nodes* (empty when sound).

    *known_ids* widens the set of ids an edge may target; the loader passes
    the ids of nodes it could not convert so their absence is not also
    reported as a dangling reference.
    """
    errors: list[str] = []
    if not nodes and not known_ids:
        return ["procedure defines no nodes"]

    ids: set[str] = set(known_ids or ())
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            errors.append(f"duplicate node id {node.id!r}")
        seen.add(node.id)
    ids |= seen

    if start not in ids:
        errors.append(f"start node {start!r} is not defined")

    for node in nodes:
        if isinstance(node, ActionNode) and len(node.next) > 1:
            errors.append(
                f"action node {node.id!r} has {len(node.next)} successors (at most 1 allowed)"
            )
        elif isinstance(node, DecisionNode) and len(node.next) != 2:
            errors.append(
                f"decision node {node.id!r} has {len(node.next)} successors (exactly 2 required)"
            )
        for target in node.next:
            if target not in ids:
                errors.append(f"node {node.id!r} references unknown node {target!r}")
    return errors


class ProcedureGraph:
    """Immutable, validated procedure graph.

    Parameters
    ----------
    name : str
        Procedure name.
    start : str
        Id of the first node.
    nodes : Sequence[Node]
        All nodes; ids must be unique.
    description : str
        Free-text description.
    version : str
        Definition version string.

    Raises
    ------
    GraphValidationError
        If any edge is dangling, the start node is missing, or a node has
        the wrong number of successors for its kind.
    """

    __slots__ = ("_index", "_nodes", "description", "name", "start", "version")

    def __init__(
        self,
        name: str,
        start: str,
        nodes: Sequence[Node],
        *,
        description: str = "",
        version: str = "",
    ) -> None:
        errors = find_structural_errors(start, nodes)
        if errors:
            raise GraphValidationError(name, errors)
        self.name = name
        self.start = start
        self.description = description
        self.version = version
        self._nodes: tuple[Node, ...] = tuple(nodes)
        self._index: dict[str, int] = {n.id: i for i, n in enumerate(self._nodes)}

    def __repr__(self) -> str:
        return f"ProcedureGraph(name={self.name!r}, start={self.start!r}, nodes={len(self)})"

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(n.id for n in self._nodes)

    def node(self, node_id: str) -> Node:
        try:
            return self._nodes[self._index[node_id]]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def successors(self, node_id: str) -> tuple[str, ...]:
        return tuple(self.node(node_id).next)

    def reachable_from(self, node_id: str) -> list[str]:
        """Breadth-first list of ids reachable from *node_id* (inclusive)."""
        self.node(node_id)
        order: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            order.append(current)
            for nxt in self.successors(current):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return order

    def unreachable(self) -> list[str]:
        reachable = set(self.reachable_from(self.start))
        return [n.id for n in self._nodes if n.id not in reachable]

    def lookahead(self, node_id: str) -> list[str]:
        """Direct successors of *node_id*, plus both branches of any successor
        that is a decision node.

        This is what an interpreter needs to see to collect the facts that
        the next branch point will read.
        """
        result: list[str] = []
        for nxt in self.successors(node_id):
            result.append(nxt)
            if isinstance(self.node(nxt), DecisionNode):
                result.extend(self.successors(nxt))
        return list(dict.fromkeys(result))

    def referenced_keys(self, node_id: str) -> tuple[str, ...]:
        """Top-level context keys read by the node's template, tool
        parameters, or condition."""
        node = self.node(node_id)
        keys: list[str] = []
        template = getattr(node, "template", None)
        if template:
            keys.extend(p.split(".")[0] for p in placeholder_paths(template))
        if isinstance(node, ActionNode) and node.tool is not None:
            keys.extend(node.tool.context_keys)
        if isinstance(node, DecisionNode):
            keys.extend(node.condition.context_keys)
        return tuple(dict.fromkeys(keys))

    def tool_nodes(self) -> list[ActionNode]:
        return [n for n in self._nodes if isinstance(n, ActionNode) and n.tool is not None]

    def describe(self) -> dict[str, Any]:
        """Summary counts, used by the CLI ``inspect`` command."""
        kinds = {kind: 0 for kind in NodeKind}
        for n in self._nodes:
            kinds[n.kind] += 1
        return {
            "name": self.name,
            "version": self.version,
            "start": self.start,
            "nodes": len(self._nodes),
            "by_kind": {str(k): v for k, v in kinds.items()},
            "tools": sorted({n.tool.name for n in self.tool_nodes() if n.tool}),
            "unreachable": self.unreachable(),
        }
