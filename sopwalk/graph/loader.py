"""Procedure definition documents: parsing, validation, and serialisation.

A procedure document is JSON (or YAML) shaped like::

    {
      "name": "...", "description": "...", "version": "1.0.0",
      "startNode": "get_user_details",
      "nodes": {
        "get_user_details": {
          "id": "get_user_details", "type": "action",
          "tool": "getUserDetails", "toolParams": {"userId": "{context.userId}"},
          "nextNodes": ["greeting"]
        },
        ...
      }
    }

``build_graph`` collects every problem it finds before raising a single
``GraphValidationError`` so that authors see all mistakes at once.  A
procedure that fails validation never produces a ``ProcedureGraph``.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sopwalk.engine.conditions import parse_condition
from sopwalk.engine.context import placeholder_paths
from sopwalk.exceptions import ConditionSyntaxError, GraphValidationError
from sopwalk.graph.nodes import (
    ActionNode,
    DecisionNode,
    EndNode,
    Node,
    NodeKind,
    ParamKind,
    ProcedureGraph,
    ToolParam,
    ToolRef,
    canonical_result_key,
    find_structural_errors,
)

log = logging.getLogger(__name__)

__all__ = [
    "NodeDefinition",
    "ProcedureDefinition",
    "build_graph",
    "bundled_procedures",
    "dump_procedure",
    "load_bundled",
    "load_procedure",
    "load_procedure_file",
    "parse_param",
    "to_definition",
]

_PATH: Final = r"[A-Za-z_$][\w$]*(?:\.[\w$]+)*"
_BARE_REF_RE: Final = re.compile(rf"context\.({_PATH})")
_BRACED_REF_RE: Final = re.compile(rf"\{{context\.({_PATH})\}}")


# ---------------------------------------------------------------------------
# Document models
# ---------------------------------------------------------------------------


class NodeDefinition(BaseModel):
    """One node as written in a procedure document."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str | None = None
    type: str
    description: str = ""
    tool: str | None = None
    tool_params: dict[str, Any] | None = Field(default=None, alias="toolParams")
    result_key: str | None = Field(default=None, alias="resultKey")
    next_nodes: list[str] | None = Field(default=None, alias="nextNodes")
    condition: str | None = None
    message_template: str | None = Field(default=None, alias="messageTemplate")


class ProcedureDefinition(BaseModel):
    """A whole procedure document."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    description: str = ""
    version: str = "1.0.0"
    start_node: str = Field(alias="startNode")
    nodes: dict[str, NodeDefinition]


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def parse_param(name: str, raw: Any) -> ToolParam:
    """Classify a ``toolParams`` value.

    Raises
    ------
    ValueError
        If the value looks like a context reference but is malformed.
    """
    if not isinstance(raw, str):
        return ToolParam(name, ParamKind.LITERAL, raw, raw)

    text = raw.strip()
    m = _BRACED_REF_RE.fullmatch(text) or _BARE_REF_RE.fullmatch(text)
    if m:
        return ToolParam(name, ParamKind.REFERENCE, m.group(1), raw)

    if text.startswith("context."):
        raise ValueError(f"malformed context reference {raw!r}")
    if "{context." in raw:
        if raw.count("{context.") != len(placeholder_paths(raw)):
            raise ValueError(f"malformed context placeholder in {raw!r}")
        return ToolParam(name, ParamKind.TEMPLATE, raw, raw)
    return ToolParam(name, ParamKind.LITERAL, raw, raw)


def _convert_node(key: str, nd: NodeDefinition, errors: list[str]) -> Node | None:
    """Convert one definition, appending problems to *errors*."""
    before = len(errors)
    if nd.id is not None and nd.id != key:
        errors.append(f"node key {key!r} does not match its id {nd.id!r}")

    try:
        kind = NodeKind(nd.type)
    except ValueError:
        errors.append(f"node {key!r} has unknown type {nd.type!r}")
        return None

    next_nodes = tuple(nd.next_nodes or ())
    written = frozenset(nd.model_fields_set)

    if kind is NodeKind.ACTION:
        if nd.condition is not None:
            errors.append(f"action node {key!r} may not declare a condition")
        tool: ToolRef | None = None
        if nd.tool:
            params: list[ToolParam] = []
            for pname, raw in (nd.tool_params or {}).items():
                try:
                    params.append(parse_param(pname, raw))
                except ValueError as exc:
                    errors.append(f"node {key!r} parameter {pname!r}: {exc}")
            tool = ToolRef(nd.tool, tuple(params), nd.result_key or "")
        elif nd.tool_params or nd.result_key:
            errors.append(f"node {key!r} declares tool parameters without a tool")
        if len(errors) > before:
            return None
        return ActionNode(
            id=key,
            tool=tool,
            template=nd.message_template,
            next=next_nodes,
            description=nd.description,
            written=written,
        )

    if kind is NodeKind.DECISION:
        if nd.tool or nd.tool_params or nd.result_key:
            errors.append(f"decision node {key!r} may not declare a tool")
        if nd.message_template is not None:
            errors.append(f"decision node {key!r} may not declare a message template")
        if not nd.condition:
            errors.append(f"decision node {key!r} has no condition")
            return None
        try:
            condition = parse_condition(nd.condition)
        except ConditionSyntaxError as exc:
            errors.append(f"decision node {key!r}: {exc}")
            return None
        if len(errors) > before:
            return None
        return DecisionNode(
            id=key,
            condition=condition,
            next=next_nodes,
            description=nd.description,
            written=written,
        )

    if nd.tool or nd.tool_params or nd.result_key:
        errors.append(f"end node {key!r} may not declare a tool")
    if nd.condition is not None:
        errors.append(f"end node {key!r} may not declare a condition")
    if next_nodes:
        errors.append(f"end node {key!r} may not have successors")
    if len(errors) > before:
        return None
    return EndNode(
        id=key, template=nd.message_template, description=nd.description, written=written
    )


def build_graph(definition: ProcedureDefinition) -> ProcedureGraph:
    """Validate *definition* and build an immutable graph.

    Raises
    ------
    GraphValidationError
        With every problem found.
    """
    errors: list[str] = []
    nodes: list[Node] = []
    rejected: list[str] = []
    for key, nd in definition.nodes.items():
        node = _convert_node(key, nd, errors)
        if node is None:
            rejected.append(key)
        else:
            nodes.append(node)

    errors.extend(
        find_structural_errors(definition.start_node, nodes, known_ids=rejected)
    )
    if errors:
        raise GraphValidationError(definition.name, errors)

    graph = ProcedureGraph(
        definition.name,
        definition.start_node,
        nodes,
        description=definition.description,
        version=definition.version,
    )
    orphans = graph.unreachable()
    if orphans:
        log.warning(
            "procedure %r has nodes unreachable from %r: %s",
            graph.name,
            graph.start,
            ", ".join(orphans),
        )
    log.debug("loaded procedure %r (%d nodes)", graph.name, len(graph))
    return graph


def load_procedure(data: Mapping[str, Any]) -> ProcedureGraph:
    """Build a graph from an already-decoded document."""
    try:
        definition = ProcedureDefinition.model_validate(data)
    except ValidationError as exc:
        name = str(data.get("name") or "<unnamed>") if isinstance(data, Mapping) else "<unnamed>"
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise GraphValidationError(name, problems) from exc
    return build_graph(definition)


def load_procedure_file(path: str | Path) -> ProcedureGraph:
    """Load a ``.json``, ``.yaml`` or ``.yml`` procedure file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, Mapping):
        raise GraphValidationError(path.stem, ["document root must be an object"])
    return load_procedure(data)


def bundled_procedures() -> list[str]:
    """Names of the procedures shipped inside ``sopwalk.procedures``."""
    root = resources.files("sopwalk.procedures")
    return sorted(
        entry.name.rsplit(".", 1)[0]
        for entry in root.iterdir()
        if entry.name.endswith((".json", ".yaml", ".yml"))
    )


def load_bundled(name: str) -> ProcedureGraph:
    """Load a procedure shipped with the package, e.g. ``order-delay``."""
    root = resources.files("sopwalk.procedures")
    for suffix in (".json", ".yaml", ".yml"):
        entry = root / f"{name}{suffix}"
        if entry.is_file():
            text = entry.read_text(encoding="utf-8")
            data = yaml.safe_load(text) if suffix != ".json" else json.loads(text)
            return load_procedure(data)
    raise FileNotFoundError(f"no bundled procedure named {name!r}")


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _node_definition(node: Node) -> NodeDefinition:
    # Empty values are written only where the source document wrote them.
    written = node.written
    fields: dict[str, Any] = {"type": node.kind.value}

    def put(name: str, value: Any) -> None:
        if value or (value is not None and name in written):
            fields[name] = value

    if not written or "id" in written:
        fields["id"] = node.id
    put("description", node.description)
    if isinstance(node, ActionNode):
        if node.tool is not None:
            fields["tool"] = node.tool.name
            put("tool_params", {p.name: p.raw for p in node.tool.params})
            if "result_key" in written or node.tool.result_key != canonical_result_key(
                node.tool.name
            ):
                fields["result_key"] = node.tool.result_key
        put("message_template", node.template)
        put("next_nodes", list(node.next))
    elif isinstance(node, DecisionNode):
        fields["condition"] = node.condition.source
        fields["next_nodes"] = list(node.next)
    else:
        put("message_template", node.template)
        put("next_nodes", [])
    return NodeDefinition(**fields)


def to_definition(graph: ProcedureGraph) -> ProcedureDefinition:
    return ProcedureDefinition(
        name=graph.name,
        description=graph.description,
        version=graph.version,
        start_node=graph.start,
        nodes={node.id: _node_definition(node) for node in graph},
    )


def dump_procedure(graph: ProcedureGraph) -> dict[str, Any]:
    """Serialise *graph* back to a document using the camelCase field names.

    Fields a loaded node left out stay out; empty values it wrote explicitly
    are kept.
    """
    return to_definition(graph).model_dump(by_alias=True, exclude_unset=True)
