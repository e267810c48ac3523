"""Procedure graph definitions and loading."""

from __future__ import annotations

from .loader import (
    NodeDefinition,
    ProcedureDefinition,
    build_graph,
    bundled_procedures,
    dump_procedure,
    load_bundled,
    load_procedure,
    load_procedure_file,
)
from .nodes import (
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
)

__all__ = [
    "ActionNode",
    "DecisionNode",
    "EndNode",
    "Node",
    "NodeDefinition",
    "NodeKind",
    "ParamKind",
    "ProcedureDefinition",
    "ProcedureGraph",
    "ToolParam",
    "ToolRef",
    "build_graph",
    "bundled_procedures",
    "canonical_result_key",
    "dump_procedure",
    "load_bundled",
    "load_procedure",
    "load_procedure_file",
]
