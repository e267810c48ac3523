"""Conversational procedure executor.

Walks a validated procedure graph one user turn at a time, running tools
through a gateway and consulting an interpreter for replies and facts.
"""

from __future__ import annotations

from sopwalk.config import EngineSettings
from sopwalk.engine.conditions import Condition, Verdict, parse_condition
from sopwalk.engine.context import MISSING, ContextStore
from sopwalk.engine.gateway import GatewayOutcome, GatewayStatus, ToolGateway, bind_parameters
from sopwalk.engine.protocols import (
    Interpreter,
    InterpreterReply,
    InterpreterView,
    ToolCollaborator,
    ToolSpec,
)
from sopwalk.engine.session import Session, TemplateInterpreter, TurnResult
from sopwalk.engine.state import ExecutionState, RunStatus, Turn, TurnRole
from sopwalk.engine.walker import StopReason, WalkResult, advance, diagnostics, walk
from sopwalk.exceptions import (
    ConditionSyntaxError,
    GraphValidationError,
    McpError,
    ProcedureError,
    SessionError,
    ToolInvocationError,
    ToolTimeoutError,
    UnknownNodeError,
)
from sopwalk.graph import (
    ActionNode,
    DecisionNode,
    EndNode,
    ProcedureGraph,
    ToolRef,
    load_bundled,
    load_procedure,
    load_procedure_file,
)

__version__ = "0.1.0"

__all__ = [
    "MISSING",
    "ActionNode",
    "Condition",
    "ConditionSyntaxError",
    "ContextStore",
    "DecisionNode",
    "EndNode",
    "EngineSettings",
    "ExecutionState",
    "GatewayOutcome",
    "GatewayStatus",
    "GraphValidationError",
    "Interpreter",
    "InterpreterReply",
    "InterpreterView",
    "McpError",
    "ProcedureError",
    "ProcedureGraph",
    "RunStatus",
    "Session",
    "SessionError",
    "StopReason",
    "TemplateInterpreter",
    "ToolCollaborator",
    "ToolGateway",
    "ToolInvocationError",
    "ToolRef",
    "ToolSpec",
    "ToolTimeoutError",
    "Turn",
    "TurnResult",
    "TurnRole",
    "UnknownNodeError",
    "Verdict",
    "WalkResult",
    "advance",
    "bind_parameters",
    "diagnostics",
    "load_bundled",
    "load_procedure",
    "load_procedure_file",
    "parse_condition",
    "walk",
]
