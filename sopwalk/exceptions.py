"""Procedure-layer exception hierarchy.

All exceptions raised by the graph loader, condition parser, gateway and
session inherit from ``ProcedureError`` so callers at the conversation
boundary can catch the whole family at once.  Every class carries a stable
``error_code`` string that is also written into context when a tool fails.
"""

from __future__ import annotations

__all__ = [
    "ConditionSyntaxError",
    "GraphValidationError",
    "McpError",
    "ProcedureError",
    "SessionError",
    "ToolInvocationError",
    "ToolTimeoutError",
    "UnknownNodeError",
]


class ProcedureError(Exception):
    """Base exception for all procedure execution failures."""

    __slots__ = ()

    error_code = "procedure_error"


class GraphValidationError(ProcedureError):
    """Raised when a procedure definition is rejected at load time.

    Attributes
    ----------
    procedure : str
        Name of the procedure being loaded.
    errors : list[str]
        Every problem found, in the order they were detected.
    """

    __slots__ = ("errors", "procedure")

    error_code = "graph_validation_error"

    def __init__(self, procedure: str, errors: list[str]) -> None:
        n = len(errors)
        summary = "; ".join(errors[:3])
        if n > 3:
            summary += f"; ... ({n - 3} more)"
        super().__init__(
            f"procedure {procedure!r} failed validation with "
            f"{n} problem{'s' if n != 1 else ''}: {summary}"
        )
        self.procedure = procedure
        self.errors = errors


class ConditionSyntaxError(ProcedureError):
    """Raised when a condition expression cannot be parsed.

    Attributes
    ----------
    expression : str
        The offending source text.
    position : int
        Character offset where parsing failed.
    reason : str
        Short description of what was expected.
    """

    __slots__ = ("expression", "position", "reason")

    error_code = "condition_syntax_error"

    def __init__(self, expression: str, position: int, reason: str) -> None:
        super().__init__(
            f"invalid condition {expression!r} at offset {position}: {reason}"
        )
        self.expression = expression
        self.position = position
        self.reason = reason


class UnknownNodeError(ProcedureError):
    """Raised when a node id is not part of the loaded graph."""

    __slots__ = ("node_id",)

    error_code = "unknown_node"

    def __init__(self, node_id: str) -> None:
        super().__init__(f"node {node_id!r} is not defined in the procedure")
        self.node_id = node_id


class ToolInvocationError(ProcedureError):
    """Raised inside the gateway when a tool collaborator call fails.

    The gateway converts this into an error payload stored in context; it is
    not propagated to the caller.
    """

    __slots__ = ("original_error", "tool")

    error_code = "tool_execution_error"

    def __init__(
        self,
        tool: str,
        message: str,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(f"tool {tool!r} failed: {message}")
        self.tool = tool
        self.original_error = original_error


class ToolTimeoutError(ToolInvocationError):
    """Raised when a tool call exceeds the gateway timeout."""

    __slots__ = ("timeout_s",)

    error_code = "tool_timeout"

    def __init__(self, tool: str, timeout_s: float) -> None:
        super().__init__(tool, f"timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s


class SessionError(ProcedureError):
    """Raised when a session cannot accept further work."""

    __slots__ = ("session_id",)

    error_code = "session_error"

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"session {session_id!r}: {message}")
        self.session_id = session_id


class McpError(ProcedureError):
    """Raised when an MCP server answers a request with a JSON-RPC error."""

    __slots__ = ("code", "method")

    error_code = "mcp_error"

    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"MCP {method} failed ({code}): {message}")
        self.method = method
        self.code = code
