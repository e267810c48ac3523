"""Collaborator protocols.

The core depends only on these minimal contracts.  How tools run (a
subprocess speaking MCP, an in-process function table) and how messages are
produced (a chat model, plain templates) are adapter concerns.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "InterpreterReply",
    "InterpreterView",
    "Interpreter",
    "ToolCollaborator",
    "ToolSpec",
]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class ToolCollaborator(Protocol):
    """Protocol for an external tool provider."""

    async def list_tools(self) -> list[ToolSpec]:
        """Return the tools the provider exposes."""
        ...

    async def call(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Invoke tool *name* and return its structured result.

        Parameters
        ----------
        name : str
            Tool name as declared on the action node.
        arguments : Mapping[str, Any]
            Fully bound arguments.

        Returns
        -------
        Any
            The result object.  A mapping with a truthy ``error`` field is
            treated as a failure.

        Raises
        ------
        Exception
            On transport or execution failure.
        """
        ...


@dataclass(slots=True, frozen=True)
class InterpreterView:
    """Read-only snapshot handed to the interpreter each turn.

    Attributes
    ----------
    procedure : str
        Procedure name.
    current_node : str
        Where the session is positioned.
    current_description : str
        Author's description of the current step.
    current_message : str | None
        The current node's template with placeholders resolved.
    messages : Sequence[str]
        Resolved templates of every node entered this turn that has not
        been shown yet, in order.  These are what the reply must convey.
    upcoming : Sequence[Mapping[str, Any]]
        Summaries (id, kind, description, condition) of the nodes reachable
        in the next step or two.
    referenced_keys : Sequence[str]
        Context keys that the current and upcoming nodes read.
    context : Mapping[str, Any]
        Values of the referenced keys that are already known.
    history : Sequence[Mapping[str, Any]]
        Prior turns.
    stop_reason : str
        Why the walker stopped at the current node.
    completed : bool
        Whether the procedure has reached an end node.
    """

    procedure: str
    current_node: str
    current_description: str
    current_message: str | None
    messages: Sequence[str]
    upcoming: Sequence[Mapping[str, Any]]
    referenced_keys: Sequence[str]
    context: Mapping[str, Any]
    history: Sequence[Mapping[str, Any]]
    stop_reason: str
    completed: bool


@dataclass(slots=True, frozen=True)
class InterpreterReply:
    text: str = ""
    context_updates: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class Interpreter(Protocol):
    """Protocol for the component that reads user text and writes replies."""

    async def interpret(self, view: InterpreterView, message: str) -> InterpreterReply:
        """Extract facts from *message* and phrase the reply for *view*."""
        ...
