"""Execution state for one conversation."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sopwalk.engine.context import ContextStore
from sopwalk.graph.nodes import EndNode, ProcedureGraph

__all__ = ["ExecutionState", "RunStatus", "Turn", "TurnRole"]


class RunStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERRORED = "errored"


class TurnRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True, frozen=True)
class Turn:
    role: TurnRole
    content: str
    node_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": str(self.role),
            "content": self.content,
            "node_id": self.node_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ExecutionState:
    """Position, visit log, context, and status of one session.

    Instances are immutable apart from ``context``; the walker returns a new
    state rather than editing one in place.  ``context`` is shared between a
    state and the states derived from it, since the walker never writes to
    it.

    Attributes
    ----------
    current_node : str
        Id of the node the session is positioned at.
    visited : tuple[str, ...]
        Every node entered, in order, starting with the start node.
    context : ContextStore
        Accumulated facts.
    turns : tuple[Turn, ...]
        Conversation history.
    status : RunStatus
        Lifecycle status.
    delivered : frozenset[str]
        Tool nodes whose message template has already been shown to the
        user, so the walker may move past them.
    error : str | None
        Description of the failure that moved the session to ERRORED.
    """

    current_node: str
    context: ContextStore
    visited: tuple[str, ...] = ()
    turns: tuple[Turn, ...] = ()
    status: RunStatus = RunStatus.IN_PROGRESS
    delivered: frozenset[str] = frozenset()
    error: str | None = None

    @classmethod
    def start(
        cls,
        graph: ProcedureGraph,
        context: ContextStore | dict[str, Any] | None = None,
    ) -> ExecutionState:
        """New state positioned at the graph's start node."""
        if not isinstance(context, ContextStore):
            context = ContextStore(context)
        status = (
            RunStatus.COMPLETED
            if isinstance(graph.node(graph.start), EndNode)
            else RunStatus.IN_PROGRESS
        )
        return cls(
            current_node=graph.start,
            context=context,
            visited=(graph.start,),
            status=status,
        )

    @property
    def in_progress(self) -> bool:
        return self.status is RunStatus.IN_PROGRESS

    def evolve(self, **changes: Any) -> ExecutionState:
        return dataclasses.replace(self, **changes)

    def with_turn(self, turn: Turn) -> ExecutionState:
        return dataclasses.replace(self, turns=(*self.turns, turn))

    def with_delivered(self, node_id: str) -> ExecutionState:
        if node_id in self.delivered:
            return self
        return dataclasses.replace(self, delivered=self.delivered | {node_id})

    def failed(self, message: str) -> ExecutionState:
        return dataclasses.replace(self, status=RunStatus.ERRORED, error=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_node": self.current_node,
            "visited": list(self.visited),
            "context": self.context.snapshot(),
            "turns": [t.to_dict() for t in self.turns],
            "status": str(self.status),
            "delivered": sorted(self.delivered),
            "error": self.error,
        }
