"""Graph walker: deterministic, bounded, idempotent advancement.

``walk(graph, state)`` moves the session forward as far as the facts already
in context allow and reports why it stopped.  The same function is called
before tool execution, after it, and after the interpreter has written new
facts; there is no other traversal code.

Per transition the walker looks at the current node:

- End: stop (fixed point).
- Action without a tool: move to its successor.
- Action with a tool: stop until the tool's result is in context without an
  error marker; then stop once more if the node has a message that has not
  been delivered; otherwise move on.
- Decision: stop if any referenced path is missing or a referenced context
  value carries an error marker; otherwise branch on the condition.

The walker never writes to context and performs at most ``max_transitions``
moves per call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from sopwalk.engine.conditions import Verdict
from sopwalk.engine.context import MISSING
from sopwalk.engine.state import ExecutionState, RunStatus
from sopwalk.graph.nodes import ActionNode, DecisionNode, EndNode, ProcedureGraph

log = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_MAX_TRANSITIONS",
    "StopReason",
    "ToolStatus",
    "WalkResult",
    "WalkerDiagnostics",
    "advance",
    "diagnostics",
    "tool_status",
    "walk",
]

DEFAULT_MAX_TRANSITIONS = 10


class StopReason(StrEnum):
    """Why a call to :func:`walk` stopped where it did."""

    END = "end"
    AWAITING_TOOL = "awaiting_tool"
    AWAITING_DELIVERY = "awaiting_delivery"
    TOOL_FAILED = "tool_failed"
    AWAITING_DATA = "awaiting_data"
    UPSTREAM_ERROR = "upstream_error"
    DEAD_END = "dead_end"
    BOUND_REACHED = "bound_reached"
    HALTED = "halted"


class ToolStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class WalkResult:
    state: ExecutionState
    stop: StopReason
    transitions: int

    @property
    def suspended(self) -> bool:
        """True when progress needs new input (a tool result or data)."""
        return self.stop in (
            StopReason.AWAITING_TOOL,
            StopReason.AWAITING_DATA,
            StopReason.AWAITING_DELIVERY,
        )


class WalkerDiagnostics:
    """Process-wide counters for operators.

    ``bound_exhaustions`` climbing is the signal for a malformed (cyclic)
    procedure.  Safe to update from concurrent sessions.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.walks = 0
        self.transitions = 0
        self.bound_exhaustions = 0

    def record(self, transitions: int, *, bound_hit: bool) -> None:
        with self._lock:
            self.walks += 1
            self.transitions += transitions
            if bound_hit:
                self.bound_exhaustions += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "walks": self.walks,
                "transitions": self.transitions,
                "bound_exhaustions": self.bound_exhaustions,
            }

    def reset(self) -> None:
        with self._lock:
            self.walks = 0
            self.transitions = 0
            self.bound_exhaustions = 0


diagnostics = WalkerDiagnostics()


def tool_status(node: ActionNode, state: ExecutionState) -> ToolStatus:
    """Has the node's tool already produced a result in context?"""
    assert node.tool is not None
    result = state.context.get(node.tool.result_key)
    if result is None:
        return ToolStatus.PENDING
    if state.context.is_failed(node.tool.result_key):
        return ToolStatus.FAILED
    return ToolStatus.SUCCEEDED


def _decision_blocker(node: DecisionNode, state: ExecutionState) -> StopReason | None:
    context = state.context
    for key in node.condition.context_keys:
        if context.is_failed(key):
            return StopReason.UPSTREAM_ERROR
    for path in node.condition.paths:
        if context.resolve(path.dotted) is MISSING:
            return StopReason.AWAITING_DATA
    return None


def _step(graph: ProcedureGraph, node_id: str, state: ExecutionState) -> str | StopReason:
    """Decide the node to move to from *node_id*, or the reason to stop there."""
    node = graph.node(node_id)
    match node:
        case EndNode():
            return StopReason.END
        case ActionNode(tool=None):
            return node.next[0] if node.next else StopReason.DEAD_END
        case ActionNode():
            status = tool_status(node, state)
            if status is ToolStatus.PENDING:
                return StopReason.AWAITING_TOOL
            if status is ToolStatus.FAILED:
                return StopReason.TOOL_FAILED
            if node.template and node.id not in state.delivered:
                return StopReason.AWAITING_DELIVERY
            return node.next[0] if node.next else StopReason.DEAD_END
        case DecisionNode():
            blocker = _decision_blocker(node, state)
            if blocker is not None:
                log.debug("decision %r cannot be evaluated yet (%s)", node.id, blocker)
                return blocker
            verdict = node.condition.evaluate(state.context)
            if verdict is Verdict.UNEVALUABLE:
                return StopReason.AWAITING_DATA
            return node.on_true if verdict is Verdict.TRUE else node.on_false
        case _:
            assert_never(node)


def walk(
    graph: ProcedureGraph,
    state: ExecutionState,
    *,
    max_transitions: int = DEFAULT_MAX_TRANSITIONS,
) -> WalkResult:
    """Advance *state* through *graph* as far as context permits.

    Parameters
    ----------
    graph : ProcedureGraph
        The procedure; never modified.
    state : ExecutionState
        Starting state; never modified.
    max_transitions : int
        Upper bound on moves in this call.

    Returns
    -------
    WalkResult
        The new state, the reason for stopping, and the number of moves.
    """
    if max_transitions < 1:
        raise ValueError("max_transitions must be positive")
    if state.status is not RunStatus.IN_PROGRESS:
        return WalkResult(state, StopReason.HALTED, 0)

    current = state.current_node
    visited = list(state.visited)
    status = state.status
    transitions = 0
    stop: StopReason | None = None

    while transitions < max_transitions:
        outcome = _step(graph, current, state)
        if isinstance(outcome, StopReason):
            stop = outcome
            break
        log.debug("transition %s -> %s", current, outcome)
        current = outcome
        visited.append(current)
        transitions += 1
        if isinstance(graph.node(current), EndNode):
            status = RunStatus.COMPLETED
            stop = StopReason.END
            break

    bound_hit = stop is None
    if bound_hit:
        stop = StopReason.BOUND_REACHED
        log.warning(
            "procedure %r: walker stopped at %r after %d transitions (bound reached)",
            graph.name,
            current,
            transitions,
        )
    diagnostics.record(transitions, bound_hit=bound_hit)

    if transitions == 0:
        return WalkResult(state, stop, 0)
    if status is RunStatus.COMPLETED:
        log.info("procedure %r reached end node %r", graph.name, current)
    new_state = state.evolve(current_node=current, visited=tuple(visited), status=status)
    return WalkResult(new_state, stop, transitions)


def advance(
    graph: ProcedureGraph,
    state: ExecutionState,
    *,
    max_transitions: int = DEFAULT_MAX_TRANSITIONS,
) -> ExecutionState:
    """Shorthand for ``walk(...).state``."""
    return walk(graph, state, max_transitions=max_transitions).state
