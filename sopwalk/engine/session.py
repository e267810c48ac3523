"""Session: owns one execution state and runs the per-turn pipeline.

A turn is:

1. record the user's message;
2. walk, run the current node's tool if it is due, walk again (repeated
   while tools keep succeeding);
3. consult the interpreter with a read-only view of where the session is
   and which messages the reply must convey;
4. mark the shown messages as delivered, merge the interpreter's context
   updates, and settle again; if that moved the session and produced new
   messages, consult the interpreter once more (bounded by
   ``interpreter_rounds``);
5. append messages the last settle surfaced but no round showed, fall
   back to a short prompt when nothing was said, and record the reply.

An interpreter that raises is logged and treated as an empty reply, so the
procedure's own messages are still delivered.

All public operations on a session are serialised by one ``asyncio.Lock``;
sessions share nothing but the read-only graph.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sopwalk.config import EngineSettings
from sopwalk.engine.context import MISSING, ContextStore
from sopwalk.engine.gateway import GatewayOutcome, GatewayStatus, ToolGateway
from sopwalk.engine.protocols import (
    Interpreter,
    InterpreterReply,
    InterpreterView,
    ToolCollaborator,
)
from sopwalk.engine.state import ExecutionState, RunStatus, Turn, TurnRole
from sopwalk.engine.walker import StopReason, ToolStatus, WalkResult, tool_status, walk
from sopwalk.exceptions import SessionError
from sopwalk.graph.nodes import ActionNode, DecisionNode, ProcedureGraph

log = logging.getLogger(__name__)

__all__ = ["Session", "TemplateInterpreter", "TurnResult"]

FALLBACK_REPLY = "I understand. How else can I assist you today?"


class TemplateInterpreter:
    """Interpreter that extracts nothing and replies with the procedure's own
    messages."""

    async def interpret(self, view: InterpreterView, message: str) -> InterpreterReply:
        return InterpreterReply(text="\n\n".join(view.messages))


@dataclass(slots=True, frozen=True)
class TurnResult:
    reply: str
    state: ExecutionState
    stop: StopReason
    tool_outcomes: tuple[GatewayOutcome, ...] = ()

    @property
    def completed(self) -> bool:
        return self.state.status is RunStatus.COMPLETED


class Session:
    """One conversation walking one procedure.

    Parameters
    ----------
    graph : ProcedureGraph
        Validated procedure, shared read-only.
    gateway : ToolGateway
        Gateway bound to the tool collaborator.
    interpreter : Interpreter | None
        Produces replies and extracts facts; defaults to
        :class:`TemplateInterpreter`.
    context : Mapping[str, Any] | None
        Initial facts.
    session_id : str | None
        Identifier used in logs; generated when omitted.
    settings : EngineSettings | None
        Transition bound and interpreter round limit.
    """

    def __init__(
        self,
        graph: ProcedureGraph,
        gateway: ToolGateway,
        interpreter: Interpreter | None = None,
        *,
        context: Mapping[str, Any] | None = None,
        session_id: str | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        settings = settings or EngineSettings()
        self.session_id = session_id or uuid4().hex[:12]
        self._graph = graph
        self._gateway = gateway
        self._interpreter: Interpreter = interpreter or TemplateInterpreter()
        self._max_transitions = settings.max_transitions
        self._max_rounds = settings.interpreter_rounds
        self._lock = asyncio.Lock()
        self._state = ExecutionState.start(graph, ContextStore(context))
        self._last_stop = StopReason.HALTED if not self._state.in_progress else StopReason.AWAITING_DATA

    @classmethod
    def create(
        cls,
        graph: ProcedureGraph,
        tools: ToolCollaborator,
        interpreter: Interpreter | None = None,
        *,
        user_id: str | None = None,
        context: Mapping[str, Any] | None = None,
        settings: EngineSettings | None = None,
    ) -> Session:
        """Build a session and its gateway from settings.

        When *user_id* is given it is seeded into context as ``userId`` and
        sent with every tool call.
        """
        settings = settings or EngineSettings()
        seed = dict(context or {})
        defaults: dict[str, Any] = {}
        if user_id is not None:
            seed.setdefault("userId", user_id)
            defaults["userId"] = user_id
        gateway = ToolGateway(
            tools,
            timeout_s=settings.tool_timeout_s,
            default_arguments=defaults,
        )
        return cls(graph, gateway, interpreter, context=seed, settings=settings)

    def __repr__(self) -> str:
        return (
            f"Session(id={self.session_id!r}, procedure={self._graph.name!r}, "
            f"node={self._state.current_node!r}, status={self._state.status})"
        )

    # ── Turn API ──────────────────────────────────────────

    @property
    def graph(self) -> ProcedureGraph:
        return self._graph

    @property
    def state(self) -> ExecutionState:
        return self._state

    def current_state(self) -> ExecutionState:
        return self._state

    def advance(self) -> WalkResult:
        """Walk as far as current context permits."""
        self._ensure_idle()
        return self._walk([])

    async def bind_and_execute_tool(self, *, force: bool = False) -> GatewayOutcome:
        """Run the current node's tool if it is due.  Does not move the
        session; call :meth:`advance` afterwards."""
        async with self._lock:
            return await self._execute_tool(force=force)

    def resolve_template(self, node_id: str | None = None) -> str | None:
        node = self._graph.node(node_id or self._state.current_node)
        template = getattr(node, "template", None)
        return self._state.context.render(template) if template else None

    def get_context(self, path: str | None = None) -> Any:
        """Whole context snapshot, or the value at *path* (None if absent)."""
        if path is None:
            return self._state.context.snapshot()
        value = self._state.context.resolve(path)
        return None if value is MISSING else value

    def set_context(self, key: str, value: Any) -> None:
        self._ensure_idle()
        self._state.context.set(key, value)

    def update_context(self, values: Mapping[str, Any]) -> None:
        self._ensure_idle()
        self._state.context.update(values)

    def reset(self, context: Mapping[str, Any] | None = None) -> None:
        """Return to the start node with fresh context."""
        self._ensure_idle()
        self._state = ExecutionState.start(self._graph, ContextStore(context))
        self._last_stop = StopReason.HALTED if not self._state.in_progress else StopReason.AWAITING_DATA

    def view(self) -> InterpreterView:
        """The read-only query surface offered to the interpreter."""
        return self._view(self._last_stop, [self._state.current_node])

    # ── turn pipeline ─────────────────────────────────────

    async def process_turn(self, message: str) -> TurnResult:
        """Handle one user message and return the reply."""
        async with self._lock:
            if not self._state.in_progress:
                raise SessionError(self.session_id, f"session is {self._state.status}")

            node_at_start = self._state.current_node
            self._state = self._state.with_turn(Turn(TurnRole.USER, message, node_at_start))
            entered: list[str] = [node_at_start]
            outcomes: list[GatewayOutcome] = []

            await self._settle(entered, outcomes)
            parts: list[str] = []
            for round_no in range(self._max_rounds):
                view = self._view(self._last_stop, entered)
                if round_no and not view.messages:
                    break
                reply = await self._consult(view, message)
                text = reply.text.strip()
                if not text:
                    text = "\n\n".join(view.messages)
                    if not text and round_no == 0:
                        text = view.current_message or ""
                if text:
                    parts.append(text)
                self._acknowledge(entered)
                if reply.context_updates:
                    self._state.context.update(reply.context_updates)
                visited_before = len(self._state.visited)
                calls_before = sum(o.invoked for o in outcomes)
                await self._settle(entered, outcomes)
                progressed = (
                    len(self._state.visited) != visited_before
                    or sum(o.invoked for o in outcomes) != calls_before
                )
                if not progressed:
                    break

            leftover = self._pending_messages(entered)
            if leftover:
                parts.extend(text for _, text in leftover)
                self._acknowledge(entered)
            if not parts:
                parts.append(self._fallback_reply())

            text = "\n\n".join(parts)
            self._state = self._state.with_turn(
                Turn(TurnRole.ASSISTANT, text, self._state.current_node)
            )
            if self._state.status is RunStatus.COMPLETED:
                log.info("session %s completed at %r", self.session_id, self._state.current_node)
            return TurnResult(text, self._state, self._last_stop, tuple(outcomes))

    # ── internals ─────────────────────────────────────────

    def _ensure_idle(self) -> None:
        if self._lock.locked():
            raise SessionError(self.session_id, "a turn is in progress")

    def _walk(self, entered: list[str]) -> WalkResult:
        before = len(self._state.visited)
        result = walk(self._graph, self._state, max_transitions=self._max_transitions)
        self._state = result.state
        if result.stop is not StopReason.HALTED:
            self._last_stop = result.stop
        entered.extend(result.state.visited[before:])
        return result

    async def _execute_tool(self, *, force: bool = False) -> GatewayOutcome:
        try:
            return await self._gateway.execute(self._graph, self._state, force=force)
        except Exception as exc:
            log.error(
                "session %s: unexpected error running tool at %r: %s",
                self.session_id,
                self._state.current_node,
                exc,
            )
            self._state = self._state.failed(f"{type(exc).__name__}: {exc}")
            raise

    async def _consult(self, view: InterpreterView, message: str) -> InterpreterReply:
        """Ask the interpreter; a failing interpreter yields an empty reply so
        the turn falls back to the procedure's own messages."""
        try:
            return await self._interpreter.interpret(view, message)
        except Exception as exc:
            log.error(
                "session %s: interpreter failed at %r: %s: %s",
                self.session_id,
                view.current_node,
                type(exc).__name__,
                exc,
            )
            return InterpreterReply(text="")

    def _fallback_reply(self) -> str:
        context = self._state.context
        needed = [k for k in self._graph.referenced_keys(self._state.current_node) if not context.has(k)]
        if self._state.in_progress and needed:
            return f"To continue I need a few more details: {', '.join(needed)}."
        return FALLBACK_REPLY

    async def _settle(self, entered: list[str], outcomes: list[GatewayOutcome]) -> WalkResult:
        """Walk, run due tools, and walk again until nothing more happens."""
        result = self._walk(entered)
        for _ in range(self._max_transitions):
            if result.stop not in (StopReason.AWAITING_TOOL, StopReason.TOOL_FAILED):
                break
            outcome = await self._execute_tool()
            outcomes.append(outcome)
            result = self._walk(entered)
            if outcome.status is not GatewayStatus.EXECUTED:
                break
        return result

    def _pending_messages(self, entered: list[str]) -> list[tuple[str, str]]:
        pending: list[tuple[str, str]] = []
        for node_id in dict.fromkeys(entered):
            if node_id in self._state.delivered:
                continue
            node = self._graph.node(node_id)
            template = getattr(node, "template", None)
            if not template:
                continue
            if (
                isinstance(node, ActionNode)
                and node.tool is not None
                and tool_status(node, self._state) is not ToolStatus.SUCCEEDED
            ):
                continue
            pending.append((node_id, self._state.context.render(template)))
        return pending

    def _acknowledge(self, entered: list[str]) -> None:
        for node_id, _ in self._pending_messages(entered):
            self._state = self._state.with_delivered(node_id)

    def _summary(self, node_id: str) -> dict[str, Any]:
        node = self._graph.node(node_id)
        summary: dict[str, Any] = {
            "id": node.id,
            "kind": str(node.kind),
            "description": node.description,
        }
        if isinstance(node, DecisionNode):
            summary["condition"] = str(node.condition)
        elif isinstance(node, ActionNode) and node.tool is not None:
            summary["tool"] = node.tool.name
        return summary

    def _view(self, stop: StopReason, entered: list[str]) -> InterpreterView:
        current = self._state.current_node
        node = self._graph.node(current)
        upcoming = self._graph.lookahead(current)
        keys: list[str] = list(self._graph.referenced_keys(current))
        for node_id in upcoming:
            keys.extend(self._graph.referenced_keys(node_id))
        keys = list(dict.fromkeys(keys))
        return InterpreterView(
            procedure=self._graph.name,
            current_node=current,
            current_description=node.description,
            current_message=self.resolve_template(current),
            messages=[text for _, text in self._pending_messages(entered)],
            upcoming=[self._summary(n) for n in upcoming],
            referenced_keys=keys,
            context=self._state.context.subset(keys),
            history=[t.to_dict() for t in self._state.turns],
            stop_reason=str(stop),
            completed=self._state.status is RunStatus.COMPLETED,
        )
