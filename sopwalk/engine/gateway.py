"""Tool gateway: binds parameters from context and runs a node's tool.

The gateway is the only component that calls the tool collaborator.  It
invokes a tool only when every parameter resolves, stores the result (or an
error payload) under the tool's result key, and never retries on its own.
A failed call is retried on a later ``execute`` only when the bound
arguments have changed, or when the caller forces it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sopwalk.engine.context import MISSING, ContextStore, has_error_marker, placeholder_paths
from sopwalk.engine.protocols import ToolCollaborator
from sopwalk.engine.state import ExecutionState
from sopwalk.exceptions import ToolInvocationError, ToolTimeoutError
from sopwalk.graph.nodes import ActionNode, ParamKind, ProcedureGraph, ToolRef

log = logging.getLogger(__name__)

__all__ = [
    "GatewayOutcome",
    "GatewayStatus",
    "ParameterBinding",
    "ToolGateway",
    "bind_parameters",
]


class GatewayStatus(StrEnum):
    NOT_APPLICABLE = "not_applicable"
    ALREADY_EXECUTED = "already_executed"
    MISSING_PARAMETERS = "missing_parameters"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ParameterBinding:
    arguments: Mapping[str, Any]
    missing: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing


@dataclass(slots=True, frozen=True)
class GatewayOutcome:
    """What one ``execute`` call did.

    ``invoked`` is False whenever the collaborator was not called, including
    a FAILED outcome that repeats an earlier failure with the same arguments.
    """

    status: GatewayStatus
    node_id: str
    tool: str | None = None
    result_key: str | None = None
    result: Any = None
    missing: tuple[str, ...] = ()
    invoked: bool = False
    arguments: Mapping[str, Any] = field(default_factory=dict)


def bind_parameters(
    tool: ToolRef,
    context: ContextStore,
    defaults: Mapping[str, Any] | None = None,
) -> ParameterBinding:
    """Resolve *tool*'s parameters against *context*.

    *defaults* are merged under the declared parameters.  A parameter is
    missing when it is a literal ``None``, a context reference that does not
    resolve, or a template with any unresolved placeholder.
    """
    arguments: dict[str, Any] = dict(defaults or {})
    missing: list[str] = []
    for param in tool.params:
        if param.kind is ParamKind.LITERAL:
            value = param.value
        elif param.kind is ParamKind.REFERENCE:
            value = context.resolve(param.value)
        else:
            unresolved = [p for p in placeholder_paths(param.value) if not context.has(p)]
            value = MISSING if unresolved else context.render(param.value)
        if value is MISSING or value is None:
            missing.append(param.name)
            arguments.pop(param.name, None)
        else:
            arguments[param.name] = value
    return ParameterBinding(arguments, tuple(missing))


class ToolGateway:
    """Runs the tool of the node a session is positioned at.

    Parameters
    ----------
    collaborator : ToolCollaborator
        Provider that actually executes tools.
    timeout_s : float
        Per-call timeout; exceeding it is recorded as a tool failure.
    default_arguments : Mapping[str, Any] | None
        Arguments sent with every call unless a node parameter overrides
        them (for example the caller's ``userId``).
    """

    def __init__(
        self,
        collaborator: ToolCollaborator,
        *,
        timeout_s: float = 30.0,
        default_arguments: Mapping[str, Any] | None = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self._collaborator = collaborator
        self._timeout_s = timeout_s
        self._defaults = dict(default_arguments or {})

    @property
    def collaborator(self) -> ToolCollaborator:
        return self._collaborator

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def execute(
        self,
        graph: ProcedureGraph,
        state: ExecutionState,
        *,
        force: bool = False,
    ) -> GatewayOutcome:
        """Bind and run the current node's tool if it is due.

        Writes the result into ``state.context``; never moves the session.
        """
        node = graph.node(state.current_node)
        if not state.in_progress or not isinstance(node, ActionNode) or node.tool is None:
            return GatewayOutcome(GatewayStatus.NOT_APPLICABLE, node.id)

        tool = node.tool
        context = state.context
        previous = context.get(tool.result_key)
        if previous is not None and not has_error_marker(previous):
            return GatewayOutcome(
                GatewayStatus.ALREADY_EXECUTED,
                node.id,
                tool.name,
                tool.result_key,
                previous,
            )

        binding = bind_parameters(tool, context, self._defaults)
        if not binding.complete:
            log.debug(
                "tool %s at node %r waiting for parameters: %s",
                tool.name,
                node.id,
                ", ".join(binding.missing),
            )
            return GatewayOutcome(
                GatewayStatus.MISSING_PARAMETERS,
                node.id,
                tool.name,
                tool.result_key,
                missing=binding.missing,
                arguments=binding.arguments,
            )

        if (
            not force
            and has_error_marker(previous)
            and previous.get("arguments") == dict(binding.arguments)
        ):
            return GatewayOutcome(
                GatewayStatus.FAILED,
                node.id,
                tool.name,
                tool.result_key,
                previous,
                arguments=binding.arguments,
            )

        return await self._invoke(node, tool, binding.arguments, context)

    async def _invoke(
        self,
        node: ActionNode,
        tool: ToolRef,
        arguments: Mapping[str, Any],
        context: ContextStore,
    ) -> GatewayOutcome:
        log.info("invoking tool %s for node %r", tool.name, node.id)
        try:
            result = await asyncio.wait_for(
                self._collaborator.call(tool.name, dict(arguments)),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            result = self._error_payload(ToolTimeoutError(tool.name, self._timeout_s), arguments)
        except Exception as exc:
            err = ToolInvocationError(tool.name, str(exc) or type(exc).__name__, exc)
            result = self._error_payload(err, arguments)
        else:
            if result is None:
                err = ToolInvocationError(tool.name, "tool returned no result")
                result = self._error_payload(err, arguments)

        context.set(tool.result_key, result)
        if has_error_marker(result):
            log.warning(
                "tool %s at node %r failed: %s",
                tool.name,
                node.id,
                result.get("error"),
            )
            if "arguments" not in result:
                context.set(tool.result_key, {**result, "arguments": dict(arguments)})
                result = context.get(tool.result_key)
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.EXECUTED
        return GatewayOutcome(
            status,
            node.id,
            tool.name,
            tool.result_key,
            result,
            invoked=True,
            arguments=arguments,
        )

    @staticmethod
    def _error_payload(err: ToolInvocationError, arguments: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "error": str(err),
            "errorCode": err.error_code,
            "tool": err.tool,
            "arguments": dict(arguments),
        }
