"""Chat-model interpreter.

Each turn the model gets a system prompt describing the current step, the
messages the reply must convey, the upcoming branch points, and the facts
already known.  It may call the ``update_context`` function to record facts
it extracted from the customer's message; its text content becomes the reply.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Final

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import Runnable

from sopwalk.engine.protocols import InterpreterReply, InterpreterView
from sopwalk.llm.config import ModelID
from sopwalk.llm.router import LLMRouter

log = logging.getLogger(__name__)

__all__ = ["UPDATE_CONTEXT_TOOL", "ChatModelInterpreter", "build_system_prompt"]

UPDATE_CONTEXT_TOOL: Final[dict[str, Any]] = {
    "type": "function",
    "function": {
        "name": "update_context",
        "description": (
            "Record a fact learned from the customer, e.g. an order id they "
            "mentioned or a yes/no decision they made. Use the exact context "
            "key that the procedure references."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Context key, e.g. orderId"},
                "value": {"description": "Value to store (string, number or boolean)"},
            },
            "required": ["key", "value"],
        },
    },
}

_SYSTEM_PROMPT: Final = """\
You are a customer support agent following the procedure "{procedure}".

Current step: {current_node} ({current_description}).
{status_line}

Messages to convey this turn (rephrase naturally, keep every fact):
{messages}

Next steps and the conditions that choose between them:
{upcoming}

Facts already known:
{context}

Facts the procedure still needs: {needed}

When the customer's message provides any needed fact, call update_context once
per fact using the exact key. Booleans must be true or false, not strings.
Never invent facts. Reply in the customer's language.
"""


def build_system_prompt(view: InterpreterView) -> str:
    known = set(view.context)
    needed = [k for k in view.referenced_keys if k not in known]
    if view.completed:
        status_line = "The procedure is complete; close the conversation politely."
    else:
        status_line = f"Waiting because: {view.stop_reason}."
    upcoming = "\n".join(
        f"- {n['id']} [{n['kind']}]: {n.get('description', '')}"
        + (f" (condition: {n['condition']})" if "condition" in n else "")
        for n in view.upcoming
    )
    return _SYSTEM_PROMPT.format(
        procedure=view.procedure,
        current_node=view.current_node,
        current_description=view.current_description or "no description",
        status_line=status_line,
        messages="\n".join(f"- {m}" for m in view.messages) or "- (none)",
        upcoming=upcoming or "- (none)",
        context=json.dumps(dict(view.context), indent=2, default=str),
        needed=", ".join(needed) or "none",
    )


def _coerce_value(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    return value


def _content_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, Mapping) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "\n".join(p for p in parts if p).strip()


def _history_messages(history: list[Mapping[str, Any]]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for turn in history:
        if turn.get("role") == "user":
            messages.append(HumanMessage(content=str(turn.get("content", ""))))
        elif turn.get("content"):
            messages.append(AIMessage(content=str(turn["content"])))
    return messages


class ChatModelInterpreter:
    """Interpreter that delegates to a LangChain chat model.

    Parameters
    ----------
    model : BaseChatModel | Runnable
        A chat model (``update_context`` is bound to it when it supports
        tool binding) or an already-bound runnable.
    history_limit : int
        Most recent turns passed to the model.
    """

    def __init__(self, model: BaseChatModel | Runnable, *, history_limit: int = 12) -> None:
        if isinstance(model, BaseChatModel):
            try:
                model = model.bind_tools([UPDATE_CONTEXT_TOOL])
            except NotImplementedError:
                log.debug("%s does not support tool binding", type(model).__name__)
        self._model = model
        self._history_limit = history_limit

    @classmethod
    def from_router(
        cls,
        router: LLMRouter | None = None,
        model_id: ModelID | None = None,
        *,
        history_limit: int = 12,
    ) -> ChatModelInterpreter:
        """Interpreter over *model_id* and its fallback chain, with
        ``update_context`` bound to every model in the chain."""
        router = router or LLMRouter()
        model = router.get_model_with_fallbacks(model_id, tools=[UPDATE_CONTEXT_TOOL])
        return cls(model, history_limit=history_limit)

    async def interpret(self, view: InterpreterView, message: str) -> InterpreterReply:
        history = list(view.history)[-self._history_limit:]
        messages: list[BaseMessage] = [SystemMessage(content=build_system_prompt(view))]
        messages.extend(_history_messages(history))
        if not history or history[-1].get("content") != message:
            messages.append(HumanMessage(content=message))

        response = await self._model.ainvoke(messages)

        updates: dict[str, Any] = {}
        for call in getattr(response, "tool_calls", None) or []:
            if call.get("name") != "update_context":
                log.debug("ignoring unexpected tool call %r", call.get("name"))
                continue
            args = call.get("args") or {}
            key = args.get("key")
            if isinstance(key, str) and key:
                updates[key] = _coerce_value(args.get("value"))
        if updates:
            log.debug("interpreter extracted %s", sorted(updates))
        return InterpreterReply(text=_content_text(response), context_updates=updates)
