"""Tool collaborator backed by an MCP stdio server."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

from sopwalk.engine.protocols import ToolSpec
from sopwalk.mcp.stdio_client import McpStdioClient, ServerCommand

log = logging.getLogger(__name__)

__all__ = ["McpToolCollaborator", "decode_tool_result"]


def decode_tool_result(result: Mapping[str, Any]) -> Any:
    """Turn a ``tools/call`` result into the object stored in context.

    ``structuredContent`` wins when present.  Otherwise text content blocks
    are joined; JSON text is decoded, anything else is wrapped as
    ``{"text": ...}``.  Results flagged ``isError`` always carry an
    ``error`` field.
    """
    structured = result.get("structuredContent")
    if isinstance(structured, Mapping):
        value: Any = dict(structured)
    else:
        texts = [
            str(block.get("text", ""))
            for block in result.get("content") or []
            if isinstance(block, Mapping) and block.get("type") == "text"
        ]
        text = "\n".join(t for t in texts if t)
        try:
            value = json.loads(text) if text else {}
        except json.JSONDecodeError:
            value = {"text": text}

    if result.get("isError"):
        if isinstance(value, Mapping) and value.get("error"):
            return dict(value)
        message = value.get("text") if isinstance(value, Mapping) else None
        return {"error": message or json.dumps(value, default=str), "isError": True}
    return value


class McpToolCollaborator:
    """Runs procedure tools on one long-lived MCP server process.

    The blocking client runs in worker threads so the event loop (and the
    gateway's timeout) stay responsive.

    Parameters
    ----------
    server : ServerCommand | McpStdioClient
        Launch command, or an already-constructed client.
    timeout_s : float
        Client-side request timeout.
    """

    def __init__(self, server: ServerCommand | McpStdioClient, *, timeout_s: float = 20.0) -> None:
        if isinstance(server, McpStdioClient):
            self._client = server
        else:
            self._client = McpStdioClient(server, timeout_s=timeout_s)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def client(self) -> McpStdioClient:
        return self._client

    async def __aenter__(self) -> McpToolCollaborator:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def connect(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self._client.start)
            info = await asyncio.to_thread(self._client.initialize)
            self._initialized = True
            log.info(
                "connected to MCP server %s",
                (info.get("serverInfo") or {}).get("name", "<unknown>"),
            )

    async def aclose(self) -> None:
        await asyncio.to_thread(self._client.close)
        self._initialized = False

    async def list_tools(self) -> list[ToolSpec]:
        await self.connect()
        raw = await asyncio.to_thread(self._client.list_tools)
        return [
            ToolSpec(
                name=str(t.get("name", "")),
                description=str(t.get("description") or ""),
                input_schema=t.get("inputSchema") or {},
            )
            for t in raw
            if t.get("name")
        ]

    async def call(self, name: str, arguments: Mapping[str, Any]) -> Any:
        await self.connect()
        result = await asyncio.to_thread(self._client.call_tool, name, dict(arguments))
        return decode_tool_result(result)
