"""Blocking MCP client for servers spoken to over stdio.

Messages are newline-delimited JSON-RPC 2.0.  Only the calls needed to run
procedure tools are implemented: ``initialize`` (followed by the
``notifications/initialized`` notification), ``tools/list``, ``tools/call``
and ``ping``.  A reader thread routes responses to waiting callers by
request id, so several threads may issue requests on one client.
"""

from __future__ import annotations

import itertools
import json
import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from sopwalk.exceptions import McpError

log = logging.getLogger(__name__)

__all__ = ["McpStdioClient", "ServerCommand"]

PROTOCOL_VERSION = "2025-11-25"


@dataclass(slots=True)
class ServerCommand:
    """How to launch a stdio MCP server."""

    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


class McpStdioClient:
    """Owns one MCP server subprocess.

    Parameters
    ----------
    server : ServerCommand
        Launch command.
    timeout_s : float
        Default per-request timeout.
    """

    def __init__(self, server: ServerCommand, *, timeout_s: float = 20.0) -> None:
        self._server = server
        self._timeout_s = float(timeout_s)
        self._proc: subprocess.Popen[str] | None = None
        self._threads: list[threading.Thread] = []
        self._write_lock = threading.Lock()
        self._responses: dict[int, dict[str, Any]] = {}
        self._abandoned: set[int] = set()
        self._arrived = threading.Condition()
        self._ids = itertools.count(1)
        self._stderr_tail: deque[str] = deque(maxlen=50)
        self.server_info: dict[str, Any] = {}

    def __enter__(self) -> McpStdioClient:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    # ── process lifecycle ─────────────────────────────────

    def start(self) -> None:
        if self._proc is not None:
            return
        log.debug("starting MCP server: %s", self._server.argv)
        self._proc = subprocess.Popen(
            self._server.argv,
            cwd=self._server.cwd,
            env=self._server.env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self._threads = [
            threading.Thread(target=self._pump_stdout, name="mcp-stdout", daemon=True),
            threading.Thread(target=self._pump_stderr, name="mcp-stderr", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except OSError:
                log.debug("MCP server stdin already closed")
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=3.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3.0)
        with self._arrived:
            self._arrived.notify_all()

    def _pump_stdout(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        for line in proc.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                log.debug("ignoring non-JSON MCP output: %r", line)
                continue
            if not isinstance(msg, dict) or not isinstance(msg.get("id"), int):
                continue  # notifications and server-initiated requests
            self._deliver(msg)

    def _deliver(self, msg: dict[str, Any]) -> None:
        with self._arrived:
            if msg["id"] in self._abandoned:
                # The caller timed out and will never collect it.
                self._abandoned.discard(msg["id"])
                log.debug("dropping late MCP response for id %s", msg["id"])
                return
            self._responses[msg["id"]] = msg
            self._arrived.notify_all()

    def _pump_stderr(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stderr is not None
        for line in proc.stderr:
            text = line.rstrip("\r\n")
            if text:
                self._stderr_tail.append(text)
                log.debug("mcp stderr: %s", text)

    # ── JSON-RPC ──────────────────────────────────────────

    def _send(self, message: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise RuntimeError("MCP server is not running")
        with self._write_lock:
            proc.stdin.write(json.dumps(message, default=str) + "\n")
            proc.stdin.flush()

    def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        """Send a request and block until its response arrives.

        Raises
        ------
        McpError
            If the server returns a JSON-RPC error.
        TimeoutError
            If no response arrives in time.
        """
        req_id = next(self._ids)
        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params
        self._send(msg)

        deadline = time.monotonic() + (self._timeout_s if timeout_s is None else timeout_s)
        with self._arrived:
            while req_id not in self._responses:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self.running:
                    self._abandoned.add(req_id)
                    tail = "\n".join(self.stderr_tail[-10:])
                    raise TimeoutError(f"MCP {method} (id {req_id}) got no response; stderr:\n{tail}")
                self._arrived.wait(timeout=min(remaining, 0.5))
            response = self._responses.pop(req_id)

        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise McpError(method, error.get("code"), str(error.get("message", error)))
            raise McpError(method, None, str(error))
        return response.get("result") or {}

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self._send(msg)

    # ── MCP methods ───────────────────────────────────────

    def initialize(self, *, client_name: str = "sopwalk", client_version: str = "0.1.0") -> dict[str, Any]:
        result = self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": client_name, "version": client_version},
            },
        )
        self.server_info = dict(result.get("serverInfo") or {})
        self.notify("notifications/initialized")
        return result

    def ping(self) -> dict[str, Any]:
        return self.request("ping")

    def list_tools(self) -> list[dict[str, Any]]:
        result = self.request("tools/list")
        tools = result.get("tools") or []
        return [t for t in tools if isinstance(t, dict)]

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("tools/call", {"name": name, "arguments": arguments or {}})
