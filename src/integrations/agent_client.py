"""Clients for the external agent answering ``query_agent`` tool calls.

Two transports share one capability: ``query(args)`` and ``close()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from bridge.errors import AgentClosed, AgentError, ProtocolParseError

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings

LOGGER = logging.getLogger(__name__)

# Replies can carry large structured results; the asyncio default is 64 KiB.
MAX_REPLY_LINE = 1 << 20


class AgentClient(ABC):
    """Abstract base class for agent transports."""

    @abstractmethod
    async def query(self, args: Any) -> Any:
        """Send one request to the agent and return its result."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources and fail outstanding queries with AgentClosed."""


class HttpAgentClient(AgentClient):
    """One POST per query against a configured endpoint."""

    def __init__(self, url: str, *, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._inflight: set[asyncio.Task] = set()
        self._closed = False

    async def query(self, args: Any) -> Any:
        if self._closed:
            raise AgentClosed("Agent client closed")

        task = asyncio.create_task(self._post(args))
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._closed and task.cancelled():
                raise AgentClosed("Agent client closed") from None
            raise
        finally:
            self._inflight.discard(task)

    async def _post(self, args: Any) -> Any:
        try:
            response = await self._client.post(self._url, json=args)
        except httpx.HTTPError as exc:
            raise AgentError(f"Agent HTTP request failed: {exc}") from exc

        if not response.is_success:
            raise AgentError(f"Agent HTTP {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._inflight):
            task.cancel()
        await self._client.aclose()


class SubprocessAgentClient(AgentClient):
    """Long-lived child process speaking newline-delimited JSON.

    Requests are ``{"id", "type": "query", "args"}``; replies are
    ``{"id", "result"}`` or ``{"id", "error"}`` and are matched by ``id``.
    Lines that cannot be matched to an outstanding query are ignored.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: str) -> None:
        self._process = process
        self._command = command
        self._pending: dict[str, asyncio.Future] = {}
        self._closed = False
        self._closing = False
        self._reader = asyncio.create_task(self._read_replies())

    @classmethod
    async def spawn(cls, command: str) -> SubprocessAgentClient:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
                limit=MAX_REPLY_LINE,
            )
        except OSError as exc:
            raise AgentError(f"Failed to start agent process: {exc}") from exc

        LOGGER.info("Started agent process pid=%s: %s", process.pid, command)
        return cls(process, command)

    async def query(self, args: Any) -> Any:
        if self._closed:
            raise AgentClosed("Agent process closed")

        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise AgentClosed("Agent stdin not writable")

        query_id = str(uuid.uuid4())
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[query_id] = future

        line = json.dumps({"id": query_id, "type": "query", "args": args}) + "\n"
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._pending.pop(query_id, None)
            raise AgentClosed(f"Agent process closed: {exc}") from exc

        try:
            return await future
        finally:
            self._pending.pop(query_id, None)

    async def _read_replies(self) -> None:
        stdout = self._process.stdout
        assert stdout is not None
        try:
            while True:
                try:
                    raw = await stdout.readline()
                except ValueError:
                    LOGGER.debug("Discarding oversized agent reply line")
                    continue
                if not raw:
                    break
                try:
                    self._resolve(decode_reply(raw))
                except ProtocolParseError as exc:
                    LOGGER.debug("Discarding agent output: %s", exc)
        finally:
            returncode = await self._process.wait()
            if not self._closed:
                LOGGER.warning("Agent process exited with code %s", returncode)
            self._fail_pending(AgentClosed(f"Agent process exited with code {returncode}"))
            self._closed = True

    def _resolve(self, reply: dict[str, Any]) -> None:
        future = self._pending.get(reply["id"])
        if future is None or future.done():
            LOGGER.debug("Discarding agent reply for unknown id %s", reply["id"])
            return
        error = reply.get("error")
        if error:
            message = error if isinstance(error, str) else json.dumps(error)
            future.set_exception(AgentError(f"Agent error: {message}"))
        else:
            future.set_result(reply.get("result"))

    def _fail_pending(self, exc: AgentError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._closed = True
        self._fail_pending(AgentClosed("Agent process closed"))

        if self._process.stdin is not None and not self._process.stdin.is_closing():
            self._process.stdin.close()
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(self._reader), timeout=5)
        except asyncio.TimeoutError:
            LOGGER.warning("Agent process did not exit; killing pid=%s", self._process.pid)
            self._process.kill()
            await self._reader


def decode_reply(raw: bytes) -> dict[str, Any]:
    """Decode one agent reply line; raises ProtocolParseError for noise."""

    try:
        reply = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolParseError(f"not JSON: {raw[:80]!r}") from exc
    if not isinstance(reply, dict):
        raise ProtocolParseError("not a JSON object")
    reply_id = reply.get("id")
    if not isinstance(reply_id, str) or not reply_id:
        raise ProtocolParseError("missing id")
    return reply


async def open_agent_client(settings: Settings) -> AgentClient | None:
    """Instantiate the configured agent transport, if any."""

    if settings.agent_url:
        return HttpAgentClient(settings.agent_url)
    if settings.agent_cmd:
        return await SubprocessAgentClient.spawn(settings.agent_cmd)
    return None
