"""Per-call session orchestrator.

One ``SessionOrchestrator`` runs per accepted Twilio media stream. Twilio
frames, Realtime events and tool completions are funnelled into a single
inbox and handled one at a time by ``run``, which is the only writer of the
call's ``CallSession`` state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Protocol

from bridge.errors import ProtocolParseError, TransportError
from bridge.session_config import response_create
from bridge.tools import KNOWN_TOOLS, FunctionCall, ToolDispatcher, extract_function_calls, function_call_output
from integrations.twilio_streaming import TwilioMessage, clear_frame, media_frame, parse_twilio_ws_message

if TYPE_CHECKING:  # pragma: no cover
    from bridge.call_log import CallLog
    from integrations.agent_client import AgentClient

LOGGER = logging.getLogger(__name__)

# Drop-oldest bound on audio buffered while a peer is not ready yet (~4s of 20ms frames).
AUDIO_QUEUE_CAPACITY: Final[int] = 200

AUDIO_DELTA_EVENTS: Final[frozenset[str]] = frozenset({"response.output_audio.delta", "response.audio.delta"})
AUDIO_DONE_EVENTS: Final[frozenset[str]] = frozenset({"response.output_audio.done", "response.audio.done"})


class TelephonySocket(Protocol):
    async def send(self, frame: dict[str, Any]) -> None: ...

    def messages(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class RealtimePeer(Protocol):
    async def send(self, event: dict[str, Any]) -> None: ...

    def events(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def audio_delta_fields(event: dict[str, Any]) -> tuple[Any, Any]:
    """Return ``(item_id, delta)`` of an audio delta event, accepting the nested and camelCase variants."""

    audio = event.get("audio")
    delta = event.get("delta")
    if delta is None and isinstance(audio, dict):
        delta = audio.get("delta")
    item_id = event.get("item_id")
    if item_id is None:
        item_id = event.get("itemId")
    return item_id, delta


@dataclass(slots=True)
class AssistantItem:
    item_id: str
    started_at_ms: int | None


@dataclass(slots=True)
class CallSession:
    """Mutable per-call state."""

    call_id: str
    stream_sid: str | None = None
    call_sid: str | None = None
    session_ready: bool = False
    response_in_flight: bool = False
    greeting_sent: bool = False
    assistant_item: AssistantItem | None = None
    pending_inbound: deque[str] = field(default_factory=lambda: deque(maxlen=AUDIO_QUEUE_CAPACITY))
    pending_outbound: deque[str] = field(default_factory=lambda: deque(maxlen=AUDIO_QUEUE_CAPACITY))
    closed: bool = False


# Inbox messages.


@dataclass(frozen=True, slots=True)
class TelephonyFrame:
    text: str


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
    event: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCompletion:
    call: FunctionCall
    output: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PeerClosed:
    source: str
    reason: str


InboxMessage = TelephonyFrame | RealtimeEvent | ToolCompletion | PeerClosed


class SessionOrchestrator:
    """Relays audio between Twilio and a Realtime session and handles barge-in and tools."""

    def __init__(
        self,
        *,
        telephony: TelephonySocket,
        realtime: RealtimePeer,
        agent: AgentClient | None,
        call_log: CallLog,
        session_update: dict[str, Any],
        initial_greeting: str | None = None,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self.session = CallSession(call_id=call_log.call_id)
        self._telephony = telephony
        self._realtime = realtime
        self._agent = agent
        self._log = call_log
        self._session_update = session_update
        self._initial_greeting = initial_greeting
        self._clock = clock
        self._tools = ToolDispatcher(agent=agent, call_log=call_log)
        self._inbox: asyncio.Queue[InboxMessage] = asyncio.Queue()
        self._pumps: list[asyncio.Task] = []
        self._tool_tasks: set[asyncio.Task] = set()

    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def closed(self) -> bool:
        return self.session.closed

    async def run(self) -> None:
        """Process inbox messages until either peer ends the call."""

        self._log.event("vox", {"type": "session.started"})
        self._pumps = [
            asyncio.create_task(self._pump_telephony()),
            asyncio.create_task(self._pump_realtime()),
        ]
        try:
            while not self.session.closed:
                message = await self._inbox.get()
                try:
                    await self.handle(message)
                except TransportError as exc:
                    LOGGER.warning("Call %s: transport failure: %s", self.call_id, exc)
                    await self.close(f"transport error: {exc}")
        finally:
            await self.close("orchestrator stopped")

    async def _pump_telephony(self) -> None:
        reason = "telephony socket closed"
        try:
            async for text in self._telephony.messages():
                await self._inbox.put(TelephonyFrame(text))
        except Exception as exc:
            reason = f"telephony socket failed: {exc}"
        await self._inbox.put(PeerClosed("twilio", reason))

    async def _pump_realtime(self) -> None:
        reason = "realtime connection closed"
        try:
            async for event in self._realtime.events():
                await self._inbox.put(RealtimeEvent(event))
        except Exception as exc:
            reason = f"realtime connection failed: {exc}"
        await self._inbox.put(PeerClosed("openai", reason))

    async def handle(self, message: InboxMessage) -> None:
        """Apply one inbox message to the session state."""

        if self.session.closed:
            return
        if isinstance(message, TelephonyFrame):
            await self._on_telephony(message.text)
        elif isinstance(message, RealtimeEvent):
            await self._on_realtime(message.event)
        elif isinstance(message, ToolCompletion):
            await self._on_tool_completion(message)
        elif isinstance(message, PeerClosed):
            LOGGER.info("Call %s: %s", self.call_id, message.reason)
            await self.close(message.reason)

    # Twilio -> Realtime

    async def _on_telephony(self, text: str) -> None:
        try:
            message = parse_twilio_ws_message(text)
        except ProtocolParseError as exc:
            LOGGER.debug("Call %s: discarding Twilio frame: %s", self.call_id, exc)
            return

        self._log.event("twilio", message.to_log())

        if message.event == "media":
            await self._on_caller_audio(message)
        elif message.event == "start":
            await self._on_stream_start(message)
        elif message.event == "stop":
            self._log.event("vox", {"type": "twilio.stop"})
            await self.close("twilio stop")
        elif message.event == "connected":
            LOGGER.info("Call %s: Twilio media stream connected", self.call_id)

    async def _on_caller_audio(self, message: TwilioMessage) -> None:
        payload = message.inbound_payload()
        if payload is None:
            return
        queue = self.session.pending_inbound
        if len(queue) == queue.maxlen:
            LOGGER.debug("Call %s: inbound audio queue full; dropping oldest frame", self.call_id)
        queue.append(payload)
        await self._flush_inbound()

    async def _flush_inbound(self) -> None:
        if not self.session.session_ready:
            return
        queue = self.session.pending_inbound
        while queue:
            await self._realtime.send({"type": "input_audio_buffer.append", "audio": queue.popleft()})

    async def _on_stream_start(self, message: TwilioMessage) -> None:
        session = self.session
        session.stream_sid = message.resolved_stream_sid()
        session.call_sid = message.start.call_sid if message.start else None
        LOGGER.info("Call %s: stream started stream_sid=%s call_sid=%s", self.call_id, session.stream_sid, session.call_sid)
        self._log.event("vox", {"type": "twilio.start", "streamSid": session.stream_sid, "callSid": session.call_sid})
        await asyncio.to_thread(self._log.write_meta, callSid=session.call_sid, streamSid=session.stream_sid)

        if session.stream_sid is None:
            return
        queue = session.pending_outbound
        while queue:
            await self._telephony.send(media_frame(session.stream_sid, queue.popleft()))

    # Realtime -> Twilio

    async def _on_realtime(self, event: dict[str, Any]) -> None:
        self._log.event("openai", event)
        event_type = event.get("type")
        if not isinstance(event_type, str):
            return

        if event_type == "session.created":
            await self._realtime.send(self._session_update)
        elif event_type == "session.updated":
            await self._on_session_updated()
        elif event_type == "input_audio_buffer.speech_started":
            await self._barge_in()
        elif event_type in AUDIO_DELTA_EVENTS:
            await self._on_assistant_audio(event)
        elif event_type in AUDIO_DONE_EVENTS:
            self._end_response()
        elif event_type == "response.done":
            self._end_response()
            self._dispatch_tools(event)
        elif event_type == "conversation.item.input_audio_transcription.completed":
            LOGGER.info("Call %s: caller: %s", self.call_id, event.get("transcript", ""))
        elif event_type == "response.output_audio_transcript.done":
            LOGGER.info("Call %s: assistant: %s", self.call_id, event.get("transcript", ""))
        elif event_type == "error":
            LOGGER.warning("Call %s: realtime error: %s", self.call_id, event.get("error"))

    async def _on_session_updated(self) -> None:
        session = self.session
        session.session_ready = True
        await self._flush_inbound()
        if self._initial_greeting and not session.greeting_sent:
            session.greeting_sent = True
            await self._realtime.send(response_create(instructions=self._initial_greeting, output_modalities=["audio"]))
            session.response_in_flight = True

    async def _on_assistant_audio(self, event: dict[str, Any]) -> None:
        session = self.session
        item_id, delta = audio_delta_fields(event)
        if isinstance(item_id, str) and (session.assistant_item is None or session.assistant_item.item_id != item_id):
            session.assistant_item = AssistantItem(item_id=item_id, started_at_ms=self._clock())

        if isinstance(delta, str) and delta:
            if session.stream_sid is not None:
                await self._telephony.send(media_frame(session.stream_sid, delta))
            else:
                if len(session.pending_outbound) == session.pending_outbound.maxlen:
                    LOGGER.debug("Call %s: outbound audio queue full; dropping oldest delta", self.call_id)
                session.pending_outbound.append(delta)
        session.response_in_flight = True

    def _end_response(self) -> None:
        self.session.response_in_flight = False
        if self.session.assistant_item is not None:
            self.session.assistant_item.started_at_ms = None

    async def _barge_in(self) -> None:
        session = self.session
        steps = (
            ("clear playback", self._clear_playback),
            ("cancel response", self._cancel_response),
            ("truncate assistant item", self._truncate_assistant_item),
        )
        for label, step in steps:
            try:
                await step()
            except Exception:
                LOGGER.exception("Call %s: barge-in step failed: %s", self.call_id, label)
        session.response_in_flight = False

    async def _clear_playback(self) -> None:
        if self.session.stream_sid is None:
            return
        await self._telephony.send(clear_frame(self.session.stream_sid))

    async def _cancel_response(self) -> None:
        if not self.session.response_in_flight:
            return
        await self._realtime.send({"type": "response.cancel"})

    async def _truncate_assistant_item(self) -> None:
        item = self.session.assistant_item
        if item is None or item.started_at_ms is None:
            return
        elapsed_ms = max(0, self._clock() - item.started_at_ms)
        await self._realtime.send(
            {
                "type": "conversation.item.truncate",
                "item_id": item.item_id,
                "content_index": 0,
                "audio_end_ms": elapsed_ms,
            }
        )

    # Tool calls

    def _dispatch_tools(self, event: dict[str, Any]) -> None:
        call_context = {"callSid": self.session.call_sid, "streamSid": self.session.stream_sid}
        for call in extract_function_calls(event):
            if call.name not in KNOWN_TOOLS:
                LOGGER.debug("Call %s: ignoring unknown tool %s", self.call_id, call.name)
                self._log.event("vox", {"type": "tool.ignored", "name": call.name, "call_id": call.call_id})
                continue
            task = asyncio.create_task(self._run_tool(call, call_context))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, call: FunctionCall, call_context: dict[str, Any]) -> None:
        try:
            output = await self._tools.run(call, call_context)
        except Exception as exc:
            LOGGER.exception("Call %s: tool %s failed", self.call_id, call.name)
            self._log.event("vox", {"type": "tool.error", "name": call.name, "call_id": call.call_id, "error": str(exc)})
            output = {"ok": False, "error": str(exc)}
        if output is not None:
            await self._inbox.put(ToolCompletion(call, output))

    async def _on_tool_completion(self, completion: ToolCompletion) -> None:
        self._log.event("vox", {"type": "tool.result", "name": completion.call.name, "call_id": completion.call.call_id})
        await self._realtime.send(function_call_output(completion.call.call_id, completion.output))
        await self._realtime.send(response_create())

    async def wait_for_tools(self) -> None:
        """Wait until every dispatched tool call has posted its completion."""

        while self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)

    async def drain_inbox(self) -> None:
        """Handle everything already queued in the inbox."""

        while not self._inbox.empty():
            await self.handle(self._inbox.get_nowait())

    # Teardown

    async def close(self, reason: str = "closed") -> None:
        """Tear the call down; safe to call more than once."""

        session = self.session
        if session.closed:
            return
        session.closed = True
        LOGGER.info("Call %s: closing (%s)", self.call_id, reason)
        self._log.event("vox", {"type": "session.closed", "reason": reason})

        current = asyncio.current_task()
        pumps = [task for task in self._pumps if task is not current]
        for task in pumps:
            task.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

        closers: list[tuple[str, Callable[[], Any]]] = [("realtime", self._realtime.close)]
        if self._agent is not None:
            closers.append(("agent", self._agent.close))
        closers.append(("telephony", self._telephony.close))
        for label, closer in closers:
            try:
                await closer()
            except Exception:
                LOGGER.debug("Call %s: error closing %s", self.call_id, label, exc_info=True)

        # Outstanding agent queries resolve with AgentClosed once the agent is closed.
        if self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)
        self._log.close()
