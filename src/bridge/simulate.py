"""Local text-driven simulation of a call without Twilio.

User turns are typed on stdin and sent as text items; assistant audio is
collected per response and written to a WAV file in the session directory.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import shutil
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

from bridge.call_log import CallLog
from bridge.orchestrator import AUDIO_DELTA_EVENTS, PeerClosed, RealtimeEvent, RealtimePeer, ToolCompletion, audio_delta_fields
from bridge.session_config import SIMULATION_PROMPT, build_session_update, response_create
from bridge.tools import KNOWN_TOOLS, FunctionCall, ToolDispatcher, extract_function_calls, function_call_output
from prompts.loader import load_prompt
from telephony.wav import ulaw_to_wav_bytes

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings
    from integrations.agent_client import AgentClient

LOGGER = logging.getLogger(__name__)

OUTPUT_MODALITIES = ["audio", "text"]
TEXT_DELTA_EVENTS = frozenset({"response.output_text.delta", "response.text.delta"})
TEXT_DONE_EVENTS = frozenset({"response.output_text.done", "response.text.done"})


def _player_command() -> str | None:
    if sys.platform == "darwin":
        return "afplay"
    if sys.platform.startswith("linux"):
        return "aplay"
    return None


class SimulationSession:
    def __init__(
        self,
        *,
        realtime: RealtimePeer,
        agent: AgentClient | None,
        call_log: CallLog,
        settings: Settings,
        play_audio: bool = False,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        read_line: Callable[[], str] | None = None,
    ) -> None:
        self._realtime = realtime
        self._agent = agent
        self._log = call_log
        self._settings = settings
        self._play_audio = play_audio
        self._stdout = stdout or sys.stdout
        self._stderr = stderr or sys.stderr
        self._read_line = read_line or sys.stdin.readline
        self._tools = ToolDispatcher(agent=agent, call_log=call_log)
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._tool_tasks: set[asyncio.Task] = set()
        self._pumps: list[asyncio.Task] = []
        self.session_ready = False
        self.response_in_flight = False
        self.closed = False
        self._audio = bytearray()
        self._assistant_text = ""
        self.written_wavs: list[Path] = []

    async def run(self) -> None:
        self._stdout.write("vox simulate: type messages and press enter (Ctrl+C to quit)\n")
        self._start_stdin_reader()
        self._pumps = [asyncio.create_task(self._pump_realtime())]
        try:
            while not self.closed:
                await self.handle(await self._inbox.get())
        finally:
            await self.close()

    def _start_stdin_reader(self) -> None:
        # Daemon thread: a blocking readline must not hold up interpreter exit.
        loop = asyncio.get_running_loop()

        def reader() -> None:
            try:
                while True:
                    line = self._read_line()
                    if not line:
                        break
                    loop.call_soon_threadsafe(self._inbox.put_nowait, line)
                loop.call_soon_threadsafe(self._inbox.put_nowait, PeerClosed("stdin", "stdin closed"))
            except RuntimeError:
                # Event loop already closed.
                return

        threading.Thread(target=reader, name="vox-stdin", daemon=True).start()

    async def _pump_realtime(self) -> None:
        reason = "realtime connection closed"
        try:
            async for event in self._realtime.events():
                await self._inbox.put(RealtimeEvent(event))
        except Exception as exc:
            reason = f"realtime connection failed: {exc}"
        await self._inbox.put(PeerClosed("openai", reason))

    async def handle(self, message: Any) -> None:
        if self.closed:
            return
        if isinstance(message, str):
            await self.on_user_line(message)
        elif isinstance(message, RealtimeEvent):
            await self._on_realtime(message.event)
        elif isinstance(message, ToolCompletion):
            await self._realtime.send(function_call_output(message.call.call_id, message.output))
            await self._realtime.send(response_create(output_modalities=OUTPUT_MODALITIES))
            self.response_in_flight = True
        elif isinstance(message, PeerClosed):
            await self.close()

    async def on_user_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        if not self.session_ready:
            self._stderr.write("vox simulate: session not ready yet\n")
            return
        if self.response_in_flight:
            self._stderr.write("vox simulate: response in flight; wait for completion\n")
            return

        self._log.event("vox", {"type": "user.text", "text": text})
        await self._realtime.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )
        await self._realtime.send(response_create(output_modalities=OUTPUT_MODALITIES))
        self.response_in_flight = True

    async def _on_realtime(self, event: dict[str, Any]) -> None:
        self._log.event("openai", event)
        event_type = event.get("type")

        if event_type == "session.created":
            await self._realtime.send(
                build_session_update(
                    self._settings,
                    instructions=load_prompt(SIMULATION_PROMPT),
                    create_response=False,
                )
            )
        elif event_type == "session.updated":
            self.session_ready = True
            if self._settings.initial_greeting:
                await self._realtime.send(
                    response_create(instructions=self._settings.initial_greeting, output_modalities=OUTPUT_MODALITIES)
                )
                self.response_in_flight = True
        elif event_type in TEXT_DELTA_EVENTS:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                if not self._assistant_text:
                    self._stdout.write("assistant> ")
                self._stdout.write(delta)
                self._stdout.flush()
                self._assistant_text += delta
        elif event_type in TEXT_DONE_EVENTS:
            if self._assistant_text:
                self._stdout.write("\n")
            self._assistant_text = ""
        elif event_type in AUDIO_DELTA_EVENTS:
            _, delta = audio_delta_fields(event)
            if isinstance(delta, str) and delta:
                try:
                    self._audio.extend(base64.b64decode(delta))
                except binascii.Error:
                    LOGGER.debug("Discarding undecodable audio delta")
        elif event_type == "response.done":
            self.response_in_flight = False
            self._dispatch_tools(event)
            await self.flush_audio()
        elif event_type == "error":
            LOGGER.warning("Realtime error: %s", event.get("error"))

    def _dispatch_tools(self, event: dict[str, Any]) -> None:
        for call in extract_function_calls(event):
            if call.name not in KNOWN_TOOLS:
                LOGGER.debug("Ignoring unknown tool %s", call.name)
                continue
            task = asyncio.create_task(self._run_tool(call))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, call: FunctionCall) -> None:
        try:
            output = await self._tools.run(call)
        except Exception as exc:
            LOGGER.exception("Tool %s failed", call.name)
            output = {"ok": False, "error": str(exc)}
        if output is not None:
            await self._inbox.put(ToolCompletion(call, output))

    async def flush_audio(self) -> Path | None:
        """Write buffered assistant audio as an 8 kHz WAV and optionally play it."""

        if not self._audio:
            return None
        ulaw = bytes(self._audio)
        self._audio.clear()

        path = self._log.dir / f"assistant_{int(time.time() * 1000)}.wav"
        path.write_bytes(ulaw_to_wav_bytes(ulaw))
        self.written_wavs.append(path)
        self._log.event("vox", {"type": "audio.saved", "path": str(path)})

        if self._play_audio:
            task = asyncio.create_task(self._play(path))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)
        return path

    async def _play(self, path: Path) -> None:
        player = _player_command()
        if player is None or shutil.which(player) is None:
            self._stderr.write(f"vox simulate: audio playback not supported on platform {sys.platform}\n")
            return
        try:
            process = await asyncio.create_subprocess_exec(
                player,
                str(path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await process.wait()
        except OSError:
            LOGGER.debug("Audio playback failed", exc_info=True)

    async def wait_for_tools(self) -> None:
        while self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)

    async def drain_inbox(self) -> None:
        while not self._inbox.empty():
            await self.handle(self._inbox.get_nowait())

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True

        current = asyncio.current_task()
        for task in self._pumps:
            if task is not current:
                task.cancel()

        try:
            await self._realtime.close()
        except Exception:
            LOGGER.debug("Error closing realtime connection", exc_info=True)
        if self._agent is not None:
            try:
                await self._agent.close()
            except Exception:
                LOGGER.debug("Error closing agent", exc_info=True)
        if self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)
        self._log.close()
