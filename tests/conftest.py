from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

ECHO_AGENT = REPO_ROOT / "examples" / "echo_agent.py"

_CLOSED = object()


class FakeTelephony:
    """In-memory stand-in for the Twilio media socket."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue | None = None

    def _queue(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    def feed(self, text: str) -> None:
        self._queue().put_nowait(text)

    def hang_up(self) -> None:
        self._queue().put_nowait(_CLOSED)

    async def send(self, frame: dict[str, Any]) -> None:
        self.sent.append(frame)

    async def messages(self) -> AsyncIterator[str]:
        queue = self._queue()
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeRealtime:
    """Records client events and replays scripted server events."""

    def __init__(self, events: list[dict[str, Any]] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._scripted = list(events or [])
        self._incoming: asyncio.Queue | None = None

    def _queue(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
            for event in self._scripted:
                self._incoming.put_nowait(event)
        return self._incoming

    def emit(self, event: dict[str, Any]) -> None:
        self._queue().put_nowait(event)

    def finish(self) -> None:
        self._queue().put_nowait(_CLOSED)

    def sent_types(self) -> list[str]:
        return [event["type"] for event in self.sent]

    async def send(self, event: dict[str, Any]) -> None:
        self.sent.append(event)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        queue = self._queue()
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    from config.settings import Settings

    for name in ("VOX_AGENT_URL", "VOX_AGENT_CMD", "VOX_PUBLIC_BASE_URL", "VOX_INITIAL_GREETING", "OPENAI_REALTIME_VOICE"):
        monkeypatch.delenv(name, raising=False)
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="sk-test",
        VOX_LOG_DIR=str(tmp_path / "logs"),
    )


@pytest.fixture()
def call_log(tmp_path: Path):
    from bridge.call_log import CallLog

    log = CallLog(tmp_path / "logs", "call_test")
    yield log
    log.close()
