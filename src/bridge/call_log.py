"""Per-call artifacts: JSON-lines event log, call metadata and final report."""

from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

LOGGER = logging.getLogger(__name__)

EventSource = Literal["twilio", "openai", "vox"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class CallLog:
    """Append-only event log owned by a single call.

    Layout: ``<base_dir>/<call_id>/events.jsonl`` plus ``meta.json`` and
    ``report.json`` written on demand.
    """

    def __init__(self, base_dir: Path, call_id: str) -> None:
        self.call_id = call_id
        self.dir = Path(base_dir) / call_id
        self.dir.mkdir(parents=True, exist_ok=True)
        self._events = (self.dir / "events.jsonl").open("a", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._events.closed

    def event(self, source: EventSource, payload: Any) -> None:
        if self._events.closed:
            return
        record = {"t": _now_iso(), "source": source, "payload": payload}
        # Buffered; flushed on close.
        self._events.write(json.dumps(record, default=str) + "\n")

    def write_meta(self, **fields: Any) -> Path:
        path = self.dir / "meta.json"
        path.write_text(json.dumps({"startedAt": _now_iso(), **fields}, indent=2), encoding="utf-8")
        return path

    def write_report(self, args: Any) -> Path:
        path = self.dir / "report.json"
        path.write_text(json.dumps({"t": _now_iso(), "args": args}, indent=2, default=str), encoding="utf-8")
        return path

    def close(self) -> None:
        if not self._events.closed:
            self._events.close()
