"""OpenAI Realtime API connection over a raw WebSocket."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from bridge.errors import ProtocolParseError, TransportError
from config.settings import DEFAULT_REALTIME_URL

LOGGER = logging.getLogger(__name__)


class RealtimeConnection:
    """Duplex JSON event stream to a Realtime session.

    The bridge treats the connection as opaque: it sends client events and
    iterates decoded server events.
    """

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._closed = False

    @classmethod
    async def connect(
        cls,
        *,
        api_key: str,
        model: str,
        url: str = DEFAULT_REALTIME_URL,
    ) -> RealtimeConnection:
        ws_url = f"{url}?{urlencode({'model': model})}"
        LOGGER.info("Connecting to OpenAI Realtime: %s", ws_url)
        try:
            ws = await websockets.connect(
                ws_url,
                additional_headers={"Authorization": f"Bearer {api_key}"},
                max_size=None,
                ping_interval=20,
                ping_timeout=20,
            )
        except (OSError, websockets.InvalidHandshake, websockets.InvalidURI) as exc:
            raise TransportError(f"OpenAI Realtime connection failed: {exc}") from exc
        return cls(ws)

    async def send(self, event: dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as exc:
            raise TransportError(f"OpenAI Realtime connection closed: {exc}") from exc

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield server events until the socket closes.

        Ends quietly on a normal close; raises TransportError otherwise.
        """

        while True:
            try:
                message = await self._ws.recv()
            except ConnectionClosedOK:
                return
            except ConnectionClosed as exc:
                if self._closed:
                    return
                raise TransportError(f"OpenAI Realtime connection lost: {exc}") from exc

            try:
                event = decode_event(message)
            except ProtocolParseError as exc:
                LOGGER.debug("Discarding realtime message: %s", exc)
                continue
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()


def decode_event(message: str | bytes) -> dict[str, Any]:
    try:
        event = json.loads(message)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolParseError("realtime message is not JSON") from exc
    if not isinstance(event, dict):
        raise ProtocolParseError("realtime message is not a JSON object")
    return event
