"""Twilio Voice integration.

This module provides:
- TwiML webhook that connects the call to the bridge's Media Streams socket.
- Media Streams WebSocket endpoint running one session orchestrator per call.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from api.dependencies import AgentOpener, RealtimeConnector, get_agent_opener, get_app_settings, get_realtime_connector
from bridge.call_log import CallLog, new_call_id
from bridge.errors import BridgeError, TransportError
from bridge.orchestrator import SessionOrchestrator
from bridge.session_config import build_session_update
from config.settings import Settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["twilio"])

STREAM_PATH = "/twilio"


def escape_xml(text: str) -> str:
    return escape(text, {"\"": "&quot;", "'": "&apos;"})


def to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def ws_url_from_public_base(public_base_url: str, path: str = STREAM_PATH) -> str:
    return to_ws_url(public_base_url.rstrip("/") + path)


def twiml_for_stream(ws_url: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{escape_xml(ws_url)}\" />"
        "</Connect>"
        "</Response>"
    )


@router.api_route("/twiml", methods=["GET", "POST"])
async def twiml(settings: Settings = Depends(get_app_settings)) -> Response:
    if not settings.public_base_url:
        return Response(
            content="Missing VOX_PUBLIC_BASE_URL (must be a public https URL Twilio can reach).",
            status_code=500,
            media_type="text/plain",
        )
    xml = twiml_for_stream(ws_url_from_public_base(settings.public_base_url))
    return Response(content=xml, media_type="text/xml")


class WebSocketTelephony:
    """Adapts a FastAPI WebSocket to the orchestrator's telephony socket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send(self, frame: dict[str, Any]) -> None:
        try:
            await self._ws.send_text(json.dumps(frame))
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise TransportError(f"Twilio socket closed: {exc}") from exc

    async def messages(self) -> AsyncIterator[str]:
        while True:
            message = await self._ws.receive()
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is None:
                LOGGER.debug("Discarding non-text Twilio frame")
                continue
            yield text

    async def close(self) -> None:
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        if self._ws.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close()
        except RuntimeError:
            LOGGER.debug("Twilio socket already closed", exc_info=True)


@router.websocket(STREAM_PATH)
async def twilio_media_stream(
    websocket: WebSocket,
    settings: Settings = Depends(get_app_settings),
    connect_realtime: RealtimeConnector = Depends(get_realtime_connector),
    open_agent: AgentOpener = Depends(get_agent_opener),
) -> None:
    await websocket.accept()

    call_log = CallLog(settings.log_dir, new_call_id())
    call_log.event("vox", {"type": "twilio.ws.connected"})
    LOGGER.info("Call %s: Twilio media stream accepted", call_log.call_id)

    agent = None
    try:
        agent = await open_agent(settings)
        realtime = await connect_realtime(settings)
    except BridgeError as exc:
        LOGGER.error("Call %s: could not start session: %s", call_log.call_id, exc)
        call_log.event("vox", {"type": "session.failed", "error": str(exc)})
        if agent is not None:
            await agent.close()
        call_log.close()
        await websocket.close(code=1011, reason=str(exc)[:120])
        return

    orchestrator = SessionOrchestrator(
        telephony=WebSocketTelephony(websocket),
        realtime=realtime,
        agent=agent,
        call_log=call_log,
        session_update=build_session_update(settings),
        initial_greeting=settings.initial_greeting,
    )
    await orchestrator.run()
