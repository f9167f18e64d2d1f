"""Twilio Media Streams wire format.

Inbound frames are JSON objects tagged by ``event`` (``connected``, ``start``,
``media``, ``stop``, ``mark``); outbound frames are ``media`` and ``clear``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bridge.errors import ProtocolParseError


class TwilioStart(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    stream_sid: str | None = Field(default=None, alias="streamSid")
    call_sid: str | None = Field(default=None, alias="callSid")
    account_sid: str | None = Field(default=None, alias="accountSid")
    custom_parameters: dict[str, Any] = Field(default_factory=dict, alias="customParameters")


class TwilioMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    payload: str | None = None
    track: str | None = None
    timestamp: str | None = None


class TwilioMessage(BaseModel):
    """One inbound Media Streams frame."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str
    stream_sid: str | None = Field(default=None, alias="streamSid")
    start: TwilioStart | None = None
    media: TwilioMedia | None = None

    def resolved_stream_sid(self) -> str | None:
        if self.start and self.start.stream_sid:
            return self.start.stream_sid
        return self.stream_sid

    def inbound_payload(self) -> str | None:
        """Return the caller audio payload, or None for other tracks/empty frames."""

        if self.media is None:
            return None
        if self.media.track and self.media.track != "inbound":
            return None
        if not self.media.payload:
            return None
        return self.media.payload

    def to_log(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_twilio_ws_message(text: str) -> TwilioMessage:
    try:
        return TwilioMessage.model_validate_json(text)
    except ValidationError as exc:
        raise ProtocolParseError(f"Malformed Twilio frame: {exc.error_count()} error(s)") from exc


def media_frame(stream_sid: str, payload: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def clear_frame(stream_sid: str) -> dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}
