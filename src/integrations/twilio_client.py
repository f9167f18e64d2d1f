from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from bridge.errors import ConfigError

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str


def get_twilio_config(settings: Settings) -> TwilioConfig:
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ConfigError("Missing TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
    )


def build_twilio_client(settings: Settings):
    from twilio.rest import Client

    cfg = get_twilio_config(settings)
    return Client(cfg.account_sid, cfg.auth_token)


def twiml_url_for(settings: Settings, override: str | None = None) -> str:
    """Resolve the TwiML URL Twilio fetches when the dialed party answers."""

    if override:
        return override
    if not settings.public_base_url:
        raise ConfigError(
            "Missing TwiML URL. Set VOX_PUBLIC_BASE_URL (public https base URL for your running "
            "`vox serve`) or pass --twiml-url."
        )
    return f"{settings.public_base_url.rstrip('/')}/twiml"


def dial_call(twilio_client: Any, *, to: str, from_: str, url: str) -> dict[str, str]:
    """Place an outbound call whose media is streamed to the bridge."""

    call = twilio_client.calls.create(to=to, from_=from_, url=url, method="GET")
    return {
        "sid": str(call.sid),
        "status": str(call.status),
        "to": str(call.to),
        "from": str(call.from_),
    }
