"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. Tests override
these to swap in fake realtime peers and agents.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from config.settings import Settings, get_settings
from integrations.agent_client import AgentClient, open_agent_client
from integrations.openai_realtime import RealtimeConnection

if TYPE_CHECKING:  # pragma: no cover
    from bridge.orchestrator import RealtimePeer

RealtimeConnector = Callable[[Settings], Awaitable["RealtimePeer"]]
AgentOpener = Callable[[Settings], Awaitable[AgentClient | None]]


async def connect_realtime(settings: Settings) -> RealtimeConnection:
    return await RealtimeConnection.connect(
        api_key=settings.openai_api_key or "",
        model=settings.openai_realtime_model,
        url=settings.openai_realtime_url,
    )


def get_app_settings() -> Settings:
    return get_settings()


def get_realtime_connector() -> RealtimeConnector:
    return connect_realtime


def get_agent_opener() -> AgentOpener:
    return open_agent_client
