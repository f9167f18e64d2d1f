"""Exceptions shared by the bridge, its transports and the CLI.

These exceptions are safe to import from configuration and API layers without
pulling in any transport dependencies.
"""

from __future__ import annotations


class BridgeError(Exception):
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConfigError(BridgeError):
    default_detail = "Invalid configuration."


class TransportError(BridgeError):
    default_detail = "Peer connection failed."


class AgentError(BridgeError):
    default_detail = "Agent query failed."


class AgentClosed(AgentError):
    default_detail = "Agent closed."


class ProtocolParseError(BridgeError):
    default_detail = "Malformed protocol message."
