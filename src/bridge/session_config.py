"""Realtime session configuration and response directives."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bridge.tools import TOOL_DEFINITIONS
from prompts.loader import load_prompt

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings

PHONE_PROMPT = "phone_agent.txt"
SIMULATION_PROMPT = "simulation.txt"


def build_session_update(
    settings: Settings,
    *,
    instructions: str | None = None,
    create_response: bool = True,
    interrupt_response: bool = True,
) -> dict[str, Any]:
    """Build the ``session.update`` event sent after ``session.created``."""

    audio_input: dict[str, Any] = {
        "format": {"type": settings.openai_audio_format},
        "turn_detection": {
            "type": "server_vad",
            "create_response": create_response,
            "interrupt_response": interrupt_response,
        },
    }
    if settings.openai_transcription_model:
        audio_input["transcription"] = {"model": settings.openai_transcription_model}

    audio_output: dict[str, Any] = {"format": {"type": settings.openai_audio_format}}
    if settings.openai_realtime_voice:
        audio_output["voice"] = settings.openai_realtime_voice

    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "instructions": instructions or load_prompt(PHONE_PROMPT),
            "audio": {"input": audio_input, "output": audio_output},
            "tools": TOOL_DEFINITIONS,
            "tool_choice": "auto",
        },
    }


def response_create(
    *,
    instructions: str | None = None,
    output_modalities: list[str] | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {}
    if instructions:
        response["instructions"] = instructions
    if output_modalities:
        response["output_modalities"] = output_modalities
    event: dict[str, Any] = {"type": "response.create"}
    if response:
        event["response"] = response
    return event
