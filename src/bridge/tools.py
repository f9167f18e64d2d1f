"""Tool calls issued by the Realtime model and their execution."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from bridge.errors import AgentError

if TYPE_CHECKING:  # pragma: no cover
    from bridge.call_log import CallLog
    from integrations.agent_client import AgentClient

LOGGER = logging.getLogger(__name__)

QUERY_AGENT: Final[str] = "query_agent"
SAVE_CALL_REPORT: Final[str] = "save_call_report"

TOOL_DEFINITIONS: Final[list[dict[str, Any]]] = [
    {
        "type": "function",
        "name": QUERY_AGENT,
        "description": "Query the local/internal agent for facts, actions, or structured answers.",
        "parameters": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "question": {"type": "string", "description": "What you want to ask the internal agent."},
                "context": {"type": "object", "description": "Optional context for the internal agent."},
            },
            "required": ["question"],
        },
    },
    {
        "type": "function",
        "name": SAVE_CALL_REPORT,
        "description": "Persist a final call report to disk.",
        "parameters": {
            "type": "object",
            "additionalProperties": True,
            "properties": {
                "report": {"type": "object", "description": "Arbitrary JSON report."},
            },
            "required": ["report"],
        },
    },
]

KNOWN_TOOLS: Final[frozenset[str]] = frozenset({QUERY_AGENT, SAVE_CALL_REPORT})


@dataclass(frozen=True, slots=True)
class FunctionCall:
    name: str
    call_id: str
    arguments: Any


def parse_arguments(raw: Any) -> Any:
    """Decode a JSON argument string; undecodable text is wrapped as ``{"raw": text}``."""

    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def extract_function_calls(event: dict[str, Any]) -> list[FunctionCall]:
    """Return the function calls carried by a ``response.done`` event."""

    response = event.get("response")
    outputs = response.get("output") if isinstance(response, dict) else None
    if not isinstance(outputs, list):
        return []

    calls: list[FunctionCall] = []
    for item in outputs:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            continue
        name = item.get("name")
        call_id = item.get("call_id")
        if not isinstance(name, str) or not isinstance(call_id, str):
            continue
        calls.append(FunctionCall(name=name, call_id=call_id, arguments=parse_arguments(item.get("arguments"))))
    return calls


def function_call_output(call_id: str, output: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(output),
        },
    }


class ToolDispatcher:
    """Executes recognized tool calls for one session.

    ``run`` returns the output to send back to the model, or None when the
    tool name is not recognized.
    """

    def __init__(self, *, agent: AgentClient | None, call_log: CallLog) -> None:
        self._agent = agent
        self._call_log = call_log

    async def run(self, call: FunctionCall, call_context: dict[str, Any] | None = None) -> dict[str, Any] | None:
        if call.name == QUERY_AGENT:
            return await self._query_agent(call, call_context)
        if call.name == SAVE_CALL_REPORT:
            return await self._save_call_report(call)
        LOGGER.debug("Ignoring unknown tool %s (call_id=%s)", call.name, call.call_id)
        return None

    async def _query_agent(self, call: FunctionCall, call_context: dict[str, Any] | None) -> dict[str, Any]:
        if self._agent is None:
            return {"error": "No agent configured"}

        args = call.arguments
        request = dict(args) if isinstance(args, dict) else {"args": args}
        if call_context is not None:
            request["call"] = call_context

        try:
            result = await self._agent.query(request)
        except AgentError as exc:
            LOGGER.warning("Agent query failed (call_id=%s): %s", call.call_id, exc)
            self._call_log.event("vox", {"type": "tool.agent_error", "call_id": call.call_id, "error": str(exc)})
            return {"ok": False, "error": str(exc)}

        return {"ok": True, "result": result}

    async def _save_call_report(self, call: FunctionCall) -> dict[str, Any]:
        path = await asyncio.to_thread(self._call_log.write_report, call.arguments)
        LOGGER.info("Saved call report to %s", path)
        return {"ok": True, "path": str(path)}
