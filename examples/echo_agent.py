"""Minimal JSON-lines agent for ``VOX_AGENT_CMD``.

Run with ``VOX_AGENT_CMD="python examples/echo_agent.py"``. Each query line
``{"id": ..., "type": "query", "args": ...}`` is answered with one reply line
``{"id": ..., "result": ...}`` echoing the arguments back.
"""

from __future__ import annotations

import json
import sys
from typing import Any


def extract_question(args: Any) -> str | None:
    if not isinstance(args, dict):
        return None
    question = args.get("question")
    if question is None and isinstance(args.get("args"), dict):
        question = args["args"].get("question")
    return question if isinstance(question, str) else None


def answer(message: dict[str, Any]) -> dict[str, Any]:
    args = message.get("args")
    question = extract_question(args)
    if question:
        text = f'Echo agent says: you asked "{question}".'
    else:
        text = "Echo agent says: I received your request."
    return {"id": message["id"], "result": {"ok": True, "echo": args, "answer": text}}


def main() -> None:
    for line in sys.stdin:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(message, dict) or message.get("type") != "query" or not isinstance(message.get("id"), str):
            continue
        sys.stdout.write(json.dumps(answer(message)) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    main()
