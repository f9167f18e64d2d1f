"""Command line entry point: ``vox serve``, ``vox dial`` and ``vox simulate``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from bridge.errors import BridgeError
from config.settings import Settings, load_settings

LOGGER = logging.getLogger("vox")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vox", description="Phone calling bridge: Twilio <-> OpenAI Realtime")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the Vox bridge server")
    serve.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve.add_argument("--port", type=int, default=3000, help="Port to bind")

    dial = sub.add_parser("dial", help="Place an outbound call via Twilio and connect it to /twiml")
    dial.add_argument("to", help="Destination phone number in E.164, e.g. +14155550123")
    dial.add_argument("--from", dest="from_", required=True, help="Caller ID / Twilio number in E.164")
    dial.add_argument("--twiml-url", default=None, help="Override TwiML URL (defaults to VOX_PUBLIC_BASE_URL + /twiml)")

    simulate = sub.add_parser("simulate", help="Run a local (no-Twilio) simulation via stdin/stdout")
    simulate.add_argument("--no-play", dest="play", action="store_false", help="Do not play assistant audio")
    simulate.add_argument("--out", default="", help="Directory to write wav files (defaults to VOX_LOG_DIR)")
    return parser


def serve(settings: Settings, *, host: str, port: int) -> None:
    import uvicorn

    from main import create_app

    if port <= 0:
        raise BridgeError(f"Invalid --port: {port}")
    LOGGER.info("Vox listening on http://%s:%s", host, port)
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


def dial(settings: Settings, *, to: str, from_: str, twiml_url: str | None) -> dict[str, str]:
    from integrations.twilio_client import build_twilio_client, dial_call, twiml_url_for

    url = twiml_url_for(settings, twiml_url)
    client = build_twilio_client(settings)
    return dial_call(client, to=to, from_=from_, url=url)


async def simulate(settings: Settings, *, out_dir: Path, play_audio: bool) -> None:
    from bridge.call_log import CallLog, new_call_id
    from bridge.simulate import SimulationSession
    from integrations.agent_client import open_agent_client
    from integrations.openai_realtime import RealtimeConnection

    call_log = CallLog(out_dir, new_call_id("simulate"))
    agent = None
    try:
        agent = await open_agent_client(settings)
        realtime = await RealtimeConnection.connect(
            api_key=settings.openai_api_key or "",
            model=settings.openai_realtime_model,
            url=settings.openai_realtime_url,
        )
    except BaseException:
        if agent is not None:
            await agent.close()
        call_log.close()
        raise

    LOGGER.info("Simulation %s writing to %s", call_log.call_id, call_log.dir)
    session = SimulationSession(
        realtime=realtime,
        agent=agent,
        call_log=call_log,
        settings=settings,
        play_audio=play_audio,
    )
    await session.run()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

        if args.command == "serve":
            serve(settings, host=args.host, port=args.port)
        elif args.command == "dial":
            result = dial(settings, to=args.to, from_=args.from_, twiml_url=args.twiml_url)
            sys.stdout.write(json.dumps(result, indent=2) + "\n")
        elif args.command == "simulate":
            out_dir = Path(args.out) if args.out else settings.log_dir
            asyncio.run(simulate(settings, out_dir=out_dir, play_audio=args.play))
    except BridgeError as exc:
        sys.stderr.write(f"vox: {exc}\n")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
