from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from bridge.orchestrator import AUDIO_QUEUE_CAPACITY, RealtimeEvent, SessionOrchestrator, TelephonyFrame
from integrations.agent_client import HttpAgentClient

from conftest import FakeClock, FakeRealtime, FakeTelephony

SESSION_UPDATE = {"type": "session.update", "session": {"type": "realtime"}}


def make_orchestrator(call_log, *, agent=None, greeting=None, clock=None, realtime=None):
    telephony = FakeTelephony()
    realtime = realtime or FakeRealtime()
    orchestrator = SessionOrchestrator(
        telephony=telephony,
        realtime=realtime,
        agent=agent,
        call_log=call_log,
        session_update=SESSION_UPDATE,
        initial_greeting=greeting,
        clock=clock or FakeClock(),
    )
    return orchestrator, telephony, realtime


def start(stream_sid: str = "MZ1", call_sid: str = "CA1") -> TelephonyFrame:
    frame = {
        "event": "start",
        "streamSid": stream_sid,
        "start": {"streamSid": stream_sid, "callSid": call_sid, "tracks": ["inbound"]},
    }
    return TelephonyFrame(json.dumps(frame))


def media(payload: str, track: str = "inbound") -> TelephonyFrame:
    return TelephonyFrame(json.dumps({"event": "media", "streamSid": "MZ1", "media": {"payload": payload, "track": track}}))


def ai(event_type: str, **fields: Any) -> RealtimeEvent:
    return RealtimeEvent({"type": event_type, **fields})


def appended_audio(realtime: FakeRealtime) -> list[str]:
    return [event["audio"] for event in realtime.sent if event["type"] == "input_audio_buffer.append"]


def media_payloads(telephony: FakeTelephony) -> list[str]:
    return [frame["media"]["payload"] for frame in telephony.sent if frame["event"] == "media"]


def test_inbound_audio_waits_for_session_ready_then_flushes_in_order(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log)
        await orchestrator.handle(start())
        await orchestrator.handle(media("a"))
        await orchestrator.handle(media("b"))
        assert appended_audio(realtime) == []

        await orchestrator.handle(ai("session.created"))
        assert realtime.sent == [SESSION_UPDATE]

        await orchestrator.handle(ai("session.updated"))
        await orchestrator.handle(media("c"))
        return realtime

    realtime = asyncio.run(scenario())
    assert appended_audio(realtime) == ["a", "b", "c"]


def test_non_inbound_tracks_and_empty_payloads_are_ignored(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log)
        await orchestrator.handle(ai("session.updated"))
        await orchestrator.handle(media("x", track="outbound"))
        await orchestrator.handle(media(""))
        await orchestrator.handle(media("y"))
        return realtime

    assert appended_audio(asyncio.run(scenario())) == ["y"]


def test_inbound_queue_drops_oldest_when_full(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log)
        for n in range(AUDIO_QUEUE_CAPACITY + 5):
            await orchestrator.handle(media(str(n)))
        await orchestrator.handle(ai("session.updated"))
        return realtime

    appended = appended_audio(asyncio.run(scenario()))
    assert len(appended) == AUDIO_QUEUE_CAPACITY
    assert appended[0] == "5"
    assert appended[-1] == str(AUDIO_QUEUE_CAPACITY + 4)


def test_outbound_audio_waits_for_stream_sid_then_flushes_before_new_deltas(call_log) -> None:
    async def scenario():
        orchestrator, telephony, _ = make_orchestrator(call_log)
        await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta="x"))
        await orchestrator.handle(ai("response.audio.delta", item_id="item1", delta="y"))
        assert telephony.sent == []

        await orchestrator.handle(start("MZ9"))
        await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta="z"))
        return telephony, orchestrator

    telephony, orchestrator = asyncio.run(scenario())
    assert media_payloads(telephony) == ["x", "y", "z"]
    assert all(frame["streamSid"] == "MZ9" for frame in telephony.sent)
    assert orchestrator.session.call_sid == "CA1"
    assert orchestrator.session.response_in_flight is True


def test_start_writes_call_metadata(call_log) -> None:
    async def scenario():
        orchestrator, _, _ = make_orchestrator(call_log)
        await orchestrator.handle(start("MZ2", "CA2"))

    asyncio.run(scenario())
    meta = json.loads((call_log.dir / "meta.json").read_text(encoding="utf-8"))
    assert meta["callSid"] == "CA2"
    assert meta["streamSid"] == "MZ2"


def test_barge_in_truncates_by_elapsed_playback_time(call_log) -> None:
    clock = FakeClock(10_000)

    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log, clock=clock)
        await orchestrator.handle(start())
        await orchestrator.handle(ai("session.updated"))
        await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta="x"))
        clock.advance(750)
        await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta="y"))
        await orchestrator.handle(ai("input_audio_buffer.speech_started"))
        return orchestrator, telephony, realtime

    orchestrator, telephony, realtime = asyncio.run(scenario())

    assert telephony.sent[-1] == {"event": "clear", "streamSid": "MZ1"}
    assert realtime.sent[-2] == {"type": "response.cancel"}
    assert realtime.sent[-1] == {
        "type": "conversation.item.truncate",
        "item_id": "item1",
        "content_index": 0,
        "audio_end_ms": 750,
    }
    assert orchestrator.session.response_in_flight is False


def test_barge_in_after_response_done_does_not_truncate(call_log) -> None:
    clock = FakeClock()

    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log, clock=clock)
        await orchestrator.handle(start())
        await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta="x"))
        await orchestrator.handle(ai("response.output_audio.done", item_id="item1"))
        await orchestrator.handle(ai("response.done", response={"output": []}))
        clock.advance(500)
        await orchestrator.handle(ai("input_audio_buffer.speech_started"))
        return orchestrator, telephony, realtime

    orchestrator, telephony, realtime = asyncio.run(scenario())

    assert telephony.sent[-1]["event"] == "clear"
    assert "response.cancel" not in realtime.sent_types()
    assert "conversation.item.truncate" not in realtime.sent_types()
    assert orchestrator.session.assistant_item.item_id == "item1"


def test_barge_in_without_assistant_item(call_log) -> None:
    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log)
        await orchestrator.handle(ai("input_audio_buffer.speech_started"))
        return telephony, realtime

    telephony, realtime = asyncio.run(scenario())
    assert telephony.sent == []
    assert realtime.sent == []


def test_greeting_is_sent_once(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log, greeting="Say hello to the caller.")
        await orchestrator.handle(ai("session.updated"))
        await orchestrator.handle(ai("session.updated"))
        return orchestrator, realtime

    orchestrator, realtime = asyncio.run(scenario())
    assert realtime.sent == [
        {"type": "response.create", "response": {"instructions": "Say hello to the caller.", "output_modalities": ["audio"]}}
    ]
    assert orchestrator.session.response_in_flight is True


def test_query_agent_without_agent_still_requests_response(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log)
        done = ai(
            "response.done",
            response={
                "output": [
                    {"type": "function_call", "name": "query_agent", "call_id": "call_1", "arguments": '{"question": "hi"}'}
                ]
            },
        )
        await orchestrator.handle(done)
        await orchestrator.wait_for_tools()
        await orchestrator.drain_inbox()
        return realtime

    realtime = asyncio.run(scenario())
    output_event, follow_up = realtime.sent[-2:]
    assert output_event["item"]["call_id"] == "call_1"
    assert json.loads(output_event["item"]["output"]) == {"error": "No agent configured"}
    assert follow_up == {"type": "response.create"}


def test_unknown_tool_is_ignored(call_log) -> None:
    async def scenario():
        orchestrator, _, realtime = make_orchestrator(call_log)
        done = ai(
            "response.done",
            response={"output": [{"type": "function_call", "name": "transfer_call", "call_id": "call_1", "arguments": "{}"}]},
        )
        await orchestrator.handle(done)
        await orchestrator.wait_for_tools()
        await orchestrator.drain_inbox()
        return realtime

    assert asyncio.run(scenario()).sent == []


def test_malformed_telephony_frames_are_discarded(call_log) -> None:
    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log)
        await orchestrator.handle(TelephonyFrame("not json"))
        await orchestrator.handle(TelephonyFrame(json.dumps({"streamSid": "MZ1"})))
        await orchestrator.handle(TelephonyFrame(json.dumps({"event": "media", "media": "oops"})))
        await orchestrator.handle(ai("session.updated"))
        await orchestrator.handle(media("ok"))
        return orchestrator, telephony, realtime

    orchestrator, telephony, realtime = asyncio.run(scenario())
    assert orchestrator.closed is False
    assert telephony.sent == []
    assert appended_audio(realtime) == ["ok"]


def test_close_is_idempotent_and_fails_outstanding_agent_query(call_log) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.Event().wait()
        return httpx.Response(200, json={})

    async def scenario():
        agent = HttpAgentClient("http://agent.test/query", transport=httpx.MockTransport(handler))
        orchestrator, telephony, realtime = make_orchestrator(call_log, agent=agent)
        done = ai(
            "response.done",
            response={
                "output": [
                    {"type": "function_call", "name": "query_agent", "call_id": "call_1", "arguments": '{"question": "hi"}'}
                ]
            },
        )
        await orchestrator.handle(done)
        await asyncio.sleep(0.05)
        await orchestrator.close("test")
        await orchestrator.close("again")
        await orchestrator.drain_inbox()
        return orchestrator, telephony, realtime

    orchestrator, telephony, realtime = asyncio.run(scenario())

    assert orchestrator.closed
    assert telephony.closed
    assert realtime.closed
    assert call_log.closed
    assert "conversation.item.create" not in realtime.sent_types()

    records = [json.loads(line) for line in (call_log.dir / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    payloads = [record["payload"] for record in records]
    assert {"type": "tool.agent_error", "call_id": "call_1", "error": "Agent client closed"} in payloads
    assert sum(1 for payload in payloads if payload.get("type") == "session.closed") == 1


def test_run_relays_audio_until_twilio_stops(call_log) -> None:
    realtime = FakeRealtime(
        [
            {"type": "session.created"},
            {"type": "session.updated"},
            {"type": "response.output_audio.delta", "item_id": "item1", "delta": "AAAA"},
        ]
    )

    async def scenario():
        orchestrator, telephony, _ = make_orchestrator(call_log, realtime=realtime)
        telephony.feed(start().text)
        telephony.feed(media("BBBB").text)
        run = asyncio.create_task(orchestrator.run())

        for _ in range(200):
            if media_payloads(telephony) and appended_audio(realtime):
                break
            await asyncio.sleep(0.01)

        telephony.feed(json.dumps({"event": "stop", "streamSid": "MZ1"}))
        await asyncio.wait_for(run, timeout=5)
        return orchestrator, telephony

    orchestrator, telephony = asyncio.run(scenario())

    assert orchestrator.closed
    assert telephony.closed
    assert realtime.closed
    assert media_payloads(telephony) == ["AAAA"]
    assert appended_audio(realtime) == ["BBBB"]


def test_run_ends_when_realtime_peer_goes_away(call_log) -> None:
    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log)
        realtime.finish()
        await asyncio.wait_for(orchestrator.run(), timeout=5)
        return telephony

    assert asyncio.run(scenario()).closed


def test_outbound_queue_drops_oldest_when_full(call_log) -> None:
    async def scenario():
        orchestrator, telephony, _ = make_orchestrator(call_log)
        for n in range(AUDIO_QUEUE_CAPACITY + 3):
            await orchestrator.handle(ai("response.output_audio.delta", item_id="item1", delta=str(n)))
        assert telephony.sent == []
        await orchestrator.handle(start())
        return telephony

    forwarded = media_payloads(asyncio.run(scenario()))
    assert len(forwarded) == AUDIO_QUEUE_CAPACITY
    assert forwarded[0] == "3"
    assert forwarded[-1] == str(AUDIO_QUEUE_CAPACITY + 2)


def test_audio_delta_accepts_nested_payload_and_camel_case_item_id(call_log) -> None:
    clock = FakeClock(5_000)

    async def scenario():
        orchestrator, telephony, realtime = make_orchestrator(call_log, clock=clock)
        await orchestrator.handle(start())
        await orchestrator.handle(ai("response.output_audio.delta", itemId="item7", audio={"delta": "QQ"}))
        clock.advance(120)
        await orchestrator.handle(ai("input_audio_buffer.speech_started"))
        return telephony, realtime

    telephony, realtime = asyncio.run(scenario())
    assert media_payloads(telephony) == ["QQ"]
    assert realtime.sent[-1]["item_id"] == "item7"
    assert realtime.sent[-1]["audio_end_ms"] == 120


def test_each_tool_call_in_a_batch_gets_one_output_and_one_follow_up(call_log) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["question"] == "fail":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"answer": "fine"})

    async def scenario():
        agent = HttpAgentClient("http://agent.test/query", transport=httpx.MockTransport(handler))
        orchestrator, _, realtime = make_orchestrator(call_log, agent=agent)
        done = ai(
            "response.done",
            response={
                "output": [
                    {"type": "function_call", "name": "query_agent", "call_id": "c1", "arguments": '{"question": "fail"}'},
                    {"type": "function_call", "name": "query_agent", "call_id": "c2", "arguments": '{"question": "ok"}'},
                    {"type": "function_call", "name": "save_call_report", "call_id": "c3", "arguments": "{not json"},
                ]
            },
        )
        await orchestrator.handle(done)
        await orchestrator.wait_for_tools()
        await orchestrator.drain_inbox()
        await orchestrator.close("done")
        return realtime

    realtime = asyncio.run(scenario())

    assert realtime.sent_types() == ["conversation.item.create", "response.create"] * 3
    outputs = {
        event["item"]["call_id"]: json.loads(event["item"]["output"])
        for event in realtime.sent
        if event["type"] == "conversation.item.create"
    }
    assert outputs["c1"] == {"ok": False, "error": "Agent HTTP 500: boom"}
    assert outputs["c2"] == {"ok": True, "result": {"answer": "fine"}}
    assert outputs["c3"] == {"ok": True, "path": str(call_log.dir / "report.json")}
    report = json.loads((call_log.dir / "report.json").read_text(encoding="utf-8"))
    assert report["args"] == {"raw": "{not json"}
