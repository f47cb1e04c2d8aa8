from __future__ import annotations

import asyncio
import base64
import json

import numpy as np
from conftest import FakeAi, FakeInbound

from audio.resample import pcm24k_to_16k
from realtime.relay import RelayConfig, SessionRelay
from realtime.session import AiConnectionState
from realtime.turns import Idle, Interrupting
from tools.registry import Tool, ToolRegistry


async def _echo_weather(args: dict) -> str:
    return f"Sunny in {args['location']}"


async def _broken_tool(args: dict) -> str:
    raise RuntimeError("upstream exploded")


def _tools() -> ToolRegistry:
    params = {"type": "object", "properties": {"location": {"type": "string"}}}
    return ToolRegistry(
        [
            Tool("get_weather", "weather", params, _echo_weather),
            Tool("flaky", "always fails", params, _broken_tool),
        ]
    )


def _config(**overrides) -> RelayConfig:
    values = dict(
        instructions="Be brief.",
        session_update_delay_ms=0,
        greeting_delay_ms=0,
        send_initial_greeting=False,
    )
    values.update(overrides)
    return RelayConfig(**values)


def _run(coro):
    return asyncio.run(coro)


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class Call:
    """A relay wired to fake transports, running in the background."""

    def __init__(self, config: RelayConfig | None = None, clock=None, tools: ToolRegistry | None = None) -> None:
        self.inbound = FakeInbound()
        self.ai = FakeAi()
        self.connects = 0

        async def connect():
            self.connects += 1
            return self.ai

        kwargs = {"clock": clock} if clock is not None else {}
        self.relay = SessionRelay(self.inbound, connect, config=config or _config(), tools=tools or _tools(), **kwargs)
        self.task: asyncio.Task | None = None

    async def start(self) -> None:
        self.task = asyncio.create_task(self.relay.run())
        await _until(lambda: "session.update" in self.ai.sent_types())

    async def finish(self) -> None:
        assert self.task is not None
        await asyncio.wait_for(self.task, 2.0)


def _delta(pcm: bytes, item_id: str = "item_1") -> dict:
    return {
        "type": "response.audio.delta",
        "item_id": item_id,
        "delta": base64.b64encode(pcm).decode("ascii"),
    }


def _assistant_item(item_id: str = "item_1") -> dict:
    return {"type": "conversation.item.created", "item": {"id": item_id, "role": "assistant"}}


def test_end_to_end_audio_reaches_caller_as_two_resampled_frames():
    pcm24 = np.arange(960, dtype="<i2").tobytes()  # 2 x 20ms at 24kHz

    async def scenario():
        call = Call()
        await call.start()

        update = call.ai.sent[0]
        assert update["session"]["input_audio_format"] == "pcm16"
        assert update["session"]["output_audio_format"] == "pcm16"
        assert update["session"]["instructions"] == "Be brief."
        assert call.relay.session.ai_state is AiConnectionState.OPEN

        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(pcm24))
        await _until(lambda: len(call.inbound.frames) == 2)

        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    expected = pcm24k_to_16k(pcm24)
    assert [len(f) for f in call.inbound.frames] == [640, 640]
    assert b"".join(call.inbound.frames) == expected
    assert np.frombuffer(call.inbound.frames[0], dtype="<i2")[:2].tolist() == [0, 2]


def test_caller_audio_is_appended_and_notices_are_not():
    audio = b"\x01\x02" * 320

    async def scenario():
        call = Call()
        await call.start()
        call.inbound.feed(json.dumps({"event": "websocket:connected", "content-type": "audio/l16;rate=16000"}).encode())
        call.inbound.feed(audio)
        await _until(lambda: "input_audio_buffer.append" in call.ai.sent_types())
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    appends = [e for e in call.ai.sent if e["type"] == "input_audio_buffer.append"]
    assert len(appends) == 1
    assert base64.b64decode(appends[0]["audio"]) == audio


def test_json_without_event_field_is_treated_as_audio():
    payload = json.dumps([1, 2, 3]).encode()

    async def scenario():
        call = Call()
        await call.start()
        call.inbound.feed(payload)
        await _until(lambda: "input_audio_buffer.append" in call.ai.sent_types())
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    append = next(e for e in call.ai.sent if e["type"] == "input_audio_buffer.append")
    assert base64.b64decode(append["audio"]) == payload


def test_caller_audio_before_configuration_is_dropped():
    async def scenario():
        call = Call(_config(session_update_delay_ms=200))
        task = asyncio.create_task(call.relay.run())
        await _until(lambda: call.connects == 1)
        call.inbound.feed(b"\x00\x01" * 10)
        await asyncio.sleep(0.05)
        assert call.ai.sent == []
        assert call.relay.session.ai_state is AiConnectionState.CONNECTING
        call.inbound.hang_up()
        await asyncio.wait_for(task, 2.0)
        return call

    call = _run(scenario())
    assert "input_audio_buffer.append" not in call.ai.sent_types()


def test_barge_in_truncates_clears_and_mutes_until_confirmed():
    now = {"ms": 50_000.0}

    async def scenario():
        call = Call(_config(delivery_policy="buffered", flush_interval_ms=10_000), clock=lambda: now["ms"])
        await call.start()

        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(b"\x00\x00" * 960))
        await _until(lambda: call.relay.session.pending_outbound_bytes == 1280)

        now["ms"] += 2000
        call.ai.emit({"type": "input_audio_buffer.speech_started", "audio_start_ms": None})
        await _until(lambda: "conversation.item.truncate" in call.ai.sent_types())

        session = call.relay.session
        assert isinstance(session.turn_state, Interrupting)
        assert session.pending_outbound_bytes == 0
        assert session.current_response_item_id is None
        assert session.is_audio_passthrough_enabled is False
        assert call.inbound.controls == [{"action": "clear"}]

        call.ai.emit(_delta(b"\x00\x00" * 960))
        call.ai.emit({"type": "conversation.item.truncated", "item_id": "item_1"})
        await _until(lambda: isinstance(session.turn_state, Idle))
        assert session.pending_outbound_bytes == 0
        assert session.is_audio_passthrough_enabled is True

        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    truncate = next(e for e in call.ai.sent if e["type"] == "conversation.item.truncate")
    assert truncate == {
        "type": "conversation.item.truncate",
        "item_id": "item_1",
        "content_index": 0,
        "audio_end_ms": 2000,
    }
    assert call.inbound.frames == []


def test_speech_started_with_nothing_in_flight_sends_nothing():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit({"type": "input_audio_buffer.speech_started", "audio_start_ms": 100})
        call.ai.emit({"type": "session.updated", "session": {}})
        await asyncio.sleep(0.05)
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert call.ai.sent_types() == ["session.update"]
    assert call.inbound.controls == []


def test_buffered_policy_bursts_on_response_done():
    async def scenario():
        call = Call(_config(delivery_policy="buffered", flush_interval_ms=10_000))
        await call.start()
        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(b"\x00\x00" * 1200))  # 800 samples at 16kHz
        await _until(lambda: call.relay.session.pending_outbound_bytes == 1600)
        assert call.inbound.frames == []

        call.ai.emit({"type": "response.done"})
        await _until(lambda: len(call.inbound.frames) == 3)
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert [len(f) for f in call.inbound.frames] == [640, 640, 320]


def test_buffered_policy_drains_on_timer():
    async def scenario():
        call = Call(_config(delivery_policy="buffered", flush_interval_ms=20))
        await call.start()
        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(b"\x00\x00" * 1200))
        await _until(lambda: len(call.inbound.frames) == 2)
        assert call.relay.session.pending_outbound_bytes == 320
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert [len(f) for f in call.inbound.frames] == [640, 640]


def test_tool_call_output_is_sent_then_response_requested():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit(
            {
                "type": "response.function_call_arguments.done",
                "name": "get_weather",
                "call_id": "call_1",
                "arguments": json.dumps({"location": "Osaka"}),
            }
        )
        await _until(lambda: "response.create" in call.ai.sent_types())
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert call.ai.sent_types() == ["session.update", "conversation.item.create", "response.create"]
    item = call.ai.sent[1]["item"]
    assert item["type"] == "function_call_output"
    assert item["call_id"] == "call_1"
    assert json.loads(item["output"]) == "Sunny in Osaka"


def test_tool_failure_reaches_the_model_as_text():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit(
            {
                "type": "response.function_call_arguments.done",
                "name": "flaky",
                "call_id": "call_2",
                "arguments": "{}",
            }
        )
        await _until(lambda: "response.create" in call.ai.sent_types())
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    output = json.loads(call.ai.sent[1]["item"]["output"])
    assert "error" in output.lower()


def test_unknown_tool_is_ignored():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit({"type": "response.function_call_arguments.done", "name": "launch", "call_id": "c", "arguments": "{}"})
        await asyncio.sleep(0.05)
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert call.ai.sent_types() == ["session.update"]


def test_unparseable_ai_message_does_not_end_the_session():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit("{not json")
        call.ai.emit({"type": "error", "error": {"message": "bad request"}})
        call.ai.emit(_assistant_item())
        await _until(lambda: call.relay.session.current_response_item_id == "item_1")
        assert not call.relay.closed
        call.inbound.hang_up()
        await call.finish()
        return call

    _run(scenario())


def test_misaligned_delta_is_isolated():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(b"\x00\x00\x00"))
        call.ai.emit(_delta(b"\x00\x00" * 480))
        await _until(lambda: len(call.inbound.frames) == 1)
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert [len(f) for f in call.inbound.frames] == [640]


def test_initial_greeting_requested_after_configuration():
    async def scenario():
        call = Call(_config(send_initial_greeting=True, greeting_delay_ms=10))
        await call.start()
        await _until(lambda: "response.create" in call.ai.sent_types())
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    assert call.ai.sent_types() == ["session.update", "response.create"]


def test_caller_hang_up_closes_realtime_side_once():
    async def scenario():
        call = Call()
        await call.start()
        call.inbound.hang_up()
        await call.finish()
        await call.relay.close()
        return call

    call = _run(scenario())
    assert call.ai.closed is True
    assert call.ai.close_calls == 1
    assert call.inbound.closed is True
    assert call.relay.session.ai_state is AiConnectionState.CLOSED


def test_realtime_disconnect_closes_caller_side():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.disconnect()
        await call.finish()
        return call

    call = _run(scenario())
    assert call.inbound.closed is True
    assert call.relay.closed is True


def test_failed_realtime_connect_closes_caller():
    inbound = FakeInbound()

    async def connect():
        raise OSError("network unreachable")

    async def scenario():
        relay = SessionRelay(inbound, connect, config=_config(), tools=_tools())
        await asyncio.wait_for(relay.run(), 2.0)
        return relay

    relay = _run(scenario())
    assert relay.closed is True
    assert inbound.closed is True


def test_concurrent_sessions_do_not_share_state():
    async def scenario():
        first, second = Call(), Call()
        await first.start()
        await second.start()

        first.ai.emit(_assistant_item("item_a"))
        await _until(lambda: first.relay.session.current_response_item_id == "item_a")
        first.ai.emit({"type": "input_audio_buffer.speech_started"})
        await _until(lambda: "conversation.item.truncate" in first.ai.sent_types())

        second.ai.emit(_assistant_item("item_b"))
        second.ai.emit(_delta(b"\x00\x00" * 480, item_id="item_b"))
        await _until(lambda: len(second.inbound.frames) == 1)

        assert first.relay.session.is_audio_passthrough_enabled is False
        assert second.relay.session.is_audio_passthrough_enabled is True
        assert first.relay.sid != second.relay.sid

        first.inbound.hang_up()
        second.inbound.hang_up()
        await first.finish()
        await second.finish()

    _run(scenario())


def test_malformed_audio_start_still_interrupts():
    now = {"ms": 10_000.0}

    async def scenario():
        call = Call(clock=lambda: now["ms"])
        await call.start()
        call.ai.emit(_assistant_item())
        call.ai.emit(_delta(b"\x00\x00" * 480))
        await _until(lambda: len(call.inbound.frames) == 1)

        now["ms"] += 2500
        call.ai.emit({"type": "input_audio_buffer.speech_started", "audio_start_ms": "soon"})
        await _until(lambda: call.inbound.controls == [{"action": "clear"}])
        assert isinstance(call.relay.session.turn_state, Interrupting)
        call.inbound.hang_up()
        await call.finish()
        return call

    call = _run(scenario())
    truncate = next(e for e in call.ai.sent if e["type"] == "conversation.item.truncate")
    assert truncate["audio_end_ms"] == 2500


def test_realtime_error_during_interruption_unmutes_audio():
    async def scenario():
        call = Call()
        await call.start()
        call.ai.emit(_assistant_item())
        call.ai.emit({"type": "input_audio_buffer.speech_started"})
        await _until(lambda: "conversation.item.truncate" in call.ai.sent_types())
        assert call.relay.session.is_audio_passthrough_enabled is False

        call.ai.emit({"type": "error", "error": {"message": "item not found"}})
        await _until(lambda: call.relay.session.is_audio_passthrough_enabled)
        assert isinstance(call.relay.session.turn_state, Idle)

        call.ai.emit(_assistant_item("item_2"))
        call.ai.emit(_delta(b"\x00\x00" * 480, item_id="item_2"))
        await _until(lambda: len(call.inbound.frames) == 1)
        call.inbound.hang_up()
        await call.finish()

    _run(scenario())


def test_close_waits_for_cancelled_tool_calls():
    started: list[str] = []
    cancelled: list[str] = []

    async def slow_lookup(args: dict) -> str:
        started.append(args["location"])
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(args["location"])
            raise
        return "never"

    tools = ToolRegistry([Tool("get_weather", "weather", {"type": "object"}, slow_lookup)])

    async def scenario():
        call = Call(tools=tools)
        await call.start()
        call.ai.emit(
            {
                "type": "response.function_call_arguments.done",
                "name": "get_weather",
                "call_id": "call_9",
                "arguments": json.dumps({"location": "Sapporo"}),
            }
        )
        await _until(lambda: started == ["Sapporo"])
        call.inbound.hang_up()
        await call.finish()
        assert cancelled == ["Sapporo"]
        return call

    call = _run(scenario())
    assert call.ai.sent_types() == ["session.update"]
