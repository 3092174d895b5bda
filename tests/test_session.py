"""Session relay, queue-before-ready and teardown behaviour."""
import asyncio
import base64
import json

from fakes import MEDIA_AAA, START_CA1, STOP, FakeWebSocket, make_config, wait_for
from mediabridge.session import Session, SessionState

TRIPLE = ["input_audio_buffer.append", "input_audio_buffer.commit", "response.create"]


def _run(coro):
    return asyncio.run(coro)


async def _active_session(cfg=None, tel=None):
    tel = tel or FakeWebSocket()
    model = FakeWebSocket()
    session = Session(cfg or make_config(commit_min_ms=1), tel)
    session.on_model_open(model)
    return session, tel, model


async def _finish(session):
    session.close("test done")
    await session.wait_closed()


def _media(ulaw: bytes) -> str:
    return json.dumps({"event": "media", "media": {"payload": base64.b64encode(ulaw).decode()}})


# ─── Telephony → model ───────────────────────────────────────────

def test_threshold_turn_sends_one_commit_triple():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        for _ in range(5):
            session.handle_telephony_frame(MEDIA_AAA)
        session.scheduler.fire()
        await _finish(session)
        return session, model

    session, model = _run(scenario())
    assert model.sent_types == ["session.update"] + TRIPLE
    assert base64.b64decode(model.sent_json[1]["audio"]) == b"\x00" * 10
    assert session.stats.media_frames == 5
    assert session.call_id == "CA1"


def test_session_update_carries_format_and_instructions():
    async def scenario():
        cfg = make_config(system_instructions="Be brief.", session_extra={"tool_choice": "none"})
        session, tel, model = await _active_session(cfg)
        await _finish(session)
        return model

    model = _run(scenario())
    update = model.sent_json[0]
    assert update["type"] == "session.update"
    s = update["session"]
    assert s["input_audio_format"] == "g711_ulaw"
    assert s["output_audio_format"] == "g711_ulaw"
    assert s["instructions"] == "Be brief."
    assert s["tool_choice"] == "none"
    assert s["turn_detection"] is None


def test_greeting_follows_session_update():
    async def scenario():
        session, tel, model = await _active_session(make_config(greeting="Say hello."))
        await _finish(session)
        return model

    model = _run(scenario())
    assert model.sent_types == ["session.update", "response.create"]
    assert model.sent_json[1]["response"]["instructions"] == "Say hello."


def test_frames_before_model_ready_are_queued_then_drained_in_order():
    async def scenario():
        tel, model = FakeWebSocket(), FakeWebSocket()
        session = Session(make_config(commit_min_ms=1), tel)
        session.handle_telephony_frame(START_CA1)
        for _ in range(5):
            session.handle_telephony_frame(MEDIA_AAA)
        session.scheduler.fire()
        queued = session.pending_model_frames
        state_before = session.state
        session.on_model_open(model)
        state_after = session.state
        pending_after = session.pending_model_frames
        await _finish(session)
        return queued, state_before, state_after, pending_after, model

    queued, before, after, pending_after, model = _run(scenario())
    assert queued == 3
    assert before is SessionState.CONNECTING
    assert after is SessionState.ACTIVE
    assert pending_after == 0
    assert model.sent_types == ["session.update"] + TRIPLE


def test_media_before_start_is_buffered_and_not_echoed():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(MEDIA_AAA)
        session.handle_telephony_frame(MEDIA_AAA)
        buffered = session.scheduler.buffered_bytes
        session.handle_model_frame('{"type":"response.audio.delta","delta":"AAAA"}')
        session.handle_model_frame('{"type":"response.completed"}')
        await asyncio.sleep(0.01)
        sent_before_start = list(tel.sent)
        session.handle_telephony_frame(START_CA1)
        session.handle_model_frame('{"type":"response.audio.delta","delta":"AAAA"}')
        await _finish(session)
        return session, buffered, sent_before_start, tel

    session, buffered, sent_before_start, tel = _run(scenario())
    assert buffered == 4
    assert sent_before_start == []
    assert session.stats.deltas_dropped == 1
    assert tel.sent_json == [{"event": "media", "streamSid": "CA1", "media": {"payload": "AAAA"}}]


def test_call_id_is_immutable_once_recorded():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        session.handle_telephony_frame('{"event":"start","start":{"streamSid":"CA2"}}')
        await _finish(session)
        return session

    assert _run(scenario()).call_id == "CA1"


def test_malformed_frames_are_discarded():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame("not json")
        session.handle_telephony_frame('{"event":"bogus"}')
        session.handle_telephony_frame('{"event":"media","media":{"payload":"!!!"}}')
        session.handle_model_frame("{")
        state = session.state
        await _finish(session)
        return session, state

    session, state = _run(scenario())
    assert state is SessionState.ACTIVE
    assert session.stats.malformed_frames == 4
    assert session.scheduler.buffered_bytes == 0


# ─── Model → telephony ───────────────────────────────────────────

def test_response_completed_sends_single_mark():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        session.handle_model_frame('{"type":"response.completed"}')
        await _finish(session)
        return tel

    tel = _run(scenario())
    assert tel.sent_json == [{"event": "mark", "streamSid": "CA1", "mark": {"name": "done"}}]


def test_speech_started_clears_telephony_playback():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        session.handle_model_frame('{"type":"input_audio_buffer.speech_started"}')
        await _finish(session)
        return tel

    assert _run(scenario()).sent_json == [{"event": "clear", "streamSid": "CA1"}]


def test_pcm16_path_resamples_and_transcodes_at_both_boundaries():
    async def scenario():
        cfg = make_config(audio_path="pcm16", commit_min_ms=1)
        session, tel, model = await _active_session(cfg)
        session.handle_telephony_frame(START_CA1)
        # 1 s of 8 kHz μ-law silence in, 1 s of 24 kHz PCM16 silence back.
        for _ in range(50):
            session.handle_telephony_frame(_media(b"\xff" * 160))
        session.scheduler.fire()
        pcm_silence = base64.b64encode(b"\x00" * 4800).decode()
        for _ in range(10):
            session.handle_model_frame(json.dumps({"type": "response.audio.delta", "delta": pcm_silence}))
        await _finish(session)
        return tel, model

    tel, model = _run(scenario())
    assert model.sent_json[0]["session"]["input_audio_format"] == "pcm16"
    up = base64.b64decode(model.sent_json[1]["audio"])
    assert 24000 < len(up) <= 48000
    assert set(up) == {0}
    down = b"".join(base64.b64decode(m["media"]["payload"]) for m in tel.sent_json)
    assert tel.sent_types == ["media"] * len(tel.sent)
    assert 4000 < len(down) <= 8000
    assert set(down) == {0xFF}


# ─── Teardown ────────────────────────────────────────────────────

def test_stop_below_threshold_closes_both_legs_without_flush():
    async def scenario():
        session, tel, model = await _active_session(make_config(commit_min_ms=100))
        session.handle_telephony_frame(START_CA1)
        session.handle_telephony_frame(MEDIA_AAA)
        session.handle_telephony_frame(STOP)
        await session.wait_closed()
        return session, tel, model

    session, tel, model = _run(scenario())
    assert model.sent_types == ["session.update"]
    assert tel.close_calls == 1
    assert model.close_calls == 1
    assert session.state is SessionState.CLOSED


def test_stop_flushes_residual_before_closing_model_leg():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        for _ in range(5):
            session.handle_telephony_frame(MEDIA_AAA)
        session.handle_telephony_frame(STOP)
        await session.wait_closed()
        return model

    model = _run(scenario())
    assert model.sent_types == ["session.update"] + TRIPLE
    assert model.close_calls == 1


def test_model_error_closes_telephony_once_and_silences_both_legs():
    async def scenario():
        session, tel, model = await _active_session()
        session.handle_telephony_frame(START_CA1)
        session.handle_model_frame('{"type":"error","error":{"message":"boom"}}')
        state = session.state
        session.handle_model_frame('{"type":"response.audio.delta","delta":"AAAA"}')
        session.handle_telephony_frame(MEDIA_AAA)
        session.scheduler.fire()
        await session.wait_closed()
        return session, state, tel, model

    session, state, tel, model = _run(scenario())
    assert state is SessionState.CLOSING
    assert session.state is SessionState.CLOSED
    assert tel.close_calls == 1
    assert tel.sent == []
    assert model.sent_types == ["session.update"]


def test_close_is_idempotent():
    async def scenario():
        session, tel, model = await _active_session()
        session.close("one")
        session.close("two")
        session.close("three")
        await session.wait_closed()
        await session.wait_closed()
        return session, tel, model

    session, tel, model = _run(scenario())
    assert tel.close_calls == 1
    assert model.close_calls == 1
    assert session.state is SessionState.CLOSED


def test_stop_before_model_ready_drops_queue():
    async def scenario():
        tel = FakeWebSocket()
        session = Session(make_config(commit_min_ms=1), tel)
        for _ in range(5):
            session.handle_telephony_frame(MEDIA_AAA)
        session.handle_telephony_frame(STOP)
        await session.wait_closed()
        late_model = FakeWebSocket()
        session.on_model_open(late_model)
        await session.model.wait_closed()
        return session, tel, late_model

    session, tel, late_model = _run(scenario())
    assert session.stats.outbox_dropped == 3
    assert tel.close_calls == 1
    assert late_model.sent == []
    assert late_model.close_calls == 1


def test_telephony_send_failure_tears_down_session():
    async def scenario():
        session, tel, model = await _active_session(tel=FakeWebSocket(fail_send=True))
        session.handle_telephony_frame(START_CA1)
        session.handle_model_frame('{"type":"response.audio.delta","delta":"AAAA"}')
        await wait_for(lambda: session.state is not SessionState.ACTIVE)
        await session.wait_closed()
        return session, model

    session, model = _run(scenario())
    assert session.state is SessionState.CLOSED
    assert model.close_calls == 1


# ─── Full lifecycle via run() ────────────────────────────────────

def test_run_relays_until_stop():
    async def scenario():
        tel, model = FakeWebSocket(), FakeWebSocket()

        async def connect():
            return model

        session = Session(make_config(commit_min_ms=1), tel, connect)
        task = asyncio.create_task(session.run())
        await session.wait_ready()
        tel.feed(START_CA1)
        model.feed({"type": "session.created"})
        for _ in range(5):
            tel.feed(MEDIA_AAA)
        await wait_for(lambda: session.stats.media_frames == 5)
        model.feed({"type": "response.audio.delta", "delta": "AAAA"}, {"type": "response.completed"})
        await wait_for(lambda: len(tel.sent) == 2)
        tel.feed(STOP)
        await asyncio.wait_for(task, 1.0)
        return session, tel, model

    session, tel, model = _run(scenario())
    assert session.state is SessionState.CLOSED
    assert model.sent_types == ["session.update"] + TRIPLE
    assert tel.sent_types == ["media", "mark"]
    assert (tel.close_calls, model.close_calls) == (1, 1)


def test_run_closes_telephony_when_model_connect_fails():
    async def scenario():
        tel = FakeWebSocket()

        async def connect():
            raise OSError("connection refused")

        session = Session(make_config(), tel, connect)
        await asyncio.wait_for(session.run(), 1.0)
        return session, tel

    session, tel = _run(scenario())
    assert session.state is SessionState.CLOSED
    assert tel.close_calls == 1


def test_run_closes_telephony_when_model_hangs_up():
    async def scenario():
        tel, model = FakeWebSocket(), FakeWebSocket()

        async def connect():
            return model

        session = Session(make_config(), tel, connect)
        task = asyncio.create_task(session.run())
        await session.wait_ready()
        model.hang_up()
        await asyncio.wait_for(task, 1.0)
        return session, tel

    session, tel = _run(scenario())
    assert session.state is SessionState.CLOSED
    assert tel.close_calls == 1


# ─── Continuous 20 ms media stream ───────────────────────────────

async def _stream(session, frames, gap=0.02):
    for ulaw in frames:
        session.handle_telephony_frame(_media(ulaw))
        await asyncio.sleep(gap)


def test_default_policy_commits_while_twilio_keeps_streaming():
    async def scenario():
        session, tel, model = await _active_session(make_config())
        session.handle_telephony_frame(START_CA1)
        # Twilio never pauses: a 160-byte frame every 20 ms, speech or not.
        await _stream(session, [b"\xff" * 160] * 25)
        during = list(model.sent_types)
        state = session.state
        await _finish(session)
        return during, state

    during, state = _run(scenario())
    assert state is SessionState.ACTIVE
    assert during[:4] == ["session.update"] + TRIPLE


def test_silence_policy_commits_after_speech_despite_steady_packets():
    async def scenario():
        cfg = make_config(commit_policy="silence", commit_silence_ms=100)
        session, tel, model = await _active_session(cfg)
        session.handle_telephony_frame(START_CA1)
        speech, quiet = b"\x10" * 160, b"\xff" * 160
        await _stream(session, [quiet] * 5 + [speech] * 10 + [quiet] * 15)
        during = list(model.sent_types)
        skipped = session.scheduler.quiet_bytes_skipped
        await _finish(session)
        return during, skipped

    during, skipped = _run(scenario())
    assert during == ["session.update"] + TRIPLE
    assert skipped >= 5 * 160
