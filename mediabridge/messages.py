"""
Wire messages for both legs.

Each direction is a small family of frozen dataclasses:

  Telephony in   TelephonyStart | TelephonyMedia | TelephonyStop
                 | TelephonyIgnored | Unrecognized
  Telephony out  telephony_media() / telephony_mark() / telephony_clear()
  Model in       ModelSessionEvent | ModelAudioDelta | ModelResponseDone
                 | ModelSpeechStarted | ModelError | ModelIgnored | Unrecognized
  Model out      session_update() / input_audio_append() /
                 input_audio_commit() / response_create()

Parsers never raise: anything that is not JSON, not an object, missing
its discriminator or a required field, or carries an unknown
discriminator comes back as :class:`Unrecognized`.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union


def _dumps(obj: dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _loads_object(frame: Union[str, bytes, bytearray]) -> tuple[Optional[dict[str, Any]], str]:
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError:
            return None, "binary frame is not UTF-8"
    try:
        obj = json.loads(frame)
    except (TypeError, ValueError):
        return None, "not JSON"
    if not isinstance(obj, dict):
        return None, f"JSON {type(obj).__name__}, expected object"
    return obj, ""


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    raw: str = ""


# ─── Telephony leg, inbound ─────────────────────────────────────

@dataclass(frozen=True)
class TelephonyStart:
    stream_sid: str
    call_sid: Optional[str] = None


@dataclass(frozen=True)
class TelephonyMedia:
    payload: str
    track: Optional[str] = None


@dataclass(frozen=True)
class TelephonyStop:
    pass


@dataclass(frozen=True)
class TelephonyIgnored:
    event: str


TelephonyEvent = Union[TelephonyStart, TelephonyMedia, TelephonyStop, TelephonyIgnored, Unrecognized]

# Sent by Twilio but carry nothing the bridge acts on.
_TELEPHONY_IGNORED = frozenset({"connected", "mark", "dtmf"})


def _preview(frame: Union[str, bytes, bytearray], n: int = 120) -> str:
    s = frame if isinstance(frame, str) else repr(bytes(frame[:n]))
    return s[:n]


def parse_telephony_frame(frame: Union[str, bytes, bytearray]) -> TelephonyEvent:
    obj, err = _loads_object(frame)
    if obj is None:
        return Unrecognized(err, _preview(frame))

    event = obj.get("event")
    if not isinstance(event, str) or not event:
        return Unrecognized("missing 'event'", _preview(frame))

    if event == "start":
        start = obj.get("start")
        sid = start.get("streamSid") if isinstance(start, dict) else None
        if not isinstance(sid, str) or not sid:
            # Twilio also mirrors it at the top level.
            sid = obj.get("streamSid")
        if not isinstance(sid, str) or not sid:
            return Unrecognized("start without streamSid", _preview(frame))
        call_sid = start.get("callSid") if isinstance(start, dict) else None
        return TelephonyStart(stream_sid=sid, call_sid=call_sid if isinstance(call_sid, str) else None)

    if event == "media":
        media = obj.get("media")
        payload = media.get("payload") if isinstance(media, dict) else None
        if not isinstance(payload, str):
            return Unrecognized("media without payload", _preview(frame))
        track = media.get("track")
        return TelephonyMedia(payload=payload, track=track if isinstance(track, str) else None)

    if event == "stop":
        return TelephonyStop()

    if event in _TELEPHONY_IGNORED:
        return TelephonyIgnored(event)

    return Unrecognized(f"unknown event {event!r}", _preview(frame))


# ─── Telephony leg, outbound ────────────────────────────────────

def telephony_media(stream_sid: str, payload_b64: str) -> str:
    return _dumps({"event": "media", "streamSid": stream_sid, "media": {"payload": payload_b64}})


def telephony_mark(stream_sid: str, name: str) -> str:
    return _dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


def telephony_clear(stream_sid: str) -> str:
    """Ask the telephony side to drop audio it has queued but not played."""
    return _dumps({"event": "clear", "streamSid": stream_sid})


# ─── Model leg, inbound ─────────────────────────────────────────

@dataclass(frozen=True)
class ModelSessionEvent:
    type: str


@dataclass(frozen=True)
class ModelAudioDelta:
    delta: str


@dataclass(frozen=True)
class ModelResponseDone:
    type: str


@dataclass(frozen=True)
class ModelSpeechStarted:
    pass


@dataclass(frozen=True)
class ModelError:
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        err = self.detail.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("code") or err)
        return str(err or self.detail)


@dataclass(frozen=True)
class ModelIgnored:
    type: str


ModelEvent = Union[
    ModelSessionEvent, ModelAudioDelta, ModelResponseDone, ModelSpeechStarted,
    ModelError, ModelIgnored, Unrecognized,
]

_SESSION_EVENTS = frozenset({
    "session.created",
    "session.updated",
})
_AUDIO_DELTA_EVENTS = frozenset({
    "response.audio.delta",
    "response.output_audio.delta",
    "output_audio.delta",
})
_RESPONSE_DONE_EVENTS = frozenset({
    "response.completed",
    "response.done",
})
_SPEECH_START_EVENTS = frozenset({
    "input_audio_buffer.speech_started",
})
# Known, legitimate events the bridge has no use for.
_MODEL_IGNORED = frozenset({
    "rate_limits.updated",
    "response.created",
    "response.output_item.added",
    "response.output_item.done",
    "response.content_part.added",
    "response.content_part.done",
    "response.audio.done",
    "response.output_audio.done",
    "response.audio_transcript.delta",
    "response.audio_transcript.done",
    "response.output_audio_transcript.delta",
    "response.output_audio_transcript.done",
    "response.text.delta",
    "response.text.done",
    "conversation.item.created",
    "conversation.item.input_audio_transcription.delta",
    "conversation.item.input_audio_transcription.completed",
    "input_audio_buffer.appended",
    "input_audio_buffer.committed",
    "input_audio_buffer.cleared",
    "input_audio_buffer.speech_stopped",
})


def parse_model_frame(frame: Union[str, bytes, bytearray]) -> ModelEvent:
    obj, err = _loads_object(frame)
    if obj is None:
        return Unrecognized(err, _preview(frame))

    evt_type = obj.get("type")
    if not isinstance(evt_type, str) or not evt_type:
        return Unrecognized("missing 'type'", _preview(frame))

    if evt_type in _AUDIO_DELTA_EVENTS:
        delta = obj.get("delta")
        if not isinstance(delta, str) or not delta:
            return Unrecognized(f"{evt_type} without delta", _preview(frame))
        return ModelAudioDelta(delta)
    if evt_type in _RESPONSE_DONE_EVENTS:
        return ModelResponseDone(evt_type)
    if evt_type in _SPEECH_START_EVENTS:
        return ModelSpeechStarted()
    if evt_type == "error":
        return ModelError(obj)
    if evt_type in _SESSION_EVENTS:
        return ModelSessionEvent(evt_type)
    if evt_type in _MODEL_IGNORED:
        return ModelIgnored(evt_type)

    return Unrecognized(f"unknown type {evt_type!r}", _preview(frame))


# ─── Model leg, outbound ────────────────────────────────────────

def session_update(session: dict[str, Any]) -> str:
    return _dumps({"type": "session.update", "session": session})


def input_audio_append(audio_b64: str) -> str:
    return _dumps({"type": "input_audio_buffer.append", "audio": audio_b64})


def input_audio_commit() -> str:
    return _dumps({"type": "input_audio_buffer.commit"})


def response_create(response: Optional[dict[str, Any]] = None) -> str:
    return _dumps({"type": "response.create", "response": response or {}})
