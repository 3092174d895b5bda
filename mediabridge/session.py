"""
Per-call bridge session: one telephony leg, one model leg.

Lifecycle::

    CONNECTING ──model socket open──▶ ACTIVE
        │                               │
        └──stop / error / leg lost──▶ CLOSING ──writers done──▶ CLOSED

While CONNECTING, model-bound frames wait in ``_outbox`` and are sent in
arrival order right after the one-time ``session.update``.  Every state
change happens on the event loop thread (both readers and the commit
timer), so nothing here takes a lock.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

from websockets.exceptions import ConnectionClosed

from . import codec, messages
from .audio import SAMPLE_RATE, AudioEncoding, b64decode_audio, b64encode_audio, bytes_for_ms
from .config import BridgeConfig
from .legs import Leg
from .openai_client import build_greeting_response, build_response_config, build_session_config
from .resample import MODEL_PCM16_RATE, Resampler
from .scheduler import CommitPolicy, CommitScheduler

logger = logging.getLogger(__name__)

ModelConnector = Callable[[], Awaitable[Any]]


class SessionState(Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SessionStats:
    media_frames: int = 0
    media_bytes: int = 0
    audio_deltas: int = 0
    audio_delta_bytes: int = 0
    deltas_dropped: int = 0
    marks_sent: int = 0
    malformed_frames: int = 0
    outbox_dropped: int = 0


class Session:
    """Relays one call between its telephony and model legs.

    *connect_model* is awaited by :meth:`run` to open the model leg; tests
    and callers that manage the socket themselves use :meth:`on_model_open`
    directly instead.
    """

    def __init__(
        self,
        cfg: BridgeConfig,
        telephony_ws: Any,
        connect_model: Optional[ModelConnector] = None,
    ) -> None:
        self._cfg = cfg
        self._connect_model = connect_model
        self._state = SessionState.CONNECTING
        self._call_id: Optional[str] = None
        self._close_reason = ""

        # pcm16 path: decode at the telephony boundary, buffer PCM16 at 8 kHz,
        # and resample to the model's 24 kHz on the way out (and back).
        self._encoding = AudioEncoding(cfg.audio_path)
        self._transcode = self._encoding is AudioEncoding.PCM16
        self._upsampler: Optional[Resampler] = None
        self._downsampler: Optional[Resampler] = None
        if self._transcode:
            self._upsampler = Resampler(SAMPLE_RATE, MODEL_PCM16_RATE)
            self._downsampler = Resampler(MODEL_PCM16_RATE, SAMPLE_RATE)

        self.telephony = Leg("telephony", on_lost=self._on_leg_lost)
        self.model = Leg("model", on_lost=self._on_leg_lost)
        self.telephony.attach(telephony_ws)

        self._outbox: Deque[str] = deque()
        self._ready = asyncio.Event()
        self._model_task: Optional[asyncio.Task] = None

        self.stats = SessionStats()
        self.scheduler = CommitScheduler(
            self._send_model,
            policy=CommitPolicy(cfg.commit_policy),
            min_bytes=bytes_for_ms(self._encoding, cfg.commit_min_ms),
            silence_ms=cfg.commit_silence_ms,
            interval_ms=cfg.commit_interval_ms,
            silence_level=cfg.commit_silence_level,
            output_encoding=self._encoding,
            response=build_response_config(cfg),
            resampler=self._upsampler,
            label=self.label,
        )

    # ──────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def call_id(self) -> Optional[str]:
        return self._call_id

    @property
    def label(self) -> str:
        return self._call_id or "pending"

    @property
    def pending_model_frames(self) -> int:
        return len(self._outbox)

    async def wait_ready(self) -> None:
        await self._ready.wait()

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def run(self) -> None:
        """Run the call to completion: model connect, telephony pump, teardown."""
        if self._connect_model is None:
            raise RuntimeError("Session.run() needs a model connector")
        self._model_task = asyncio.create_task(self._run_model_leg(), name="model-leg")
        try:
            await self._pump_telephony()
        finally:
            self.close(self._close_reason or "telephony leg ended")
            await asyncio.gather(self._model_task, return_exceptions=True)
            await self.wait_closed()

    async def _pump_telephony(self) -> None:
        ws = self.telephony.ws
        try:
            async for frame in ws:
                self.handle_telephony_frame(frame)
                if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                    break
        except ConnectionClosed as e:
            logger.info("[%s] Telephony connection lost: %s", self.label, e)
            self.close("telephony connection lost")

    async def _run_model_leg(self) -> None:
        try:
            ws = await self._connect_model()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Model connection failed", self.label)
            self.close("model connect failed")
            return

        self.on_model_open(ws)
        if self._state is not SessionState.ACTIVE:
            return

        try:
            async for frame in ws:
                self.handle_model_frame(frame)
                if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                    break
            else:
                logger.info("[%s] Model connection closed", self.label)
        except ConnectionClosed as e:
            logger.warning("[%s] Model connection lost: %s", self.label, e)
        except Exception:
            logger.exception("[%s] Model leg failed", self.label)
        finally:
            self.close("model leg ended")

    def on_model_open(self, ws: Any) -> None:
        """Model socket is open: configure it, drain the outbox, go ACTIVE."""
        if self._state is not SessionState.CONNECTING:
            # Torn down while connecting; attach only so the socket gets closed.
            self.model.attach(ws)
            self.model.close()
            return

        self.model.attach(ws)
        self.model.send(messages.session_update(build_session_config(self._cfg)))

        greeting = build_greeting_response(self._cfg)
        if greeting is not None:
            self.model.send(messages.response_create(greeting))

        drained = len(self._outbox)
        while self._outbox:
            self.model.send(self._outbox.popleft())

        self._state = SessionState.ACTIVE
        self._ready.set()
        logger.info(
            "[%s] Model leg ready: audio_path=%s commit_policy=%s queued=%d greeting=%s",
            self.label, self._cfg.audio_path, self._cfg.commit_policy, drained, greeting is not None,
        )

    def close(self, reason: str = "") -> None:
        """Tear down both legs.  Safe to call any number of times."""
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self._state = SessionState.CLOSING
        self._close_reason = reason
        logger.info("[%s] Closing session: %s", self.label, reason or "unspecified")

        self.scheduler.close()
        if self._outbox:
            self.stats.outbox_dropped += len(self._outbox)
            logger.info("[%s] Dropping %d model frames queued before ready", self.label, len(self._outbox))
            self._outbox.clear()

        self.telephony.close()
        self.model.close()

        task = self._model_task
        if task is not None and not task.done() and task is not asyncio.current_task() and not self.model.ready:
            task.cancel()

    async def wait_closed(self) -> None:
        await self.telephony.wait_closed()
        await self.model.wait_closed()
        if self._state is SessionState.CLOSING:
            self._state = SessionState.CLOSED
            s = self.stats
            logger.info(
                "[%s] Session closed (%s): media=%d frames/%d bytes commits=%d deltas=%d/%d bytes "
                "dropped_deltas=%d marks=%d malformed=%d outbox_dropped=%d",
                self.label, self._close_reason, s.media_frames, s.media_bytes,
                self.scheduler.commits, s.audio_deltas, s.audio_delta_bytes,
                s.deltas_dropped, s.marks_sent, s.malformed_frames, s.outbox_dropped,
            )

    def _on_leg_lost(self, name: str) -> None:
        self.close(f"{name} leg lost")

    # ──────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────

    def _send_model(self, frame: str) -> None:
        if self._state is SessionState.CONNECTING:
            self._outbox.append(frame)
        elif self._state is SessionState.ACTIVE:
            self.model.send(frame)
        else:
            logger.debug("[%s] Session %s, dropping model frame", self.label, self._state.value)

    def _send_telephony(self, frame: str) -> None:
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.telephony.send(frame)

    # ──────────────────────────────────────────────
    # Telephony → model
    # ──────────────────────────────────────────────

    def handle_telephony_frame(self, frame: Any) -> None:
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        evt = messages.parse_telephony_frame(frame)

        if isinstance(evt, messages.TelephonyMedia):
            self._on_media(evt)
        elif isinstance(evt, messages.TelephonyStart):
            self._on_start(evt)
        elif isinstance(evt, messages.TelephonyStop):
            logger.info("[%s] Telephony stop", self.label)
            self.scheduler.flush_on_stop()
            self.close("telephony stop")
        elif isinstance(evt, messages.TelephonyIgnored):
            logger.debug("[%s] Telephony %s (ignored)", self.label, evt.event)
        else:
            self.stats.malformed_frames += 1
            logger.warning("[%s] Discarding telephony frame: %s: %s", self.label, evt.reason, evt.raw)

    def _on_start(self, evt: messages.TelephonyStart) -> None:
        if self._call_id is not None:
            if evt.stream_sid != self._call_id:
                logger.warning(
                    "[%s] Ignoring second start with streamSid=%s", self._call_id, evt.stream_sid,
                )
            return
        self._call_id = evt.stream_sid
        self.scheduler.label = evt.stream_sid
        logger.info("[%s] Stream started (callSid=%s)", self._call_id, evt.call_sid or "-")

    def _on_media(self, evt: messages.TelephonyMedia) -> None:
        ulaw = b64decode_audio(evt.payload)
        if ulaw is None:
            self.stats.malformed_frames += 1
            logger.warning("[%s] Discarding media frame with invalid base64 payload", self.label)
            return
        if not ulaw:
            return

        self.stats.media_frames += 1
        self.stats.media_bytes += len(ulaw)
        if self.stats.media_frames == 1:
            logger.info("[%s] First media chunk (%d bytes)", self.label, len(ulaw))

        if self._transcode:
            self.scheduler.append(codec.decode(ulaw), AudioEncoding.PCM16)
        else:
            self.scheduler.append(ulaw, AudioEncoding.ULAW)

    # ──────────────────────────────────────────────
    # Model → telephony
    # ──────────────────────────────────────────────

    def handle_model_frame(self, frame: Any) -> None:
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        evt = messages.parse_model_frame(frame)

        if isinstance(evt, messages.ModelAudioDelta):
            self._on_audio_delta(evt)
        elif isinstance(evt, messages.ModelResponseDone):
            self._on_response_done(evt)
        elif isinstance(evt, messages.ModelSpeechStarted):
            if self._call_id is not None:
                self._send_telephony(messages.telephony_clear(self._call_id))
                logger.debug("[%s] Barge-in: sent clear", self.label)
        elif isinstance(evt, messages.ModelError):
            logger.error("[%s] Model error: %s", self.label, json.dumps(evt.detail, ensure_ascii=False))
            self.close(f"model error: {evt.message}")
        elif isinstance(evt, messages.ModelSessionEvent):
            logger.info("[%s] Model: %s", self.label, evt.type)
        elif isinstance(evt, messages.ModelIgnored):
            pass
        else:
            self.stats.malformed_frames += 1
            logger.debug("[%s] Discarding model frame: %s: %s", self.label, evt.reason, evt.raw)

    def _on_audio_delta(self, evt: messages.ModelAudioDelta) -> None:
        if self._call_id is None:
            self.stats.deltas_dropped += 1
            logger.warning("[%s] Dropping model audio: no streamSid recorded yet", self.label)
            return

        payload = evt.delta
        if self._transcode:
            pcm = b64decode_audio(payload)
            if pcm is None:
                self.stats.malformed_frames += 1
                logger.warning("[%s] Discarding model delta with invalid base64", self.label)
                return
            ulaw = codec.encode(self._downsampler.process(pcm))
            if not ulaw:
                return
            payload = b64encode_audio(ulaw)
            self.stats.audio_delta_bytes += len(ulaw)
        else:
            self.stats.audio_delta_bytes += len(payload) * 3 // 4

        self.stats.audio_deltas += 1
        self._send_telephony(messages.telephony_media(self._call_id, payload))

    def _on_response_done(self, evt: messages.ModelResponseDone) -> None:
        logger.info("[%s] Response done (%s): deltas=%d", self.label, evt.type, self.stats.audio_deltas)
        if self._call_id is None:
            logger.debug("[%s] No streamSid, not sending end-of-turn mark", self.label)
            return
        self._send_telephony(messages.telephony_mark(self._call_id, self._cfg.mark_name))
        self.stats.marks_sent += 1
