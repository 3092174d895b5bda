"""
Turn commit scheduling for caller audio.

Twilio delivers 20 ms μ-law packets; the realtime model wants a turn's
audio appended, the buffer committed, and a response requested, in that
order, and only once a turn holds enough audio to act on.  The scheduler
sits between the two clocks (packet arrival, local timer) and decides
when a turn is complete.

Policies:

  silence     timer re-armed on every voiced chunk; fires after N ms without
              speech.  A chunk is voiced when its RMS is above
              ``silence_level``; quiet chunks extend a turn but never re-arm,
              and are skipped while no turn is in progress.
  interval    fixed tick every N ms while audio is buffered.
  server_vad  no local turns: each chunk is appended immediately and the
              model's own voice activity detection decides.

In the first two, a tick that finds less than ``min_bytes`` buffered is a
no-op.  A tick that finds enough swaps the whole buffer out and emits the
append/commit/response triple for it.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from . import messages
from .audio import AudioBuffer, AudioChunk, AudioEncoding, b64encode_audio, convert, duration_ms, rms
from .resample import Resampler

logger = logging.getLogger(__name__)


class CommitPolicy(str, Enum):
    SILENCE = "silence"
    INTERVAL = "interval"
    SERVER_VAD = "server_vad"


class SchedulerState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    STOPPED = "stopped"


class CommitScheduler:
    """Buffers caller audio and emits one commit triple per turn.

    *emit* receives ready-to-send model frames.  It must not block; the
    session's implementation only enqueues.
    """

    def __init__(
        self,
        emit: Callable[[str], Any],
        *,
        policy: CommitPolicy = CommitPolicy.INTERVAL,
        min_bytes: int,
        silence_ms: int = 500,
        silence_level: float = 0.0,
        interval_ms: int = 200,
        output_encoding: AudioEncoding = AudioEncoding.ULAW,
        response: Optional[dict[str, Any]] = None,
        resampler: Optional[Resampler] = None,
        label: str = "",
    ) -> None:
        if min_bytes <= 0:
            raise ValueError("min_bytes must be positive")
        self._emit = emit
        self._policy = CommitPolicy(policy)
        self._min_bytes = min_bytes
        self._silence_s = silence_ms / 1000.0
        self._silence_level = silence_level
        self._interval_s = interval_ms / 1000.0
        self._output_encoding = output_encoding
        self._response = dict(response or {})
        self._resampler = resampler
        self.label = label

        self._buffer = AudioBuffer()
        self._state = SchedulerState.IDLE
        self._timer: Optional[asyncio.TimerHandle] = None
        self._voiced = False

        self.commits = 0
        self.appended_bytes = 0
        self.quiet_bytes_skipped = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def policy(self) -> CommitPolicy:
        return self._policy

    @property
    def buffered_bytes(self) -> int:
        return self._buffer.byte_count

    @property
    def armed(self) -> bool:
        return self._timer is not None

    # ──────────────────────────────────────────────
    # Audio in
    # ──────────────────────────────────────────────

    def append(self, chunk: bytes, encoding: AudioEncoding) -> None:
        if self._state is SchedulerState.STOPPED or not chunk:
            return
        self.appended_bytes += len(chunk)

        if self._policy is CommitPolicy.SERVER_VAD:
            data = self._to_model(convert(chunk, encoding, self._output_encoding))
            if not data:
                return
            self._emit(messages.input_audio_append(b64encode_audio(data)))
            return

        voiced = True
        if self._policy is CommitPolicy.SILENCE:
            voiced = rms(chunk, encoding) > self._silence_level
            if not voiced and not self._voiced:
                self.quiet_bytes_skipped += len(chunk)
                return

        self._buffer.append(AudioChunk(chunk, encoding))
        if self._state is SchedulerState.IDLE:
            self._state = SchedulerState.ACCUMULATING

        if self._policy is CommitPolicy.SILENCE:
            if voiced:
                self._voiced = True
                self.arm()
        elif self._timer is None:
            self.arm()

    # ──────────────────────────────────────────────
    # Timer
    # ──────────────────────────────────────────────

    def arm(self) -> None:
        """(Re)start the timer for the current policy."""
        if self._state is SchedulerState.STOPPED or self._policy is CommitPolicy.SERVER_VAD:
            return
        self.cancel()
        delay = self._silence_s if self._policy is CommitPolicy.SILENCE else self._interval_s
        self._timer = asyncio.get_running_loop().call_later(delay, self.fire)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def fire(self) -> bool:
        """Timer tick.  Returns True if a commit was emitted."""
        self._timer = None
        if self._state in (SchedulerState.STOPPED, SchedulerState.FLUSHING):
            return False
        if self._buffer.byte_count < self._min_bytes:
            if self._policy is CommitPolicy.INTERVAL and self._buffer:
                self.arm()
            else:
                # Speech too short to be a turn; trailing quiet is not kept.
                self._voiced = False
            return False
        self._flush("timer")
        return True

    # ──────────────────────────────────────────────
    # End of call / teardown
    # ──────────────────────────────────────────────

    def flush_on_stop(self) -> bool:
        """Commit residual audio once, if enough, then stop accepting audio."""
        if self._state is SchedulerState.STOPPED:
            return False
        self.cancel()
        flushed = False
        if self._state is not SchedulerState.FLUSHING and self._buffer.byte_count >= self._min_bytes:
            self._flush("stop")
            flushed = True
        elif self._buffer:
            logger.info(
                "[%s] Dropping %d residual bytes at stop (below %d byte minimum)",
                self.label, self._buffer.byte_count, self._min_bytes,
            )
        self._buffer.clear()
        self._state = SchedulerState.STOPPED
        return flushed

    def close(self) -> None:
        self.cancel()
        self._buffer.clear()
        self._voiced = False
        self._state = SchedulerState.STOPPED

    # ──────────────────────────────────────────────
    # Flush
    # ──────────────────────────────────────────────

    def _flush(self, reason: str) -> None:
        self._state = SchedulerState.FLUSHING
        self.cancel()
        chunks = self._buffer.swap()
        self._voiced = False
        try:
            audio = b"".join(convert(c.data, c.encoding, self._output_encoding) for c in chunks)
            audio = self._to_model(audio, last=reason == "stop")
            buffered_ms = sum(duration_ms(c.encoding, len(c.data)) for c in chunks)
            self._emit(messages.input_audio_append(b64encode_audio(audio)))
            self._emit(messages.input_audio_commit())
            self._emit(messages.response_create(self._response))
            self.commits += 1
            logger.info(
                "[%s] Turn committed (%s): %d chunks, %.0f ms, %d bytes, commit #%d",
                self.label, reason, len(chunks), buffered_ms, len(audio), self.commits,
            )
        finally:
            if self._state is SchedulerState.FLUSHING:
                if self._buffer:
                    self._state = SchedulerState.ACCUMULATING
                    self.arm()
                else:
                    self._state = SchedulerState.IDLE

    def _to_model(self, audio: bytes, last: bool = False) -> bytes:
        if self._resampler is None or self._output_encoding is not AudioEncoding.PCM16:
            return audio
        return self._resampler.process(audio, last=last)
