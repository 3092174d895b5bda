"""
Streaming PCM16 rate conversion at the model boundary.

Twilio is 8 kHz; the realtime model's ``pcm16`` format is 24 kHz.  On the
``pcm16`` audio path the session keeps one stateful resampler per
direction so chunk edges do not click.

  rs = Resampler(8000, 24000)
  out = rs.process(pcm)            # bytes in, bytes out
  tail = rs.process(b"", last=True)
"""
from __future__ import annotations

import logging

import numpy as np
import soxr

from .audio import ensure_even_bytes

logger = logging.getLogger(__name__)

MODEL_PCM16_RATE = 24000


class Resampler:
    """Stateful mono PCM16 resampler (soxr, sinc quality).

    If input rate == output rate, data passes through unchanged.
    """

    def __init__(self, in_rate: int, out_rate: int, *, quality: str = "HQ") -> None:
        if in_rate <= 0 or out_rate <= 0:
            raise ValueError("Invalid sample rates")
        self.in_rate = in_rate
        self.out_rate = out_rate
        self._stream = None
        if in_rate != out_rate:
            self._stream = soxr.ResampleStream(in_rate, out_rate, 1, dtype="int16", quality=quality)
        logger.debug("Resampler %d->%d Hz (%s)", in_rate, out_rate, "soxr" if self._stream else "passthrough")

    @property
    def passthrough(self) -> bool:
        return self._stream is None

    def process(self, pcm: bytes, last: bool = False) -> bytes:
        """Resample PCM16 bytes.  ``last=True`` flushes the filter tail."""
        pcm = ensure_even_bytes(pcm)
        if self._stream is None:
            return pcm
        if not pcm and not last:
            return b""
        arr = np.frombuffer(pcm, dtype=np.int16)
        out = self._stream.resample_chunk(arr, last=last)
        return np.asarray(out, dtype=np.int16).tobytes()
