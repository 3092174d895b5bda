"""
Audio primitives shared by the scheduler and the session.

Everything here operates on raw headerless audio at the telephony rate
(8 kHz mono):

  * ``ulaw``:  G.711 μ-law, 1 byte per sample (Twilio's native format).
  * ``pcm16``: signed 16-bit little-endian, 2 bytes per sample.

The encoding is a session-wide choice (``AUDIO_PATH``); chunks carry
their encoding tag anyway so the buffer can never mix formats silently.
"""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np

from . import codec

logger = logging.getLogger(__name__)

SAMPLE_RATE = 8000
CHANNELS = 1


class AudioEncoding(str, Enum):
    ULAW = "ulaw"
    PCM16 = "pcm16"

    @property
    def bytes_per_sample(self) -> int:
        return 1 if self is AudioEncoding.ULAW else 2

    @property
    def realtime_format(self) -> str:
        """Name the model's session configuration uses for this encoding."""
        return "g711_ulaw" if self is AudioEncoding.ULAW else "pcm16"


def frame_bytes(sample_rate: int, channels: int, frame_ms: int, bytes_per_sample: int = 2) -> int:
    """Bytes in one frame.  E.g. 8 kHz mono 20 ms → 320 (PCM16) / 160 (μ-law)."""
    if sample_rate <= 0 or channels <= 0 or frame_ms <= 0 or bytes_per_sample <= 0:
        raise ValueError("Invalid audio parameters")
    samples = int(sample_rate * frame_ms / 1000)
    return samples * channels * bytes_per_sample


def bytes_for_ms(encoding: AudioEncoding, ms: int) -> int:
    """Byte count of *ms* milliseconds of telephony audio in *encoding*."""
    return frame_bytes(SAMPLE_RATE, CHANNELS, ms, encoding.bytes_per_sample)


def duration_ms(encoding: AudioEncoding, n_bytes: int) -> float:
    return n_bytes * 1000.0 / (SAMPLE_RATE * CHANNELS * encoding.bytes_per_sample)


def rms(data: bytes, encoding: AudioEncoding) -> float:
    """RMS level on the PCM16 scale (0 .. 32767).  Empty input is 0."""
    pcm = ensure_even_bytes(convert(data, encoding, AudioEncoding.PCM16))
    if not pcm:
        return 0.0
    arr = np.frombuffer(pcm, dtype=np.int16).astype(np.float64)
    return float(np.sqrt(np.mean(arr * arr)))


def ensure_even_bytes(pcm: bytes) -> bytes:
    """Guarantee PCM16 alignment (even byte count)."""
    if len(pcm) % 2:
        return pcm[:-1]
    return pcm


def b64encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode_audio(payload: str) -> Optional[bytes]:
    """Strict base64 decode.  Returns None on a malformed payload."""
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def convert(data: bytes, src: AudioEncoding, dst: AudioEncoding) -> bytes:
    if src is dst:
        return data
    if src is AudioEncoding.ULAW:
        return codec.decode(data)
    return codec.encode(ensure_even_bytes(data))


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    encoding: AudioEncoding


class AudioBuffer:
    """Append-only run of encoding-tagged chunks with a running byte count.

    Flushing is all-or-nothing: :meth:`swap` hands back every chunk and
    leaves the buffer empty in one step.
    """

    __slots__ = ("_chunks", "_byte_count")

    def __init__(self) -> None:
        self._chunks: List[AudioChunk] = []
        self._byte_count = 0

    def append(self, chunk: AudioChunk) -> None:
        if not chunk.data:
            return
        self._chunks.append(chunk)
        self._byte_count += len(chunk.data)

    def swap(self) -> List[AudioChunk]:
        chunks = self._chunks
        self._chunks = []
        self._byte_count = 0
        return chunks

    def clear(self) -> int:
        """Drop everything.  Returns bytes dropped."""
        n = self._byte_count
        self.swap()
        return n

    @property
    def byte_count(self) -> int:
        return self._byte_count

    def __len__(self) -> int:
        return len(self._chunks)

    def __bool__(self) -> bool:
        return self._byte_count > 0
