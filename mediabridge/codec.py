"""
G.711 μ-law <-> PCM16 codec.

Telephony audio is 8 kHz mono μ-law (one byte per sample).  When the
bridge runs the `pcm16` audio path, caller audio is expanded to PCM16-LE
before buffering and the model's PCM16 replies are companded back to
μ-law before they reach the call.

Both directions are stateless and work sample-by-sample.  The per-sample
functions are the reference; bulk conversion indexes precomputed numpy
tables built from them (256 entries for decode, 65536 for encode), so a
20 ms frame costs one fancy-index instead of 160 Python calls.
"""
from __future__ import annotations

import numpy as np

ULAW_BIAS = 0x84        # 132
ULAW_CLIP = 32635       # max magnitude before biasing


def decode_sample(ulaw_byte: int) -> int:
    """Expand one μ-law byte to a signed 16-bit sample."""
    u = ~ulaw_byte & 0xFF
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    magnitude = ((mantissa << 3) + ULAW_BIAS) << exponent
    sample = magnitude - ULAW_BIAS
    return -sample if sign else sample


def encode_sample(sample: int) -> int:
    """Compand one signed 16-bit sample to a μ-law byte."""
    if sample < 0:
        sign = 0x80
        magnitude = -sample
    else:
        sign = 0
        magnitude = sample
    magnitude = min(magnitude, ULAW_CLIP) + ULAW_BIAS

    exponent = 0
    while exponent < 7 and magnitude >= (0x100 << exponent):
        exponent += 1
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


_DECODE_TABLE = np.array([decode_sample(b) for b in range(256)], dtype="<i2")
# Indexed by (sample + 32768).
_ENCODE_TABLE = np.array([encode_sample(s) for s in range(-32768, 32768)], dtype=np.uint8)


def decode(ulaw: bytes) -> bytes:
    """μ-law bytes -> PCM16-LE bytes (twice the length)."""
    if not ulaw:
        return b""
    idx = np.frombuffer(ulaw, dtype=np.uint8)
    return _DECODE_TABLE[idx].tobytes()


def encode(pcm16: bytes) -> bytes:
    """PCM16-LE bytes -> μ-law bytes (half the length).

    *pcm16* must hold an even number of bytes; trim with
    ``audio.ensure_even_bytes`` first if the source may be ragged.
    """
    if not pcm16:
        return b""
    samples = np.frombuffer(pcm16, dtype="<i2").astype(np.int32)
    return _ENCODE_TABLE[samples + 32768].tobytes()
