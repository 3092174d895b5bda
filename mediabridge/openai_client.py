"""
OpenAI Realtime API WebSocket client.

Opens the model leg and builds the one-time ``session.update`` payload.
The session itself sends that payload once the socket is open, so the
connect step stays a pure transport concern.
"""
from __future__ import annotations

import logging
import ssl
from typing import Any, Optional
from urllib.parse import quote

import certifi
import websockets

from .audio import AudioEncoding
from .config import BridgeConfig

logger = logging.getLogger(__name__)


def build_ssl_context(wss_pem: str, insecure: bool) -> ssl.SSLContext:
    """Create SSL context for OpenAI WebSocket connection."""
    if insecure:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification DISABLED (insecure mode)")
        return ctx

    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)

    if wss_pem:
        try:
            with open(wss_pem, "rb") as f:
                head = f.read(4096)
            if b"PRIVATE KEY" in head:
                raise ValueError("WSS_PEM looks like a private key; provide CA bundle")
            ctx.load_verify_locations(cafile=wss_pem)
            logger.info("TLS: custom CA from %s", wss_pem)
            return ctx
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.warning("TLS: failed to load %s: %s (using certifi)", wss_pem, e)

    ctx.load_verify_locations(cafile=certifi.where())
    return ctx


def realtime_url(cfg: BridgeConfig) -> str:
    return f"{cfg.realtime_url}?model={quote(cfg.model, safe='')}"


def build_session_config(cfg: BridgeConfig) -> dict[str, Any]:
    """The ``session`` object of the one-time ``session.update``.

    Instructions and ``OPENAI_SESSION_EXTRA`` are passed through verbatim.
    """
    fmt = AudioEncoding(cfg.audio_path).realtime_format

    if cfg.commit_policy == "server_vad":
        turn_detection: Optional[dict[str, Any]] = {
            "type": "server_vad",
            "threshold": cfg.vad_threshold,
            "prefix_padding_ms": cfg.vad_prefix_padding_ms,
            "silence_duration_ms": cfg.vad_silence_duration_ms,
        }
    else:
        # The bridge commits turns itself.
        turn_detection = None

    session: dict[str, Any] = {
        "input_audio_format": fmt,
        "output_audio_format": fmt,
        "voice": cfg.voice,
        "modalities": list(cfg.modalities),
        "turn_detection": turn_detection,
        "temperature": cfg.temperature,
    }
    if cfg.system_instructions:
        session["instructions"] = cfg.system_instructions
    session.update(cfg.session_extra)
    return session


def build_response_config(cfg: BridgeConfig) -> dict[str, Any]:
    return {"modalities": list(cfg.modalities)}


def build_greeting_response(cfg: BridgeConfig) -> Optional[dict[str, Any]]:
    if not cfg.greeting:
        return None
    response = build_response_config(cfg)
    response["instructions"] = cfg.greeting
    return response


async def connect_openai_realtime(cfg: BridgeConfig, ssl_ctx: Optional[ssl.SSLContext] = None) -> Any:
    """Open the model leg.  Raises on any connect/handshake failure."""
    url = realtime_url(cfg)
    headers = {
        "Authorization": f"Bearer {cfg.openai_api_key}",
        "OpenAI-Beta": "realtime=v1",
    }
    if ssl_ctx is None:
        ssl_ctx = build_ssl_context(cfg.wss_pem, cfg.openai_wss_insecure)

    # websockets renamed extra_headers -> additional_headers in 14.0.
    ws = None
    for key in ("additional_headers", "extra_headers"):
        try:
            ws = await websockets.connect(url, max_size=None, ssl=ssl_ctx, **{key: headers})
            break
        except TypeError:
            pass

    if ws is None:
        raise RuntimeError("Cannot pass headers to websockets; upgrade with: pip install websockets>=12")

    logger.info("OpenAI Realtime connected: model=%s", cfg.model)
    return ws
