from __future__ import annotations
from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

AUDIO_PATHS = ("ulaw", "pcm16")
COMMIT_POLICIES = ("silence", "interval", "server_vad")


def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(v)
    except Exception as e:
        raise ValueError(f"{key} must be an int, got {v!r}") from e


def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return default
    try:
        return float(v)
    except Exception as e:
        raise ValueError(f"{key} must be a float, got {v!r}") from e


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_json(key: str) -> dict[str, Any]:
    v = os.getenv(key)
    if v is None or str(v).strip() == "":
        return {}
    try:
        parsed = json.loads(v)
    except Exception as e:
        raise ValueError(f"{key} must be a JSON object, got {v!r}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"{key} must be a JSON object, got {type(parsed).__name__}")
    return parsed


def _env_choice(key: str, default: str, choices: tuple[str, ...]) -> str:
    v = os.getenv(key, default).strip().lower() or default
    if v not in choices:
        raise ValueError(f"{key} must be one of {', '.join(choices)}, got {v!r}")
    return v


@dataclass(frozen=True)
class BridgeConfig:
    openai_api_key: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    ws_path: str = "/twilio"
    health_port: int = 8766

    model: str = "gpt-4o-realtime-preview"
    voice: str = "alloy"
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    temperature: float = 0.6
    system_instructions: str = ""
    greeting: str = ""
    modalities: tuple[str, ...] = ("text", "audio")
    session_extra: dict[str, Any] = field(default_factory=dict)

    audio_path: str = "ulaw"
    commit_policy: str = "interval"
    commit_min_ms: int = 100
    commit_silence_ms: int = 500
    commit_interval_ms: int = 200
    # RMS on the PCM16 scale below which a chunk counts as silence (silence policy).
    commit_silence_level: float = 500.0

    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500

    mark_name: str = "done"

    wss_pem: str = ""
    openai_wss_insecure: bool = False

    def __post_init__(self) -> None:
        if self.audio_path not in AUDIO_PATHS:
            raise ValueError(f"audio_path must be one of {AUDIO_PATHS}, got {self.audio_path!r}")
        if self.commit_policy not in COMMIT_POLICIES:
            raise ValueError(f"commit_policy must be one of {COMMIT_POLICIES}, got {self.commit_policy!r}")
        if self.commit_min_ms <= 0:
            raise ValueError("commit_min_ms must be positive")
        if self.commit_silence_ms <= 0 or self.commit_interval_ms <= 0:
            raise ValueError("commit timer intervals must be positive")
        if self.commit_silence_level < 0:
            raise ValueError("commit_silence_level must be >= 0")


def load_config(env_file: str | None = None) -> BridgeConfig:
    """Load config from .env + environment.

    Precedence: real environment wins over .env values.
    """
    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    host = os.getenv("HOST", "0.0.0.0").strip()
    port = _env_int("PORT", 3000)
    ws_path = os.getenv("WS_PATH", "/twilio").strip()
    health_port = _env_int("HEALTH_PORT", 8766)

    openai_api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not openai_api_key:
        raise ValueError("OPENAI_API_KEY is required")

    model = os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview").strip()
    voice = os.getenv("OPENAI_REALTIME_VOICE", "alloy").strip()
    realtime_url = os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime").strip()
    temperature = _env_float("OPENAI_TEMPERATURE", 0.6)
    system_instructions = os.getenv("OPENAI_SYSTEM_INSTRUCTIONS", "").strip()
    greeting = os.getenv("OPENAI_GREETING", "").strip()
    session_extra = _env_json("OPENAI_SESSION_EXTRA")

    modalities = tuple(
        m.strip() for m in os.getenv("OPENAI_MODALITIES", "text,audio").split(",") if m.strip()
    )
    if not modalities:
        raise ValueError("OPENAI_MODALITIES must name at least one modality")

    audio_path = _env_choice("AUDIO_PATH", "ulaw", AUDIO_PATHS)
    commit_policy = _env_choice("COMMIT_POLICY", "interval", COMMIT_POLICIES)
    commit_min_ms = _env_int("COMMIT_MIN_MS", 100)
    commit_silence_ms = _env_int("COMMIT_SILENCE_MS", 500)
    commit_interval_ms = _env_int("COMMIT_INTERVAL_MS", 200)
    commit_silence_level = _env_float("COMMIT_SILENCE_LEVEL", 500.0)

    vad_threshold = _env_float("VAD_THRESHOLD", 0.5)
    vad_prefix_padding_ms = _env_int("VAD_PREFIX_PADDING_MS", 300)
    vad_silence_duration_ms = _env_int("VAD_SILENCE_DURATION_MS", 500)

    mark_name = os.getenv("MARK_NAME", "done").strip() or "done"

    wss_pem = os.getenv("WSS_PEM", "").strip().strip('"').strip("'")
    if wss_pem and not os.path.isabs(wss_pem):
        wss_pem = str(Path(wss_pem).expanduser().resolve())

    openai_wss_insecure = _env_bool("OPENAI_WSS_INSECURE", False)

    if commit_policy == "server_vad" and greeting:
        logger.info("COMMIT_POLICY=server_vad: greeting will be sent before any caller turn")
    if commit_policy == "silence" and commit_silence_ms < 200:
        logger.warning(
            "COMMIT_SILENCE_MS=%d is very short; turns may be cut mid-sentence.",
            commit_silence_ms,
        )
    if ws_path and not ws_path.startswith("/"):
        logger.warning("WS_PATH=%r does not start with '/'; no request will match it", ws_path)

    return BridgeConfig(
        openai_api_key=openai_api_key,
        host=host,
        port=port,
        ws_path=ws_path,
        health_port=health_port,
        model=model,
        voice=voice,
        realtime_url=realtime_url,
        temperature=temperature,
        system_instructions=system_instructions,
        greeting=greeting,
        modalities=modalities,
        session_extra=session_extra,
        audio_path=audio_path,
        commit_policy=commit_policy,
        commit_min_ms=commit_min_ms,
        commit_silence_ms=commit_silence_ms,
        commit_interval_ms=commit_interval_ms,
        commit_silence_level=commit_silence_level,
        vad_threshold=vad_threshold,
        vad_prefix_padding_ms=vad_prefix_padding_ms,
        vad_silence_duration_ms=vad_silence_duration_ms,
        mark_name=mark_name,
        wss_pem=wss_pem,
        openai_wss_insecure=openai_wss_insecure,
    )
