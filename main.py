from __future__ import annotations

import asyncio
import hashlib
import logging

from mediabridge.config import BridgeConfig, load_config
from mediabridge.logging_utils import setup_logging
from mediabridge.server import BridgeServer


logger = logging.getLogger(__name__)


def _mask_secret(s: str, prefix: int = 8, suffix: int = 6) -> str:
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= prefix + suffix:
        return "*" * len(s)
    return f"{s[:prefix]}...{s[-suffix:]}"


def _sha256_prefix(s: str, n: int = 12) -> str:
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:n]


def _log_config(cfg: BridgeConfig) -> None:
    logging.getLogger("mediabridge").info(
        "Config: host=%s port=%s ws_path=%s health_port=%s model=%s voice=%s audio_path=%s "
        "commit_policy=%s commit_min_ms=%s commit_silence_ms=%s commit_interval_ms=%s commit_silence_level=%s "
        "greeting=%s session_extra_keys=%s wss_pem=%s openai_wss_insecure=%s "
        "OPENAI_API_KEY_MASKED=%s OPENAI_API_KEY_SHA256_12=%s",
        cfg.host,
        cfg.port,
        cfg.ws_path,
        cfg.health_port,
        cfg.model,
        cfg.voice,
        cfg.audio_path,
        cfg.commit_policy,
        cfg.commit_min_ms,
        cfg.commit_silence_ms,
        cfg.commit_interval_ms,
        cfg.commit_silence_level,
        bool(cfg.greeting),
        sorted(cfg.session_extra),
        cfg.wss_pem,
        cfg.openai_wss_insecure,
        _mask_secret(cfg.openai_api_key),
        _sha256_prefix(cfg.openai_api_key),
    )


async def _async_main() -> None:
    """Async entry point: loads config and runs the bridge until SIGINT/SIGTERM."""
    setup_logging()
    cfg = load_config()
    logging.getLogger("mediabridge").info("=== mediabridge starting (config dump below, secrets masked) ===")
    _log_config(cfg)

    await BridgeServer(cfg).serve()


def main() -> None:
    try:
        asyncio.run(_async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
