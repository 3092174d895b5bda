"""
Bridge server: accepts telephony WebSocket connections, one Session each.

Every accepted connection gets its own model connection and its own
Session; nothing is shared between calls except the probe counters.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import signal
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import websockets

from .config import BridgeConfig
from .health import session_ended, session_started, start_health_server
from .openai_client import build_ssl_context, connect_openai_realtime
from .session import Session

logger = logging.getLogger(__name__)

ModelConnectorFactory = Callable[[], Awaitable[Any]]


def _request_path(ws: Any) -> Optional[str]:
    # websockets >= 13 exposes the handshake as ws.request; legacy servers as ws.path.
    request = getattr(ws, "request", None)
    path = getattr(request, "path", None) if request is not None else getattr(ws, "path", None)
    if not isinstance(path, str):
        return None
    return urlsplit(path).path


class BridgeServer:
    def __init__(self, cfg: BridgeConfig, connect_model: Optional[ModelConnectorFactory] = None) -> None:
        self._cfg = cfg
        if connect_model is None:
            ssl_ctx = build_ssl_context(cfg.wss_pem, cfg.openai_wss_insecure)
            connect_model = functools.partial(connect_openai_realtime, cfg, ssl_ctx)
        self._connect_model = connect_model
        self._active: set[asyncio.Task] = set()

    @property
    def active_calls(self) -> int:
        return len(self._active)

    async def handle_connection(self, ws: Any) -> None:
        peer = getattr(ws, "remote_address", None)
        path = _request_path(ws)
        if self._cfg.ws_path and path is not None and path != self._cfg.ws_path:
            logger.warning("Rejecting %s: path %r != %r", peer, path, self._cfg.ws_path)
            await ws.close(1008, "Unknown path")
            return

        logger.info("Telephony stream connected: %s", peer)
        task = asyncio.current_task()
        if task is not None:
            self._active.add(task)
        session_started()
        session = Session(self._cfg, ws, self._connect_model)
        try:
            await session.run()
        except Exception:
            logger.exception("[%s] Bridge error", session.label)
            session.close("bridge error")
            await session.wait_closed()
        finally:
            session_ended()
            if task is not None:
                self._active.discard(task)
            logger.info("Telephony stream ended: %s (%s)", peer, session.label)

    async def serve(self, stop_event: Optional[asyncio.Event] = None) -> None:
        cfg = self._cfg
        if stop_event is None:
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop_event.set)
                except (NotImplementedError, OSError):
                    pass

        health_srv = None
        if cfg.health_port > 0:
            try:
                health_srv = await start_health_server(cfg.host, cfg.health_port)
            except OSError:
                logger.warning("Health server failed to start", exc_info=True)

        async with websockets.serve(self.handle_connection, cfg.host, cfg.port, max_size=1024 * 1024):
            logger.info("Listening on ws://%s:%d%s", cfg.host, cfg.port, cfg.ws_path)
            await stop_event.wait()
            logger.info("Shutting down gracefully...")

            # ── Drain active calls (max 10 s) ──
            if self._active:
                logger.info("Waiting for %d active call(s) to finish...", len(self._active))
                _, still_running = await asyncio.wait(set(self._active), timeout=10.0)
                for t in still_running:
                    t.cancel()
                if still_running:
                    logger.warning("Force-cancelled %d call(s) on shutdown", len(still_running))

        if health_srv is not None:
            health_srv.close()
            await health_srv.wait_closed()
