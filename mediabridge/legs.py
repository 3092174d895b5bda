"""
One side of the bridge: a WebSocket plus an ordered, fire-and-forget outbox.

``send()`` never awaits.  Frames go into an unbounded queue that a writer
task drains into the socket in order, so a slow peer never stalls the
session's event handling.  ``close()`` is idempotent: it stops accepting
new frames, lets the writer finish what is already queued, then closes
the socket exactly once.

A send failure marks the leg lost and reports it through *on_lost*; the
frame is not retried.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)


class Leg:
    __slots__ = (
        "name", "_ws", "_outbox", "_writer", "_closing", "_lost",
        "_on_lost", "frames_sent", "frames_dropped",
    )

    def __init__(self, name: str, on_lost: Optional[Callable[[str], Any]] = None) -> None:
        self.name = name
        self._ws: Any = None
        self._outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._closing = False
        self._lost = False
        self._on_lost = on_lost
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def ready(self) -> bool:
        """Transport attached (the socket reported open)."""
        return self._ws is not None

    @property
    def alive(self) -> bool:
        return not self._closing and not self._lost

    @property
    def ws(self) -> Any:
        return self._ws

    def attach(self, ws: Any) -> None:
        if self._ws is not None:
            raise RuntimeError(f"{self.name} leg already has a transport")
        self._ws = ws
        self._writer = asyncio.create_task(self._drain(), name=f"{self.name}-writer")
        if self._closing:
            self._outbox.put_nowait(None)

    def send(self, frame: str) -> bool:
        if not self.alive or self._ws is None:
            self.frames_dropped += 1
            logger.debug("%s leg not writable, dropping frame (%d bytes)", self.name, len(frame))
            return False
        self._outbox.put_nowait(frame)
        return True

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._writer is not None:
            self._outbox.put_nowait(None)

    async def wait_closed(self) -> None:
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)

    async def _drain(self) -> None:
        ws = self._ws
        try:
            while True:
                frame = await self._outbox.get()
                if frame is None:
                    break
                try:
                    await ws.send(frame)
                except ConnectionClosed as e:
                    logger.info("%s leg closed while sending: %s", self.name, e)
                    self._lost = True
                    break
                except Exception:
                    logger.exception("%s leg send failed", self.name)
                    self._lost = True
                    break
                self.frames_sent += 1
        finally:
            while not self._outbox.empty():
                if self._outbox.get_nowait() is not None:
                    self.frames_dropped += 1
            try:
                await ws.close()
            except Exception:
                logger.debug("%s leg close raised", self.name, exc_info=True)

        if self._lost and self._on_lost is not None:
            self._on_lost(self.name)
