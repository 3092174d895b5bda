"""
Liveness probe for load balancers and Kubernetes.

Runs alongside the WebSocket server on a separate port so probes never
reach the media path.  Reports success while the process is accepting
connections, plus the number of calls in flight.

Usage in Kubernetes:
  livenessProbe:
    httpGet:
      path: /healthz
      port: 8766
"""
from __future__ import annotations

import asyncio
import json
import logging
import time

logger = logging.getLogger(__name__)

_active_sessions: int = 0
_total_sessions: int = 0
_start_time: float = 0.0


def get_active_sessions() -> int:
    return _active_sessions


def get_total_sessions() -> int:
    return _total_sessions


def session_started() -> None:
    global _active_sessions, _total_sessions
    _active_sessions += 1
    _total_sessions += 1


def session_ended() -> None:
    global _active_sessions
    _active_sessions = max(0, _active_sessions - 1)


async def _handle_health(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Handle one HTTP probe request."""
    try:
        data = await asyncio.wait_for(reader.read(4096), timeout=5.0)
        request_line = data.decode("utf-8", errors="replace").split("\r\n")[0]
        path = request_line.split(" ")[1] if " " in request_line else "/"
    except (asyncio.TimeoutError, OSError, IndexError):
        writer.close()
        return

    path = path.split("?", 1)[0]
    if path in ("/", "/healthz"):
        body = json.dumps({
            "status": "ok",
            "uptime_s": round(time.monotonic() - _start_time, 1),
            "active_sessions": _active_sessions,
            "total_sessions": _total_sessions,
        })
        status = "200 OK"
    else:
        body = json.dumps({"error": "not found"})
        status = "404 Not Found"

    response = (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )
    writer.write(response.encode("utf-8"))
    try:
        await writer.drain()
    except OSError:
        logger.debug("Health probe client went away", exc_info=True)
    writer.close()


async def start_health_server(host: str = "0.0.0.0", port: int = 8766) -> asyncio.AbstractServer:
    global _start_time
    _start_time = time.monotonic()

    server = await asyncio.start_server(_handle_health, host, port)
    logger.info("Health check server listening on %s:%d", host, port)
    return server
