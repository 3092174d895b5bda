import asyncio
import json

from mediabridge import health


async def _get(port: int, path: str) -> tuple[str, dict]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    raw = (await reader.read()).decode()
    writer.close()
    head, _, body = raw.partition("\r\n\r\n")
    return head.split("\r\n")[0], json.loads(body)


def test_liveness_probe_reports_ok_and_404():
    async def scenario():
        server = await health.start_health_server("127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            root = await _get(port, "/")
            healthz = await _get(port, "/healthz?verbose=1")
            missing = await _get(port, "/metrics")
        finally:
            server.close()
            await server.wait_closed()
        return root, healthz, missing

    root, healthz, missing = asyncio.run(scenario())
    assert root[0] == "HTTP/1.1 200 OK"
    assert root[1]["status"] == "ok"
    assert healthz[0] == "HTTP/1.1 200 OK"
    assert "active_sessions" in healthz[1]
    assert missing[0] == "HTTP/1.1 404 Not Found"


def test_session_counters_never_go_negative():
    before = health.get_active_sessions()
    total_before = health.get_total_sessions()
    health.session_started()
    assert health.get_active_sessions() == before + 1
    assert health.get_total_sessions() == total_before + 1
    health.session_ended()
    assert health.get_active_sessions() == before
    for _ in range(before + 2):
        health.session_ended()
    assert health.get_active_sessions() == 0
