from __future__ import annotations

import asyncio
import socket
from pathlib import Path

import aiohttp
import orjson
import pytest

from aiomultiview.client.sync import SyncController
from aiomultiview.server.registry import StreamRegistry
from aiomultiview.server.server import MultiviewServer
from aiomultiview.server.supervisor import ProcessSupervisor

from helpers import FakeSpawner

SOURCE = "rtsp://camera.local/live"


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _Player:
    def __init__(self, position: float) -> None:
        self.current_time = position
        self.paused = False
        self.playback_rate = 1.0

    async def play(self) -> None:
        self.paused = False

    def pause(self) -> None:
        self.paused = True


async def _start(
    tmp_path: Path,
    spawner: FakeSpawner,
    *,
    count: int = 3,
    sync_controller: SyncController | None = None,
) -> tuple[MultiviewServer, str]:
    loop = asyncio.get_running_loop()
    supervisor = ProcessSupervisor(
        loop,
        StreamRegistry(count, output_dir=tmp_path),
        SOURCE,
        spawn=spawner,
        settle_delay=0.01,
        restart_cooldown=10.0,
        restart_settle=0.01,
    )
    server = MultiviewServer(loop, supervisor, sync_controller=sync_controller)
    port = _get_free_port()
    await server.start_server(port, "127.0.0.1", advertise_mdns=False, start_delay=None)
    return server, f"http://127.0.0.1:{port}"


@pytest.mark.asyncio
async def test_streams_and_health_endpoints(tmp_path: Path, spawner: FakeSpawner) -> None:
    server, base = await _start(tmp_path, spawner)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/api/streams") as resp:
                assert resp.status == 200
                data = await resp.json()
            assert data["source"] == SOURCE
            assert [s["id"] for s in data["streams"]] == [1, 2, 3]
            assert [s["delay"] for s in data["streams"]] == [0.0, 0.3, 0.6]
            assert data["streams"][0]["url"] == "/streams/stream1/playlist.m3u8"

            async with session.get(f"{base}/api/streams/health") as resp:
                data = await resp.json()
            assert data["overall_health"] == "critical"
            assert [s["running"] for s in data["streams"]] == [False, False, False]

            await server.supervisor.start_all()
            spawner.latest(2).exit(1)
            await asyncio.sleep(0.02)

            async with session.get(f"{base}/api/streams/health") as resp:
                data = await resp.json()
            assert data["overall_health"] == "degraded"
            crashed = data["streams"][1]
            assert crashed["running"] is False
            assert crashed["error_kind"] == "crash_exit"
            assert "last_update" in crashed
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_restart_endpoint(tmp_path: Path, spawner: FakeSpawner) -> None:
    server, base = await _start(tmp_path, spawner, count=2)
    try:
        await server.supervisor.start_all()
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/api/streams/restart") as resp:
                assert resp.status == 200
                assert await resp.json() == {
                    "success": True,
                    "message": "All streams restarted",
                }
        assert len(spawner.calls) == 4
        assert all(len(spawner.live(i)) == 1 for i in (1, 2))
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_restart_endpoint_reports_failure(
    tmp_path: Path, spawner: FakeSpawner, monkeypatch: pytest.MonkeyPatch
) -> None:
    server, base = await _start(tmp_path, spawner, count=1)

    async def _fail() -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(server.supervisor, "restart_all", _fail)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/api/streams/restart") as resp:
                assert resp.status == 500
                assert await resp.json() == {"error": "Failed to restart streams"}
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_static_hls_headers(tmp_path: Path, spawner: FakeSpawner) -> None:
    server, base = await _start(tmp_path, spawner, count=1)
    stream_dir = tmp_path / "stream1"
    stream_dir.mkdir()
    (stream_dir / "playlist.m3u8").write_text("#EXTM3U\n#EXT-X-TARGETDURATION:2\n")
    (stream_dir / "segment_0.ts").write_bytes(b"\x47" * 188)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/streams/stream1/playlist.m3u8") as resp:
                assert resp.status == 200
                assert (await resp.text()).startswith("#EXTM3U")
                assert resp.headers["Access-Control-Allow-Origin"] == "*"
                assert resp.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"

            async with session.get(f"{base}/streams/stream1/segment_0.ts") as resp:
                assert resp.status == 200
                assert len(await resp.read()) == 188
                assert resp.headers["Cache-Control"] == "public, max-age=10"

            async with session.get(f"{base}/streams/stream1/segment_9.ts") as resp:
                assert resp.status == 404

            async with session.get(f"{base}/api/streams") as resp:
                assert "Access-Control-Allow-Origin" not in resp.headers
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_websocket_pushes_health_changes(tmp_path: Path, spawner: FakeSpawner) -> None:
    server, base = await _start(tmp_path, spawner, count=2)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(f"{base}/api/streams/ws") as ws:
                initial = orjson.loads(await ws.receive_str(timeout=2))
                assert initial["overall_health"] == "critical"

                await server.supervisor.start_all()
                report = orjson.loads(await ws.receive_str(timeout=2))
                while report["overall_health"] != "healthy":
                    report = orjson.loads(await ws.receive_str(timeout=2))

                spawner.latest(1).exit(1)
                report = orjson.loads(await ws.receive_str(timeout=2))
                assert report["overall_health"] == "degraded"
                assert report["streams"][0]["error_kind"] == "crash_exit"
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_sync_endpoint(tmp_path: Path, spawner: FakeSpawner) -> None:
    server, base = await _start(tmp_path, spawner, count=1)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/api/sync") as resp:
                assert resp.status == 404
                assert await resp.json() == {"error": "No sync controller attached"}
    finally:
        await server.close()

    controller = SyncController()
    controller.add_source(_Player(10.0), 1)
    controller.add_source(_Player(10.2), 2)
    server, base = await _start(tmp_path, spawner, count=2, sync_controller=controller)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/api/sync") as resp:
                assert resp.status == 200
                data = await resp.json()
        assert data["summary"]["quality"] == "good"
        assert data["streams"][1]["stream_id"] == 2
        assert data["streams"][1]["drift"] == pytest.approx(0.2)
        assert data["streams"][1]["is_synced"] is True
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_close_stops_writers_and_keeps_output(
    tmp_path: Path, spawner: FakeSpawner
) -> None:
    server, _base = await _start(tmp_path, spawner, count=2)
    await server.supervisor.start_all()
    (tmp_path / "stream1" / "playlist.m3u8").write_text("#EXTM3U\n")

    await server.close()

    assert all(p.terminated for procs in spawner.processes.values() for p in procs)
    assert (tmp_path / "stream1" / "playlist.m3u8").exists()
