import asyncio
import json
import struct
from pathlib import Path

import numpy as np
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from shadow_analyzer.config import ConfigPersistenceError
from shadow_analyzer.mailbox import DeviceSelection, Mailbox
from shadow_analyzer.models import AnalysisSnapshot, MicDevice
from shadow_analyzer.ui_events import UiEventBus
from shadow_analyzer.web_ui import attach_mailboxes, build_app

MIC = MicDevice(id="plughw:CARD=Mic,DEV=0", name="USB Mic")

SNAPSHOT = AnalysisSnapshot(
    text="hello there",
    start=9.9,
    end=12.1,
    duration=100.0,
    track_index=1,
    clip_path="/clips/show_9900_12100.wav",
    latest_clip_path="/clips/latest.wav",
)


def _tone_wav(path: Path, freq_hz: int, rate: int = 48000, seconds: float = 0.5) -> Path:
    period = rate // freq_hz
    cycle = np.round(12000 * np.sin(2.0 * np.pi * np.arange(period) / period)).astype(np.int16)
    data = np.tile(cycle, int(rate * seconds) // period).astype("<i2").tobytes()
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF", 36 + len(data), b"WAVE",
        b"fmt ", 16, 1, 1, rate, rate * 2, 2, 16,
        b"data", len(data),
    )
    path.write_bytes(header + data)
    return path


@pytest.fixture
def ui_env(tmp_path):
    out_dir = tmp_path / "clips"
    out_dir.mkdir()
    persisted: list[str] = []
    env = {
        "out_dir": out_dir,
        "bus": UiEventBus(),
        "selection": DeviceSelection(),
        "persisted": persisted,
    }
    env["app"] = build_app(
        bus=env["bus"],
        selection=env["selection"],
        out_dir=out_dir,
        device_source=lambda: [MIC],
        persist_device=persisted.append,
    )
    return env


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


def test_index_and_empty_snapshot(ui_env):
    async def runner():
        client, server = await _start_client(ui_env["app"])
        try:
            resp = await client.get("/")
            assert resp.status == 200
            assert "EventSource" in await resp.text()

            resp = await client.get("/api/snapshot")
            assert resp.status == 200
            assert await resp.json() == {}
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_mailbox_wake_publishes_snapshot(ui_env):
    async def runner():
        client, server = await _start_client(ui_env["app"])
        snapshots: Mailbox[AnalysisSnapshot] = Mailbox("snapshot")
        devices: Mailbox[list[MicDevice]] = Mailbox("devices")
        attach_mailboxes(asyncio.get_running_loop(), ui_env["bus"], snapshots, devices)
        try:
            snapshots.publish(SNAPSHOT)
            devices.publish([MIC])
            for _ in range(50):
                if ui_env["bus"].latest("snapshot") is not None:
                    break
                await asyncio.sleep(0.01)

            resp = await client.get("/api/snapshot")
            payload = await resp.json()
            assert payload["text"] == "hello there"
            assert payload["latest_clip_path"] == "/clips/latest.wav"
            assert payload["mic_path"] is None
            assert snapshots.take() is None
            assert ui_env["bus"].latest("devices") == [MIC.to_payload()]
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_event_stream_replays_latest(ui_env):
    async def runner():
        client, server = await _start_client(ui_env["app"])
        ui_env["bus"].publish("snapshot", SNAPSHOT.to_payload())
        try:
            resp = await client.get("/api/events")
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")
            assert await resp.content.readline() == b"retry: 2000\n"
            await resp.content.readline()
            event_id = await resp.content.readline()
            event_type = await resp.content.readline()
            data = await resp.content.readline()
            assert event_id == b"id: 1\n"
            assert event_type == b"event: snapshot\n"
            payload = json.loads(data.decode("utf-8")[len("data: "):])
            assert payload["track_index"] == 1
            resp.close()
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_device_listing_and_selection(ui_env):
    async def runner():
        client, server = await _start_client(ui_env["app"])
        try:
            resp = await client.get("/api/devices")
            payload = await resp.json()
            assert payload == {"devices": [MIC.to_payload()], "selected": None}

            resp = await client.post("/api/device", json={"device": MIC.id})
            assert resp.status == 200
            assert await resp.json() == {"selected": MIC.id}
            assert ui_env["selection"].get() == MIC.id
            assert ui_env["persisted"] == []

            resp = await client.post("/api/device", json={"device": None, "persist": True})
            assert await resp.json() == {"selected": None}
            assert ui_env["selection"].get() is None
            assert ui_env["persisted"] == [""]

            resp = await client.post("/api/device", json={"device": 5})
            assert resp.status == 400
            resp = await client.post("/api/device", data=b"{not json", headers={"Content-Type": "application/json"})
            assert resp.status == 400
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_persist_failure_is_reported(tmp_path):
    def failing(device_id):
        raise ConfigPersistenceError("read-only filesystem")

    app = build_app(bus=UiEventBus(), selection=DeviceSelection(), out_dir=tmp_path, persist_device=failing)

    async def runner():
        client, server = await _start_client(app)
        try:
            resp = await client.post("/api/device", json={"device": "hw:1,0", "persist": True})
            assert resp.status == 500
            payload = await resp.json()
            assert payload["selected"] == "hw:1,0"
            assert "read-only" in payload["error"]
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_clip_files_are_served_by_plain_name(ui_env):
    async def runner():
        (ui_env["out_dir"] / "latest.wav").write_bytes(b"RIFF-fake")
        client, server = await _start_client(ui_env["app"])
        try:
            resp = await client.get("/clips/latest.wav")
            assert resp.status == 200
            assert await resp.read() == b"RIFF-fake"

            for name in ("missing.wav", ".hidden.wav", "notes.txt", "..%2Fsecret.wav"):
                resp = await client.get(f"/clips/{name}")
                assert resp.status == 404, name
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_compare_endpoint(ui_env):
    async def runner():
        client, server = await _start_client(ui_env["app"])
        try:
            resp = await client.get("/api/compare")
            assert resp.status == 404

            _tone_wav(ui_env["out_dir"] / "latest.wav", 150)
            _tone_wav(ui_env["out_dir"] / "latest_mic.wav", 200)
            resp = await client.get("/api/compare")
            assert resp.status == 200
            payload = await resp.json()
            assert payload["reference"]["median_hz"] == pytest.approx(150.0, abs=2.0)
            assert payload["offset_cents"] == pytest.approx(498.0, abs=20.0)

            (ui_env["out_dir"] / "latest_mic.wav").write_bytes(b"definitely not a RIFF file, padded to 44+ bytes")
            resp = await client.get("/api/compare")
            assert resp.status == 422
            assert "error" in await resp.json()
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())
