"""
Loopback web view for shadowing results.

The presentation layer only ever reads the mailboxes: their wake callbacks
hop onto this thread's event loop, which drains the slot and fans the value
out to Server-Sent Events subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from aiohttp import web
from aiohttp.web import AppKey

from shadow_analyzer.clips import LATEST_CLIP_NAME, LATEST_MIC_NAME
from shadow_analyzer.compare import compare_takes
from shadow_analyzer.config import ConfigPersistenceError
from shadow_analyzer.mailbox import DeviceSelection, Mailbox
from shadow_analyzer.models import AnalysisSnapshot, MicDevice
from shadow_analyzer.pitch import F0Config
from shadow_analyzer.ui_events import UiEventBus
from shadow_analyzer.wav import DecodeError

EVENT_STREAM_HEARTBEAT_SECONDS = 15.0
EVENT_STREAM_RETRY_MILLIS = 2000

BUS_KEY: AppKey[UiEventBus] = web.AppKey("ui_event_bus", UiEventBus)
SELECTION_KEY: AppKey[DeviceSelection] = web.AppKey("device_selection", DeviceSelection)
OUT_DIR_KEY: AppKey[Path] = web.AppKey("clips_out_dir", Path)
DEVICES_KEY: AppKey[Callable[[], list[MicDevice]]] = web.AppKey("device_source", object)
PERSIST_KEY: AppKey[Any] = web.AppKey("persist_device", object)
PITCH_CONFIG_KEY: AppKey[F0Config] = web.AppKey("pitch_config", F0Config)

_INDEX_HTML = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Shadow analyzer</title>
<style>body{font-family:sans-serif;margin:1.5em}dt{font-weight:bold}dd{margin:0 0 .5em 0}</style>
</head>
<body>
<h1 id="text">waiting for a cut...</h1>
<dl>
  <dt>window</dt><dd id="window"></dd>
  <dt>track</dt><dd id="track"></dd>
  <dt>latency</dt><dd id="latency"></dd>
  <dt>rms / peak</dt><dd id="levels"></dd>
  <dt>pitch offset</dt><dd id="offset"></dd>
</dl>
<p>reference <audio id="ref" controls></audio></p>
<p>your take <audio id="take" controls></audio></p>
<p><label>microphone <select id="device"></select></label></p>
<script>
function set(id, v) { document.getElementById(id).textContent = v == null ? '' : v; }
function clipUrl(p) { return p ? '/clips/' + encodeURIComponent(p.split(/[\\\\/]/).pop()) + '?t=' + Date.now() : ''; }
var es = new EventSource('/api/events');
es.addEventListener('snapshot', function (e) {
  var d = JSON.parse(e.data);
  set('text', d.text);
  set('window', d.start.toFixed(3) + ' - ' + d.end.toFixed(3));
  set('track', d.track_index);
  set('latency', d.latency_ms != null ? d.latency_ms + ' ms' : '');
  set('levels', d.rms != null ? d.rms.toFixed(4) + ' / ' + d.peak.toFixed(4) : '');
  document.getElementById('ref').src = clipUrl(d.latest_clip_path);
  if (d.latest_mic_path) {
    document.getElementById('take').src = clipUrl(d.latest_mic_path);
    fetch('/api/compare').then(function (r) { return r.json(); }).then(function (c) {
      set('offset', c.offset_cents != null ? c.offset_cents.toFixed(0) + ' cents' : 'n/a');
    });
  }
});
es.addEventListener('devices', function (e) {
  var sel = document.getElementById('device');
  sel.innerHTML = '<option value="">default</option>';
  JSON.parse(e.data).forEach(function (d) {
    var o = document.createElement('option'); o.value = d.id; o.textContent = d.name; sel.appendChild(o);
  });
});
document.getElementById('device').addEventListener('change', function (e) {
  fetch('/api/device', {method: 'POST', headers: {'Content-Type': 'application/json'},
    body: JSON.stringify({device: e.target.value || null, persist: true})});
});
</script>
</body>
</html>
"""


def attach_mailboxes(
    loop: asyncio.AbstractEventLoop,
    bus: UiEventBus,
    snapshots: Mailbox[AnalysisSnapshot],
    devices: Mailbox[list[MicDevice]] | None = None,
) -> None:
    """Route mailbox wake-ups onto ``loop`` and publish what they carry."""

    def _drain_snapshot() -> None:
        snapshot = snapshots.take()
        if snapshot is not None:
            bus.publish("snapshot", snapshot.to_payload())

    snapshots.set_wake(lambda: loop.call_soon_threadsafe(_drain_snapshot))

    if devices is not None:
        def _drain_devices() -> None:
            listing = devices.take()
            if listing is not None:
                bus.publish("devices", [device.to_payload() for device in listing])

        devices.set_wake(lambda: loop.call_soon_threadsafe(_drain_devices))


def _safe_clip_path(out_dir: Path, name: str) -> Path | None:
    if not name or "/" in name or "\\" in name or name.startswith("."):
        return None
    if not name.lower().endswith(".wav"):
        return None
    return out_dir / name


def build_app(
    *,
    bus: UiEventBus,
    selection: DeviceSelection,
    out_dir: Path,
    device_source: Callable[[], list[MicDevice]] = list,
    persist_device: Callable[[str], Any] | None = None,
    pitch_config: F0Config | None = None,
) -> web.Application:
    log = logging.getLogger("web_ui")
    app = web.Application()
    app[BUS_KEY] = bus
    app[SELECTION_KEY] = selection
    app[OUT_DIR_KEY] = Path(out_dir)
    app[DEVICES_KEY] = device_source
    app[PERSIST_KEY] = persist_device
    app[PITCH_CONFIG_KEY] = pitch_config or F0Config()

    async def index(_: web.Request) -> web.Response:
        return web.Response(text=_INDEX_HTML, content_type="text/html")

    async def snapshot(request: web.Request) -> web.Response:
        payload = request.app[BUS_KEY].latest("snapshot") or {}
        return web.json_response(payload, headers={"Cache-Control": "no-store"})

    async def devices(request: web.Request) -> web.Response:
        listing = [device.to_payload() for device in request.app[DEVICES_KEY]()]
        return web.json_response(
            {"devices": listing, "selected": request.app[SELECTION_KEY].get()},
            headers={"Cache-Control": "no-store"},
        )

    async def select_device(request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise web.HTTPBadRequest(reason="invalid JSON body")
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(reason="expected a JSON object")
        device = body.get("device")
        if device is not None and not isinstance(device, str):
            raise web.HTTPBadRequest(reason="device must be a string or null")

        selection_handle = request.app[SELECTION_KEY]
        selection_handle.set(device)
        selected = selection_handle.get()
        log.info("microphone selection: %s", selected or "fallback")

        persist = request.app[PERSIST_KEY]
        if body.get("persist") and persist is not None:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, persist, selected or "")
            except ConfigPersistenceError as exc:
                return web.json_response({"selected": selected, "error": str(exc)}, status=500)
        return web.json_response({"selected": selected})

    async def compare(request: web.Request) -> web.Response:
        out = request.app[OUT_DIR_KEY]
        reference = out / LATEST_CLIP_NAME
        take = out / LATEST_MIC_NAME
        if not reference.is_file() or not take.is_file():
            raise web.HTTPNotFound(reason="reference or take missing")
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, compare_takes, reference, take, request.app[PITCH_CONFIG_KEY]
            )
        except DecodeError as exc:
            return web.json_response({"error": str(exc)}, status=422)
        return web.json_response(result.to_payload(), headers={"Cache-Control": "no-store"})

    async def clip_file(request: web.Request) -> web.StreamResponse:
        path = _safe_clip_path(request.app[OUT_DIR_KEY], request.match_info["name"])
        if path is None or not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path, headers={"Cache-Control": "no-store"})

    async def events_stream(request: web.Request) -> web.StreamResponse:
        bus_handle = request.app[BUS_KEY]
        queue = bus_handle.subscribe()
        response = web.StreamResponse(
            status=200,
            headers={
                "Cache-Control": "no-store",
                "Content-Type": "text/event-stream",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        await response.prepare(request)

        heartbeat_chunk = b"event: heartbeat\ndata: {}\n\n"
        try:
            await response.write(f"retry: {EVENT_STREAM_RETRY_MILLIS}\n\n".encode("utf-8"))
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=EVENT_STREAM_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    try:
                        await response.write(heartbeat_chunk)
                    except ConnectionResetError:
                        break
                    continue

                data_text = json.dumps(event.get("payload"), separators=(",", ":"), ensure_ascii=False)
                chunk = f"id: {event['id']}\nevent: {event['type']}\ndata: {data_text}\n\n"
                try:
                    await response.write(chunk.encode("utf-8"))
                except ConnectionResetError:
                    break
        finally:
            bus_handle.unsubscribe(queue)
        return response

    app.router.add_get("/", index)
    app.router.add_get("/api/snapshot", snapshot)
    app.router.add_get("/api/devices", devices)
    app.router.add_post("/api/device", select_device)
    app.router.add_get("/api/compare", compare)
    app.router.add_get("/api/events", events_stream)
    app.router.add_get("/clips/{name}", clip_file)
    return app


class WebUiHandle:
    """Handle returned by start_web_ui_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner) -> None:
        self.thread = thread
        self.loop = loop
        self.runner = runner

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("web_ui")
        log.info("Stopping web_ui ...")
        if self.loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:  # noqa: BLE001 - shutdown diagnostics only
                log.warning("Error during aiohttp runner cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web_ui stopped")


def start_web_ui_in_thread(
    host: str,
    port: int,
    *,
    snapshots: Mailbox[AnalysisSnapshot],
    devices_mailbox: Mailbox[list[MicDevice]] | None,
    selection: DeviceSelection,
    out_dir: Path,
    device_source: Callable[[], list[MicDevice]] = list,
    persist_device: Callable[[str], Any] | None = None,
    pitch_config: F0Config | None = None,
    access_log: bool = False,
) -> WebUiHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    log = logging.getLogger("web_ui")
    loop = asyncio.new_event_loop()
    bus = UiEventBus()
    started = threading.Event()
    runner_box: dict[str, web.AppRunner] = {}

    def _run() -> None:
        asyncio.set_event_loop(loop)
        app = build_app(
            bus=bus,
            selection=selection,
            out_dir=out_dir,
            device_source=device_source,
            persist_device=persist_device,
            pitch_config=pitch_config,
        )
        runner = web.AppRunner(app, access_log=log if access_log else None)
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, host, port)
        loop.run_until_complete(site.start())
        runner_box["runner"] = runner
        attach_mailboxes(loop, bus, snapshots, devices_mailbox)
        log.info("web_ui started on http://%s:%s/", host, port)
        started.set()
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except RuntimeError:
                pass

    t = threading.Thread(target=_run, name="web_ui", daemon=True)
    t.start()

    while not started.wait(timeout=0.05):
        if not t.is_alive():
            raise RuntimeError(f"web_ui failed to start on {host}:{port}")
        time.sleep(0)

    return WebUiHandle(t, loop, runner_box["runner"])


__all__ = [
    "WebUiHandle",
    "attach_mailboxes",
    "build_app",
    "start_web_ui_in_thread",
]
