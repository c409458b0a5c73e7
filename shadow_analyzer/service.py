#!/usr/bin/env python3
"""
Command-line entry point for the shadowing analyzer.

  shadow-analyzer [run]                 connect to mpv and serve cut cycles
  shadow-analyzer devices               list ALSA capture devices
  shadow-analyzer pitch WAV [--compare WAV]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable

from shadow_analyzer.audio_devices import DeviceCatalog, discover_capture_devices
from shadow_analyzer.clips import ClipOrchestrator
from shadow_analyzer.compare import analyze_file, compare_takes
from shadow_analyzer.config import get_cfg, update_mic_settings
from shadow_analyzer.mailbox import DeviceSelection, Mailbox
from shadow_analyzer.models import AnalysisSnapshot, MicDevice
from shadow_analyzer.mpv_ipc import ConnectionLost, MpvIpcClient
from shadow_analyzer.pitch import F0Config
from shadow_analyzer.trigger import ShadowController
from shadow_analyzer.wav import DecodeError

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(cfg: Dict[str, Any], override: str | None = None) -> None:
    log_cfg = cfg.get("logging", {})
    if override:
        level_name = override
    elif log_cfg.get("dev_mode"):
        level_name = "DEBUG"
    else:
        level_name = str(log_cfg.get("level", "INFO"))
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def pitch_config_from(cfg: Dict[str, Any]) -> F0Config:
    pitch_cfg = cfg.get("analysis", {}).get("pitch", {})
    return F0Config.from_durations(
        float(pitch_cfg.get("sample_rate", 24000)),
        frame_ms=float(pitch_cfg.get("frame_ms", 40)),
        hop_ms=float(pitch_cfg.get("hop_ms", 10)),
        fmin_hz=float(pitch_cfg.get("fmin_hz", 70.0)),
        fmax_hz=float(pitch_cfg.get("fmax_hz", 350.0)),
        voicing_threshold=float(pitch_cfg.get("threshold", 0.40)),
    )


def build_orchestrator(
    cfg: Dict[str, Any],
    *,
    mailbox: Mailbox[AnalysisSnapshot],
    selection: DeviceSelection,
    device_source,
    notify=None,
) -> ClipOrchestrator:
    clips_cfg = cfg["clips"]
    mic_cfg = cfg["mic"]
    analysis_cfg = cfg["analysis"]
    return ClipOrchestrator(
        Path(clips_cfg["out_dir"]).expanduser(),
        mailbox=mailbox,
        selection=selection,
        device_source=device_source,
        notify=notify,
        ffmpeg_binary=str(cfg["ffmpeg"]["binary"]),
        sample_rate=int(cfg["ffmpeg"]["sample_rate"]),
        mic_input_format=str(mic_cfg.get("input_format", "alsa")),
        keep=int(clips_cfg["keep"]),
        mic_keep=int(clips_cfg["mic_keep"]),
        analysis_timeout=float(analysis_cfg["timeout_ms"]) / 1000.0,
        analysis_frames=int(analysis_cfg["frames"]),
        ready_timeout=float(mic_cfg["ready_timeout_ms"]) / 1000.0,
        ready_poll=float(mic_cfg["ready_poll_ms"]) / 1000.0,
    )


def _persist_device(device_id: str) -> None:
    update_mic_settings({"device": device_id})


def run_analyzer(cfg: Dict[str, Any]) -> int:
    log = logging.getLogger("shadow_analyzer")
    mpv_cfg = cfg["mpv"]
    clips_cfg = cfg["clips"]
    web_cfg = cfg.get("web_server", {})

    snapshots: Mailbox[AnalysisSnapshot] = Mailbox("snapshot")
    device_mailbox: Mailbox[list[MicDevice]] = Mailbox("devices")
    selection = DeviceSelection(str(cfg["mic"].get("device") or "") or None)
    catalog = DeviceCatalog(discover_capture_devices, mailbox=device_mailbox)

    web_handle = None
    if web_cfg.get("enabled", True):
        # Imported here so the pitch/devices commands do not pull in aiohttp.
        from shadow_analyzer.web_ui import start_web_ui_in_thread

        host = str(web_cfg.get("listen_host", "127.0.0.1"))
        port = int(web_cfg.get("listen_port", 8765))
        try:
            web_handle = start_web_ui_in_thread(
                host,
                port,
                snapshots=snapshots,
                devices_mailbox=device_mailbox,
                selection=selection,
                out_dir=Path(clips_cfg["out_dir"]).expanduser(),
                device_source=catalog.devices,
                persist_device=_persist_device,
                pitch_config=pitch_config_from(cfg),
            )
        except (RuntimeError, OSError) as exc:
            log.error("web UI unavailable on %s:%s, continuing without it: %s", host, port, exc)
    catalog.start_background()

    client = MpvIpcClient.for_socket_path(
        str(mpv_cfg["ipc_path"]),
        retry_interval=float(mpv_cfg["connect_retry_ms"]) / 1000.0,
        request_timeout=float(mpv_cfg["request_timeout_s"]),
    )
    osd_ms = int(mpv_cfg["osd_duration_ms"])
    orchestrator = build_orchestrator(
        cfg,
        mailbox=snapshots,
        selection=selection,
        device_source=catalog.devices,
        notify=lambda message: client.show_text(message, osd_ms),
    )
    controller = ShadowController(
        client,
        orchestrator.run_cycle,
        keyword=str(mpv_cfg["trigger_keyword"]),
        pad=float(clips_cfg["pad_seconds"]),
        stop_lead=float(clips_cfg["stop_lead_seconds"]),
        osd_duration_ms=osd_ms,
    )

    log.info("waiting for mpv on %s", mpv_cfg["ipc_path"])
    try:
        client.open()
        controller.run()
    except ConnectionLost as exc:
        log.error("mpv IPC connection lost: %s", exc)
        return 1
    except KeyboardInterrupt:
        log.info("interrupted")
        return 0
    finally:
        client.close()
        if web_handle is not None:
            web_handle.stop()
    return 0


def _print_devices() -> int:
    devices = discover_capture_devices()
    if not devices:
        print("no capture devices found")
        return 1
    for device in devices:
        print(f"{device.id}\t{device.name}")
    return 0


def _format_hz(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.1f} Hz"


def _run_pitch(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    config = pitch_config_from(cfg)
    try:
        if args.compare:
            result = compare_takes(args.wav, args.compare, config)
            print(f"reference: {_format_hz(result.reference.median_hz)} "
                  f"(voiced {result.reference.voiced_ratio:.0%})")
            print(f"take:      {_format_hz(result.take.median_hz)} "
                  f"(voiced {result.take.voiced_ratio:.0%})")
            if result.offset_cents is None:
                print("offset:    n/a")
            else:
                print(f"offset:    {result.offset_cents:+.0f} cents")
        else:
            result = analyze_file(args.wav, config)
            print(f"median F0: {_format_hz(result.median_hz)}")
            print(f"voiced:    {result.voiced_ratio:.0%} of {result.frame_count} frames")
    except DecodeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="mpv subtitle shadowing analyzer")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: from config).")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Connect to mpv and handle cut triggers (default)")
    subparsers.add_parser("devices", help="List capture devices")

    pitch = subparsers.add_parser("pitch", help="Estimate pitch of a PCM16 WAV file")
    pitch.add_argument("wav", help="Reference WAV file")
    pitch.add_argument("--compare", metavar="WAV", help="Compare against a second take")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    cfg = get_cfg()
    configure_logging(cfg, args.log_level)

    command = args.command or "run"
    if command == "devices":
        return _print_devices()
    if command == "pitch":
        return _run_pitch(args, cfg)
    return run_analyzer(cfg)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
