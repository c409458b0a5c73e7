"""Enumerate ALSA capture devices for the microphone selector."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from typing import Callable, Iterable, List

from shadow_analyzer.mailbox import Mailbox
from shadow_analyzer.models import MicDevice


_DEVICE_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_id>[^\[]+)\[(?P<card_name>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_id>[^\[]+)\[(?P<device_name>[^\]]+)\]",
    re.IGNORECASE,
)

_log = logging.getLogger("audio_devices")


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=2.0,
        )
    except FileNotFoundError:
        return ""
    except subprocess.SubprocessError:
        return ""

    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    return output


def parse_listing(output: str) -> List[tuple[int, int, MicDevice]]:
    """Parse ``arecord -l`` output into ``(card, device, MicDevice)`` tuples."""

    devices: List[tuple[int, int, MicDevice]] = []
    if not output:
        return devices

    for line in output.splitlines():
        match = _DEVICE_LINE.search(line)
        if not match:
            continue
        try:
            card_index = int(match.group("card_index"))
            device_index = int(match.group("device_index"))
        except (TypeError, ValueError):
            continue
        card_id = match.group("card_id").strip()
        device_id = match.group("device_id").strip()
        # plughw lets ALSA convert to the mono/48 kHz the recorder asks for
        identifier = f"plughw:CARD={card_id},DEV={device_index}"

        card_name = match.group("card_name").strip() or card_id
        device_name = match.group("device_name").strip() or device_id
        label = f"{card_name}: {device_name} ({card_id}, device {device_index})"
        devices.append((card_index, device_index, MicDevice(id=identifier, name=label)))
    return devices


def discover_capture_devices() -> List[MicDevice]:
    """Return ALSA capture devices parsed from `arecord -l` or `aplay -l`."""

    seen_ids: set[str] = set()
    discovered: List[tuple[int, int, MicDevice]] = []
    for command in ("arecord -l", "aplay -l"):
        output = _run_listing(command.split())
        if not output:
            continue
        for card_index, device_index, device in parse_listing(output):
            if device.id in seen_ids:
                continue
            seen_ids.add(device.id)
            discovered.append((card_index, device_index, device))
        if discovered:
            break
    discovered.sort(key=lambda entry: (entry[0], entry[1]))
    return [device for _, _, device in discovered]


class DeviceCatalog:
    """Caches the enumerated devices and hands them to the UI once."""

    def __init__(
        self,
        enumerate_devices: Callable[[], List[MicDevice]] = discover_capture_devices,
        *,
        mailbox: Mailbox[list[MicDevice]] | None = None,
    ) -> None:
        self._enumerate = enumerate_devices
        self._mailbox = mailbox
        self._lock = threading.Lock()
        self._devices: list[MicDevice] = []
        self._ready = threading.Event()

    def refresh(self) -> list[MicDevice]:
        try:
            devices = list(self._enumerate())
        except Exception as exc:  # noqa: BLE001 - enumeration backends are external
            _log.warning("device enumeration failed: %r", exc)
            devices = []
        with self._lock:
            self._devices = devices
        self._ready.set()
        _log.info("found %d capture device(s)", len(devices))
        if self._mailbox is not None:
            self._mailbox.publish(list(devices))
        return devices

    def start_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.refresh, name="audio_devices", daemon=True)
        thread.start()
        return thread

    def devices(self) -> list[MicDevice]:
        with self._lock:
            return list(self._devices)

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)


__all__ = ["DeviceCatalog", "discover_capture_devices", "parse_listing"]
