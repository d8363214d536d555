"""
ADB Tools Module

Wraps the ``adb`` binary for screen capture, layout capture and raw input
(tap, swipe, text, keyevent). Every call is a blocking subprocess; async
callers run these methods in an executor.
"""
from __future__ import annotations

import base64
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import CaptureError, ConfigurationError, TransportError
from logging_utils import log
from ui_elements import Element, parse_layout

_TEXT_SPECIAL_CHARS = re.compile(r"([()&|;<>'\"`\\$*?~#])")


@dataclass
class DeviceInfo:
    id: str
    status: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "status": self.status}


@dataclass
class Screenshot:
    base64: str
    path: str
    timestamp: int


@dataclass
class LayoutCapture:
    xml: str
    path: str
    timestamp: int


@dataclass
class UISnapshot:
    root: Element
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"elements": self.root.to_dict(), "timestamp": self.timestamp}


@dataclass
class DeviceSnapshot:
    screenshot: Optional[Screenshot]
    ui: Optional[UISnapshot]

    @property
    def elements(self) -> Optional[Element]:
        return self.ui.root if self.ui else None


def _now_ms() -> int:
    return int(time.time() * 1000)


def escape_input_text(text: str) -> str:
    """Escape text for ``adb shell input text`` (spaces become ``%s``)."""
    escaped = _TEXT_SPECIAL_CHARS.sub(r"\\\1", text)
    return re.sub(r"\s", "%s", escaped)


class AdbDevice:
    """A single Android device reached through adb."""

    def __init__(
        self,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        capture_dir: Optional[Path] = None,
        command_timeout: float = 20.0,
    ) -> None:
        self.adb_path = adb_path
        self.serial = serial
        self.capture_dir = Path(capture_dir) if capture_dir else Path(__file__).resolve().parent / "screenshots"
        self.command_timeout = command_timeout
        self._resolved_adb: Optional[str] = None
        self.connected_device: Optional[DeviceInfo] = None

    # ------------------------------------------------------------------ #
    # Subprocess plumbing
    # ------------------------------------------------------------------ #
    def _adb_binary(self) -> str:
        if self._resolved_adb is None:
            resolved = shutil.which(self.adb_path)
            if resolved is None and os.path.isfile(self.adb_path):
                resolved = self.adb_path
            if resolved is None:
                raise ConfigurationError(f"adb binary not found: {self.adb_path} (set ADB_PATH)")
            self._resolved_adb = resolved
        return self._resolved_adb

    def _run(self, args: List[str], error_cls=TransportError) -> subprocess.CompletedProcess:
        cmd = [self._adb_binary()]
        if self.serial:
            cmd += ["-s", self.serial]
        cmd += args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.command_timeout)
        except subprocess.TimeoutExpired:
            raise error_cls(f"adb command timed out after {self.command_timeout}s: {' '.join(args)}", command=cmd)
        except OSError as exc:
            raise error_cls(f"Failed to run adb: {exc}", command=cmd)
        if result.returncode != 0:
            stderr = result.stderr
            raise error_cls(
                f"adb command failed: {' '.join(args)}",
                command=cmd,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def _ensure_connected(self) -> None:
        if self.connected_device is None:
            self.check_connected_devices()

    # ------------------------------------------------------------------ #
    # Device discovery
    # ------------------------------------------------------------------ #
    def check_connected_devices(self) -> DeviceInfo:
        """Bind to the configured serial, or the first device in ``device`` state."""
        result = self._run(["devices"])
        lines = result.stdout.strip().split("\n")[1:]  # Skip header
        for line in lines:
            parts = line.strip().split("\t")
            if len(parts) < 2 or parts[1].strip() != "device":
                continue
            device_id = parts[0].strip()
            if self.serial and device_id != self.serial:
                continue
            self.connected_device = DeviceInfo(id=device_id, status="connected")
            log("OK", f"Connected to device: {device_id}")
            return self.connected_device
        self.connected_device = None
        raise TransportError("No Android device connected")

    def setup(self) -> DeviceInfo:
        self.capture_dir.mkdir(parents=True, exist_ok=True)
        return self.check_connected_devices()

    # ------------------------------------------------------------------ #
    # Capture
    # ------------------------------------------------------------------ #
    def _pull_and_remove(self, remote_path: str, local_path: Path) -> None:
        self._run(["pull", remote_path, str(local_path)], error_cls=CaptureError)
        self._run(["shell", "rm", remote_path], error_cls=CaptureError)

    def capture_screen(self) -> Screenshot:
        """Take a screenshot on the device and return it base64 encoded."""
        try:
            self._ensure_connected()
        except TransportError as exc:
            raise CaptureError(f"Screenshot failed: {exc}")
        self.capture_dir.mkdir(parents=True, exist_ok=True)
        timestamp = _now_ms()
        filename = f"screen_{timestamp}.png"
        remote_path = f"/sdcard/{filename}"
        local_path = self.capture_dir / filename

        self._run(["shell", "screencap", "-p", remote_path], error_cls=CaptureError)
        self._pull_and_remove(remote_path, local_path)
        try:
            image_bytes = local_path.read_bytes()
        except OSError as exc:
            raise CaptureError(f"Failed to read screenshot {local_path}: {exc}")
        log("CAP", f"Screenshot captured: {local_path.name}")
        return Screenshot(
            base64=base64.b64encode(image_bytes).decode("ascii"),
            path=str(local_path),
            timestamp=timestamp,
        )

    def capture_layout_tree(self) -> LayoutCapture:
        """Dump the UI hierarchy with uiautomator and return the XML."""
        try:
            self._ensure_connected()
        except TransportError as exc:
            raise CaptureError(f"Layout capture failed: {exc}")
        self.capture_dir.mkdir(parents=True, exist_ok=True)
        timestamp = _now_ms()
        filename = f"hierarchy_{timestamp}.xml"
        remote_path = f"/sdcard/{filename}"
        local_path = self.capture_dir / filename

        self._run(["shell", "uiautomator", "dump", remote_path], error_cls=CaptureError)
        self._pull_and_remove(remote_path, local_path)
        try:
            xml_text = local_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CaptureError(f"Failed to read layout dump {local_path}: {exc}")
        return LayoutCapture(xml=xml_text, path=str(local_path), timestamp=timestamp)

    def extract_ui_elements(self) -> UISnapshot:
        capture = self.capture_layout_tree()
        root = parse_layout(capture.xml)
        return UISnapshot(root=root, timestamp=capture.timestamp)

    def capture_state(self) -> DeviceSnapshot:
        """Screenshot plus element tree, taken back to back."""
        screenshot = self.capture_screen()
        ui = self.extract_ui_elements()
        return DeviceSnapshot(screenshot=screenshot, ui=ui)

    # ------------------------------------------------------------------ #
    # Raw input
    # ------------------------------------------------------------------ #
    def tap(self, x: int, y: int) -> Dict[str, Any]:
        self._ensure_connected()
        log("ACT", f"Tap ({x}, {y})")
        self._run(["shell", "input", "tap", str(x), str(y)])
        return {"success": True, "x": x, "y": y}

    def swipe(self, start_x: int, start_y: int, end_x: int, end_y: int, duration: int = 300) -> Dict[str, Any]:
        self._ensure_connected()
        log("ACT", f"Swipe ({start_x}, {start_y}) -> ({end_x}, {end_y}) in {duration}ms")
        self._run(["shell", "input", "swipe", str(start_x), str(start_y), str(end_x), str(end_y), str(duration)])
        return {
            "success": True,
            "startX": start_x,
            "startY": start_y,
            "endX": end_x,
            "endY": end_y,
            "duration": duration,
        }

    def input_text(self, text: str) -> Dict[str, Any]:
        self._ensure_connected()
        log("ACT", f"Input text: {text!r}")
        self._run(["shell", "input", "text", escape_input_text(text)])
        return {"success": True, "text": text}

    def press_key(self, keycode: int) -> Dict[str, Any]:
        self._ensure_connected()
        log("ACT", f"Key event {keycode}")
        self._run(["shell", "input", "keyevent", str(keycode)])
        return {"success": True, "keycode": keycode}


__all__ = [
    "AdbDevice",
    "DeviceInfo",
    "DeviceSnapshot",
    "LayoutCapture",
    "Screenshot",
    "UISnapshot",
    "escape_input_text",
]
