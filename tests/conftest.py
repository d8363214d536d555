import json
from typing import Any, Dict, List, Optional

import pytest

from adb_tools import DeviceInfo, DeviceSnapshot, Screenshot, UISnapshot
from config import Settings
from errors import TransportError
from ui_elements import parse_layout

LAYOUT_XML = """<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>
<hierarchy rotation="0">
  <node index="0" text="" resource-id="" class="android.widget.FrameLayout" content-desc=""
        clickable="false" bounds="[0,0][1080,2400]">
    <node index="0" text="Settings" resource-id="com.android.launcher:id/icon"
          class="android.widget.TextView" content-desc="Settings" clickable="true"
          bounds="[100,200][220,320]" />
    <node index="1" text="Search" resource-id="com.android.launcher:id/search"
          class="android.widget.EditText" content-desc="" clickable="true"
          bounds="[40,2200][1040,2320]" />
  </node>
</hierarchy>
"""


class FakeDevice:
    """Records input calls; capture returns a fixed layout."""

    def __init__(self, fail_on: Optional[Dict[str, str]] = None) -> None:
        self.calls: List[tuple] = []
        self.fail_on = fail_on or {}
        self.captures = 0

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise TransportError(self.fail_on[name], returncode=1)

    def capture_state(self) -> DeviceSnapshot:
        self.captures += 1
        return DeviceSnapshot(
            screenshot=Screenshot(base64="aW1n", path="/tmp/screen.png", timestamp=1000 + self.captures),
            ui=self.extract_ui_elements(),
        )

    def extract_ui_elements(self) -> UISnapshot:
        return UISnapshot(root=parse_layout(LAYOUT_XML), timestamp=2000 + self.captures)

    def capture_screen(self) -> Screenshot:
        return Screenshot(base64="aW1n", path="/tmp/screen.png", timestamp=1234)

    def check_connected_devices(self) -> DeviceInfo:
        return DeviceInfo(id="emulator-5554", status="connected")

    def setup(self) -> DeviceInfo:
        return self.check_connected_devices()

    def tap(self, x, y):
        self._record("tap", x, y)
        return {"success": True, "x": x, "y": y}

    def swipe(self, start_x, start_y, end_x, end_y, duration=300):
        self._record("swipe", start_x, start_y, end_x, end_y, duration)
        return {"success": True, "startX": start_x, "startY": start_y, "endX": end_x, "endY": end_y,
                "duration": duration}

    def input_text(self, text):
        self._record("input_text", text)
        return {"success": True, "text": text}

    def press_key(self, keycode):
        self._record("press_key", keycode)
        return {"success": True, "keycode": keycode}

    @property
    def input_calls(self) -> List[tuple]:
        return list(self.calls)


class FakeGateway:
    """Replays canned model replies and keeps the prompts it was given."""

    def __init__(self, replies: List[Any]) -> None:
        self.replies = list(replies)
        self.prompts: List[Any] = []
        self.images: List[Optional[str]] = []

    def infer(self, parts, image_base64=None) -> str:
        self.prompts.append(parts)
        self.images.append(image_base64)
        if not self.replies:
            raise AssertionError("FakeGateway ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        llm_provider="openai",
        llm_endpoint="https://llm.example.com/v1/chat/completions",
        llm_model="vision-model",
        llm_api_key="test-key",
        capture_dir=tmp_path / "captures",
        log_dir=tmp_path / "logs",
        settle_delay=0.0,
        max_turns=4,
    )


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()
