"""
Device command grammar.

The model emits commands as JSON objects tagged by ``type``. ``parse_command``
turns such a dict into one of the dataclasses below, raising
UnknownCommandError / InvalidCommandError for anything outside the grammar.
``to_dict`` gives back the wire form used in prompts and events.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from errors import InvalidCommandError, UnknownCommandError

# Android keycodes for the fixed navigation commands
KEYCODE_HOME = 3
KEYCODE_BACK = 4
KEYCODE_APP_SWITCH = 187

DEFAULT_SWIPE_DURATION_MS = 300
DEFAULT_WAIT_DURATION_MS = 1000


class CommandType(str, Enum):
    TAP = "tap"
    SWIPE = "swipe"
    TEXT = "text"
    KEY = "key"
    WAIT = "wait"
    BACK = "back"
    HOME = "home"
    APP_SWITCH = "app_switch"
    COMPOSITE = "composite"


@dataclass
class Command:
    is_task_complete: Optional[bool] = field(default=None, kw_only=True)
    is_final_command: Optional[bool] = field(default=None, kw_only=True)

    type = None  # type: CommandType

    def _params(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value}
        payload.update(self._params())
        if self.is_task_complete is not None:
            payload["isTaskComplete"] = self.is_task_complete
        if self.is_final_command is not None:
            payload["isFinalCommand"] = self.is_final_command
        return payload


@dataclass
class TapCommand(Command):
    x: int
    y: int
    type = CommandType.TAP

    def _params(self) -> Dict[str, Any]:
        return {"x": self.x, "y": self.y}


@dataclass
class SwipeCommand(Command):
    start_x: int
    start_y: int
    end_x: int
    end_y: int
    duration: Optional[int] = None
    type = CommandType.SWIPE

    def _params(self) -> Dict[str, Any]:
        params = {
            "startX": self.start_x,
            "startY": self.start_y,
            "endX": self.end_x,
            "endY": self.end_y,
        }
        if self.duration is not None:
            params["duration"] = self.duration
        return params


@dataclass
class TextCommand(Command):
    text: str
    type = CommandType.TEXT

    def _params(self) -> Dict[str, Any]:
        return {"text": self.text}


@dataclass
class KeyCommand(Command):
    keycode: int
    type = CommandType.KEY

    def _params(self) -> Dict[str, Any]:
        return {"keycode": self.keycode}


@dataclass
class WaitCommand(Command):
    duration: Optional[int] = None
    type = CommandType.WAIT

    def _params(self) -> Dict[str, Any]:
        return {} if self.duration is None else {"duration": self.duration}


@dataclass
class BackCommand(Command):
    type = CommandType.BACK


@dataclass
class HomeCommand(Command):
    type = CommandType.HOME


@dataclass
class AppSwitchCommand(Command):
    type = CommandType.APP_SWITCH


@dataclass
class CompositeCommand(Command):
    commands: List[Dict[str, Any]] = field(default_factory=list)
    type = CommandType.COMPOSITE

    def _params(self) -> Dict[str, Any]:
        return {"commands": [dict(cmd) for cmd in self.commands]}


def _number(data: Dict[str, Any], key: str, command_type: str, required: bool = True) -> Optional[int]:
    value = data.get(key)
    if value is None:
        if required:
            raise InvalidCommandError(f"'{command_type}' command requires '{key}'")
        return None
    if isinstance(value, bool):
        raise InvalidCommandError(f"'{command_type}' command field '{key}' must be a number")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            pass
    raise InvalidCommandError(f"'{command_type}' command field '{key}' must be a number, got {value!r}")


def _flags(data: Dict[str, Any]) -> Dict[str, Optional[bool]]:
    complete = data.get("isTaskComplete")
    final = data.get("isFinalCommand")
    return {
        "is_task_complete": None if complete is None else bool(complete),
        "is_final_command": None if final is None else bool(final),
    }


def parse_command(data: Union[Dict[str, Any], Command]) -> Command:
    """
    Build a typed command from its wire form.

    Composite commands keep their inner commands as dicts; they are parsed one
    by one when the composite runs, so a bad inner command only fails at its
    own position in the sequence.

    Raises:
        InvalidCommandError: when the input is not a dict or lacks a required field.
        UnknownCommandError: when ``type`` is not part of the grammar.
    """
    if isinstance(data, Command):
        return data
    if not isinstance(data, dict):
        raise InvalidCommandError(f"Invalid command format: {data!r}")
    raw_type = data.get("type")
    if not raw_type:
        raise InvalidCommandError("Invalid command format: missing 'type'")
    try:
        command_type = CommandType(str(raw_type))
    except ValueError:
        raise UnknownCommandError(f"Unknown command type: {raw_type}")

    flags = _flags(data)
    name = command_type.value

    if command_type is CommandType.TAP:
        return TapCommand(x=_number(data, "x", name), y=_number(data, "y", name), **flags)
    if command_type is CommandType.SWIPE:
        return SwipeCommand(
            start_x=_number(data, "startX", name),
            start_y=_number(data, "startY", name),
            end_x=_number(data, "endX", name),
            end_y=_number(data, "endY", name),
            duration=_number(data, "duration", name, required=False),
            **flags,
        )
    if command_type is CommandType.TEXT:
        text = data.get("text")
        if text is None:
            raise InvalidCommandError("'text' command requires 'text'")
        return TextCommand(text=str(text), **flags)
    if command_type is CommandType.KEY:
        return KeyCommand(keycode=_number(data, "keycode", name), **flags)
    if command_type is CommandType.WAIT:
        return WaitCommand(duration=_number(data, "duration", name, required=False), **flags)
    if command_type is CommandType.BACK:
        return BackCommand(**flags)
    if command_type is CommandType.HOME:
        return HomeCommand(**flags)
    if command_type is CommandType.APP_SWITCH:
        return AppSwitchCommand(**flags)

    inner = data.get("commands")
    if not isinstance(inner, list) or not inner:
        raise InvalidCommandError("'composite' command requires a non-empty 'commands' list")
    return CompositeCommand(commands=list(inner), **flags)


def command_to_dict(command: Union[Dict[str, Any], Command]) -> Dict[str, Any]:
    if isinstance(command, Command):
        return command.to_dict()
    return dict(command)
