import pytest

from commands import (
    CompositeCommand,
    SwipeCommand,
    TapCommand,
    WaitCommand,
    command_to_dict,
    parse_command,
)
from errors import InvalidCommandError, UnknownCommandError


def test_parse_tap_keeps_flags():
    command = parse_command({"type": "tap", "x": 10, "y": "20", "isTaskComplete": True, "isFinalCommand": True})
    assert isinstance(command, TapCommand)
    assert (command.x, command.y) == (10, 20)
    assert command.is_task_complete is True
    assert command.is_final_command is True


def test_parse_swipe_duration_is_optional():
    command = parse_command({"type": "swipe", "startX": 1, "startY": 2, "endX": 3, "endY": 4.7})
    assert isinstance(command, SwipeCommand)
    assert command.end_y == 4
    assert command.duration is None


def test_parse_wait_without_duration():
    command = parse_command({"type": "wait"})
    assert isinstance(command, WaitCommand)
    assert command.duration is None


def test_unknown_type_is_rejected():
    with pytest.raises(UnknownCommandError):
        parse_command({"type": "launch_rocket"})


@pytest.mark.parametrize(
    "data",
    [
        "tap",
        {},
        {"type": "tap", "x": 1},
        {"type": "tap", "x": True, "y": 2},
        {"type": "tap", "x": "left", "y": 2},
        {"type": "text"},
        {"type": "key"},
        {"type": "composite", "commands": []},
        {"type": "composite"},
    ],
)
def test_malformed_commands_are_invalid(data):
    with pytest.raises(InvalidCommandError):
        parse_command(data)


def test_composite_keeps_inner_commands_unparsed():
    command = parse_command({"type": "composite", "commands": [{"type": "home"}, {"type": "bogus"}]})
    assert isinstance(command, CompositeCommand)
    assert command.commands[1] == {"type": "bogus"}


def test_command_to_dict_round_trips_wire_names():
    payload = command_to_dict(parse_command({"type": "swipe", "startX": 1, "startY": 2, "endX": 3, "endY": 4}))
    assert payload["type"] == "swipe"
    assert payload["startX"] == 1
    assert payload["endY"] == 4
