import json

import pytest

from errors import UnparsableResponseError
from response_parser import (
    THINKING_PLACEHOLDER,
    extract_json,
    normalize,
    repair_command,
)


def test_click_with_coordinate_becomes_tap():
    response = normalize(json.dumps({"thinking": "t", "commands": [{"action": "click", "coordinate": [160, 200]}]}))
    command = response.commands[0]
    assert command["type"] == "tap"
    assert (command["x"], command["y"]) == (160, 200)
    assert "coordinate" not in command
    assert "action" not in command


def test_swipe_with_two_coordinates_becomes_canonical():
    repaired = repair_command({"type": "swipe", "coordinate": [1, 2], "coordinate2": [3, 4]})
    assert repaired == {"type": "swipe", "startX": 1, "startY": 2, "endX": 3, "endY": 4}


def test_swipe_with_four_value_coordinate():
    repaired = repair_command({"type": "swipe", "coordinate": [10, 20, 30, 40]})
    assert (repaired["startX"], repaired["endY"]) == (10, 40)


def test_existing_canonical_fields_are_not_overwritten():
    repaired = repair_command({"type": "tap", "x": 5, "y": 6, "coordinate": [1, 2]})
    assert (repaired["x"], repaired["y"]) == (5, 6)


def test_canonical_commands_pass_through_unchanged():
    original = {"type": "text", "text": "hello", "isTaskComplete": False}
    response = normalize(json.dumps({"thinking": "typing", "commands": [original, {"type": "back"}]}))
    assert response.commands[0]["type"] == "text"
    assert response.commands[0]["text"] == "hello"
    assert response.commands[1]["type"] == "back"


def test_exactly_one_final_command_and_it_is_last():
    raw = {
        "thinking": "two steps",
        "commands": [
            {"type": "tap", "x": 1, "y": 2, "isFinalCommand": True},
            {"type": "wait"},
            {"type": "home", "isFinalCommand": False},
        ],
    }
    response = normalize(json.dumps(raw))
    flags = [cmd["isFinalCommand"] for cmd in response.commands]
    assert flags == [False, False, True]


def test_is_task_complete_defaults_from_response_flag():
    raw = {
        "thinking": "done",
        "isTaskComplete": True,
        "commands": [{"type": "tap", "x": 1, "y": 2}, {"type": "back", "isTaskComplete": False}],
    }
    response = normalize(json.dumps(raw))
    assert response.commands[0]["isTaskComplete"] is True
    assert response.commands[1]["isTaskComplete"] is False
    assert response.is_task_complete is True


def test_string_and_numeric_flags_are_read_as_booleans():
    raw = {
        "isTaskComplete": "FALSE",
        "commands": [
            {"type": "tap", "x": 1, "y": 2, "isTaskComplete": "false"},
            {"type": "tap", "x": 3, "y": 4, "isTaskComplete": 1},
            {"type": "home", "isTaskComplete": "maybe"},
        ],
    }
    response = normalize(json.dumps(raw))
    assert response.is_task_complete is False
    assert [cmd["isTaskComplete"] for cmd in response.commands] == [False, True, False]
    assert normalize(json.dumps({"commands": [], "isTaskComplete": " True "})).is_task_complete is True


def test_is_task_complete_defaults_to_false_without_response_flag():
    response = normalize(json.dumps({"commands": [{"type": "home"}]}))
    assert response.commands[0]["isTaskComplete"] is False
    assert response.thinking == THINKING_PLACEHOLDER


def test_json_inside_fence_and_prose():
    raw = "Sure, here you go:\n```json\n{\"thinking\": \"open\", \"commands\": [{\"type\": \"home\"}]}\n```\nDone."
    response = normalize(raw)
    assert response.thinking == "open"
    assert response.commands[0]["type"] == "home"


def test_json_embedded_in_prose_with_braces_in_strings():
    raw = 'Answer: {"thinking": "look for } here", "commands": [], "result": "Battery is 80%"} trailing'
    response = normalize(raw)
    assert response.thinking == "look for } here"
    assert response.result == "Battery is 80%"
    assert response.commands == []


def test_composite_inner_commands_are_repaired():
    raw = {"commands": [{"type": "composite", "commands": [{"action": "click", "coordinate": [3, 4]}]}]}
    response = normalize(json.dumps(raw))
    inner = response.commands[0]["commands"][0]
    assert inner == {"type": "tap", "x": 3, "y": 4}


def test_non_object_commands_are_dropped():
    response = normalize(json.dumps({"commands": ["tap", {"type": "home"}, 7]}))
    assert [cmd["type"] for cmd in response.commands] == ["home"]


def test_free_text_fallback_reads_labelled_sections():
    response = normalize("Thinking: the screen is locked\n\nCommands: unlock")
    assert response.thinking == "the screen is locked"
    assert response.commands[0]["type"] == "text"
    assert response.commands[0]["isFinalCommand"] is True


def test_unreadable_output_yields_error_response():
    response = normalize("I cannot help with that.")
    assert response.commands == []
    assert response.error == "Unable to parse model response"
    assert response.raw_response == "I cannot help with that."


@pytest.mark.parametrize("raw", [None, "", 42])
def test_empty_or_non_text_output_never_raises(raw):
    response = normalize(raw)
    assert response.commands == []
    assert response.error == "Model returned no parsable content"


def test_extract_json_raises_without_object():
    with pytest.raises(UnparsableResponseError):
        extract_json("no braces here")


def test_to_dict_omits_unset_fields():
    payload = normalize(json.dumps({"thinking": "x", "commands": []})).to_dict()
    assert payload == {"thinking": "x", "commands": []}
