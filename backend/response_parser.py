"""
Model response normalization.

The model is asked for a JSON object ``{thinking, commands, result?,
isTaskComplete}`` but does not always follow the schema: the JSON may be
wrapped in prose or a code fence, commands may use ``action`` instead of
``type``, ``click`` instead of ``tap`` or coordinate arrays instead of discrete
fields. ``normalize`` extracts the object, repairs the known drift through the
rule table below and fills in the flags the orchestrator relies on.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import UnparsableResponseError
from logging_utils import log

THINKING_PLACEHOLDER = "No analysis provided"
UNPARSABLE_THINKING = "Unable to parse the model's reasoning"

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?[ \t]*\n?([\s\S]*?)\n?```")
_THINKING_SECTION = re.compile(
    r"(?:thinking|thought|analysis|思考)\s*[:：]([\s\S]*?)(?:\n\n|$)", re.IGNORECASE
)
_COMMAND_SECTION = re.compile(
    r"(?:commands?|actions?|命令)\s*[:：]([\s\S]*?)(?:\n\n|$)", re.IGNORECASE
)

# Field renames applied to every command before anything else.
FIELD_ALIASES: Dict[str, str] = {
    "action": "type",
}

# Type tags the model uses for grammar commands.
TYPE_ALIASES: Dict[str, str] = {
    "click": "tap",
    "type_text": "text",
    "keyevent": "key",
    "sleep": "wait",
}

# Boolean spellings accepted for isTaskComplete.
FLAG_STRINGS: Dict[str, bool] = {"true": True, "false": False, "1": True, "0": False}

# Per command type: (source array fields, expected length of each, canonical targets).
# Rules are tried in order; the first whose sources all match is applied, and only
# when none of the canonical targets is already present.
COORDINATE_RULES: Dict[str, List[Tuple[Tuple[str, ...], int, Tuple[str, ...]]]] = {
    "tap": [
        (("coordinate",), 2, ("x", "y")),
    ],
    "swipe": [
        (("coordinate", "coordinate2"), 2, ("startX", "startY", "endX", "endY")),
        (("coordinate",), 4, ("startX", "startY", "endX", "endY")),
    ],
}


@dataclass
class AIResponse:
    thinking: str = THINKING_PLACEHOLDER
    commands: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[str] = None
    is_task_complete: Optional[bool] = None
    error: Optional[str] = None
    raw_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "thinking": self.thinking,
            "commands": [dict(cmd) for cmd in self.commands],
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.is_task_complete is not None:
            payload["isTaskComplete"] = self.is_task_complete
        if self.error is not None:
            payload["error"] = self.error
        if self.raw_response is not None:
            payload["rawResponse"] = self.raw_response
        return payload


def _first_balanced_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    end = text.rfind("}")
    return text[start:end + 1] if end > start else None


def extract_json(text: str) -> str:
    """
    Return the JSON object text embedded in a model reply.

    A fenced code block holding an object wins; otherwise the first top-level
    ``{...}`` span is used.

    Raises:
        UnparsableResponseError: if no candidate object is found.
    """
    if not isinstance(text, str):
        raise UnparsableResponseError(f"Model content is not text: {type(text).__name__}")
    for match in _FENCED_BLOCK.finditer(text):
        block = match.group(1).strip()
        if block.startswith("{"):
            return block
    candidate = _first_balanced_object(text)
    if candidate is None:
        raise UnparsableResponseError("No JSON object found in model response")
    return candidate


def repair_command(command: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the alias and coordinate rules to one command dict (returns a copy)."""
    repaired = dict(command)

    for alias, canonical in FIELD_ALIASES.items():
        if alias in repaired and canonical not in repaired:
            repaired[canonical] = repaired.pop(alias)

    command_type = repaired.get("type")
    if isinstance(command_type, str):
        command_type = command_type.strip().lower()
        command_type = TYPE_ALIASES.get(command_type, command_type)
        repaired["type"] = command_type

    for sources, length, targets in COORDINATE_RULES.get(command_type, []):
        if any(target in repaired for target in targets):
            break
        arrays = [repaired.get(source) for source in sources]
        if not all(isinstance(value, (list, tuple)) and len(value) == length for value in arrays):
            continue
        values = [item for array in arrays for item in array]
        repaired.update(zip(targets, values))
        for source in sources:
            repaired.pop(source, None)
        break

    return repaired


def repair_commands(commands: List[Any]) -> List[Dict[str, Any]]:
    """Repair a command list, descending into composite commands."""
    repaired_top = [repair_command(cmd) for cmd in commands if isinstance(cmd, dict)]
    stack = [cmd for cmd in repaired_top if cmd.get("type") == "composite"]
    while stack:
        composite = stack.pop()
        inner = composite.get("commands")
        if not isinstance(inner, list):
            continue
        composite["commands"] = [repair_command(cmd) if isinstance(cmd, dict) else cmd for cmd in inner]
        stack.extend(
            cmd for cmd in composite["commands"]
            if isinstance(cmd, dict) and cmd.get("type") == "composite"
        )
    return repaired_top


def _to_flag(value: Any) -> Optional[bool]:
    """Read a model-supplied flag; "true"/"false" strings and 0/1 count. Anything else is None."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        return FLAG_STRINGS.get(value.strip().lower())
    return None


def _finalize_commands(commands: List[Dict[str, Any]], response_complete: Optional[bool]) -> None:
    default_complete = bool(response_complete)
    for cmd in commands:
        flag = _to_flag(cmd.get("isTaskComplete"))
        cmd["isTaskComplete"] = default_complete if flag is None else flag
        cmd["isFinalCommand"] = False
    if commands:
        commands[-1]["isFinalCommand"] = True


def _from_json(data: Dict[str, Any]) -> AIResponse:
    thinking = data.get("thinking")
    if not thinking:
        thinking = THINKING_PLACEHOLDER
    raw_commands = data.get("commands")
    if raw_commands is None:
        raw_commands = []
    elif isinstance(raw_commands, dict):
        raw_commands = [raw_commands]
    elif not isinstance(raw_commands, list):
        raw_commands = []

    dropped = sum(1 for cmd in raw_commands if not isinstance(cmd, dict))
    if dropped:
        log("WARN", f"Dropped {dropped} non-object command(s) from model response")

    complete = _to_flag(data.get("isTaskComplete"))
    commands = repair_commands(raw_commands)
    _finalize_commands(commands, complete)

    result = data.get("result")
    if result is not None and not isinstance(result, str):
        result = json.dumps(result, ensure_ascii=False)

    error = data.get("error")
    return AIResponse(
        thinking=str(thinking),
        commands=commands,
        result=result,
        is_task_complete=complete,
        error=None if error is None else str(error),
    )


def _from_free_text(text: Any) -> AIResponse:
    if not isinstance(text, str) or not text.strip():
        return AIResponse(
            thinking=UNPARSABLE_THINKING,
            commands=[],
            error="Model returned no parsable content",
        )
    thinking_match = _THINKING_SECTION.search(text)
    command_match = _COMMAND_SECTION.search(text)
    if not thinking_match and not command_match:
        return AIResponse(
            thinking=UNPARSABLE_THINKING,
            commands=[],
            error="Unable to parse model response",
            raw_response=text,
        )
    commands: List[Dict[str, Any]] = []
    if command_match and command_match.group(1).strip():
        commands.append({"type": "text", "text": command_match.group(1).strip()})
    _finalize_commands(commands, None)
    return AIResponse(
        thinking=thinking_match.group(1).strip() if thinking_match else UNPARSABLE_THINKING,
        commands=commands,
        raw_response=text,
    )


def normalize(raw_text: Any) -> AIResponse:
    """
    Turn raw model output into an AIResponse.

    Never raises: output that cannot be read as JSON goes through the
    free-text fallback, and output that yields nothing at all produces an
    empty-command response with ``error`` set.
    """
    try:
        candidate = extract_json(raw_text)
        data = json.loads(candidate)
        if not isinstance(data, dict):
            raise UnparsableResponseError("Model JSON is not an object")
        return _from_json(data)
    except (UnparsableResponseError, json.JSONDecodeError) as parse_error:
        log("WARN", f"Failed to parse JSON from model response: {parse_error}")
    return _from_free_text(raw_text)
