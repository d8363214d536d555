"""
Prompt construction for the three request modes.

- ``instruct``: a fresh user instruction.
- ``continue``: the previous batch finished without completing the task; the
  model re-assesses the new screen against the original instruction.
- ``correct``: a command failed; the model proposes corrective commands.

Each prompt is split into parts (system prompt, optional context blocks and the
current-state block) that the gateway maps onto chat messages.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from sessions import SessionContext
from ui_elements import Element

MODE_INSTRUCT = "instruct"
MODE_CONTINUE = "continue"
MODE_CORRECT = "correct"
PROMPT_MODES = (MODE_INSTRUCT, MODE_CONTINUE, MODE_CORRECT)

MAX_CHILDREN_PER_NODE = 5
INSTRUCT_HISTORY_ITEMS = 3
CORRECT_HISTORY_ITEMS = 2
HISTORY_THINKING_CHARS = 100
NO_UI_ELEMENTS = "UI elements unavailable"


COMMAND_GRAMMAR = """Available command types (the "type" field is mandatory):
- tap: tap a screen coordinate, requires x and y
  e.g. {"type": "tap", "x": 160, "y": 200, "isTaskComplete": false}
- swipe: swipe across the screen, requires startX, startY, endX, endY, optional duration (ms)
  e.g. {"type": "swipe", "startX": 160, "startY": 800, "endX": 160, "endY": 200, "duration": 300, "isTaskComplete": false}
- text: type text into the focused field, requires text
  e.g. {"type": "text", "text": "hello", "isTaskComplete": false}
- key: press an Android keycode, requires keycode
  e.g. {"type": "key", "keycode": 66, "isTaskComplete": false}
- wait: pause, requires duration (ms)
  e.g. {"type": "wait", "duration": 1000, "isTaskComplete": false}
- back: press the back key, e.g. {"type": "back", "isTaskComplete": false}
- home: press the home key, e.g. {"type": "home", "isTaskComplete": false}
- app_switch: open recent apps, e.g. {"type": "app_switch", "isTaskComplete": false}
- composite: run several commands in order, requires a commands array
  e.g. {"type": "composite", "commands": [{"type": "tap", "x": 160, "y": 200}, {"type": "wait", "duration": 1000}], "isTaskComplete": false}

Do NOT use coordinate/coordinate2 arrays. Taps use x and y; swipes use startX, startY, endX, endY."""

INSTRUCT_SYSTEM_PROMPT = f"""You are DroidAuto, an assistant that controls an Android device and reports information from its screen.
Rules:
1. Study the screenshot and the UI elements to understand the current screen and what can be done on it.
2. Plan the complete sequence of operations needed for the user's instruction.
3. Reply with a single JSON object containing "thinking", "commands" and "isTaskComplete".
4. Coordinates and parameters must be exact; prefer element center points from the UI element list.
5. For multi-step tasks every intermediate command and the overall response must set isTaskComplete to false.
6. A command that only navigates (for example opening another page) is never the end of the task.
7. Set isTaskComplete to true only once the data the user asked for is on screen, and put it in "result".

{COMMAND_GRAMMAR}

Every command may carry:
- isTaskComplete: whether the task is complete after this command
- isFinalCommand: whether this is the last command of the current step (the last command is final by default)

Response example:
{{
  "thinking": "My analysis of the current screen...",
  "commands": [
    {{"type": "tap", "x": 160, "y": 200, "isTaskComplete": false}}
  ],
  "isTaskComplete": false
}}

After each batch the device state is captured again and you will be asked for the next commands until the task is done.
When the task is complete:
{{
  "thinking": "The task is complete...",
  "commands": [],
  "result": "The weather in 14 days is sunny, 26 degrees",
  "isTaskComplete": true
}}

If the UI elements cannot be interpreted, fall back to the screenshot: locate buttons, fields and text visually, estimate their positions and tap the estimated coordinates.
Your goal is to finish the whole task, not just a single command."""

CONTINUE_SYSTEM_PROMPT_TEMPLATE = """You are DroidAuto, an Android automation assistant in the middle of a multi-step workflow.
The previous command has been executed. Analyse the new screen state and decide the next step.

The user's original instruction is: "{instruction}"

Rules:
1. Study the screenshot and the UI elements to understand the current screen.
2. Decide whether the task is complete. Reaching a relevant page is not the same as achieving the goal.
3. The task is complete only when the information or state the user asked for has been obtained.
4. If the task is complete, put the outcome in "result" and set isTaskComplete to true.
5. Otherwise return the next commands with isTaskComplete set to false.
6. Reply with a single JSON object containing "thinking", "commands", "result" (when complete) and "isTaskComplete".

{grammar}

Response example:
{{
  "thinking": "My analysis of the current screen...",
  "commands": [
    {{"type": "tap", "x": 160, "y": 200, "isTaskComplete": false, "isFinalCommand": true}}
  ],
  "isTaskComplete": false
}}

Or, when the task is complete:
{{
  "thinking": "Why the task is complete...",
  "commands": [],
  "result": "The final result, for example the weather data that was requested",
  "isTaskComplete": true
}}

Remember: the goal is the complete instruction, not a single operation."""

CORRECT_SYSTEM_PROMPT = f"""You are DroidAuto's error-correction assistant. A command failed while automating an Android device.
Rules:
1. Analyse the failed command and the error message.
2. Inspect the current screen state and UI elements.
3. Work out the cause, for example:
   - inaccurate coordinates
   - the element no longer exists or has changed
   - another operation is required first
   - the device did not respond in time
4. Return corrected commands or an alternative approach.
5. Reply with a single JSON object containing "thinking" and "commands".

{COMMAND_GRAMMAR}

Response example:
{{
  "thinking": "My analysis of the error...",
  "commands": [
    {{"type": "tap", "x": 160, "y": 200}},
    {{"type": "wait", "duration": 1000}}
  ]
}}

If the UI elements do not explain the failure, use the screenshot to locate the relevant elements and plan again.
If the problem cannot be fixed, return no commands and explain why in "thinking"."""


@dataclass
class PromptParts:
    system_prompt: str
    current_state_prompt: str
    context_prompt: str = ""
    error_context_prompt: str = ""
    recent_history_prompt: str = ""


def format_ui_elements(root: Optional[Element], max_children: int = MAX_CHILDREN_PER_NODE) -> str:
    """
    Render an element tree as an indented outline for the prompt.

    Each node lists its type, text, label, id, clickability and center point;
    at most ``max_children`` children are shown per node, followed by an
    omission marker when more exist.
    """
    if root is None:
        return NO_UI_ELEMENTS

    lines: List[str] = []
    stack: List[Tuple[str, Union[Element, str], int]] = [("element", root, 0)]
    while stack:
        kind, item, indent = stack.pop()
        pad = "  " * indent
        if kind == "line":
            lines.append(f"{pad}{item}")
            continue

        element = item
        lines.append(f"{pad}- type: {element.type or 'unknown'}")
        if element.text:
            lines.append(f'{pad}  text: "{element.text}"')
        if element.content_desc:
            lines.append(f'{pad}  label: "{element.content_desc}"')
        if element.resource_id:
            lines.append(f"{pad}  id: {element.resource_id}")
        if element.clickable:
            lines.append(f"{pad}  clickable: yes")
        lines.append(f"{pad}  center: [{element.bounds.center_x},{element.bounds.center_y}]")

        children = element.children
        if children:
            shown = children[:max_children]
            lines.append(f"{pad}  children ({len(shown)}/{len(children)}):")
            if len(children) > max_children:
                stack.append(("line", f"  ... {len(children) - max_children} more children omitted ...", indent + 1))
            for child in reversed(shown):
                stack.append(("element", child, indent + 1))
    return "\n".join(lines)


def _history_context(session: Optional[SessionContext]) -> str:
    if session is None or not session.history:
        return ""
    lines = ["Previous operations:"]
    for index, item in enumerate(session.recent(INSTRUCT_HISTORY_ITEMS), start=1):
        lines.append(f"Operation {index}: {item.instruction}")
        thinking = item.condensed_response.get("thinking")
        if thinking:
            lines.append(f"Analysis: {thinking[:HISTORY_THINKING_CHARS]}...")
    return "\n".join(lines)


def _recent_instructions(session: Optional[SessionContext]) -> str:
    if session is None or not session.history:
        return ""
    lines = ["Recent operations:"]
    for index, item in enumerate(session.recent(CORRECT_HISTORY_ITEMS), start=1):
        lines.append(f"Operation {index}: {item.instruction}")
    return "\n".join(lines)


def build_prompt(
    mode: str,
    instruction: str,
    ui_root: Optional[Element],
    session: Optional[SessionContext] = None,
    previous_command: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
) -> PromptParts:
    """
    Build the prompt parts for one model round-trip.

    Args:
        mode: ``instruct``, ``continue`` or ``correct``.
        instruction: The user's instruction (ignored in ``correct`` mode).
        ui_root: Root of the current element tree, or None when unavailable.
        session: Conversation history to draw context from (read only).
        previous_command: The command just executed (``continue`` mode).
        error: ``{"command": ..., "message": ...}`` for the failed command
            (``correct`` mode).
    """
    if mode not in PROMPT_MODES:
        raise ValueError(f"Unknown prompt mode: {mode}")

    screen = format_ui_elements(ui_root)

    if mode == MODE_CORRECT:
        error = error or {}
        error_context = ""
        if error:
            error_context = (
                f"Failed command: {json.dumps(error.get('command'), ensure_ascii=False)}\n"
                f"Error message: {error.get('message', '')}"
            )
        return PromptParts(
            system_prompt=CORRECT_SYSTEM_PROMPT,
            error_context_prompt=error_context,
            recent_history_prompt=_recent_instructions(session),
            current_state_prompt=f"Current screen state:\n{screen}",
        )

    if mode == MODE_CONTINUE:
        context = ""
        if previous_command is not None:
            context = f"Previously executed command: {json.dumps(previous_command, ensure_ascii=False)}"
        return PromptParts(
            system_prompt=CONTINUE_SYSTEM_PROMPT_TEMPLATE.format(
                instruction=instruction, grammar=COMMAND_GRAMMAR
            ),
            context_prompt=context,
            current_state_prompt=f"Current screen state:\n{screen}\n\nOriginal user instruction: {instruction}",
        )

    return PromptParts(
        system_prompt=INSTRUCT_SYSTEM_PROMPT,
        context_prompt=_history_context(session),
        current_state_prompt=f"Current screen state:\n{screen}\n\nUser instruction: {instruction}",
    )
