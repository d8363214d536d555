"""
Command dispatcher.

Maps each command in the grammar onto the matching device call. Composite
commands run their inner commands in order and stop at the first failure.
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Dict, Union

from commands import (
    DEFAULT_SWIPE_DURATION_MS,
    DEFAULT_WAIT_DURATION_MS,
    KEYCODE_APP_SWITCH,
    KEYCODE_BACK,
    KEYCODE_HOME,
    AppSwitchCommand,
    BackCommand,
    Command,
    CompositeCommand,
    HomeCommand,
    KeyCommand,
    SwipeCommand,
    TapCommand,
    TextCommand,
    WaitCommand,
    command_to_dict,
    parse_command,
)
from errors import AutomationError, CompositeCommandError, InvalidCommandError, UnknownCommandError
from logging_utils import log

MAX_COMPOSITE_DEPTH = 5

Sleeper = Callable[[float], Awaitable[Any]]


class CommandExecutor:
    """
    Executes commands against a device.

    ``device`` must provide ``tap``, ``swipe``, ``input_text`` and
    ``press_key``; those calls block, so they run in the default executor.
    """

    def __init__(
        self,
        device: Any,
        sleep: Sleeper = asyncio.sleep,
        max_composite_depth: int = MAX_COMPOSITE_DEPTH,
    ) -> None:
        self.device = device
        self._sleep = sleep
        self.max_composite_depth = max_composite_depth

    async def execute(self, command: Union[Dict[str, Any], Command]) -> Dict[str, Any]:
        """
        Execute one command and return its result dict.

        Raises:
            UnknownCommandError: for a type outside the grammar.
            InvalidCommandError: for a missing or malformed required field.
            CompositeCommandError: when an inner command of a composite fails.
            TransportError: when the device call fails.
        """
        return await self._execute(command, depth=0)

    async def _call(self, func: Callable[..., Dict[str, Any]], *args: Any) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _execute(self, command: Union[Dict[str, Any], Command], depth: int) -> Dict[str, Any]:
        parsed = parse_command(command)
        log("EXEC", f"Executing command: {command_to_dict(parsed)}")

        if isinstance(parsed, TapCommand):
            return await self._call(self.device.tap, parsed.x, parsed.y)
        if isinstance(parsed, SwipeCommand):
            duration = parsed.duration if parsed.duration is not None else DEFAULT_SWIPE_DURATION_MS
            return await self._call(
                self.device.swipe, parsed.start_x, parsed.start_y, parsed.end_x, parsed.end_y, duration
            )
        if isinstance(parsed, TextCommand):
            return await self._call(self.device.input_text, parsed.text)
        if isinstance(parsed, KeyCommand):
            return await self._call(self.device.press_key, parsed.keycode)
        if isinstance(parsed, WaitCommand):
            duration = parsed.duration if parsed.duration is not None else DEFAULT_WAIT_DURATION_MS
            await self._sleep(duration / 1000)
            return {"success": True, "duration": duration}
        if isinstance(parsed, BackCommand):
            return await self._call(self.device.press_key, KEYCODE_BACK)
        if isinstance(parsed, HomeCommand):
            return await self._call(self.device.press_key, KEYCODE_HOME)
        if isinstance(parsed, AppSwitchCommand):
            return await self._call(self.device.press_key, KEYCODE_APP_SWITCH)
        if isinstance(parsed, CompositeCommand):
            return await self._execute_composite(parsed, depth)
        raise UnknownCommandError(f"Unknown command type: {parsed.type}")

    async def _execute_composite(self, command: CompositeCommand, depth: int) -> Dict[str, Any]:
        if depth >= self.max_composite_depth:
            raise InvalidCommandError(
                f"Composite commands nested deeper than {self.max_composite_depth} levels"
            )
        results = []
        for index, inner in enumerate(command.commands):
            try:
                results.append(await self._execute(inner, depth + 1))
            except AutomationError as exc:
                failing: Dict[str, Any] = {
                    "command": inner,
                    "success": False,
                    "error": str(exc),
                }
                if isinstance(exc, CompositeCommandError):
                    failing["result"] = exc.result
                results.append(failing)
                log("ERROR", f"Composite aborted at step {index + 1}/{len(command.commands)}: {exc}")
                raise CompositeCommandError(
                    f"Composite command failed at step {index + 1}: {exc}",
                    result={"success": False, "type": "composite", "results": results},
                ) from exc
        return {"success": True, "type": "composite", "results": results}
