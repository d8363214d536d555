"""
Instruction execution loop.

One instruction runs as a sequence of rounds. Each round captures the device
state, asks the model for commands and executes them one at a time:

    capture -> prompt -> infer -> normalize -> execute -> decide

After a successful command the loop decides whether the task is complete,
whether the batch is exhausted (start a continuation round with the same
instruction) or whether to run the next command. A failed command triggers a
single error-correction round; the instruction stops after it.
"""
from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from adb_tools import DeviceSnapshot
from command_executor import CommandExecutor
from errors import AutomationError, CompositeCommandError, MaxTurnsExceeded
from logging_utils import log
from prompts import MODE_CONTINUE, MODE_CORRECT, MODE_INSTRUCT, build_prompt
from response_parser import AIResponse, normalize
from sessions import SessionContext

EventCallback = Callable[[str, Dict[str, Any]], None]

DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_MAX_TURNS = 15
CORRECTION_INSTRUCTION = "auto-correction"


class LoopState(str, Enum):
    IDLE = "idle"
    CAPTURING_STATE = "capturing_state"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    NORMALIZING = "normalizing"
    EXECUTING_STEP = "executing_step"
    DECIDING_CONTINUATION = "deciding_continuation"
    ERROR_RECOVERING = "error_recovering"
    COMPLETED = "completed"
    FAILED = "failed"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"


# Outcome statuses reported for a whole instruction.
STATUS_COMPLETED = "completed"
STATUS_NO_ACTION = "no_action"
STATUS_ERROR_RECOVERED = "error_recovered"
STATUS_FAILED = "failed"
STATUS_MAX_TURNS_EXCEEDED = "max_turns_exceeded"


@dataclass
class TaskOutcome:
    instruction: str
    status: str
    turns: int = 0
    result: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instruction": self.instruction,
            "status": self.status,
            "turns": self.turns,
            "result": self.result,
            "error": self.error,
        }


class Orchestrator:
    """
    Drives instructions against one device.

    The device must offer ``capture_state()`` (screenshot plus element tree)
    and the raw input calls used by CommandExecutor; the gateway must offer
    ``infer(parts, image_base64)``. Both are blocking and run in the default
    executor. Events are reported through ``emit(event_type, payload)``.
    """

    def __init__(
        self,
        device: Any,
        gateway: Any,
        executor: Optional[CommandExecutor] = None,
        emit: Optional[EventCallback] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        max_turns: int = DEFAULT_MAX_TURNS,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.device = device
        self.gateway = gateway
        self.executor = executor or CommandExecutor(device, sleep=sleep)
        self._emit_callback = emit
        self.settle_delay = settle_delay
        self.max_turns = max_turns
        self._sleep = sleep
        self.state = LoopState.IDLE
        self.state_history: List[LoopState] = []

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _transition(self, state: LoopState) -> None:
        self.state = state
        self.state_history.append(state)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._emit_callback is not None:
            self._emit_callback(event_type, payload)

    async def _blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _capture(self) -> DeviceSnapshot:
        self._transition(LoopState.CAPTURING_STATE)
        return await self._blocking(self.device.capture_state)

    async def _round_trip(
        self,
        mode: str,
        instruction: str,
        session: SessionContext,
        snapshot: DeviceSnapshot,
        previous_command: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> AIResponse:
        self._transition(LoopState.PROMPTING)
        parts = build_prompt(
            mode,
            instruction,
            snapshot.elements,
            session,
            previous_command=previous_command,
            error=error,
        )

        self._transition(LoopState.AWAITING_MODEL)
        image = snapshot.screenshot.base64 if snapshot.screenshot else None
        raw_text = await self._blocking(self.gateway.infer, parts, image)

        self._transition(LoopState.NORMALIZING)
        response = normalize(raw_text)
        session.append(
            instruction or CORRECTION_INSTRUCTION,
            response,
            screenshot_timestamp=snapshot.screenshot.timestamp if snapshot.screenshot else None,
            ui_timestamp=snapshot.ui.timestamp if snapshot.ui else None,
        )
        log("AI", f"Thinking: {response.thinking[:200]}")
        log("AI", f"{len(response.commands)} command(s), isTaskComplete={response.is_task_complete}")
        return response

    async def _dispatch(self, command: Dict[str, Any], label: str = "") -> Dict[str, Any]:
        """Execute one command, report it, and wait for the UI to settle on success."""
        self._transition(LoopState.EXECUTING_STEP)
        self._emit("command-start", {"command": command})
        try:
            result = await self.executor.execute(command)
        except AutomationError as exc:
            log("ERROR", f"{label}Command failed: {exc}")
            outcome: Dict[str, Any] = {"command": command, "success": False, "error": str(exc)}
            if isinstance(exc, CompositeCommandError):
                outcome["result"] = exc.result
            self._emit("command-result", outcome)
            return outcome

        outcome = {"command": command, "success": True, "result": result}
        self._emit("command-result", outcome)
        await self._sleep(self.settle_delay)
        return outcome

    async def _recover(self, command: Dict[str, Any], message: str, session: SessionContext) -> bool:
        """
        Run the single error-correction round for a failed command.

        Corrective commands go through the plain dispatch path: their own
        failures are reported but never corrected again. Returns False when
        the correction round itself could not run.
        """
        self._transition(LoopState.ERROR_RECOVERING)
        try:
            snapshot = await self._capture()
            self._emit("error-correction-start", {"command": command, "error": message})
            correction = await self._round_trip(
                MODE_CORRECT,
                "",
                session,
                snapshot,
                error={"command": command, "message": message},
            )
            for corrective in correction.commands:
                await self._dispatch(corrective, label="Correction: ")
            self._emit("error-correction-end", correction.to_dict())
            return True
        except AutomationError as exc:
            log("ERROR", f"Error correction failed: {exc}")
            self._emit("error", {"message": f"Error correction failed: {exc}"})
            return False

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #
    async def respond(self, instruction: str, session: SessionContext) -> AIResponse:
        """One capture and model round without executing anything."""
        snapshot = await self._capture()
        response = await self._round_trip(MODE_INSTRUCT, instruction, session, snapshot)
        self._transition(LoopState.IDLE)
        return response

    async def handle_instruction(self, instruction: str, session: SessionContext) -> TaskOutcome:
        """
        Run an instruction to completion, failure, or the turn limit.

        Capture, gateway and configuration errors end the instruction with an
        ``error`` event and a ``failed`` outcome.
        """
        self.state_history = []
        log("TASK", f"Instruction received: {instruction}")
        mode = MODE_INSTRUCT
        previous_command: Optional[Dict[str, Any]] = None
        turns = 0

        try:
            while True:
                if turns >= self.max_turns:
                    raise MaxTurnsExceeded(
                        f"Task not complete after {self.max_turns} rounds, giving up"
                    )
                turns += 1
                snapshot = await self._capture()
                if turns == 1:
                    self._emit("handle-instruction-start", {"instruction": instruction})
                else:
                    log("TASK", f"Task not complete, continuation round {turns}")

                response = await self._round_trip(
                    mode, instruction, session, snapshot, previous_command=previous_command
                )
                self._emit(
                    "instruction-response" if turns == 1 else "instruction-response-update",
                    response.to_dict(),
                )

                if not response.commands:
                    self._transition(LoopState.DECIDING_CONTINUATION)
                    if response.is_task_complete or response.result is not None:
                        return self._complete(instruction, response, turns)
                    self._transition(LoopState.IDLE)
                    return TaskOutcome(
                        instruction=instruction,
                        status=STATUS_NO_ACTION,
                        turns=turns,
                        error=response.error,
                    )

                next_command: Optional[Dict[str, Any]] = None
                for command in response.commands:
                    outcome = await self._dispatch(command)
                    if not outcome["success"]:
                        recovered = await self._recover(command, outcome["error"], session)
                        self._transition(LoopState.FAILED)
                        return TaskOutcome(
                            instruction=instruction,
                            status=STATUS_ERROR_RECOVERED if recovered else STATUS_FAILED,
                            turns=turns,
                            error=outcome["error"],
                        )

                    self._transition(LoopState.DECIDING_CONTINUATION)
                    if command.get("isTaskComplete"):
                        return self._complete(instruction, response, turns)
                    if command.get("isFinalCommand"):
                        next_command = command
                        break

                if next_command is None:
                    # No command was marked final; treat the last one as the end of the batch.
                    next_command = response.commands[-1]
                mode = MODE_CONTINUE
                previous_command = next_command

        except MaxTurnsExceeded as exc:
            log("WARN", str(exc))
            self._transition(LoopState.MAX_TURNS_EXCEEDED)
            self._emit("error", {"message": str(exc)})
            return TaskOutcome(
                instruction=instruction,
                status=STATUS_MAX_TURNS_EXCEEDED,
                turns=turns,
                error=str(exc),
            )
        except AutomationError as exc:
            log("ERROR", f"Instruction failed: {exc}")
            self._transition(LoopState.FAILED)
            self._emit("error", {"message": f"Error while handling instruction: {exc}"})
            return TaskOutcome(instruction=instruction, status=STATUS_FAILED, turns=turns, error=str(exc))

    def _complete(self, instruction: str, response: AIResponse, turns: int) -> TaskOutcome:
        self._transition(LoopState.COMPLETED)
        log("OK", f"Task complete: {response.result or '(no result text)'}")
        self._emit("task-result", {"instruction": instruction, "result": response.result})
        return TaskOutcome(
            instruction=instruction,
            status=STATUS_COMPLETED,
            turns=turns,
            result=response.result,
        )
