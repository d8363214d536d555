import asyncio

from conftest import FakeDevice, FakeGateway, no_sleep
from errors import CaptureError, GatewayError
from orchestrator import (
    STATUS_COMPLETED,
    STATUS_ERROR_RECOVERED,
    STATUS_FAILED,
    STATUS_MAX_TURNS_EXCEEDED,
    STATUS_NO_ACTION,
    LoopState,
    Orchestrator,
)
from prompts import COMMAND_GRAMMAR, CONTINUE_SYSTEM_PROMPT_TEMPLATE, CORRECT_SYSTEM_PROMPT
from sessions import SessionContext


def _run(device, gateway, instruction="open settings", max_turns=15, sleeps=None):
    events = []
    session = SessionContext(id="s1")

    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    orchestrator = Orchestrator(
        device,
        gateway,
        emit=lambda event_type, payload: events.append((event_type, payload)),
        settle_delay=1.0,
        max_turns=max_turns,
        sleep=sleep,
    )
    outcome = asyncio.run(orchestrator.handle_instruction(instruction, session))
    return outcome, events, session, orchestrator


def _event_types(events):
    return [event_type for event_type, _ in events]


def test_single_complete_tap_finishes_without_continuation():
    device = FakeDevice()
    gateway = FakeGateway([
        {
            "thinking": "Settings icon is visible",
            "commands": [{"type": "tap", "x": 160, "y": 260, "isTaskComplete": True}],
            "isTaskComplete": True,
            "result": "Opened settings",
        }
    ])
    sleeps = []
    outcome, events, session, orchestrator = _run(device, gateway, sleeps=sleeps)

    assert outcome.status == STATUS_COMPLETED
    assert outcome.result == "Opened settings"
    assert outcome.turns == 1
    assert device.calls == [("tap", 160, 260)]
    assert len(gateway.prompts) == 1
    assert gateway.images == ["aW1n"]
    assert sleeps == [1.0]
    assert _event_types(events) == [
        "handle-instruction-start",
        "instruction-response",
        "command-start",
        "command-result",
        "task-result",
    ]
    assert orchestrator.state is LoopState.COMPLETED
    assert len(session.history) == 1


def test_batch_without_completion_runs_one_continuation_round():
    device = FakeDevice()
    gateway = FakeGateway([
        {
            "thinking": "Tap search then type",
            "commands": [{"type": "tap", "x": 540, "y": 2260}, {"type": "text", "text": "wifi"}],
            "isTaskComplete": False,
        },
        {"thinking": "Results are shown", "commands": [], "isTaskComplete": True, "result": "Found wifi settings"},
    ])
    outcome, events, session, _ = _run(device, gateway)

    assert outcome.status == STATUS_COMPLETED
    assert outcome.turns == 2
    assert device.calls == [("tap", 540, 2260), ("input_text", "wifi")]
    assert len(gateway.prompts) == 2
    continuation = gateway.prompts[1]
    assert continuation.system_prompt == CONTINUE_SYSTEM_PROMPT_TEMPLATE.format(
        instruction="open settings", grammar=COMMAND_GRAMMAR
    )
    assert '"type": "text"' in continuation.context_prompt
    assert '"isFinalCommand": true' in continuation.context_prompt
    assert "instruction-response-update" in _event_types(events)
    assert [item.instruction for item in session.history] == ["open settings", "open settings"]


def test_dispatch_failure_runs_exactly_one_recovery():
    device = FakeDevice(fail_on={"tap": "device offline"})
    gateway = FakeGateway([
        {"thinking": "tap it", "commands": [{"type": "tap", "x": 1, "y": 2}], "isTaskComplete": False},
        {"thinking": "Cannot fix an offline device", "commands": []},
    ])
    outcome, events, session, orchestrator = _run(device, gateway)

    assert outcome.status == STATUS_ERROR_RECOVERED
    assert "device offline" in outcome.error
    assert device.calls == [("tap", 1, 2)]
    assert len(gateway.prompts) == 2

    correction = gateway.prompts[1]
    assert correction.system_prompt == CORRECT_SYSTEM_PROMPT
    assert '"type": "tap"' in correction.error_context_prompt
    assert "device offline" in correction.error_context_prompt

    types = _event_types(events)
    assert types.count("error-correction-start") == 1
    assert types.count("error-correction-end") == 1
    failed_result = [payload for event_type, payload in events if event_type == "command-result"][0]
    assert failed_result["success"] is False
    assert session.history[-1].instruction == "auto-correction"
    assert LoopState.ERROR_RECOVERING in orchestrator.state_history


def test_corrective_commands_run_once_without_further_recovery():
    device = FakeDevice(fail_on={"tap": "missed"})
    gateway = FakeGateway([
        {"commands": [{"type": "tap", "x": 1, "y": 2}]},
        {"thinking": "go back and retry", "commands": [{"type": "back"}, {"type": "tap", "x": 3, "y": 4}]},
    ])
    outcome, events, _, _ = _run(device, gateway)

    assert outcome.status == STATUS_ERROR_RECOVERED
    assert device.calls == [("tap", 1, 2), ("press_key", 4), ("tap", 3, 4)]
    assert len(gateway.prompts) == 2
    assert _event_types(events).count("error-correction-start") == 1


def test_continuation_is_bounded_by_max_turns():
    device = FakeDevice()
    never_done = {"thinking": "keep scrolling", "commands": [{"type": "swipe", "startX": 1, "startY": 2,
                                                               "endX": 3, "endY": 4}]}
    gateway = FakeGateway([never_done, never_done, never_done])
    outcome, events, _, orchestrator = _run(device, gateway, max_turns=2)

    assert outcome.status == STATUS_MAX_TURNS_EXCEEDED
    assert outcome.turns == 2
    assert len(device.calls) == 2
    assert len(gateway.prompts) == 2
    assert _event_types(events)[-1] == "error"
    assert orchestrator.state is LoopState.MAX_TURNS_EXCEEDED


def test_reply_without_commands_or_completion_is_no_action():
    gateway = FakeGateway(["I am not sure what to do."])
    outcome, events, _, _ = _run(FakeDevice(), gateway)
    assert outcome.status == STATUS_NO_ACTION
    assert outcome.error == "Unable to parse model response"
    assert "task-result" not in _event_types(events)


def test_informational_answer_completes_without_commands():
    gateway = FakeGateway([{"thinking": "Battery shown", "commands": [], "result": "Battery at 80%"}])
    outcome, events, _, _ = _run(FakeDevice(), gateway)
    assert outcome.status == STATUS_COMPLETED
    assert ("task-result", {"instruction": "open settings", "result": "Battery at 80%"}) in events


def test_gateway_failure_ends_instruction_with_error_event():
    device = FakeDevice()
    gateway = FakeGateway([GatewayError("Model endpoint returned an error", status_code=500)])
    outcome, events, _, _ = _run(device, gateway)
    assert outcome.status == STATUS_FAILED
    assert device.calls == []
    assert events[-1][0] == "error"
    assert events[-1][1]["message"].startswith("Error while handling instruction:")


class UnreadableScreenDevice(FakeDevice):
    def capture_state(self):
        self.captures += 1
        raise CaptureError("screencap failed", returncode=1)


def test_capture_failure_ends_instruction_without_calling_the_model():
    device = UnreadableScreenDevice()
    gateway = FakeGateway([{"commands": [{"type": "home"}]}])
    outcome, events, _, orchestrator = _run(device, gateway)

    assert outcome.status == STATUS_FAILED
    assert "screencap failed" in outcome.error
    assert device.captures == 1
    assert device.calls == []
    assert gateway.prompts == []
    assert _event_types(events) == ["error"]
    assert orchestrator.state is LoopState.FAILED


def test_failure_inside_correction_round_is_reported_once():
    device = FakeDevice(fail_on={"tap": "device offline"})
    gateway = FakeGateway([
        {"thinking": "tap it", "commands": [{"type": "tap", "x": 1, "y": 2}]},
        GatewayError("Model endpoint returned an error", status_code=502),
    ])
    outcome, events, _, _ = _run(device, gateway)

    assert outcome.status == STATUS_FAILED
    assert "device offline" in outcome.error
    assert device.calls == [("tap", 1, 2)]
    assert len(gateway.prompts) == 2
    types = _event_types(events)
    assert types.count("error-correction-start") == 1
    assert "error-correction-end" not in types
    assert events[-1][0] == "error"
    assert events[-1][1]["message"].startswith("Error correction failed:")


def test_string_false_flag_does_not_end_the_batch_early():
    device = FakeDevice()
    gateway = FakeGateway([
        {
            "commands": [
                {"type": "tap", "x": 1, "y": 2, "isTaskComplete": "false"},
                {"type": "tap", "x": 3, "y": 4},
            ],
            "isTaskComplete": "false",
        },
        {"commands": [], "isTaskComplete": "true", "result": "Done"},
    ])
    outcome, _, _, _ = _run(device, gateway)

    assert outcome.status == STATUS_COMPLETED
    assert outcome.turns == 2
    assert device.calls == [("tap", 1, 2), ("tap", 3, 4)]


def test_respond_returns_response_without_executing():
    device = FakeDevice()
    gateway = FakeGateway([{"thinking": "tap", "commands": [{"type": "tap", "x": 1, "y": 2}]}])
    orchestrator = Orchestrator(device, gateway, sleep=no_sleep)
    session = SessionContext(id="s1")
    response = asyncio.run(orchestrator.respond("open settings", session))
    assert response.commands[0]["isFinalCommand"] is True
    assert device.calls == []
    assert len(session.history) == 1
