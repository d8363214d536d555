from __future__ import annotations

import asyncio
import traceback
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, DefaultDict, Dict, List, Optional

from adb_tools import AdbDevice
from config import Settings, get_settings
from llm_gateway import LLMGateway
from logging_utils import log
from orchestrator import Orchestrator, TaskOutcome
from sessions import SessionContext, SessionStore

TERMINAL_STATUSES = {"completed", "no_action", "error_recovered", "failed", "max_turns_exceeded"}
MAX_SESSION_EVENTS = 500
MAX_RUN_EVENTS = 500
MAX_FINISHED_RUNS = 200


def _utc_now() -> datetime:
    return datetime.utcnow()


def _iso_now() -> str:
    return _utc_now().isoformat() + "Z"


@dataclass
class InstructionRun:
    id: str
    session_id: str
    instruction: str
    status: str = "pending"
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    outcome: Optional[Dict[str, Any]] = None
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat() + "Z"
        payload["updated_at"] = self.updated_at.isoformat() + "Z"
        return payload


class AutomationManager:
    """
    Owns the sessions of this process, runs instructions against the device
    and streams their events to subscribers.

    Instructions for one session run one after another; different sessions
    are not serialized against each other.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        device: Any = None,
        gateway: Any = None,
    ) -> None:
        self._settings = settings
        self._device = device
        self._gateway = gateway
        self.sessions = SessionStore()
        self._runs: Dict[str, InstructionRun] = {}
        self._session_events: DefaultDict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._session_subscribers: DefaultDict[str, List[asyncio.Queue]] = defaultdict(list)
        self._run_subscribers: DefaultDict[str, List[asyncio.Queue]] = defaultdict(list)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    # Collaborators
    # ------------------------------------------------------------------ #
    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def device(self) -> Any:
        if self._device is None:
            settings = self.settings
            self._device = AdbDevice(
                adb_path=settings.adb_path,
                serial=settings.adb_serial,
                capture_dir=settings.capture_dir,
                command_timeout=settings.adb_command_timeout,
            )
        return self._device

    @property
    def gateway(self) -> Any:
        if self._gateway is None:
            self._gateway = LLMGateway(self.settings)
        return self._gateway

    def build_orchestrator(self, session_id: str, run_id: Optional[str] = None) -> Orchestrator:
        def forward(event_type: str, payload: Dict[str, Any]) -> None:
            self._emit_event(session_id, {"type": event_type, **payload}, run_id=run_id)

        return Orchestrator(
            self.device,
            self.gateway,
            emit=forward,
            settle_delay=self.settings.settle_delay,
            max_turns=self.settings.max_turns,
        )

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    def create_session(self, session_id: Optional[str] = None) -> SessionContext:
        return self.sessions.create(session_id)

    def has_session(self, session_id: str) -> bool:
        return self.sessions.has(session_id)

    def get_session(self, session_id: str) -> SessionContext:
        return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        self._session_events.pop(session_id, None)
        lock = self._session_locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._session_locks[session_id]
        return self.sessions.evict(session_id)

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._session_locks:
            self._session_locks[session_id] = asyncio.Lock()
        return self._session_locks[session_id]

    # ------------------------------------------------------------------ #
    # Runs
    # ------------------------------------------------------------------ #
    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def get_run(self, run_id: str) -> InstructionRun:
        if run_id not in self._runs:
            raise KeyError(f"Run {run_id} not found")
        return self._runs[run_id]

    def list_runs(self, session_id: Optional[str] = None) -> List[InstructionRun]:
        runs = [run for run in self._runs.values() if session_id is None or run.session_id == session_id]
        return sorted(runs, key=lambda run: run.created_at, reverse=True)

    async def submit_instruction(self, session_id: str, instruction: str) -> InstructionRun:
        """Queue an instruction for a session and return its run record immediately."""
        if not self.sessions.has(session_id):
            raise KeyError(f"Session {session_id} not found")
        run = InstructionRun(id=uuid.uuid4().hex, session_id=session_id, instruction=instruction)
        self._runs[run.id] = run
        self._emit_event(session_id, {"type": "status", "status": "pending"}, run_id=run.id)
        self._tasks[run.id] = asyncio.create_task(self._run_instruction(run))
        return run

    async def preview_instruction(self, instruction: str, session_id: Optional[str] = None):
        """
        Ask the model for commands without executing them.

        An unknown or missing ``session_id`` starts a new session. Returns the
        session and the normalized response.
        """
        if session_id and self.sessions.has(session_id):
            session = self.sessions.get(session_id)
        else:
            session = self.sessions.create()
        async with self._session_lock(session.id):
            response = await self.build_orchestrator(session.id).respond(instruction, session)
        return session, response

    async def wait_for_run(self, run_id: str) -> InstructionRun:
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return self.get_run(run_id)

    async def run_instruction(self, session_id: str, instruction: str) -> InstructionRun:
        """Run an instruction to the end (used by the CLI)."""
        run = await self.submit_instruction(session_id, instruction)
        return await self.wait_for_run(run.id)

    async def _run_instruction(self, run: InstructionRun) -> None:
        lock = self._session_lock(run.session_id)
        try:
            async with lock:
                if self.sessions.has(run.session_id):
                    await self._execute_run(run, self.sessions.get(run.session_id))
                else:
                    log("WARN", f"Session {run.session_id} was deleted before run {run.id} started")
                    self._emit_event(
                        run.session_id,
                        {"type": "error", "message": f"Session {run.session_id} no longer exists"},
                        run_id=run.id,
                    )
                    self._emit_event(run.session_id, {"type": "status", "status": "failed"}, run_id=run.id)
        finally:
            self._tasks.pop(run.id, None)
            self._prune_runs()
            if not self.sessions.has(run.session_id):
                self._session_events.pop(run.session_id, None)
                if not lock.locked() and self._session_locks.get(run.session_id) is lock:
                    del self._session_locks[run.session_id]

    async def _execute_run(self, run: InstructionRun, session: SessionContext) -> None:
        self._emit_event(run.session_id, {"type": "status", "status": "running"}, run_id=run.id)
        try:
            orchestrator = self.build_orchestrator(run.session_id, run_id=run.id)
            outcome: TaskOutcome = await orchestrator.handle_instruction(run.instruction, session)
            run.outcome = outcome.to_dict()
            self._emit_event(
                run.session_id,
                {"type": "status", "status": outcome.status, "outcome": run.outcome},
                run_id=run.id,
            )
        except Exception as exc:  # reported to subscribers, never retried
            error_details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            log("ERROR", f"Unexpected automation failure: {type(exc).__name__}: {exc}")
            self._emit_event(
                run.session_id,
                {
                    "type": "error",
                    "message": f"Unexpected automation failure: {type(exc).__name__}",
                    "details": f"{exc}\n\nTraceback:\n{error_details}",
                },
                run_id=run.id,
            )
            self._emit_event(run.session_id, {"type": "status", "status": "failed"}, run_id=run.id)

    def _prune_runs(self) -> None:
        """Forget the oldest finished runs beyond MAX_FINISHED_RUNS."""
        finished = [run for run in self._runs.values() if run.status in TERMINAL_STATUSES]
        excess = len(finished) - MAX_FINISHED_RUNS
        if excess <= 0:
            return
        for run in sorted(finished, key=lambda run: run.updated_at)[:excess]:
            del self._runs[run.id]
            self._run_subscribers.pop(run.id, None)

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #
    async def session_event_stream(self, session_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Replay a session's past events, then follow new ones until the client leaves."""
        if not self.sessions.has(session_id):
            raise KeyError(f"Session {session_id} not found")

        queue: asyncio.Queue = asyncio.Queue()
        self._session_subscribers[session_id].append(queue)
        try:
            for event in list(self._session_events.get(session_id, [])):
                yield event
            while True:
                yield await queue.get()
        finally:
            subscribers = self._session_subscribers.get(session_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)

    async def run_event_stream(self, run_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Replay a run's events and follow it until it reaches a terminal status."""
        run = self.get_run(run_id)

        queue: asyncio.Queue = asyncio.Queue()
        self._run_subscribers[run_id].append(queue)
        try:
            for event in list(run.events):
                yield event
                if event["type"] == "status" and event.get("status") in TERMINAL_STATUSES:
                    return
            while True:
                event = await queue.get()
                yield event
                if event["type"] == "status" and event.get("status") in TERMINAL_STATUSES:
                    break
        finally:
            subscribers = self._run_subscribers.get(run_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)

    def _emit_event(self, session_id: str, event: Dict[str, Any], run_id: Optional[str] = None) -> None:
        timestamp = event.get("timestamp") or _iso_now()
        payload = {**event, "sessionId": session_id, "runId": run_id, "timestamp": timestamp}

        history = self._session_events[session_id]
        history.append(payload)
        if len(history) > MAX_SESSION_EVENTS:
            del history[: len(history) - MAX_SESSION_EVENTS]

        run = self._runs.get(run_id) if run_id else None
        if run is not None:
            run.events.append(payload)
            if len(run.events) > MAX_RUN_EVENTS:
                del run.events[: len(run.events) - MAX_RUN_EVENTS]
            run.updated_at = _utc_now()
            if payload.get("type") == "status":
                run.status = payload.get("status", run.status)

        for queue in self._session_subscribers.get(session_id, []):
            queue.put_nowait(payload)
        if run_id:
            for queue in self._run_subscribers.get(run_id, []):
                queue.put_nowait(payload)


automation_manager = AutomationManager()
