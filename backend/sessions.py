"""
In-memory conversation sessions.

A session keeps the last few instructions and condensed model responses so
that prompts can refer back to earlier steps. Only capture timestamps are
kept, never screenshot or layout payloads.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from response_parser import AIResponse

MAX_CONTEXT_ITEMS = 5
CONDENSED_THINKING_CHARS = 200


def _iso_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def condense_response(response: AIResponse) -> Dict[str, Any]:
    """Reduce a response to what later prompts and the history view need."""
    thinking = response.thinking or ""
    if len(thinking) > CONDENSED_THINKING_CHARS:
        thinking = thinking[:CONDENSED_THINKING_CHARS] + "..."
    condensed: Dict[str, Any] = {
        "thinking": thinking,
        "commands": [
            {
                "type": cmd.get("type"),
                "isTaskComplete": cmd.get("isTaskComplete"),
                "isFinalCommand": cmd.get("isFinalCommand"),
            }
            for cmd in response.commands
        ],
    }
    if response.result is not None:
        condensed["result"] = response.result
    if response.is_task_complete is not None:
        condensed["isTaskComplete"] = response.is_task_complete
    return condensed


@dataclass
class HistoryItem:
    instruction: str
    condensed_response: Dict[str, Any]
    screenshot_ref: Optional[Dict[str, Any]] = None
    ui_ref: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=_iso_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instruction": self.instruction,
            "timestamp": self.timestamp,
            "screenshot": self.screenshot_ref,
            "uiElements": self.ui_ref,
            "parsedResponse": self.condensed_response,
        }


@dataclass
class SessionContext:
    id: str
    history: List[HistoryItem] = field(default_factory=list)
    last_operation: Optional[Dict[str, str]] = None
    max_items: int = MAX_CONTEXT_ITEMS

    def append(
        self,
        instruction: str,
        response: AIResponse,
        screenshot_timestamp: Optional[float] = None,
        ui_timestamp: Optional[float] = None,
    ) -> HistoryItem:
        item = HistoryItem(
            instruction=instruction,
            condensed_response=condense_response(response),
            screenshot_ref={"timestamp": screenshot_timestamp} if screenshot_timestamp is not None else None,
            ui_ref={"timestamp": ui_timestamp} if ui_timestamp is not None else None,
        )
        self.history.append(item)
        if len(self.history) > self.max_items:
            del self.history[: len(self.history) - self.max_items]
        self.last_operation = {"instruction": instruction, "timestamp": item.timestamp}
        return item

    def recent(self, count: int) -> List[HistoryItem]:
        if count <= 0:
            return []
        return self.history[-count:]

    def summary(self) -> List[Dict[str, Any]]:
        """History entries without any capture references."""
        return [
            {
                "instruction": item.instruction,
                "timestamp": item.timestamp,
                "thinking": item.condensed_response.get("thinking"),
                "commands": item.condensed_response.get("commands", []),
            }
            for item in self.history
        ]

    def clear(self) -> None:
        self.history.clear()
        self.last_operation = None


class SessionStore:
    """Holds the sessions of one process, keyed by conversation id."""

    def __init__(self, max_items: int = MAX_CONTEXT_ITEMS) -> None:
        self._sessions: Dict[str, SessionContext] = {}
        self._max_items = max_items

    def create(self, session_id: Optional[str] = None) -> SessionContext:
        session_id = session_id or uuid.uuid4().hex
        session = SessionContext(id=session_id, max_items=self._max_items)
        self._sessions[session_id] = session
        return session

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> SessionContext:
        if session_id not in self._sessions:
            raise KeyError(f"Session {session_id} not found")
        return self._sessions[session_id]

    def get_or_create(self, session_id: Optional[str] = None) -> SessionContext:
        if session_id and session_id in self._sessions:
            return self._sessions[session_id]
        return self.create(session_id)

    def evict(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def list_ids(self) -> List[str]:
        return list(self._sessions)

    def history(self, session_id: str) -> List[Dict[str, Any]]:
        return self.get(session_id).summary()
