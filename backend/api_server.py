from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sse_starlette.sse import EventSourceResponse

from automation_manager import AutomationManager, InstructionRun, automation_manager
from commands import DEFAULT_SWIPE_DURATION_MS
from errors import AutomationError
from logging_utils import log

UI_UNAVAILABLE = "UI elements unavailable"


class InstructionRequest(BaseModel):
    instruction: str = Field(..., min_length=1, max_length=2000)


class PreviewRequest(BaseModel):
    instruction: str = Field(..., min_length=1, max_length=2000)
    sessionId: Optional[str] = None


class SessionCreateRequest(BaseModel):
    sessionId: Optional[str] = None


class TapRequest(BaseModel):
    x: int
    y: int


class SwipeRequest(BaseModel):
    startX: int
    startY: int
    endX: int
    endY: int
    duration: Optional[int] = None


class TextRequest(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be empty")
        return value


class KeyRequest(BaseModel):
    keycode: Union[int, str]


class RunResponse(BaseModel):
    id: str
    sessionId: str
    instruction: str
    status: str
    createdAt: datetime
    updatedAt: datetime
    outcome: Optional[Dict[str, Any]] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


def _serialize_run(run: InstructionRun) -> Dict[str, Any]:
    payload = run.to_dict()
    payload["sessionId"] = payload.pop("session_id")
    payload["createdAt"] = payload.pop("created_at")
    payload["updatedAt"] = payload.pop("updated_at")
    return payload


def get_manager() -> AutomationManager:
    return automation_manager


app = FastAPI(
    title="DroidAuto Control API",
    version="0.1.0",
    description="Natural-language control of an Android device over adb.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def invalid_parameters(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid parameters: {problems}"})


@app.exception_handler(AutomationError)
async def automation_failure(request: Request, exc: AutomationError) -> JSONResponse:
    log("ERROR", f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@app.get("/health")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------- #
# Sessions and instruction runs
# ---------------------------------------------------------------------- #
@app.post("/api/sessions", status_code=201)
def create_session(
    payload: Optional[SessionCreateRequest] = None,
    manager: AutomationManager = Depends(get_manager),
) -> Dict[str, Any]:
    session_id = payload.sessionId if payload else None
    if session_id and manager.has_session(session_id):
        session = manager.get_session(session_id)
    else:
        session = manager.create_session(session_id)
    return {"success": True, "sessionId": session.id}


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    if not manager.has_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    session = manager.get_session(session_id)
    return {
        "success": True,
        "sessionId": session_id,
        "history": session.summary(),
        "lastOperation": session.last_operation,
        "runs": [_serialize_run(run) for run in manager.list_runs(session_id)],
    }


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    if not manager.delete_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True}


@app.post("/api/sessions/{session_id}/instructions", response_model=RunResponse, status_code=201)
async def submit_instruction(
    session_id: str,
    payload: InstructionRequest,
    manager: AutomationManager = Depends(get_manager),
) -> Dict[str, Any]:
    if not manager.has_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    run = await manager.submit_instruction(session_id, payload.instruction)
    return _serialize_run(run)


@app.get("/api/sessions/{session_id}/events")
async def session_events(session_id: str, manager: AutomationManager = Depends(get_manager)) -> EventSourceResponse:
    if not manager.has_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    async def event_generator():
        async for event in manager.session_event_stream(session_id):
            yield {"event": event.get("type", "message"), "data": json.dumps(event)}

    return EventSourceResponse(event_generator())


@app.get("/api/runs/{run_id}", response_model=RunResponse)
def get_run(run_id: str, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    if not manager.has_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return _serialize_run(manager.get_run(run_id))


@app.get("/api/runs/{run_id}/events")
async def run_events(run_id: str, manager: AutomationManager = Depends(get_manager)) -> EventSourceResponse:
    if not manager.has_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_generator():
        async for event in manager.run_event_stream(run_id):
            yield {"event": event.get("type", "message"), "data": json.dumps(event)}

    return EventSourceResponse(event_generator())


# ---------------------------------------------------------------------- #
# One-shot inference and session query
# ---------------------------------------------------------------------- #
@app.post("/api/ai/instruction")
async def preview_instruction(
    payload: PreviewRequest,
    manager: AutomationManager = Depends(get_manager),
) -> Dict[str, Any]:
    session, response = await manager.preview_instruction(payload.instruction, payload.sessionId)
    return {"success": True, "sessionId": session.id, "response": response.to_dict()}


@app.get("/api/ai/session/{session_id}")
def get_ai_session(session_id: str, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    if not manager.has_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True, "sessionId": session_id, "history": manager.get_session(session_id).summary()}


@app.delete("/api/ai/session/{session_id}")
def delete_ai_session(session_id: str, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    manager.delete_session(session_id)
    return {"success": True}


# ---------------------------------------------------------------------- #
# Direct device access
# ---------------------------------------------------------------------- #
@app.get("/api/android/status")
async def device_status(manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    device = await run_in_threadpool(manager.device.check_connected_devices)
    return {"success": True, "device": device.to_dict()}


@app.get("/api/android/screenshot")
async def device_screenshot(manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    screenshot = await run_in_threadpool(manager.device.capture_screen)
    return {"success": True, "screenshot": {"base64": screenshot.base64, "timestamp": screenshot.timestamp}}


@app.get("/api/android/ui")
async def device_ui(manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    snapshot = await run_in_threadpool(manager.device.extract_ui_elements)
    return {"success": True, "uiElements": snapshot.to_dict()}


@app.post("/api/android/tap")
async def device_tap(payload: TapRequest, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    result = await run_in_threadpool(manager.device.tap, payload.x, payload.y)
    return {"success": True, "result": result}


@app.post("/api/android/swipe")
async def device_swipe(payload: SwipeRequest, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    duration = payload.duration if payload.duration is not None else DEFAULT_SWIPE_DURATION_MS
    result = await run_in_threadpool(
        manager.device.swipe, payload.startX, payload.startY, payload.endX, payload.endY, duration
    )
    return {"success": True, "result": result}


@app.post("/api/android/text")
async def device_text(payload: TextRequest, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    result = await run_in_threadpool(manager.device.input_text, payload.text)
    return {"success": True, "result": result}


@app.post("/api/android/key")
async def device_key(payload: KeyRequest, manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    result = await run_in_threadpool(manager.device.press_key, payload.keycode)
    return {"success": True, "result": result}


@app.get("/api/ui/formatted")
async def formatted_ui(manager: AutomationManager = Depends(get_manager)) -> Dict[str, Any]:
    try:
        snapshot = await run_in_threadpool(manager.device.extract_ui_elements)
    except AutomationError as exc:
        log("WARN", f"UI capture failed: {exc}")
        return {"success": True, "formattedUI": UI_UNAVAILABLE, "timestamp": datetime.utcnow().isoformat() + "Z"}
    return {
        "success": True,
        "formattedUI": json.dumps(snapshot.to_dict()),
        "timestamp": snapshot.timestamp,
    }


def create_app() -> FastAPI:
    return app


__all__ = ["app", "create_app", "get_manager"]
