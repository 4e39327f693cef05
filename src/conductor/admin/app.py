from __future__ import annotations

import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from conductor.admin.trace_parser import parse_trace_file
from conductor.config import load_config
from conductor.core.errors import EngineError
from conductor.core.transcript import turn_to_dict
from conductor.runtime.checkpoints import checkpoint_to_dict
from conductor.runtime.controller import TaskController, build_controller
from conductor.runtime.notify import BufferedSink, FanoutSink
from conductor.runtime.store import task_to_dict

_STATUS_BY_KIND = {
    "TaskNotFound": 404,
    "CheckpointNotFound": 404,
    "InvalidState": 409,
    "WorkspaceBusy": 409,
    "InvalidGoal": 400,
}


class StartTaskRequest(BaseModel):
    goal: str


class InputRequest(BaseModel):
    reply: str


class ApprovalRequest(BaseModel):
    tool_call_id: str
    decision: bool
    feedback: str | None = None


class ResumeRequest(BaseModel):
    checkpoint_id: str | None = None


class CheckpointRequest(BaseModel):
    label: str | None = None


def _task_summary(task) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "goal": task.goal,
        "status": task.status.value,
        "created_ts": task.created_ts,
        "updated_ts": task.updated_ts,
        "summary": task.summary,
    }


def create_app(
    controller: TaskController | None = None,
    workspace: Path | None = None,
    data_root: Path | None = None,
    events: BufferedSink | None = None,
) -> FastAPI:
    buffer = events or BufferedSink()
    if controller is None:
        config = load_config(data_root)
        controller = build_controller(Path(workspace or Path.cwd()), config=config, sink=buffer)
    elif events is None:
        controller.sink = FanoutSink(controller.sink, buffer)

    template_dir = Path(__file__).resolve().parent / "templates"
    templates = Jinja2Templates(directory=str(template_dir))

    app = FastAPI(title="conductor")
    app.state.controller = controller
    app.state.events = buffer

    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        token = os.getenv("CONDUCTOR_ADMIN_TOKEN") or controller.config.admin_token
        if token:
            header = request.headers.get("X-Admin-Token")
            if header != token:
                return JSONResponse(status_code=401, content={"detail": "Invalid admin token"})
        return await call_next(request)

    @app.exception_handler(EngineError)
    async def _engine_error(request: Request, exc: EngineError) -> JSONResponse:
        status = _STATUS_BY_KIND.get(exc.kind, 500)
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    @app.get("/", response_class=HTMLResponse)
    def index(request: Request):
        tasks = sorted(controller.list_tasks(), key=lambda item: item.updated_ts, reverse=True)
        return templates.TemplateResponse(
            request, "index.html", {"tasks": tasks, "workspace": str(controller.workspace)}
        )

    @app.get("/api/tasks")
    def list_tasks() -> dict[str, Any]:
        tasks = controller.list_tasks()
        tasks.sort(key=lambda item: item.updated_ts, reverse=True)
        return {"tasks": [_task_summary(task) for task in tasks]}

    @app.post("/api/tasks", status_code=201)
    def start_task(payload: StartTaskRequest) -> dict[str, Any]:
        handle = controller.start(payload.goal)
        return {"task": task_to_dict(handle.task)}

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, Any]:
        return {"task": task_to_dict(controller.get_task(task_id))}

    @app.delete("/api/tasks/{task_id}")
    def purge_task(task_id: str) -> dict[str, Any]:
        controller.purge(task_id)
        buffer.clear(task_id)
        return {"task_id": task_id, "purged": True}

    @app.get("/api/tasks/{task_id}/transcript")
    def get_transcript(task_id: str) -> dict[str, Any]:
        transcript = controller.transcript(task_id)
        return {"task_id": task_id, "turns": [turn_to_dict(turn) for turn in transcript]}

    @app.post("/api/tasks/{task_id}/cancel")
    def cancel_task(task_id: str) -> dict[str, Any]:
        controller.cancel(task_id)
        return {"task_id": task_id, "status": controller.get_task(task_id).status.value}

    @app.post("/api/tasks/{task_id}/input")
    def provide_input(task_id: str, payload: InputRequest) -> dict[str, Any]:
        controller.provide_input(task_id, payload.reply)
        return {"task_id": task_id, "status": controller.get_task(task_id).status.value}

    @app.post("/api/tasks/{task_id}/approve")
    def approve_tool(task_id: str, payload: ApprovalRequest) -> dict[str, Any]:
        controller.approve_tool(task_id, payload.tool_call_id, payload.decision, payload.feedback)
        return {"task_id": task_id, "status": controller.get_task(task_id).status.value}

    @app.post("/api/tasks/{task_id}/resume")
    def resume_task(task_id: str, payload: ResumeRequest) -> dict[str, Any]:
        controller.resume(task_id, payload.checkpoint_id)
        return {"task_id": task_id, "status": controller.get_task(task_id).status.value}

    @app.get("/api/tasks/{task_id}/checkpoints")
    def list_checkpoints(task_id: str) -> dict[str, Any]:
        checkpoints = controller.list_checkpoints(task_id)
        return {
            "task_id": task_id,
            "checkpoints": [checkpoint_to_dict(item) for item in checkpoints],
        }

    @app.post("/api/tasks/{task_id}/checkpoints", status_code=201)
    def capture_checkpoint(task_id: str, payload: CheckpointRequest) -> dict[str, Any]:
        checkpoint = controller.capture_checkpoint(task_id, payload.label)
        return {"task_id": task_id, "checkpoint": checkpoint_to_dict(checkpoint)}

    @app.get("/api/tasks/{task_id}/diff")
    def diff_checkpoints(task_id: str, a: str, b: str | None = None) -> dict[str, Any]:
        changes = controller.diff_checkpoints(task_id, a, b)
        return {"task_id": task_id, "a": a, "b": b, **asdict(changes)}

    @app.get("/api/tasks/{task_id}/events")
    def get_events(task_id: str, after: int = 0) -> dict[str, Any]:
        if after < 0:
            raise HTTPException(status_code=400, detail="after must be non-negative")
        controller.get_task(task_id)
        events, cursor = buffer.events(task_id, after)
        return {
            "task_id": task_id,
            "cursor": cursor,
            "events": [asdict(event) for event in events],
        }

    @app.get("/api/tasks/{task_id}/trace")
    def get_trace(task_id: str) -> dict[str, Any]:
        controller.get_task(task_id)
        trace_path = controller.config.traces_dir / f"{task_id}.jsonl"
        if not trace_path.exists():
            raise HTTPException(status_code=404, detail="Trace file not found")
        return {"task_id": task_id, "file_name": trace_path.name, **parse_trace_file(trace_path)}

    return app
