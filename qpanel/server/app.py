"""FastAPI backend for the Q panel.

This module provides:
- WebSocket ``/ws`` for running Q CLI commands with live output and aborting them
- REST API for projects, sessions and MCP server configuration

Architecture Notes:
- Runs are owned by one in-process ``QProcessSupervisor``. A run keeps going if
  the client that started it disconnects; its events are then dropped and the
  process is cleaned up normally when it exits.
- On application shutdown every live Q process is terminated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from qpanel import __version__
from qpanel.core.config import PanelConfig, load_config
from qpanel.core.mcp import (
    McpConfigError,
    McpConfigStore,
    McpServerExistsError,
    McpServerNotFoundError,
)
from qpanel.core.models import McpServer, RunOptions, StreamEvent
from qpanel.core.projects import ProjectRegistry, ProjectStoreError, SessionNotFoundError
from qpanel.process.supervisor import QProcessSupervisor, SessionBusyError, SupervisorError

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "localhost", "::1")


# Global instances - initialized lazily
_config: PanelConfig | None = None
_supervisor: QProcessSupervisor | None = None
_projects: ProjectRegistry | None = None
_mcp_store: McpConfigStore | None = None

# Runs started over WebSockets; referenced here so they outlive their socket
_background_runs: set[asyncio.Task] = set()


def configure(config: PanelConfig | None = None) -> PanelConfig:
    """Install a configuration and drop instances built from the previous one."""
    global _config, _supervisor, _projects, _mcp_store
    if _supervisor is not None:
        _supervisor.shutdown()
    _config = config or load_config()
    _supervisor = None
    _projects = None
    _mcp_store = None
    return _config


def get_config() -> PanelConfig:
    if _config is None:
        return configure()
    return _config


def get_supervisor() -> QProcessSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = QProcessSupervisor(get_config())
    return _supervisor


def get_projects() -> ProjectRegistry:
    global _projects
    if _projects is None:
        _projects = ProjectRegistry(get_config())
    return _projects


def get_mcp_store() -> McpConfigStore:
    global _mcp_store
    if _mcp_store is None:
        _mcp_store = McpConfigStore(get_config().mcp_config_path)
    return _mcp_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _supervisor is not None:
        terminated = _supervisor.shutdown()
        if terminated:
            logger.info(f"Shutting down: terminated {terminated} Q CLI process(es)")


app = FastAPI(
    title="Q Panel API",
    description="Web control panel for the Q Developer CLI",
    version=__version__,
    lifespan=lifespan,
)


# CORS for local development - restricted to known origins.
# The panel is designed for localhost-only use; there is no authentication.
def _get_allowed_origins() -> list[str]:
    """Build allowed origins list including the configured port."""
    origins = [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:3001",
        "http://127.0.0.1:5173",
    ]

    configured_port = str(get_config().port)
    if configured_port not in ("3000", "3001", "5173"):
        origins.extend(
            [
                f"http://localhost:{configured_port}",
                f"http://127.0.0.1:{configured_port}",
            ]
        )

    return origins


# Exact origins are enforced per request by validate_request_origin (the outer
# middleware), which follows the configured port
LOCAL_ORIGIN_PATTERN = r"http://(localhost|127\.0\.0\.1)(:\d+)?"

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=LOCAL_ORIGIN_PATTERN,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _origin_rejection(origin: str | None, client_host: str | None) -> str | None:
    """Reason to reject a request, or None if the origin/host is acceptable."""
    if origin:
        if origin not in _get_allowed_origins():
            return f"Origin '{origin}' not allowed"
        return None
    if client_host not in LOCAL_HOSTS:
        return "Non-localhost access without Origin header not allowed"
    return None


@app.middleware("http")
async def validate_request_origin(request: Request, call_next):
    """
    Validate request origin.

    Requests with an Origin header must use an allowed origin; requests without
    one must come from localhost. This is a second layer behind localhost-only
    binding.
    """
    if request.headers.get("upgrade", "").lower() == "websocket":
        return await call_next(request)

    client_host = request.client.host if request.client else None
    reason = _origin_rejection(request.headers.get("origin"), client_host)
    if reason:
        return JSONResponse(status_code=403, content={"detail": reason})

    return await call_next(request)


# ========== API Models ==========


class AddProjectRequest(BaseModel):
    path: str


class RenameProjectRequest(BaseModel):
    display_name: str = Field(alias="displayName")


class CreateSessionRequest(BaseModel):
    title: str | None = None


class ToggleServerRequest(BaseModel):
    enabled: bool


class RawMcpConfigRequest(BaseModel):
    config: dict[str, Any]


def _project_path(project_name: str):
    path = get_projects().extract_project_directory(project_name)
    if path is None:
        raise HTTPException(status_code=404, detail=f"Project '{project_name}' not found")
    return path


# ========== Health ==========


@app.get("/")
def root() -> dict[str, str]:
    return {"name": "q-panel", "version": __version__}


@app.get("/api/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "cli": get_config().cli_binary,
        "activeSessions": len(get_supervisor().active_sessions()),
        "timestamp": datetime.now(UTC).isoformat(),
    }


# ========== Projects ==========


@app.get("/api/projects")
def list_projects() -> list[dict[str, Any]]:
    """List discovered projects, most recently active first."""
    return [p.model_dump(by_alias=True) for p in get_projects().get_projects()]


@app.post("/api/projects", status_code=201)
def add_project(request: AddProjectRequest) -> dict[str, Any]:
    try:
        path = get_projects().add_project(request.path)
    except ProjectStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "path": str(path)}


@app.put("/api/projects/{project_name}/rename")
def rename_project(project_name: str, request: RenameProjectRequest) -> dict[str, Any]:
    get_projects().rename_project(project_name, request.display_name)
    return {"success": True}


@app.delete("/api/projects/{project_name}")
def delete_project(project_name: str) -> dict[str, Any]:
    get_projects().delete_project(project_name)
    return {"success": True}


@app.get("/api/projects/{project_name}/sessions")
def list_project_sessions(project_name: str) -> list[dict[str, Any]]:
    path = _project_path(project_name)
    return [s.model_dump(by_alias=True) for s in get_projects().get_sessions_for_project(path)]


@app.post("/api/projects/{project_name}/sessions", status_code=201)
def create_session(project_name: str, request: CreateSessionRequest) -> dict[str, Any]:
    path = _project_path(project_name)
    return get_projects().create_session(path, request.title).model_dump(by_alias=True)


# ========== Sessions ==========


@app.get("/api/sessions/active")
def active_sessions() -> dict[str, list[str]]:
    """Session IDs with a live Q process."""
    return {"sessions": get_supervisor().active_sessions()}


@app.get("/api/sessions/{session_id}/messages")
def get_session_messages(session_id: str) -> list[dict[str, Any]]:
    return get_projects().get_session_messages(session_id)


@app.post("/api/sessions/{session_id}/messages", status_code=201)
def add_session_message(session_id: str, message: dict[str, Any]) -> dict[str, Any]:
    try:
        return get_projects().add_message(session_id, message)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str) -> dict[str, Any]:
    if not get_projects().delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True}


@app.post("/api/sessions/{session_id}/abort")
async def abort_session(session_id: str) -> dict[str, Any]:
    success = await get_supervisor().abort(session_id)
    return {"success": success, "sessionId": session_id}


# ========== MCP servers ==========


def _mcp_http_error(error: McpConfigError) -> HTTPException:
    if isinstance(error, McpServerNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, McpServerExistsError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


@app.get("/api/mcp/list")
def list_mcp_servers() -> dict[str, Any]:
    try:
        servers = get_mcp_store().list_servers()
    except McpConfigError as e:
        raise HTTPException(status_code=500, detail=f"Failed to read MCP configuration: {e}")
    return {"success": True, "servers": [s.model_dump() for s in servers]}


@app.post("/api/mcp/add")
def add_mcp_server(server: McpServer) -> dict[str, Any]:
    try:
        added = get_mcp_store().add_server(server)
    except McpConfigError as e:
        raise _mcp_http_error(e)
    return {
        "success": True,
        "message": f'MCP server "{added.name}" added successfully',
        "server": added.model_dump(),
    }


@app.put("/api/mcp/update/{name}")
def update_mcp_server(name: str, server: McpServer) -> dict[str, Any]:
    try:
        updated = get_mcp_store().update_server(name, server)
    except McpConfigError as e:
        raise _mcp_http_error(e)
    return {
        "success": True,
        "message": f'MCP server "{name}" updated successfully',
        "server": updated.model_dump(),
    }


@app.delete("/api/mcp/remove/{name}")
def remove_mcp_server(name: str) -> dict[str, Any]:
    try:
        get_mcp_store().remove_server(name)
    except McpConfigError as e:
        raise _mcp_http_error(e)
    return {"success": True, "message": f'MCP server "{name}" removed successfully'}


@app.get("/api/mcp/get/{name}")
def get_mcp_server(name: str) -> dict[str, Any]:
    try:
        server = get_mcp_store().get_server(name)
    except McpConfigError as e:
        raise _mcp_http_error(e)
    return {"success": True, "server": server.model_dump()}


@app.post("/api/mcp/toggle/{name}")
def toggle_mcp_server(name: str, request: ToggleServerRequest) -> dict[str, Any]:
    try:
        enabled = get_mcp_store().toggle_server(name, request.enabled)
    except McpConfigError as e:
        raise _mcp_http_error(e)
    state = "enabled" if enabled else "disabled"
    return {
        "success": True,
        "message": f'MCP server "{name}" {state} successfully',
        "enabled": enabled,
    }


@app.get("/api/mcp/config")
def get_mcp_config() -> dict[str, Any]:
    store = get_mcp_store()
    try:
        config = store.read_raw()
    except McpConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "config": config, "configPath": str(store.path)}


@app.post("/api/mcp/config")
def write_mcp_config(request: RawMcpConfigRequest) -> dict[str, Any]:
    get_mcp_store().write_raw(request.config)
    return {
        "success": True,
        "message": "MCP configuration updated successfully",
        "config": request.config,
    }


# ========== WebSocket for Q CLI runs ==========


class WebSocketSink:
    """Event sink pushing JSON messages to one WebSocket.

    Sends are serialised (several runs may share a socket). Once the socket is
    closed, messages are dropped; send failures are logged, never raised.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed and self.websocket.client_state == WebSocketState.CONNECTED

    async def send_json(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.error(f"Error sending WebSocket message: {e}")
                self.closed = True

    async def emit(self, event: StreamEvent) -> None:
        await self.send_json(event.to_message())

    def close(self) -> None:
        self.closed = True


async def _record_message(session_id: str | None, message: dict[str, Any]) -> None:
    """Append to the stored session history when the run belongs to a stored session."""
    if not session_id:
        return
    try:
        await run_in_threadpool(get_projects().add_message, session_id, message)
    except SessionNotFoundError:
        pass
    except (OSError, ProjectStoreError) as e:
        logger.warning(f"Could not record message for session {session_id}: {e}")


async def _run_command(command: str, options: RunOptions, sink: WebSocketSink) -> None:
    supervisor = get_supervisor()
    await _record_message(options.session_id, {"role": "user", "content": command})
    try:
        result = await supervisor.start(command, options, sink)
    except SessionBusyError as e:
        # Not a q-error: that would read as the live run's terminal event
        await sink.send_json({"type": "error", "error": str(e)})
        return
    except SupervisorError as e:
        # Already reported to the client through the run's own events
        logger.warning(f"Q run failed: {e}")
        return
    await _record_message(result.session_id, {"role": "assistant", "content": result.output})


def _start_background_run(command: str, options: RunOptions, sink: WebSocketSink) -> None:
    task = asyncio.create_task(_run_command(command, options, sink))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)


async def _handle_client_message(raw: str, sink: WebSocketSink) -> None:
    if raw == "ping":
        await sink.send_json({"type": "pong"})
        return

    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await sink.send_json({"type": "error", "error": "Invalid JSON message"})
        return
    if not isinstance(message, dict):
        await sink.send_json({"type": "error", "error": "Message must be a JSON object"})
        return

    msg_type = message.get("type")
    if msg_type == "q-command":
        try:
            options = RunOptions.model_validate(message.get("options") or {})
        except ValidationError as e:
            await sink.send_json({"type": "error", "error": f"Invalid options: {e}"})
            return
        _start_background_run(str(message.get("command") or ""), options, sink)
    elif msg_type == "abort-session":
        session_id = str(message.get("sessionId") or "")
        success = await get_supervisor().abort(session_id) if session_id else False
        await sink.send_json(
            {"type": "session-aborted", "sessionId": session_id, "success": success}
        )
    elif msg_type == "ping":
        await sink.send_json({"type": "pong"})
    else:
        await sink.send_json({"type": "error", "error": f"Unknown message type: {msg_type}"})


@app.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    """
    WebSocket for Q CLI runs.

    Protocol:
    1. Client sends {"type": "q-command", "command", "options"} to start a run;
       session-created, q-output, q-error and q-complete events follow
    2. Client sends {"type": "abort-session", "sessionId"}; server answers
       session-aborted with a success flag
    3. Client can send "ping"; server responds with {"type": "pong"}
    """
    client_host = websocket.client.host if websocket.client else None
    reason = _origin_rejection(websocket.headers.get("origin"), client_host)
    if reason:
        await websocket.close(code=4003, reason=reason)
        return

    await websocket.accept()
    sink = WebSocketSink(websocket)

    try:
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
            except TimeoutError:
                # Heartbeat to detect dead connections
                await sink.send_json({"type": "heartbeat"})
                if not sink.is_open:
                    break
                continue
            await _handle_client_message(raw, sink)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        sink.close()
