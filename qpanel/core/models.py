"""Data models for the Q panel.

Uses Pydantic for validated inbound payloads and JSON-shaped outbound events.
Field aliases match the camelCase keys the browser client sends and expects.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class EventType(str, Enum):
    """Type tags of events streamed to the client during a run."""

    SESSION_CREATED = "session-created"
    OUTPUT = "q-output"
    ERROR = "q-error"
    COMPLETE = "q-complete"


class StreamEvent(BaseModel):
    """One event emitted toward the consumer of a run.

    Kind-specific payload:
    - ``q-output`` / ``q-error`` chunks carry ``data``
    - a launch failure is a ``q-error`` carrying ``error``
    - ``q-complete`` carries ``exitCode``
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: EventType
    session_id: str = Field(alias="sessionId")
    timestamp: datetime = Field(default_factory=utc_now)
    data: str | None = None
    error: str | None = None
    exit_code: int | None = Field(default=None, alias="exitCode")

    @classmethod
    def session_created(cls, session_id: str) -> StreamEvent:
        return cls(type=EventType.SESSION_CREATED, session_id=session_id)

    @classmethod
    def output(cls, session_id: str, data: str) -> StreamEvent:
        return cls(type=EventType.OUTPUT, session_id=session_id, data=data)

    @classmethod
    def error_chunk(cls, session_id: str, data: str) -> StreamEvent:
        return cls(type=EventType.ERROR, session_id=session_id, data=data)

    @classmethod
    def launch_error(cls, session_id: str, error: str) -> StreamEvent:
        return cls(type=EventType.ERROR, session_id=session_id, error=error)

    @classmethod
    def complete(cls, session_id: str, exit_code: int) -> StreamEvent:
        return cls(type=EventType.COMPLETE, session_id=session_id, exit_code=exit_code)

    @property
    def is_terminal(self) -> bool:
        return self.type is EventType.COMPLETE or (
            self.type is EventType.ERROR and self.error is not None
        )

    def to_message(self) -> dict[str, Any]:
        """Flat JSON-ready dict with camelCase keys, payload fields only when set."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Run request models ---


class ImageAttachment(BaseModel):
    """Inline image sent by the client as a ``data:<mime>;base64,...`` URL."""

    model_config = ConfigDict(populate_by_name=True)

    data: str
    mime_type: str | None = Field(default=None, alias="mimeType")
    name: str | None = None


class ToolsSettings(BaseModel):
    """Tool permission settings chosen in the client's settings panel."""

    model_config = ConfigDict(populate_by_name=True)

    allowed_tools: list[str] = Field(default_factory=list, alias="allowedTools")
    disallowed_tools: list[str] = Field(default_factory=list, alias="disallowedTools")
    skip_permissions: bool = Field(default=False, alias="skipPermissions")


class RunOptions(BaseModel):
    """Options accompanying a ``q-command`` request."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    cwd: str | None = None
    project_path: str | None = Field(default=None, alias="projectPath")
    resume: bool = False
    tools_settings: ToolsSettings = Field(default_factory=ToolsSettings, alias="toolsSettings")
    permission_mode: str | None = Field(default=None, alias="permissionMode")
    images: list[ImageAttachment] = Field(default_factory=list)


class RunResult(BaseModel):
    """Successful outcome of a run (exit code 0)."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    output: str
    session_id: str = Field(alias="sessionId")


# --- Project / session registry models ---


class SessionRecord(BaseModel):
    """Persisted metadata for one chat session of a project."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    title: str
    created_at: str
    updated_at: str
    project_path: str = Field(alias="projectPath")
    message_count: int = Field(default=0, alias="messageCount")


class SessionMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    last_activity: float | None = Field(default=None, alias="lastActivity")


class Project(BaseModel):
    """A discovered project directory and its sessions."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    display_name: str = Field(alias="displayName")
    full_path: str = Field(alias="fullPath")
    session_meta: SessionMeta = Field(default_factory=SessionMeta, alias="sessionMeta")
    sessions: list[SessionRecord] = Field(default_factory=list)


# --- MCP configuration models ---


class McpServer(BaseModel):
    """An MCP tool server entry in the Q CLI's ``mcp.json``."""

    name: str
    type: Literal["stdio", "sse"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
