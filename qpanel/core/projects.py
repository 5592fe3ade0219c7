"""Project discovery and session storage.

Projects are found by scanning a few well-known roots one level deep. The Q
CLI keeps no session history of its own, so the panel stores it:

    <data_dir>/project-config.json                  extra roots, display names
    <data_dir>/sessions/<project>/<id>.json         session metadata
    <data_dir>/sessions/<project>/<id>_messages.jsonl

Everything is last-write-wins; writes are serialised with file locks.
"""

from __future__ import annotations

import contextlib
import json
import logging
import shutil
import time
import tomllib
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from qpanel.core.config import PanelConfig
from qpanel.core.locks import StoreLock, append_jsonl, read_json, read_jsonl, write_json
from qpanel.core.models import Project, SessionMeta, SessionRecord

logger = logging.getLogger(__name__)

PROJECT_INDICATORS = frozenset(
    {
        "package.json",
        "pom.xml",
        "Cargo.toml",
        "requirements.txt",
        "setup.py",
        "pyproject.toml",
        "go.mod",
        "Makefile",
        "CMakeLists.txt",
        ".git",
        "src",
        "lib",
        "README.md",
        "README.txt",
    }
)

SKIPPED_DIRS = frozenset({"node_modules", "dist", "build", "target", ".git"})


class ProjectStoreError(Exception):
    """Error in the project/session store."""

    pass


class SessionNotFoundError(ProjectStoreError):
    """No stored session has the requested ID."""

    pass


def _iso_now() -> str:
    return datetime.now(UTC).isoformat()


def _random_suffix() -> str:
    return uuid.uuid4().hex[:9]


def _timestamp(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
    except ValueError:
        return None


def is_project_directory(path: Path) -> bool:
    """True if the directory contains a common project marker."""
    try:
        return any(entry.name in PROJECT_INDICATORS for entry in path.iterdir())
    except OSError:
        return False


def generate_display_name(project_dir: Path) -> str:
    """Human-friendly project name.

    Precedence: package.json ``name``, pyproject ``[project].name``, first
    ``# heading`` of README.md, then the directory name.
    """
    try:
        package = json.loads((project_dir / "package.json").read_text(encoding="utf-8"))
        if isinstance(package, dict) and package.get("name"):
            return str(package["name"])
    except (OSError, json.JSONDecodeError):
        pass

    try:
        pyproject = tomllib.loads((project_dir / "pyproject.toml").read_text(encoding="utf-8"))
        name = pyproject.get("project", {}).get("name")
        if name:
            return str(name)
    except (OSError, tomllib.TOMLDecodeError):
        pass

    try:
        for line in (project_dir / "README.md").read_text(encoding="utf-8").splitlines():
            if line.startswith("# ") and line[2:].strip():
                return line[2:].strip()
    except OSError:
        pass

    return project_dir.name


class ProjectRegistry:
    """Flat-file registry of projects and their chat sessions."""

    def __init__(self, config: PanelConfig | None = None):
        self.config = config or PanelConfig()

    # --- project config file ---

    def load_project_config(self) -> dict[str, Any]:
        try:
            data = read_json(self.config.project_config_path, default={})
        except json.JSONDecodeError as e:
            logger.error(f"Invalid project config {self.config.project_config_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    @contextlib.contextmanager
    def _edit_project_config(self) -> Iterator[dict[str, Any]]:
        """Read-modify-write of the project config under one lock."""
        path = self.config.project_config_path
        with StoreLock(path):
            data = self.load_project_config()
            yield data
            write_json(path, data)

    # --- discovery ---

    def _candidate_dirs(self, project_config: dict[str, Any]) -> list[Path]:
        candidates: list[Path] = []
        for root in self.config.project_roots:
            try:
                if not root.is_dir():
                    continue
                for entry in sorted(root.iterdir()):
                    if entry.name.startswith(".") or entry.name in SKIPPED_DIRS:
                        continue
                    if entry.is_dir():
                        candidates.append(entry)
            except OSError as e:
                logger.error(f"Error scanning directory {root}: {e}")

        # Manually added directories are projects in their own right
        for extra in project_config.get("additionalProjectDirs", []):
            candidates.append(Path(extra).expanduser())
        return candidates

    def get_projects(self) -> list[Project]:
        """Discover projects, newest session activity first."""
        project_config = self.load_project_config()
        display_names: dict[str, str] = project_config.get("projectDisplayNames", {})

        projects: list[Project] = []
        seen: set[Path] = set()
        for candidate in self._candidate_dirs(project_config):
            if candidate in seen or not candidate.is_dir() or not is_project_directory(candidate):
                continue
            seen.add(candidate)

            sessions = self.get_sessions_for_project(candidate)
            activity = [
                t
                for t in (_timestamp(s.updated_at or s.created_at) for s in sessions)
                if t is not None
            ]
            projects.append(
                Project(
                    name=candidate.name,
                    display_name=display_names.get(candidate.name)
                    or generate_display_name(candidate),
                    full_path=str(candidate),
                    session_meta=SessionMeta(
                        total=len(sessions),
                        last_activity=max(activity) if activity else None,
                    ),
                    sessions=sessions,
                )
            )

        projects.sort(key=lambda p: p.session_meta.last_activity or 0, reverse=True)
        return projects

    def extract_project_directory(self, project_name: str) -> Path | None:
        for project in self.get_projects():
            if project.name == project_name:
                return Path(project.full_path)
        return None

    def add_project(self, project_path: Path | str) -> Path:
        """Track a directory outside the scanned roots."""
        path = Path(project_path).expanduser()
        if not path.is_dir():
            raise ProjectStoreError(f"Project directory does not exist: {path}")

        with self._edit_project_config() as project_config:
            extra = project_config.setdefault("additionalProjectDirs", [])
            if str(path) not in extra:
                extra.append(str(path))
        return path

    def rename_project(self, project_name: str, display_name: str) -> None:
        with self._edit_project_config() as project_config:
            project_config.setdefault("projectDisplayNames", {})[project_name] = display_name

    def delete_project(self, project_name: str) -> None:
        """Stop tracking a project and drop its sessions. Project files are untouched."""
        with self._edit_project_config() as project_config:
            project_config.get("projectDisplayNames", {}).pop(project_name, None)
            if "additionalProjectDirs" in project_config:
                project_config["additionalProjectDirs"] = [
                    d
                    for d in project_config["additionalProjectDirs"]
                    if Path(d).name != project_name
                ]

        sessions_dir = self.config.sessions_dir / project_name
        if sessions_dir.exists():
            shutil.rmtree(sessions_dir, ignore_errors=True)

    # --- sessions ---

    def _sessions_dir(self, project_path: Path | str) -> Path:
        return self.config.sessions_dir / Path(project_path).name

    def get_sessions_for_project(self, project_path: Path | str) -> list[SessionRecord]:
        sessions_dir = self._sessions_dir(project_path)
        if not sessions_dir.is_dir():
            return []

        sessions = []
        for session_file in sessions_dir.glob("*.json"):
            try:
                sessions.append(SessionRecord.model_validate(read_json(session_file)))
            except (OSError, ValueError) as e:
                logger.error(f"Error reading session file {session_file}: {e}")

        sessions.sort(key=lambda s: _timestamp(s.created_at) or 0, reverse=True)
        return sessions

    def get_sessions(self) -> list[SessionRecord]:
        """All sessions across discovered projects."""
        sessions: list[SessionRecord] = []
        for project in self.get_projects():
            sessions.extend(project.sessions)
        return sessions

    def find_session(self, session_id: str) -> SessionRecord:
        for session in self.get_sessions():
            if session.id == session_id:
                return session
        raise SessionNotFoundError(f"Session {session_id} not found")

    def _session_paths(self, session: SessionRecord) -> tuple[Path, Path]:
        sessions_dir = self._sessions_dir(session.project_path)
        return sessions_dir / f"{session.id}.json", sessions_dir / f"{session.id}_messages.jsonl"

    def create_session(self, project_path: Path | str, title: str | None = None) -> SessionRecord:
        now = _iso_now()
        session = SessionRecord(
            id=f"q-session-{int(time.time() * 1000)}-{_random_suffix()}",
            title=title or f"Session {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            created_at=now,
            updated_at=now,
            project_path=str(project_path),
            message_count=0,
        )
        session_file, _ = self._session_paths(session)
        with StoreLock(session_file):
            write_json(session_file, session.model_dump(by_alias=True))
        return session

    def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        try:
            session = self.find_session(session_id)
        except SessionNotFoundError:
            return []
        _, messages_file = self._session_paths(session)
        return read_jsonl(messages_file)

    def add_message(self, session_id: str, message: dict[str, Any]) -> dict[str, Any]:
        """Append a message and bump the session's counters.

        Raises:
            SessionNotFoundError: If no session has this ID.
        """
        session = self.find_session(session_id)
        session_file, messages_file = self._session_paths(session)

        record = {
            **message,
            "timestamp": _iso_now(),
            "id": f"msg-{int(time.time() * 1000)}-{_random_suffix()}",
        }
        with StoreLock(session_file):
            # Counters are re-read here; another writer may have bumped them
            stored = read_json(session_file)
            if stored is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            current = SessionRecord.model_validate(stored)
            append_jsonl(messages_file, record)
            updated = current.model_copy(
                update={
                    "updated_at": record["timestamp"],
                    "message_count": current.message_count + 1,
                }
            )
            write_json(session_file, updated.model_dump(by_alias=True))
        return record

    def delete_session(self, session_id: str) -> bool:
        try:
            session = self.find_session(session_id)
        except SessionNotFoundError:
            return False

        for path in self._session_paths(session):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Error deleting {path}: {e}")
        return True
