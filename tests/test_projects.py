"""Tests for project discovery and the flat-file session store.

Tests cover:
- Project detection and display names
- Project config (extra directories, display name overrides)
- Session creation, messages and deletion
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from qpanel.core.projects import (
    ProjectRegistry,
    ProjectStoreError,
    SessionNotFoundError,
    generate_display_name,
    is_project_directory,
)


@pytest.fixture
def registry(panel_config, project_tree) -> ProjectRegistry:
    return ProjectRegistry(panel_config)


# =============================================================================
# Discovery
# =============================================================================


class TestDiscovery:
    """Tests for finding projects under the configured roots."""

    def test_only_project_directories_found(self, registry):
        names = {p.name for p in registry.get_projects()}
        assert names == {"app", "lib", "docs", "plain"}

    def test_display_names(self, registry):
        display = {p.name: p.display_name for p in registry.get_projects()}
        assert display == {
            "app": "my-app",
            "lib": "pylib",
            "docs": "Docs Site",
            "plain": "plain",
        }

    def test_is_project_directory(self, project_tree):
        assert is_project_directory(project_tree / "plain") is True
        assert is_project_directory(project_tree / "empty") is False
        assert is_project_directory(project_tree / "missing") is False

    def test_invalid_package_json_falls_through(self, tmp_path):
        project = tmp_path / "broken"
        project.mkdir()
        (project / "package.json").write_text("{not json")
        (project / "README.md").write_text("# Broken But Named\n")
        assert generate_display_name(project) == "Broken But Named"

    def test_missing_root_is_ignored(self, make_config, tmp_path):
        registry = ProjectRegistry(make_config(project_roots=[tmp_path / "nowhere"]))
        assert registry.get_projects() == []

    def test_projects_sorted_by_recent_activity(self, registry, project_tree):
        registry.create_session(project_tree / "plain", "recent work")
        projects = registry.get_projects()

        assert projects[0].name == "plain"
        assert projects[0].session_meta.total == 1
        assert projects[0].session_meta.last_activity is not None

    def test_extract_project_directory(self, registry, project_tree):
        assert registry.extract_project_directory("app") == project_tree / "app"
        assert registry.extract_project_directory("empty") is None


class TestProjectConfig:
    """Tests for manual projects and display name overrides."""

    def test_add_project_outside_roots(self, registry, tmp_path):
        outside = tmp_path / "elsewhere" / "tool"
        outside.mkdir(parents=True)
        (outside / "go.mod").write_text("module tool\n")

        registry.add_project(outside)
        registry.add_project(outside)

        assert "tool" in {p.name for p in registry.get_projects()}
        stored = json.loads(registry.config.project_config_path.read_text())
        assert stored["additionalProjectDirs"] == [str(outside)]

    def test_add_missing_project_raises(self, registry, tmp_path):
        with pytest.raises(ProjectStoreError, match="does not exist"):
            registry.add_project(tmp_path / "ghost")

    def test_rename_overrides_display_name(self, registry):
        registry.rename_project("app", "Main App")
        display = {p.name: p.display_name for p in registry.get_projects()}
        assert display["app"] == "Main App"

    def test_delete_project_drops_sessions_not_files(self, registry, project_tree):
        registry.create_session(project_tree / "app")
        registry.rename_project("app", "Main App")

        registry.delete_project("app")

        assert not (registry.config.sessions_dir / "app").exists()
        assert (project_tree / "app" / "package.json").exists()
        assert "app" not in registry.load_project_config().get("projectDisplayNames", {})

    def test_invalid_project_config_reads_as_empty(self, registry):
        path = registry.config.project_config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{broken")
        assert registry.load_project_config() == {}


# =============================================================================
# Sessions
# =============================================================================


class TestSessions:
    """Tests for session metadata and message history."""

    def test_create_session(self, registry, project_tree):
        session = registry.create_session(project_tree / "app", "First chat")

        assert session.id.startswith("q-session-")
        assert session.title == "First chat"
        assert session.message_count == 0
        stored = registry.get_sessions_for_project(project_tree / "app")
        assert [s.id for s in stored] == [session.id]

    def test_default_title(self, registry, project_tree):
        session = registry.create_session(project_tree / "lib")
        assert session.title.startswith("Session ")

    def test_add_and_read_messages(self, registry, project_tree):
        session = registry.create_session(project_tree / "app")

        registry.add_message(session.id, {"role": "user", "content": "hi"})
        record = registry.add_message(session.id, {"role": "assistant", "content": "hello"})

        assert record["id"].startswith("msg-")
        messages = registry.get_session_messages(session.id)
        assert [m["content"] for m in messages] == ["hi", "hello"]

        updated = registry.find_session(session.id)
        assert updated.message_count == 2
        assert updated.updated_at == record["timestamp"]

    def test_malformed_message_lines_skipped(self, registry, project_tree):
        session = registry.create_session(project_tree / "app")
        registry.add_message(session.id, {"role": "user", "content": "ok"})
        messages_file = registry.config.sessions_dir / "app" / f"{session.id}_messages.jsonl"
        with messages_file.open("a") as f:
            f.write("{truncated\n")

        assert len(registry.get_session_messages(session.id)) == 1

    def test_add_message_unknown_session(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.add_message("q-session-missing", {"role": "user", "content": "hi"})

    def test_messages_of_unknown_session_empty(self, registry):
        assert registry.get_session_messages("q-session-missing") == []

    def test_delete_session(self, registry, project_tree):
        session = registry.create_session(project_tree / "docs")
        registry.add_message(session.id, {"role": "user", "content": "x"})

        assert registry.delete_session(session.id) is True
        assert registry.get_sessions_for_project(project_tree / "docs") == []
        assert registry.delete_session(session.id) is False

    def test_concurrent_messages_all_counted(self, registry, project_tree):
        session = registry.create_session(project_tree / "app")

        def _post(worker: int) -> None:
            for n in range(5):
                registry.add_message(session.id, {"role": "user", "content": f"{worker}-{n}"})

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(_post, range(8)))

        assert len(registry.get_session_messages(session.id)) == 40
        assert registry.find_session(session.id).message_count == 40

    def test_concurrent_project_config_edits(self, registry, tmp_path):
        extras = []
        for i in range(6):
            extra = tmp_path / "extra" / f"proj{i}"
            extra.mkdir(parents=True)
            extras.append(extra)

        def _edit(i: int) -> None:
            registry.add_project(extras[i])
            registry.rename_project(f"proj{i}", f"Project {i}")

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(_edit, range(6)))

        stored = registry.load_project_config()
        assert sorted(stored["additionalProjectDirs"]) == sorted(str(p) for p in extras)
        assert stored["projectDisplayNames"] == {f"proj{i}": f"Project {i}" for i in range(6)}
