"""Configuration for the panel, its stores and the process supervisor.

Values come from three layers, later ones winning:
1. Dataclass defaults below
2. YAML file (``$QPANEL_CONFIG`` or ``~/.q-developer/panel.yaml``)
3. Environment overrides (``QPANEL_CLI_BINARY``, ``QPANEL_HOST``, ``QPANEL_PORT``)
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "QPANEL_CONFIG"
CONFIG_FILENAME = "panel.yaml"


class ConfigError(Exception):
    """Invalid or unreadable configuration."""

    pass


def _default_data_dir() -> Path:
    return Path.home() / ".q-developer"


def _default_mcp_config_path() -> Path:
    return Path.home() / ".aws" / "amazonq" / "mcp.json"


def _default_project_roots() -> list[Path]:
    home = Path.home()
    return [
        home / "projects",
        home / "workspace",
        home / "dev",
        home / "code",
        home / "Documents" / "projects",
        home,
    ]


@dataclass
class PanelConfig:
    """Configuration for the Q CLI supervisor and the web panel."""

    # External CLI invocation
    cli_binary: str = "q"
    chat_subcommand: str = "chat"
    verbose_flag: str = "--verbose"
    # Forward resume/trust options as q flags (off: argv is subcommand, prompt, verbose flag)
    pass_tool_flags: bool = False
    extra_env: dict[str, str] = field(default_factory=dict)

    # Process supervision
    abort_grace_period: float = 5.0  # seconds between SIGTERM and SIGKILL
    read_chunk_size: int = 64 * 1024
    staging_subdir: str = ".tmp/images"

    # Stores
    data_dir: Path = field(default_factory=_default_data_dir)
    mcp_config_path: Path = field(default_factory=_default_mcp_config_path)
    project_roots: list[Path] = field(default_factory=_default_project_roots)

    # Web server
    host: str = "127.0.0.1"
    port: int = 3001

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def project_config_path(self) -> Path:
        return self.data_dir / "project-config.json"

    def to_yaml_dict(self) -> dict[str, Any]:
        """Plain-type representation suitable for ``yaml.safe_dump``."""
        data = dataclasses.asdict(self)
        data["data_dir"] = str(self.data_dir)
        data["mcp_config_path"] = str(self.mcp_config_path)
        data["project_roots"] = [str(p) for p in self.project_roots]
        return data


_PATH_FIELDS = {"data_dir", "mcp_config_path"}


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return _default_data_dir() / CONFIG_FILENAME


def _coerce(name: str, value: Any) -> Any:
    if name in _PATH_FIELDS:
        return Path(str(value)).expanduser()
    if name == "project_roots":
        if not isinstance(value, list):
            raise ConfigError("project_roots must be a list of paths")
        return [Path(str(p)).expanduser() for p in value]
    if name == "extra_env":
        if not isinstance(value, dict):
            raise ConfigError("extra_env must be a mapping")
        return {str(k): str(v) for k, v in value.items()}
    if name == "abort_grace_period":
        try:
            grace = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"abort_grace_period must be a number: {value!r}") from e
        if grace < 0:
            raise ConfigError("abort_grace_period cannot be negative")
        return grace
    if name in ("port", "read_chunk_size"):
        try:
            number = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be an integer: {value!r}") from e
        if number <= 0:
            raise ConfigError(f"{name} must be positive")
        return number
    if name == "pass_tool_flags":
        if not isinstance(value, bool):
            raise ConfigError("pass_tool_flags must be true or false")
        return value
    return str(value)


def _apply_env_overrides(values: dict[str, Any]) -> None:
    binary = os.environ.get("QPANEL_CLI_BINARY")
    if binary:
        values["cli_binary"] = binary
    host = os.environ.get("QPANEL_HOST")
    if host:
        values["host"] = host
    port = os.environ.get("QPANEL_PORT")
    if port:
        values["port"] = _coerce("port", port)


def load_config(path: Path | str | None = None) -> PanelConfig:
    """Load configuration from YAML with environment overrides.

    Args:
        path: Explicit config file. When omitted, the default location is used
              and a missing file simply yields defaults.

    Raises:
        ConfigError: If an explicit file is missing, the YAML is malformed, or
                     a key is unknown or has the wrong type.
    """
    explicit = path is not None
    config_path = Path(path).expanduser() if path is not None else default_config_path()

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        raw = loaded
        logger.debug(f"Loaded panel config from {config_path}")
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    known = {f.name for f in dataclasses.fields(PanelConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {config_path}: {', '.join(unknown)}")

    values = {name: _coerce(name, value) for name, value in raw.items()}
    _apply_env_overrides(values)
    return PanelConfig(**values)


def write_default_config(path: Path) -> Path:
    """Write a commented default config file. Existing files are left untouched."""
    if path.exists():
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    body = yaml.safe_dump(PanelConfig().to_yaml_dict(), sort_keys=False)
    path.write_text(
        "# q-panel configuration\n"
        "# Environment overrides: QPANEL_CLI_BINARY, QPANEL_HOST, QPANEL_PORT\n\n" + body
    )
    return path
