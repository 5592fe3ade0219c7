"""Read/write access to the Q CLI's MCP server configuration (``mcp.json``)."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from qpanel.core.locks import StoreLock, read_json, write_json
from qpanel.core.models import McpServer

logger = logging.getLogger(__name__)


class McpConfigError(Exception):
    """Invalid MCP configuration or request."""

    pass


class McpServerNotFoundError(McpConfigError):
    pass


class McpServerExistsError(McpConfigError):
    pass


def validate_server(server: McpServer) -> None:
    if not server.name or not server.name.strip():
        raise McpConfigError("Server name is required")
    if server.type == "stdio" and not server.command:
        raise McpConfigError("Command is required for stdio servers")
    if server.type == "sse" and not server.url:
        raise McpConfigError("URL is required for SSE servers")


def to_stored(server: McpServer) -> dict[str, Any]:
    """On-disk form: only the fields for the server's transport, empties omitted."""
    stored: dict[str, Any] = {"enabled": server.enabled}
    if server.type == "stdio":
        stored["command"] = server.command
        if server.args:
            stored["args"] = list(server.args)
        if server.env:
            stored["env"] = dict(server.env)
    else:
        stored["url"] = server.url
        if server.headers:
            stored["headers"] = dict(server.headers)
    return stored


def from_stored(name: str, stored: dict[str, Any]) -> McpServer:
    return McpServer(
        name=name,
        type="stdio" if stored.get("command") else "sse",
        command=stored.get("command"),
        args=stored.get("args") or [],
        url=stored.get("url"),
        headers=stored.get("headers") or {},
        env=stored.get("env") or {},
        enabled=stored.get("enabled") is not False,
    )


class McpConfigStore:
    """CRUD over ``mcpServers`` in the MCP config file.

    A missing file reads as an empty configuration. Unknown top-level keys in
    the file are preserved on write.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_raw(self) -> dict[str, Any]:
        try:
            config = read_json(self.path, default=None)
        except json.JSONDecodeError as e:
            raise McpConfigError(f"Invalid JSON in {self.path}: {e}") from e
        if config is None:
            return {"mcpServers": {}}
        if not isinstance(config, dict):
            raise McpConfigError(f"{self.path} must contain a JSON object")
        return config

    def write_raw(self, config: dict[str, Any]) -> None:
        if not isinstance(config, dict):
            raise McpConfigError("Valid configuration object is required")
        with StoreLock(self.path):
            write_json(self.path, config)

    @contextlib.contextmanager
    def _edit(self) -> Iterator[dict[str, Any]]:
        """Read, modify and write the file under one lock. Nothing is written on error."""
        with StoreLock(self.path):
            config = self.read_raw()
            yield config
            write_json(self.path, config)

    def _servers(self, config: dict[str, Any]) -> dict[str, Any]:
        servers = config.get("mcpServers")
        if not isinstance(servers, dict):
            servers = {}
            config["mcpServers"] = servers
        return servers

    def list_servers(self) -> list[McpServer]:
        return [from_stored(name, entry) for name, entry in self._servers(self.read_raw()).items()]

    def get_server(self, name: str) -> McpServer:
        servers = self._servers(self.read_raw())
        if name not in servers:
            raise McpServerNotFoundError(f'MCP server "{name}" not found')
        return from_stored(name, servers[name])

    def add_server(self, server: McpServer) -> McpServer:
        validate_server(server)
        with self._edit() as config:
            servers = self._servers(config)
            if server.name in servers:
                raise McpServerExistsError(f'MCP server "{server.name}" already exists')
            servers[server.name] = to_stored(server)
        logger.info(f"MCP server added: {server.name}")
        return from_stored(server.name, servers[server.name])

    def update_server(self, name: str, server: McpServer) -> McpServer:
        server = server.model_copy(update={"name": name})
        validate_server(server)
        with self._edit() as config:
            servers = self._servers(config)
            if name not in servers:
                raise McpServerNotFoundError(f'MCP server "{name}" not found')
            servers[name] = to_stored(server)
        logger.info(f"MCP server updated: {name}")
        return from_stored(name, servers[name])

    def remove_server(self, name: str) -> None:
        with self._edit() as config:
            servers = self._servers(config)
            if name not in servers:
                raise McpServerNotFoundError(f'MCP server "{name}" not found')
            del servers[name]
        logger.info(f"MCP server removed: {name}")

    def toggle_server(self, name: str, enabled: bool) -> bool:
        with self._edit() as config:
            servers = self._servers(config)
            if name not in servers:
                raise McpServerNotFoundError(f'MCP server "{name}" not found')
            servers[name]["enabled"] = enabled
        logger.info(f"MCP server {name} {'enabled' if enabled else 'disabled'}")
        return enabled
