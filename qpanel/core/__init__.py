"""Core modules: configuration, data models and the flat-file stores."""

from qpanel.core.config import ConfigError, PanelConfig, load_config
from qpanel.core.mcp import McpConfigStore
from qpanel.core.models import EventType, RunOptions, RunResult, StreamEvent
from qpanel.core.projects import ProjectRegistry

__all__ = [
    "ConfigError",
    "EventType",
    "McpConfigStore",
    "PanelConfig",
    "ProjectRegistry",
    "RunOptions",
    "RunResult",
    "StreamEvent",
    "load_config",
]
