"""Process supervision for Q CLI runs."""

from qpanel.process.registry import ProcessRegistry
from qpanel.process.sinks import CallbackSink, EventSink, MemorySink, NullSink
from qpanel.process.supervisor import (
    LaunchError,
    QProcessSupervisor,
    RunFailedError,
    SessionBusyError,
    SupervisorError,
)

__all__ = [
    "CallbackSink",
    "EventSink",
    "LaunchError",
    "MemorySink",
    "NullSink",
    "ProcessRegistry",
    "QProcessSupervisor",
    "RunFailedError",
    "SessionBusyError",
    "SupervisorError",
]
