"""Public interface for the aiomultiview server package."""

from .registry import StreamRegistry
from .server import MultiviewServer
from .supervisor import (
    ProcessSupervisor,
    StreamErrorEvent,
    StreamExitedEvent,
    StreamStartedEvent,
    StreamStoppedEvent,
    SupervisorEvent,
)

__all__ = [
    "MultiviewServer",
    "ProcessSupervisor",
    "StreamErrorEvent",
    "StreamExitedEvent",
    "StreamRegistry",
    "StreamStartedEvent",
    "StreamStoppedEvent",
    "SupervisorEvent",
]
