"""Models for the aiomultiview stream pipeline."""

from __future__ import annotations

__all__ = [
    "ErrorResponse",
    "HealthReport",
    "OverallHealth",
    "ProcessState",
    "RestartResponse",
    "StreamDescriptor",
    "StreamErrorKind",
    "StreamHealth",
    "StreamsResponse",
    "SyncQuality",
    "SyncResponse",
    "SyncSample",
    "SyncSummary",
    "stream",
    "sync",
    "types",
]

from . import stream, sync, types
from .stream import (
    ErrorResponse,
    HealthReport,
    RestartResponse,
    StreamDescriptor,
    StreamHealth,
    StreamsResponse,
)
from .sync import SyncResponse, SyncSample, SyncSummary
from .types import OverallHealth, ProcessState, StreamErrorKind, SyncQuality
