"""
Stream registry and health models.

These are the records shared between the process supervisor and the serving
layer: the immutable identity of each logical stream and the health snapshot
published for it.
"""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import OverallHealth, StreamErrorKind


@dataclass(frozen=True)
class StreamDescriptor(DataClassORJSONMixin):
    """Identity and configuration of one logical stream."""

    id: int
    """Stream id, 1..N, stable for the lifetime of the process."""
    name: str
    """Display label."""
    url: str
    """Where the segmented output is published (playlist locator)."""
    delay: float
    """Scheduled time offset in seconds."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.id < 1:
            raise ValueError(f"id must be positive, got {self.id}")
        if self.delay < 0:
            raise ValueError(f"delay must be non-negative, got {self.delay}")


@dataclass
class StreamHealth(DataClassORJSONMixin):
    """Health snapshot of one stream."""

    stream_id: int
    """Id of the stream this snapshot describes."""
    running: bool
    """True if the segment writer process is currently running."""
    last_update: str
    """ISO-8601 UTC timestamp of when this snapshot was taken."""
    restarts: int = 0
    """Number of automatic restarts performed since the last start_all()."""
    last_error: str | None = None
    """Most recent error text, if any."""
    error_kind: StreamErrorKind | None = None
    """Classification of last_error, if any."""

    class Config(BaseConfig):
        """Config for serializing json messages."""

        omit_none = True


@dataclass
class HealthReport(DataClassORJSONMixin):
    """Health of all streams plus an overall classification."""

    streams: list[StreamHealth]
    overall_health: OverallHealth

    @classmethod
    def from_streams(cls, streams: list[StreamHealth]) -> HealthReport:
        """Build a report, classifying overall health from the per-stream state."""
        running = sum(1 for s in streams if s.running)
        if streams and running == len(streams):
            overall = OverallHealth.HEALTHY
        elif running == 0:
            overall = OverallHealth.CRITICAL
        else:
            overall = OverallHealth.DEGRADED
        return cls(streams=streams, overall_health=overall)


@dataclass
class StreamsResponse(DataClassORJSONMixin):
    """Response body of the stream configuration endpoint."""

    streams: list[StreamDescriptor]
    source: str
    """Upstream source the streams are derived from."""


@dataclass
class RestartResponse(DataClassORJSONMixin):
    """Response body of a successful restart request."""

    success: bool
    message: str


@dataclass
class ErrorResponse(DataClassORJSONMixin):
    """Response body of a failed API request."""

    error: str
