"""Models for enum types used by aiomultiview."""

from enum import Enum


class ProcessState(Enum):
    """Lifecycle state of one segment writer process."""

    STARTING = "starting"
    """Spawn has been issued but the process has not been confirmed yet."""
    RUNNING = "running"
    """Process is alive and producing output."""
    STOPPING = "stopping"
    """Termination was requested by the supervisor."""
    EXITED = "exited"
    """Process has exited."""
    FAILED = "failed"
    """Process could not be spawned."""


class StreamErrorKind(Enum):
    """Classification of the most recent error recorded for a stream."""

    SPAWN_FAILURE = "spawn_failure"
    """The process could not be created. Not retried by default."""
    CRASH_EXIT = "crash_exit"
    """The process exited unexpectedly. Recovered by a restart after a cool-down."""
    RUNTIME_ERROR = "runtime_error"
    """The process reported an error on stderr but kept running."""


class OverallHealth(Enum):
    """Aggregate health of all streams."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class SyncQuality(Enum):
    """Aggregate sync quality across all playback streams."""

    INITIALIZING = "initializing"
    """No samples have been produced yet."""
    EXCELLENT = "excellent"
    """Largest drift is below 100ms."""
    GOOD = "good"
    """Largest drift is below 300ms."""
    NEEDS_SYNC = "needs_sync"
    """At least one stream drifted 300ms or more."""
