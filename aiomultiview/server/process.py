"""Process handle tracking the lifecycle of one segment writer process."""

from __future__ import annotations

from dataclasses import dataclass

from aiomultiview.models.types import ProcessState, StreamErrorKind

from .segment_writer import SegmentWriterProcess

LOG_ERROR_CHARS = 200
STORED_ERROR_CHARS = 500


@dataclass
class ProcessHandle:
    """
    State of one spawned (or attempted) segment writer.

    A handle is owned by the supervisor, keyed by stream id. Restarting a stream
    creates a new handle; a handle whose process has exited is never revived.
    All methods are plain state transitions so the restart policy can be tested
    without real processes.
    """

    stream_id: int
    """Id of the stream this process writes."""
    state: ProcessState = ProcessState.STARTING
    """Current lifecycle state."""
    process: SegmentWriterProcess | None = None
    """OS process reference, None before spawn and after exit."""
    stop_requested: bool = False
    """True once the supervisor asked this process to stop."""
    last_error: str | None = None
    """Most recent error text."""
    error_kind: StreamErrorKind | None = None
    """Classification of last_error."""
    returncode: int | None = None
    """Exit status once exited. Negative values are signal deaths."""
    started_at: float | None = None
    """Loop time at which the process was spawned."""
    exited_at: float | None = None
    """Loop time at which the exit was observed."""

    @property
    def running(self) -> bool:
        """True while the process is starting or running."""
        return self.state in (ProcessState.STARTING, ProcessState.RUNNING)

    @property
    def alive(self) -> bool:
        """True while an OS process may still exist for this handle."""
        return self.process is not None and self.state not in (
            ProcessState.EXITED,
            ProcessState.FAILED,
        )

    def mark_spawned(self, process: SegmentWriterProcess, now: float) -> None:
        """Record a successful spawn. A stop requested meanwhile stays in effect."""
        self.process = process
        self.started_at = now
        self.state = ProcessState.STOPPING if self.stop_requested else ProcessState.RUNNING

    def mark_spawn_failed(self, message: str) -> None:
        """Record a spawn failure."""
        self.process = None
        self.state = ProcessState.FAILED
        self.last_error = message
        self.error_kind = StreamErrorKind.SPAWN_FAILURE

    def mark_stopping(self) -> bool:
        """
        Record the intent to stop.

        Returns:
            True if a live process was running and now needs to be signalled.
        """
        self.stop_requested = True
        if not self.running:
            return False
        self.state = ProcessState.STOPPING
        return self.process is not None

    def handle_diagnostic(self, line: str) -> str | None:
        """
        Inspect one line from the diagnostic channel.

        Lines mentioning an error are stored as last_error without changing the
        running state.

        Returns:
            The shortened message to log, or None if the line is not an error.
        """
        if "error" not in line and "Error" not in line:
            return None
        self.last_error = line[:STORED_ERROR_CHARS]
        self.error_kind = StreamErrorKind.RUNTIME_ERROR
        return line[:LOG_ERROR_CHARS]

    def handle_exit(self, returncode: int, now: float) -> bool:
        """
        Record the process exit.

        Returns:
            True if the exit was a crash that should trigger a restart. Exits after
            a stop request never restart; an unrequested clean exit (status 0) does
            not restart either.
        """
        self.process = None
        self.returncode = returncode
        self.exited_at = now
        self.state = ProcessState.EXITED
        if self.stop_requested or returncode == 0:
            return False
        self.last_error = f"Process exited with status {returncode}"
        self.error_kind = StreamErrorKind.CRASH_EXIT
        return True

    def uptime(self) -> float:
        """Seconds between spawn and exit, 0 if either is unknown."""
        if self.started_at is None or self.exited_at is None:
            return 0.0
        return self.exited_at - self.started_at
