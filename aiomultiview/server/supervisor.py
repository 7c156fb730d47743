"""Supervisor owning the segment writer processes of all streams."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime

from aiomultiview.models.stream import HealthReport, StreamDescriptor, StreamHealth

from .process import ProcessHandle
from .registry import StreamRegistry
from .segment_writer import (
    DEFAULT_FFMPEG_BINARY,
    SegmentWriterProcess,
    SpawnFunc,
    build_segment_writer_args,
    spawn_segment_writer,
)

logger = logging.getLogger(__name__)

SETTLE_DELAY_S = 0.5
"""Pause between successive spawns to avoid bursting the shared upstream connection."""
RESTART_COOLDOWN_S = 3.0
"""Wait before re-spawning a crashed process."""
MAX_RESTART_COOLDOWN_S = 60.0
STABLE_AFTER_S = 30.0
"""A process that ran at least this long resets its crash counter."""
RESTART_SETTLE_S = 2.0
"""Pause between stop_all() and start_all() in restart_all()."""
STOP_TIMEOUT_S = 5.0
STDERR_CHUNK_SIZE = 4096


class SupervisorEvent:
    """Base event type used by ProcessSupervisor.add_event_listener()."""


@dataclass
class StreamStartedEvent(SupervisorEvent):
    """A segment writer process was spawned."""

    stream_id: int


@dataclass
class StreamStoppedEvent(SupervisorEvent):
    """A segment writer process was asked to stop."""

    stream_id: int


@dataclass
class StreamExitedEvent(SupervisorEvent):
    """A segment writer process exited."""

    stream_id: int
    returncode: int
    will_restart: bool
    """True if a restart was scheduled for this exit."""


@dataclass
class StreamErrorEvent(SupervisorEvent):
    """A spawn failed or the process reported an error."""

    stream_id: int
    message: str


def _retrieve_exception(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and (err := task.exception()) is not None:
        logger.error("Supervisor task failed", exc_info=err)


class ProcessSupervisor:
    """
    Start, watch and restart one segment writer process per registered stream.

    Each stream has at most one live process. A process that exits unexpectedly
    with a non-zero status is restarted after a cool-down; processes stopped via
    stop_all() are not.
    """

    _handles: dict[int, ProcessHandle]
    """Current process handle per stream id. Replaced on every spawn."""
    _watch_tasks: dict[int, asyncio.Task[None]]
    """Task observing the diagnostic channel and exit of the current process."""
    _restart_timers: dict[int, asyncio.TimerHandle]
    """Pending restarts per stream id."""
    _stream_locks: dict[int, asyncio.Lock]
    """Serializes spawns of the same stream."""
    _crash_counts: dict[int, int]
    """Consecutive crashes per stream id, used for backoff."""
    _restarts: dict[int, int]
    """Automatic restarts per stream id since the last start_all()."""
    _generation: int
    """Incremented by stop_all() to abandon start and restart work in flight."""
    _event_cbs: list[Callable[[ProcessSupervisor, SupervisorEvent], None]]

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        registry: StreamRegistry,
        source_url: str,
        *,
        spawn: SpawnFunc | None = None,
        settle_delay: float = SETTLE_DELAY_S,
        restart_cooldown: float = RESTART_COOLDOWN_S,
        restart_backoff: float = 1.0,
        max_restart_cooldown: float = MAX_RESTART_COOLDOWN_S,
        stable_after: float = STABLE_AFTER_S,
        restart_settle: float = RESTART_SETTLE_S,
        retry_spawn_failures: bool = False,
        stop_timeout: float = STOP_TIMEOUT_S,
        ffmpeg_binary: str = DEFAULT_FFMPEG_BINARY,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            loop: The asyncio event loop the processes are watched on.
            registry: The streams to supervise.
            source_url: The upstream source every segment writer reads.
            spawn: Coroutine creating a process from an argument vector.
                Defaults to spawning a real subprocess.
            settle_delay: Seconds between successive spawns in start_all().
            restart_cooldown: Seconds to wait before restarting a crashed process.
            restart_backoff: Cool-down multiplier per consecutive crash. 1.0 keeps
                the cool-down fixed.
            max_restart_cooldown: Upper bound of the cool-down.
            stable_after: Uptime in seconds after which a crash counts as the first.
            restart_settle: Seconds between stopping and starting in restart_all().
            retry_spawn_failures: If True, failed spawns are retried like crashes.
            stop_timeout: Seconds to wait for a stopping process before killing it.
            ffmpeg_binary: Segment writer executable.
        """
        if restart_backoff < 1.0:
            raise ValueError(f"restart_backoff must be at least 1.0, got {restart_backoff}")
        self._loop = loop
        self._registry = registry
        self._source_url = source_url
        self._spawn = spawn or spawn_segment_writer
        self._settle_delay = settle_delay
        self._restart_cooldown = restart_cooldown
        self._restart_backoff = restart_backoff
        self._max_restart_cooldown = max_restart_cooldown
        self._stable_after = stable_after
        self._restart_settle = restart_settle
        self._retry_spawn_failures = retry_spawn_failures
        self._stop_timeout = stop_timeout
        self._ffmpeg_binary = ffmpeg_binary
        self._handles = {}
        self._watch_tasks = {}
        self._restart_timers = {}
        self._stream_locks = {}
        self._crash_counts = {}
        self._restarts = {}
        self._generation = 0
        self._event_cbs = []
        logger.debug(
            "ProcessSupervisor initialized: %d streams, source=%s", len(registry), source_url
        )

    @property
    def registry(self) -> StreamRegistry:
        """The supervised streams."""
        return self._registry

    @property
    def source_url(self) -> str:
        """The upstream source."""
        return self._source_url

    def get_handle(self, stream_id: int) -> ProcessHandle | None:
        """Get the current process handle of a stream."""
        return self._handles.get(stream_id)

    def get_stream_configs(self) -> list[StreamDescriptor]:
        """Get the descriptors of all supervised streams."""
        return self._registry.descriptors

    async def start_all(self) -> None:
        """
        Spawn the segment writers of all streams in ascending id order.

        Successive spawns are separated by the settle delay. Returns once all
        spawns were issued, not once the processes are confirmed healthy.
        """
        generation = self._generation
        self._crash_counts.clear()
        self._restarts.clear()
        logger.info(
            "Starting %d segment writers from %s", len(self._registry), self._source_url
        )
        for index, descriptor in enumerate(self._registry):
            if index:
                await asyncio.sleep(self._settle_delay)
            if generation != self._generation:
                logger.info("start_all interrupted by stop_all")
                return
            await self._start_stream(descriptor, generation)
        logger.info("All %d segment writers started", len(self._registry))

    def stop_all(self) -> None:
        """
        Signal every live process to terminate and mark it not running.

        Pending restarts are cancelled and no exit caused by this call triggers a
        restart. Does not wait for the processes to exit.
        """
        logger.info("Stopping all segment writers")
        self._generation += 1
        for timer in self._restart_timers.values():
            timer.cancel()
        self._restart_timers.clear()
        for handle in self._handles.values():
            if not handle.mark_stopping():
                continue
            assert handle.process is not None
            with suppress(ProcessLookupError):
                handle.process.terminate()
            logger.debug("Sent SIGTERM to stream %d", handle.stream_id)
            self._signal_event(StreamStoppedEvent(handle.stream_id))

    async def restart_all(self) -> None:
        """Stop all processes, wait for the settle period, then start them again."""
        logger.info("Restarting all segment writers")
        self.stop_all()
        await asyncio.sleep(self._restart_settle)
        await self.start_all()

    async def close(self) -> None:
        """Stop all processes and wait for them to exit, killing stragglers."""
        self.stop_all()
        tasks = list(self._watch_tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._stop_timeout)
            if pending:
                logger.warning("Killing %d segment writers that did not stop", len(pending))
                for handle in self._handles.values():
                    if handle.alive and handle.process is not None:
                        with suppress(ProcessLookupError):
                            handle.process.kill()
                _, pending = await asyncio.wait(pending, timeout=self._stop_timeout)
                for task in pending:
                    task.cancel()
        # Output directories stay in place so trailing playback can finish
        logger.debug("ProcessSupervisor closed")

    def get_health(self) -> list[StreamHealth]:
        """Get the health of every stream."""
        now = datetime.now(UTC).isoformat()
        health = []
        for descriptor in self._registry:
            handle = self._handles.get(descriptor.id)
            health.append(
                StreamHealth(
                    stream_id=descriptor.id,
                    running=handle is not None and handle.running,
                    last_update=now,
                    restarts=self._restarts.get(descriptor.id, 0),
                    last_error=handle.last_error if handle else None,
                    error_kind=handle.error_kind if handle else None,
                )
            )
        return health

    def get_health_report(self) -> HealthReport:
        """Get the health of every stream plus the overall classification."""
        return HealthReport.from_streams(self.get_health())

    def _lock_for(self, stream_id: int) -> asyncio.Lock:
        if (lock := self._stream_locks.get(stream_id)) is None:
            lock = self._stream_locks[stream_id] = asyncio.Lock()
        return lock

    async def _start_stream(self, descriptor: StreamDescriptor, generation: int) -> None:
        """Spawn the segment writer of one stream."""
        stream_id = descriptor.id
        async with self._lock_for(stream_id):
            if (timer := self._restart_timers.pop(stream_id, None)) is not None:
                timer.cancel()
            previous = self._handles.get(stream_id)
            if previous is not None and previous.alive:
                if not previous.stop_requested:
                    logger.debug("%s is already running", descriptor.name)
                    return
                await self._wait_for_exit(stream_id)
            if generation != self._generation:
                return

            handle = ProcessHandle(stream_id=stream_id)
            if previous is not None:
                handle.last_error = previous.last_error
                handle.error_kind = previous.error_kind
            self._handles[stream_id] = handle

            args = build_segment_writer_args(
                self._source_url,
                self._registry.playlist_path(stream_id),
                self._registry.segment_path(stream_id),
                descriptor.delay,
                ffmpeg_binary=self._ffmpeg_binary,
            )
            logger.info("Starting %s (delay: %.1fs)", descriptor.name, descriptor.delay)
            try:
                self._registry.ensure_stream_dir(stream_id)
                process = await self._spawn(args)
            except OSError as err:
                logger.error("Failed to start %s: %s", descriptor.name, err)
                handle.mark_spawn_failed(str(err))
                self._signal_event(StreamErrorEvent(stream_id, str(err)))
                if self._retry_spawn_failures and not handle.stop_requested:
                    self._schedule_restart(handle)
                return

            handle.mark_spawned(process, self._loop.time())
            task = self._loop.create_task(self._watch(handle, descriptor, process))
            task.add_done_callback(_retrieve_exception)
            self._watch_tasks[stream_id] = task
            if handle.stop_requested:
                # stop_all() ran while the spawn was in flight
                with suppress(ProcessLookupError):
                    process.terminate()
                return
            logger.debug("%s running with pid %s", descriptor.name, process.pid)
            self._signal_event(StreamStartedEvent(stream_id))

    async def _wait_for_exit(self, stream_id: int) -> None:
        """Wait until the current process of a stream has been observed to exit."""
        task = self._watch_tasks.get(stream_id)
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self._stop_timeout)
        if done:
            return
        handle = self._handles.get(stream_id)
        if handle is not None and handle.process is not None:
            logger.warning("Stream %d did not stop in time, killing it", stream_id)
            with suppress(ProcessLookupError):
                handle.process.kill()
        done, _ = await asyncio.wait({task}, timeout=self._stop_timeout)
        if not done:
            logger.error("Stream %d did not exit after kill, abandoning it", stream_id)
            task.cancel()

    async def _watch(
        self,
        handle: ProcessHandle,
        descriptor: StreamDescriptor,
        process: SegmentWriterProcess,
    ) -> None:
        """Follow the diagnostic channel of a process until it exits."""
        try:
            if process.stderr is not None:
                while chunk := await process.stderr.read(STDERR_CHUNK_SIZE):
                    for line in chunk.decode(errors="replace").splitlines():
                        if (message := handle.handle_diagnostic(line)) is not None:
                            logger.warning("%s segment writer: %s", descriptor.name, message)
                            self._signal_event(StreamErrorEvent(descriptor.id, message))
            returncode = await process.wait()
        finally:
            if self._watch_tasks.get(descriptor.id) is asyncio.current_task():
                del self._watch_tasks[descriptor.id]

        crashed = handle.handle_exit(returncode, self._loop.time())
        will_restart = crashed and self._handles.get(descriptor.id) is handle
        logger.info("%s exited with status %d", descriptor.name, returncode)
        if will_restart:
            self._schedule_restart(handle)
        self._signal_event(StreamExitedEvent(descriptor.id, returncode, will_restart))

    def _schedule_restart(self, handle: ProcessHandle) -> None:
        """Re-spawn a stream after the cool-down."""
        stream_id = handle.stream_id
        if handle.uptime() >= self._stable_after:
            self._crash_counts[stream_id] = 0
        crashes = self._crash_counts[stream_id] = self._crash_counts.get(stream_id, 0) + 1
        delay = min(
            self._restart_cooldown * self._restart_backoff ** (crashes - 1),
            self._max_restart_cooldown,
        )
        generation = self._generation
        logger.info("Restarting stream %d in %.1f seconds", stream_id, delay)

        def _restart() -> None:
            self._restart_timers.pop(stream_id, None)
            task = self._loop.create_task(self._restart_stream(stream_id, generation))
            task.add_done_callback(_retrieve_exception)

        if (previous := self._restart_timers.get(stream_id)) is not None:
            previous.cancel()
        self._restart_timers[stream_id] = self._loop.call_later(delay, _restart)

    async def _restart_stream(self, stream_id: int, generation: int) -> None:
        descriptor = self._registry.get(stream_id)
        if descriptor is None or generation != self._generation:
            return
        self._restarts[stream_id] = self._restarts.get(stream_id, 0) + 1
        await self._start_stream(descriptor, generation)

    def add_event_listener(
        self, callback: Callable[[ProcessSupervisor, SupervisorEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for process state changes.

        State changes include:
        - A process was started, stopped or exited
        - A process failed to spawn or reported an error

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: SupervisorEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
