"""
Drift correction across several playback streams.

One registered source is the reference (master). On every tick each other
source's position is compared against it: large drift is corrected with a
direct seek, moderate drift with a short playback rate nudge, and small drift
is left alone. Play/pause state is never changed by a correction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from aiomultiview.models.sync import SyncSample, SyncSummary

from .playback import NORMAL_RATE, PlaybackSource

logger = logging.getLogger(__name__)

SYNC_CHECK_INTERVAL_S = 2.0
MINOR_DRIFT_THRESHOLD_S = 0.5
MAJOR_DRIFT_THRESHOLD_S = 1.5
CORRECTION_WINDOW_S = 0.5
AHEAD_RATE = 0.98
BEHIND_RATE = 1.02

# Callback invoked with the samples of every evaluation pass.
SyncUpdateCallback = Callable[[list[SyncSample]], None]


@dataclass
class _RegisteredSource:
    """A source plus the pending rate reset scheduled for it."""

    source: PlaybackSource
    stream_id: int
    reset_handle: asyncio.TimerHandle | None = None

    def cancel_reset(self) -> None:
        if self.reset_handle is not None:
            self.reset_handle.cancel()
            self.reset_handle = None


class SyncController:
    """Keep registered playback sources aligned with a reference source."""

    _sources: list[_RegisteredSource]
    """Registered sources in registration order."""
    _master_index: int
    """Index into _sources of the reference source."""
    _task: asyncio.Task[None] | None
    """Polling task, None when stopped."""
    _callbacks: list[SyncUpdateCallback]
    _latest: list[SyncSample]
    """Samples of the most recent evaluation pass."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        *,
        interval: float = SYNC_CHECK_INTERVAL_S,
        minor_threshold: float = MINOR_DRIFT_THRESHOLD_S,
        major_threshold: float = MAJOR_DRIFT_THRESHOLD_S,
        correction_window: float = CORRECTION_WINDOW_S,
        expected_sources: int | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            loop: Event loop for the polling task and rate resets. Defaults to the
                running loop at the time it is first needed.
            interval: Seconds between evaluation passes.
            minor_threshold: Drift in seconds above which the rate is nudged.
            major_threshold: Drift in seconds above which the source is seeked.
            correction_window: Seconds a rate nudge stays in effect.
            expected_sources: If set, polling only starts once exactly this many
                sources are registered.
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if correction_window <= 0:
            raise ValueError(f"correction_window must be positive, got {correction_window}")
        if not 0 <= minor_threshold < major_threshold:
            raise ValueError(
                f"Expected 0 <= minor_threshold < major_threshold, "
                f"got {minor_threshold} and {major_threshold}"
            )
        self._loop = loop
        self._interval = interval
        self._minor_threshold = minor_threshold
        self._major_threshold = major_threshold
        self._correction_window = correction_window
        self._expected_sources = expected_sources
        self._sources = []
        self._master_index = 0
        self._task = None
        self._callbacks = []
        self._latest = []

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def sources(self) -> list[PlaybackSource]:
        """Registered sources in registration order."""
        return [entry.source for entry in self._sources]

    @property
    def master_index(self) -> int:
        """Index of the reference source."""
        return self._master_index

    @property
    def is_running(self) -> bool:
        """True while the polling task is active."""
        return self._task is not None

    @property
    def is_ready(self) -> bool:
        """True if the registered sources match the expected count."""
        if self._expected_sources is None:
            return bool(self._sources)
        return len(self._sources) == self._expected_sources

    def add_source(self, source: PlaybackSource, stream_id: int) -> None:
        """Register a source for synchronization."""
        self._sources.append(_RegisteredSource(source, stream_id))

    def clear_sources(self) -> None:
        """Remove all registered sources."""
        for entry in self._sources:
            entry.cancel_reset()
        self._sources = []

    def set_master(self, index: int) -> None:
        """Select the reference source. Out of range indices are ignored."""
        if 0 <= index < len(self._sources):
            self._master_index = index
            logger.debug("Reference is now stream %d", self._sources[index].stream_id)

    def start(self) -> None:
        """Start the polling loop. Does nothing if it is already running."""
        if self._task is not None:
            return
        if not self.is_ready:
            logger.warning(
                "Not starting sync: %d sources registered, expected %s",
                len(self._sources),
                self._expected_sources,
            )
            return
        self._task = self._get_loop().create_task(self._run())
        logger.debug("Sync loop started (interval %.1fs)", self._interval)

    def stop(self) -> None:
        """Stop the polling loop."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.debug("Sync loop stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.sync()
            except Exception:
                logger.exception("Sync pass failed")

    def _master(self) -> _RegisteredSource | None:
        if 0 <= self._master_index < len(self._sources):
            return self._sources[self._master_index]
        return None

    def _read_position(self, entry: _RegisteredSource) -> float | None:
        """Read the position of one source, None if the source cannot be read."""
        try:
            return entry.source.current_time
        except Exception as err:
            logger.warning("Reading position of stream %d failed: %s", entry.stream_id, err)
            return None

    def _unreadable_reference(self) -> list[SyncSample]:
        """Samples reported when the reference position is unavailable."""
        return [SyncSample(entry.stream_id, 0.0, 0.0, is_synced=False) for entry in self._sources]

    def sync(self) -> list[SyncSample]:
        """Run one evaluation pass, apply corrections and notify listeners."""
        master = self._master()
        if master is None:
            return []
        master_time = self._read_position(master)

        if master_time is None:
            samples = self._unreadable_reference()
        else:
            samples = []
            for index, entry in enumerate(self._sources):
                if index == self._master_index:
                    samples.append(SyncSample(entry.stream_id, master_time, 0.0, is_synced=True))
                else:
                    samples.append(self._correct(entry, master_time))

        self._latest = samples
        for cb in list(self._callbacks):
            try:
                cb(samples)
            except Exception:
                logger.exception("Error in sync listener")
        return samples

    def _correct(self, entry: _RegisteredSource, master_time: float) -> SyncSample:
        """Measure one source against the reference and correct it."""
        source = entry.source
        current_time = self._read_position(entry)
        if current_time is None:
            return SyncSample(entry.stream_id, 0.0, 0.0, is_synced=False)
        drift = current_time - master_time
        abs_drift = abs(drift)
        try:
            if abs_drift > self._major_threshold:
                logger.debug(
                    "Stream %d drifted %.3fs, seeking to %.3f",
                    entry.stream_id,
                    drift,
                    master_time,
                )
                source.current_time = master_time
                synced = False
            elif abs_drift > self._minor_threshold:
                rate = AHEAD_RATE if drift > 0 else BEHIND_RATE
                logger.debug(
                    "Stream %d drifted %.3fs, setting rate %.2f", entry.stream_id, drift, rate
                )
                source.playback_rate = rate
                self._schedule_rate_reset(entry)
                synced = False
            else:
                entry.cancel_reset()
                if source.playback_rate != NORMAL_RATE:
                    source.playback_rate = NORMAL_RATE
                synced = True
        except Exception as err:
            logger.warning("Correcting stream %d failed: %s", entry.stream_id, err)
            synced = False
        return SyncSample(entry.stream_id, current_time, drift, is_synced=synced)

    def _schedule_rate_reset(self, entry: _RegisteredSource) -> None:
        entry.cancel_reset()
        entry.reset_handle = self._get_loop().call_later(
            self._correction_window, self._reset_rate, entry
        )

    def _reset_rate(self, entry: _RegisteredSource) -> None:
        entry.reset_handle = None
        try:
            entry.source.playback_rate = NORMAL_RATE
        except Exception as err:
            logger.warning("Resetting rate of stream %d failed: %s", entry.stream_id, err)

    async def play_all(self) -> None:
        """
        Start playback of every source concurrently.

        A source refusing to play (e.g. autoplay policy) does not affect the
        others. Returns once every attempt has settled.
        """
        entries = list(self._sources)
        results = await asyncio.gather(
            *(entry.source.play() for entry in entries), return_exceptions=True
        )
        for entry, result in zip(entries, results, strict=True):
            if isinstance(result, BaseException):
                logger.debug("Stream %d refused to play: %s", entry.stream_id, result)

    def pause_all(self) -> None:
        """Pause every source. Failures are logged and ignored."""
        for entry in self._sources:
            try:
                entry.source.pause()
            except Exception as err:
                logger.debug("Stream %d failed to pause: %s", entry.stream_id, err)

    def force_sync(self) -> list[SyncSample]:
        """
        Seek every source to the reference position immediately.

        Rates are reset to normal, then one evaluation pass runs so the reported
        state reflects the correction. Play/pause state is left untouched.
        """
        master = self._master()
        if master is None:
            return []
        if (master_time := self._read_position(master)) is None:
            return self.sync()
        for index, entry in enumerate(self._sources):
            if index == self._master_index:
                continue
            entry.cancel_reset()
            try:
                entry.source.current_time = master_time
                entry.source.playback_rate = NORMAL_RATE
            except Exception as err:
                logger.warning("Force sync of stream %d failed: %s", entry.stream_id, err)
        logger.debug("Forced all streams to %.3f", master_time)
        return self.sync()

    def get_sync_states(self) -> list[SyncSample]:
        """Measure every source against the reference without correcting anything."""
        master = self._master()
        if master is None:
            return []
        if (master_time := self._read_position(master)) is None:
            return self._unreadable_reference()
        states = []
        for index, entry in enumerate(self._sources):
            if index == self._master_index:
                states.append(SyncSample(entry.stream_id, master_time, 0.0, is_synced=True))
                continue
            if (current_time := self._read_position(entry)) is None:
                states.append(SyncSample(entry.stream_id, 0.0, 0.0, is_synced=False))
                continue
            drift = current_time - master_time
            states.append(
                SyncSample(
                    entry.stream_id,
                    current_time,
                    drift,
                    is_synced=abs(drift) < self._minor_threshold,
                )
            )
        return states

    def get_summary(self) -> SyncSummary:
        """Summarize a fresh snapshot of the sync states."""
        return SyncSummary.from_samples(self.get_sync_states())

    @property
    def latest_samples(self) -> list[SyncSample]:
        """Samples of the most recent evaluation pass."""
        return list(self._latest)

    def add_sync_listener(self, callback: SyncUpdateCallback) -> Callable[[], None]:
        """
        Register a callback receiving the samples of every evaluation pass.

        Returns a function to remove the listener.
        """
        self._callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return _remove

    def destroy(self) -> None:
        """Stop polling, cancel pending rate resets and forget all sources."""
        self.stop()
        self.clear_sources()
        self._latest = []
