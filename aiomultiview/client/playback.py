"""Playback position sources consumed by the sync controller."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

NORMAL_RATE = 1.0


class PlaybackSource(Protocol):
    """
    Handle onto one playing stream.

    Supplied by the playback layer. The sync controller only reads the position
    and paused state, seeks, sets the rate, and issues play/pause.
    """

    @property
    def current_time(self) -> float:
        """Playback position in seconds."""
        ...

    @current_time.setter
    def current_time(self, value: float) -> None: ...

    @property
    def paused(self) -> bool:
        """True if playback is paused."""
        ...

    @property
    def playback_rate(self) -> float:
        """Playback speed, 1.0 being real time."""
        ...

    @playback_rate.setter
    def playback_rate(self, value: float) -> None: ...

    async def play(self) -> None:
        """Start playback. Raises if playback was refused."""
        ...

    def pause(self) -> None:
        """Pause playback."""
        ...


class ClockPlayback:
    """
    Simulated playback source advancing with a monotonic clock.

    Each instance may run slightly fast or slow (drift_factor) to emulate a
    stream decoding at its own rate.
    """

    def __init__(
        self,
        *,
        position: float = 0.0,
        drift_factor: float = 0.0,
        paused: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the simulated source.

        Args:
            position: Initial playback position in seconds.
            drift_factor: Relative speed error, e.g. 0.01 runs 1% fast.
            paused: Whether playback starts paused.
            clock: Monotonic time source in seconds.
        """
        self._clock = clock
        self._drift_factor = drift_factor
        self._rate = NORMAL_RATE
        self._paused = paused
        self._anchor_position = position
        self._anchor_time = clock()

    def _reanchor(self) -> None:
        self._anchor_position = self.current_time
        self._anchor_time = self._clock()

    @property
    def current_time(self) -> float:
        """Playback position in seconds."""
        if self._paused:
            return self._anchor_position
        elapsed = self._clock() - self._anchor_time
        return self._anchor_position + elapsed * self._rate * (1.0 + self._drift_factor)

    @current_time.setter
    def current_time(self, value: float) -> None:
        self._anchor_position = max(0.0, value)
        self._anchor_time = self._clock()

    @property
    def paused(self) -> bool:
        """True if playback is paused."""
        return self._paused

    @property
    def playback_rate(self) -> float:
        """Playback speed, 1.0 being real time."""
        return self._rate

    @playback_rate.setter
    def playback_rate(self, value: float) -> None:
        if value <= 0:
            raise ValueError(f"playback_rate must be positive, got {value}")
        self._reanchor()
        self._rate = value

    async def play(self) -> None:
        """Start playback."""
        if self._paused:
            self._anchor_time = self._clock()
            self._paused = False

    def pause(self) -> None:
        """Pause playback."""
        if not self._paused:
            self._reanchor()
            self._paused = True
