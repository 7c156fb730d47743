"""Sync state models produced by the sync controller."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import SyncQuality

EXCELLENT_DRIFT_S = 0.1
GOOD_DRIFT_S = 0.3


@dataclass
class SyncSample(DataClassORJSONMixin):
    """One tick's drift measurement for one playback stream."""

    stream_id: int
    """Id of the measured stream."""
    current_time: float
    """Playback position of the stream in seconds."""
    drift: float
    """Signed seconds relative to the reference (positive means ahead)."""
    is_synced: bool
    """True if the drift is within tolerance and no correction was applied."""


@dataclass
class SyncSummary(DataClassORJSONMixin):
    """Aggregate view over one set of sync samples."""

    quality: SyncQuality
    max_drift: float
    average_drift: float

    @classmethod
    def from_samples(cls, samples: list[SyncSample]) -> SyncSummary:
        """Summarize samples into a quality bucket and drift statistics."""
        if not samples:
            return cls(quality=SyncQuality.INITIALIZING, max_drift=0.0, average_drift=0.0)
        drifts = [abs(s.drift) for s in samples]
        max_drift = max(drifts)
        if max_drift < EXCELLENT_DRIFT_S:
            quality = SyncQuality.EXCELLENT
        elif max_drift < GOOD_DRIFT_S:
            quality = SyncQuality.GOOD
        else:
            quality = SyncQuality.NEEDS_SYNC
        return cls(
            quality=quality,
            max_drift=max_drift,
            average_drift=sum(drifts) / len(drifts),
        )


@dataclass
class SyncResponse(DataClassORJSONMixin):
    """Response body of the sync state endpoint."""

    streams: list[SyncSample]
    summary: SyncSummary
