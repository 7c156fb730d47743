"""Public interface for the aiomultiview client package."""

from .playback import ClockPlayback, PlaybackSource
from .sync import SyncController, SyncUpdateCallback

__all__ = [
    "ClockPlayback",
    "PlaybackSource",
    "SyncController",
    "SyncUpdateCallback",
]
