"""Registry of the logical streams derived from the upstream source."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from pathlib import Path

from aiomultiview.models.stream import StreamDescriptor

logger = logging.getLogger(__name__)

DEFAULT_STREAM_COUNT = 6
DEFAULT_DELAY_STEP = 0.3
DEFAULT_OUTPUT_DIR = "streams"
URL_PREFIX = "/streams"
PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%d.ts"


class StreamRegistry:
    """
    Stable, ordered list of stream descriptors.

    Built once from a fixed stream count. Consumed read-only by both the
    process supervisor and the serving layer.
    """

    _descriptors: list[StreamDescriptor]
    _output_dir: Path

    def __init__(
        self,
        count: int = DEFAULT_STREAM_COUNT,
        *,
        output_dir: str | Path = DEFAULT_OUTPUT_DIR,
        delays: Sequence[float] | None = None,
        delay_step: float = DEFAULT_DELAY_STEP,
    ) -> None:
        """
        Initialize the registry.

        Args:
            count: Number of logical streams to create.
            output_dir: Base directory the per-stream output directories live in.
            delays: Explicit delay schedule in seconds, one per stream. When omitted,
                stream i (1-based) gets a delay of (i - 1) * delay_step.
            delay_step: Spacing of the default delay schedule.
        """
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")
        if delays is None:
            if delay_step < 0:
                raise ValueError(f"delay_step must be non-negative, got {delay_step}")
            # Rounded so the schedule reads 0.3, 0.6, 0.9 rather than 0.8999999
            delays = [round(i * delay_step, 6) for i in range(count)]
        elif len(delays) != count:
            raise ValueError(f"Expected {count} delays, got {len(delays)}")
        elif any(b < a for a, b in zip(delays, delays[1:])):
            raise ValueError("delays must be non-decreasing")

        self._output_dir = Path(output_dir)
        self._descriptors = [
            StreamDescriptor(
                id=stream_id,
                name=f"Stream {stream_id}",
                url=f"{URL_PREFIX}/stream{stream_id}/{PLAYLIST_NAME}",
                delay=float(delay),
            )
            for stream_id, delay in enumerate(delays, start=1)
        ]
        logger.debug(
            "StreamRegistry initialized: %d streams, delays=%s",
            count,
            [d.delay for d in self._descriptors],
        )

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[StreamDescriptor]:
        return iter(self._descriptors)

    @property
    def descriptors(self) -> list[StreamDescriptor]:
        """All descriptors in ascending id order."""
        return list(self._descriptors)

    @property
    def output_dir(self) -> Path:
        """Base directory holding the per-stream output directories."""
        return self._output_dir

    def get(self, stream_id: int) -> StreamDescriptor | None:
        """Get the descriptor with the given id."""
        if 1 <= stream_id <= len(self._descriptors):
            return self._descriptors[stream_id - 1]
        return None

    def stream_dir(self, stream_id: int) -> Path:
        """Directory the segment writer of the given stream writes into."""
        return self._output_dir / f"stream{stream_id}"

    def playlist_path(self, stream_id: int) -> Path:
        """Path of the playlist file of the given stream."""
        return self.stream_dir(stream_id) / PLAYLIST_NAME

    def segment_path(self, stream_id: int) -> Path:
        """Segment filename pattern of the given stream."""
        return self.stream_dir(stream_id) / SEGMENT_PATTERN

    def ensure_stream_dir(self, stream_id: int) -> Path:
        """Create the output directory of the given stream if absent."""
        path = self.stream_dir(stream_id)
        path.mkdir(parents=True, exist_ok=True)
        return path
