"""Segment writer command line and process creation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Protocol

DEFAULT_FFMPEG_BINARY = "ffmpeg"
HLS_SEGMENT_SECONDS = 2
HLS_LIST_SIZE = 6


class SegmentWriterProcess(Protocol):
    """
    The subset of asyncio.subprocess.Process used by the supervisor.

    Tests substitute fake processes implementing this protocol.
    """

    pid: int

    @property
    def returncode(self) -> int | None: ...

    @property
    def stderr(self) -> asyncio.StreamReader | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


# Coroutine creating a segment writer process from its argument vector.
SpawnFunc = Callable[[Sequence[str]], Awaitable[SegmentWriterProcess]]


def build_segment_writer_args(
    source_url: str,
    playlist_path: Path,
    segment_path: Path,
    delay: float,
    *,
    ffmpeg_binary: str = DEFAULT_FFMPEG_BINARY,
) -> list[str]:
    """
    Build the ffmpeg argument vector converting the source into HLS.

    Video is copied and audio re-encoded to AAC. A non-zero delay is applied as
    an input-side offset (-itsoffset) ahead of the input.
    """
    args = [ffmpeg_binary]
    if source_url.startswith("rtsp://"):
        args += ["-rtsp_transport", "tcp"]
    if delay > 0:
        args += ["-itsoffset", f"{delay:g}"]
    args += [
        "-fflags", "nobuffer",
        "-reconnect", "1",
        "-reconnect_at_eof", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "2",
        "-i", source_url,
        "-fps_mode", "passthrough",
        "-copyts",
        "-c:v", "copy",
        "-c:a", "aac",
        "-f", "hls",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_list_size", str(HLS_LIST_SIZE),
        "-hls_flags", "delete_segments+append_list",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(segment_path),
        str(playlist_path),
    ]  # fmt: skip
    return args


async def spawn_segment_writer(args: Sequence[str]) -> SegmentWriterProcess:
    """
    Start a segment writer process.

    stdout is discarded and stderr is piped so the supervisor can watch the
    diagnostic channel.

    Raises:
        OSError: If the process could not be created (e.g. binary not found).
    """
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
