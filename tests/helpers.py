"""Fake segment writer processes shared by the supervisor and server tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def emit_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode())

    def exit(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Records spawn calls and hands out FakeProcess instances."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.processes: dict[int, list[FakeProcess]] = {}
        self.failing_streams: set[int] = set()

    async def __call__(self, args: Sequence[str]) -> FakeProcess:
        self.calls.append(list(args))
        stream_id = stream_id_of(args)
        if stream_id in self.failing_streams:
            raise FileNotFoundError(2, "No such file or directory", args[0])
        process = FakeProcess(pid=1000 + len(self.calls))
        self.processes.setdefault(stream_id, []).append(process)
        return process

    def latest(self, stream_id: int) -> FakeProcess:
        return self.processes[stream_id][-1]

    def live(self, stream_id: int) -> list[FakeProcess]:
        return [p for p in self.processes.get(stream_id, []) if p.returncode is None]


def stream_id_of(args: Sequence[str]) -> int:
    """Stream id encoded in the playlist path (the last argument)."""
    return int(Path(args[-1]).parent.name.removeprefix("stream"))


def delay_of(args: Sequence[str]) -> float:
    """Input offset passed to the segment writer, 0 when absent."""
    if "-itsoffset" not in args:
        return 0.0
    return float(args[list(args).index("-itsoffset") + 1])
