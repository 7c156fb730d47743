"""Command line entry point: run the multiview pipeline for one source."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress

from aiomultiview.client import ClockPlayback, SyncController
from aiomultiview.server import MultiviewServer, ProcessSupervisor, StreamRegistry
from aiomultiview.server.registry import (
    DEFAULT_DELAY_STEP,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_STREAM_COUNT,
)
from aiomultiview.server.segment_writer import DEFAULT_FFMPEG_BINARY
from aiomultiview.server.server import DEFAULT_HOST, DEFAULT_PORT

logger = logging.getLogger("aiomultiview")

SIMULATED_DRIFT_STEP = 0.002


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aiomultiview",
        description="Fan one live source out into delayed HLS streams.",
    )
    parser.add_argument("source", help="Upstream source URL, e.g. rtsp://camera/stream.")
    parser.add_argument(
        "--streams",
        type=int,
        default=DEFAULT_STREAM_COUNT,
        help=f"Number of delayed copies (default: {DEFAULT_STREAM_COUNT}).",
    )
    parser.add_argument(
        "--delay-step",
        type=float,
        default=DEFAULT_DELAY_STEP,
        help=f"Delay between successive copies in seconds (default: {DEFAULT_DELAY_STEP}).",
    )
    parser.add_argument(
        "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Directory for the HLS output (default: {DEFAULT_OUTPUT_DIR}).",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Bind host.")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Bind port.")
    parser.add_argument("--no-mdns", action="store_true", help="Do not advertise via mDNS.")
    parser.add_argument(
        "--ffmpeg", default=DEFAULT_FFMPEG_BINARY, help="Segment writer executable."
    )
    parser.add_argument(
        "--simulate-sync",
        action="store_true",
        help="Run the sync controller against simulated players, reported on /api/sync.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    return parser.parse_args(argv)


def _simulated_controller(registry: StreamRegistry) -> SyncController:
    """Build a controller over one simulated player per stream, each drifting differently."""
    controller = SyncController(expected_sources=len(registry))
    for index, descriptor in enumerate(registry):
        player = ClockPlayback(drift_factor=index * SIMULATED_DRIFT_STEP)
        controller.add_source(player, descriptor.id)
    controller.set_master(0)
    return controller


async def _run(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    registry = StreamRegistry(
        args.streams, output_dir=args.output_dir, delay_step=args.delay_step
    )
    supervisor = ProcessSupervisor(loop, registry, args.source, ffmpeg_binary=args.ffmpeg)
    controller = _simulated_controller(registry) if args.simulate_sync else None
    server = MultiviewServer(loop, supervisor, sync_controller=controller)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    await server.start_server(args.port, args.host, advertise_mdns=not args.no_mdns)
    if controller is not None:
        await controller.play_all()
        controller.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        if controller is not None:
            controller.destroy()
        await server.close()


def main(argv: list[str] | None = None) -> int:
    """Run the pipeline until interrupted."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if args.streams < 1:
        logger.error("--streams must be at least 1")
        return 2
    with suppress(KeyboardInterrupt):
        asyncio.run(_run(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
