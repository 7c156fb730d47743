"""HTTP server exposing the stream registry, health and HLS output."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

from aiohttp import WSMsgType, web
from zeroconf import IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiomultiview.models.stream import ErrorResponse, RestartResponse, StreamsResponse
from aiomultiview.models.sync import SyncResponse, SyncSummary
from .supervisor import ProcessSupervisor, SupervisorEvent

if TYPE_CHECKING:
    from aiomultiview.client.sync import SyncController

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5000
DEFAULT_HOST = "0.0.0.0"
START_DELAY_S = 2.0
"""Delay between the server coming up and the segment writers being started."""
MDNS_SERVICE_TYPE = "_multiview._tcp.local."

PLAYLIST_CACHE_CONTROL = "no-cache, no-store, must-revalidate"
SEGMENT_CACHE_CONTROL = "public, max-age=10"


def _advertise_addresses(host: str, configured: list[str] | None) -> list[str]:
    """
    Pick the addresses to advertise via mDNS.

    Explicitly configured addresses win, then a specific bind host. For a
    wildcard bind the address of the default route interface is used.
    """
    if configured is not None:
        return configured
    if host != DEFAULT_HOST:
        return [host]
    try:
        # Connecting a UDP socket sends nothing, it only selects the interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return [s.getsockname()[0]]
    except OSError:
        return []


class MultiviewServer:
    """Serve the HLS output of a ProcessSupervisor together with a small JSON API."""

    STREAMS_PATH = "/streams"
    API_PATH = "/api/streams"

    _supervisor: ProcessSupervisor
    _sync_controller: SyncController | None
    """Optional controller whose sync state is exposed on /api/sync."""
    _websockets: set[web.WebSocketResponse]
    """Connected health subscribers."""
    _health_push_pending: bool
    """True while a health broadcast is scheduled but not yet sent."""
    _start_handle: asyncio.TimerHandle | None
    """Timer for the delayed supervisor start."""
    _background_tasks: set[asyncio.Task[None]]
    _app: web.Application | None
    _app_runner: web.AppRunner | None
    _tcp_site: web.TCPSite | None
    _zc: AsyncZeroconf | None
    _mdns_service: AsyncServiceInfo | None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        supervisor: ProcessSupervisor,
        *,
        server_id: str = "aiomultiview",
        server_name: str = "Multiview",
        sync_controller: SyncController | None = None,
    ) -> None:
        """
        Initialize the server.

        Args:
            loop: The asyncio event loop to use.
            supervisor: Supervisor whose streams are served.
            server_id: Unique identifier used for mDNS advertising.
            server_name: Human-readable name of this server.
            sync_controller: Optional sync controller to report on.
        """
        self._loop = loop
        self._supervisor = supervisor
        self._sync_controller = sync_controller
        self._id = server_id
        self._name = server_name
        self._websockets = set()
        self._health_push_pending = False
        self._start_handle = None
        self._background_tasks = set()
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        self._remove_supervisor_listener = supervisor.add_event_listener(
            self._on_supervisor_event
        )
        logger.debug("MultiviewServer initialized: id=%s, name=%s", server_id, server_name)

    @property
    def supervisor(self) -> ProcessSupervisor:
        """The supervisor whose streams are served."""
        return self._supervisor

    def _create_web_application(self) -> web.Application:
        """Create and configure the aiohttp web application."""
        output_dir = self._supervisor.registry.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)

        app = web.Application()
        app.router.add_get(self.API_PATH, self.handle_streams)
        app.router.add_get(f"{self.API_PATH}/health", self.handle_health)
        app.router.add_post(f"{self.API_PATH}/restart", self.handle_restart)
        app.router.add_get(f"{self.API_PATH}/ws", self.handle_websocket)
        app.router.add_get("/api/sync", self.handle_sync)
        app.router.add_static(self.STREAMS_PATH, output_dir)
        app.on_response_prepare.append(self._on_response_prepare)
        return app

    async def _on_response_prepare(
        self, request: web.Request, response: web.StreamResponse
    ) -> None:
        """Add CORS and cache headers to HLS responses."""
        path = request.path
        if not path.startswith(self.STREAMS_PATH + "/"):
            return
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        if path.endswith(".m3u8"):
            response.headers["Cache-Control"] = PLAYLIST_CACHE_CONTROL
        elif path.endswith(".ts"):
            response.headers["Cache-Control"] = SEGMENT_CACHE_CONTROL

    async def handle_streams(self, request: web.Request) -> web.Response:
        """Return the stream configuration."""
        body = StreamsResponse(
            streams=self._supervisor.get_stream_configs(),
            source=self._supervisor.source_url,
        )
        return web.json_response(text=body.to_json())

    async def handle_health(self, request: web.Request) -> web.Response:
        """Return the health report of all streams."""
        return web.json_response(text=self._supervisor.get_health_report().to_json())

    async def handle_restart(self, request: web.Request) -> web.Response:
        """Restart all segment writers."""
        try:
            await self._supervisor.restart_all()
        except Exception:
            logger.exception("Error restarting streams")
            return web.json_response(
                text=ErrorResponse("Failed to restart streams").to_json(), status=500
            )
        body = RestartResponse(success=True, message="All streams restarted")
        return web.json_response(text=body.to_json())

    async def handle_sync(self, request: web.Request) -> web.Response:
        """Return the sync states of the attached sync controller."""
        if self._sync_controller is None:
            return web.json_response(
                text=ErrorResponse("No sync controller attached").to_json(), status=404
            )
        states = self._sync_controller.get_sync_states()
        body = SyncResponse(streams=states, summary=SyncSummary.from_samples(states))
        return web.json_response(text=body.to_json())

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Push the health report on connect and on every supervisor change."""
        wsock = web.WebSocketResponse(heartbeat=30)
        await wsock.prepare(request)
        logger.debug("Health subscriber connected from %s", request.remote)
        self._websockets.add(wsock)
        try:
            await wsock.send_str(self._supervisor.get_health_report().to_json())
            async for msg in wsock:
                if msg.type == WSMsgType.ERROR:
                    logger.debug("Health subscriber error: %s", wsock.exception())
        finally:
            self._websockets.discard(wsock)
            logger.debug("Health subscriber disconnected")
        return wsock

    def _on_supervisor_event(self, supervisor: ProcessSupervisor, event: SupervisorEvent) -> None:
        """Coalesce supervisor events into one health broadcast per loop iteration."""
        if self._health_push_pending or not self._websockets:
            return
        self._health_push_pending = True
        self._create_background_task(self._push_health())

    async def _push_health(self) -> None:
        """Send the current health report to all subscribers."""
        self._health_push_pending = False
        text = self._supervisor.get_health_report().to_json()
        for wsock in list(self._websockets):
            if wsock.closed:
                continue
            try:
                await wsock.send_str(text)
            except ConnectionResetError:
                logger.debug("Dropping closed health subscriber")
                self._websockets.discard(wsock)

    def _create_background_task(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)

    async def _start_streams(self) -> None:
        try:
            await self._supervisor.start_all()
        except Exception:
            logger.exception(
                "Failed to start streams, ensure the source is reachable and ffmpeg is installed"
            )

    async def start_server(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        advertise_addresses: list[str] | None = None,
        *,
        advertise_mdns: bool = True,
        start_delay: float | None = START_DELAY_S,
    ) -> None:
        """
        Start the HTTP server and schedule the segment writers to start.

        :param port: The TCP port to bind the server to.
        :param host: The IP address for the server to listen on.
        :param advertise_addresses: IP addresses to advertise via mDNS.
            If None, auto-detects the local IP address.
        :param advertise_mdns: If True, advertise this server via mDNS.
        :param start_delay: Seconds after which the supervisor starts all streams.
            None leaves starting the streams to the caller.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        logger.info("Starting multiview server on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != DEFAULT_HOST else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info("Multiview server started successfully on %s:%d", host, port)
            if advertise_mdns:
                addresses = _advertise_addresses(host, advertise_addresses)
                if addresses:
                    await self._start_mdns_advertising(addresses, port)
                else:
                    logger.warning("No IP addresses available for mDNS advertising")
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            await self.stop_server()
            raise

        if start_delay is not None:

            def _schedule_start() -> None:
                self._start_handle = None
                self._create_background_task(self._start_streams())

            self._start_handle = self._loop.call_later(start_delay, _schedule_start)

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await self._stop_mdns()

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """Stop the segment writers and the server and release all resources."""
        if self._start_handle is not None:
            self._start_handle.cancel()
            self._start_handle = None
        self._remove_supervisor_listener()

        for wsock in list(self._websockets):
            try:
                async with asyncio.timeout(1.0):
                    await wsock.close()
            except TimeoutError:
                logger.debug("Timeout closing health subscriber")
        self._websockets.clear()

        for task in list(self._background_tasks):
            task.cancel()
        await self._supervisor.close()
        await self.stop_server()

    async def _start_mdns_advertising(self, addresses: list[str], port: int) -> None:
        """Start advertising this server via mDNS."""
        self._zc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        info = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{self._id}.{MDNS_SERVICE_TYPE}",
            server=f"{self._id}.local.",
            parsed_addresses=addresses,
            port=port,
            properties={"path": self.API_PATH, "name": self._name},
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.debug("mDNS advertising server on port %d", port)
        except NonUniqueNameException:
            logger.error("Multiview server with identical name present in the local network!")

    async def _stop_mdns(self) -> None:
        """Stop mDNS advertising if active."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
