"""
usbctl - FastAPI Application.

Web server exposing the USB/IP device list, bind/unbind operations and a
server-sent event stream of device changes.
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from . import __version__
from .config_manager import ConfigManager, get_config_manager
from .device_registry import DeviceRegistry
from .exceptions import ValidationError
from .executor import USBIP, CommandExecutor, get_executor, validate_busid
from .models import BindRequest, devices_to_json
from .subscriber_hub import SubscriberHub, Subscriber, format_event
from .usb_monitor import USBIP_HOST_DRIVER, DevicePoller, DriverProbe
from .usbip_parser import BoundPredicate

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Paths - relative to this package
PACKAGE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
STATIC_DIR = PACKAGE_DIR / "static"
FAVICON_PATH = STATIC_DIR / "favicon.ico"

USBIP_HOST_PATH = Path("/sys/bus/usb/drivers") / USBIP_HOST_DRIVER

MAX_BODY_SIZE = 4096
SHUTDOWN_TIMEOUT = 5


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure the root logger.

    Raises:
        OSError: if the log file cannot be opened
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def check_system(executor: CommandExecutor) -> list[str]:
    """Log warnings about a host that cannot share devices."""
    warnings = []
    if executor.resolve(USBIP) is None:
        warnings.append("usbip command not found. Install: sudo apt install linux-tools-generic")
    if not USBIP_HOST_PATH.exists():
        warnings.append("usbip-host driver not found. Run: sudo modprobe usbip-host")
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        warnings.append("Not running as root. Some USB operations may fail")

    for warning in warnings:
        logger.warning(warning)
    return warnings


class StreamState(str, Enum):
    """Lifecycle of an /events connection, in order."""
    INIT = "init"
    HEADERS_SENT = "headers_sent"
    REGISTERED = "registered"
    LIVE = "live"
    DEREGISTERED = "deregistered"
    CLOSED = "closed"


_STREAM_ORDER = list(StreamState)


class EventStream:
    """Produces the frames of one /events response."""

    def __init__(self, request: Request, hub: SubscriberHub, registry: DeviceRegistry):
        self.request = request
        self.hub = hub
        self.registry = registry
        client = request.client
        self.subscriber = Subscriber(peer=f"{client.host}:{client.port}" if client else "unknown")
        self.state = StreamState.INIT

    def _advance(self, state: StreamState) -> None:
        if _STREAM_ORDER.index(state) <= _STREAM_ORDER.index(self.state):
            raise RuntimeError(f"invalid stream transition {self.state.value} -> {state.value}")
        self.state = state

    async def frames(self) -> AsyncIterator[str]:
        # StreamingResponse sends the headers before pulling the first frame
        self._advance(StreamState.HEADERS_SENT)
        try:
            if not self.hub.add(self.subscriber):
                return
            self._advance(StreamState.REGISTERED)

            yield format_event(devices_to_json(self.registry.snapshot()))
            self._advance(StreamState.LIVE)

            while True:
                if await self.request.is_disconnected():
                    break
                frame = await self.hub.next_frame(self.subscriber)
                if frame is None:
                    break
                yield frame
        finally:
            if self.state in (StreamState.REGISTERED, StreamState.LIVE):
                self.hub.remove(self.subscriber)
                self._advance(StreamState.DEREGISTERED)
            self._advance(StreamState.CLOSED)


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"status": "failed", "error": message}, status_code=status_code)


async def _read_busid(request: Request) -> str:
    """Extract and validate the busid from a bind/unbind body.

    Raises:
        ValidationError: if the body is malformed or the busid is invalid
    """
    body = await request.body()
    if not body:
        raise ValidationError("request body is empty")
    if len(body) > MAX_BODY_SIZE:
        raise ValidationError("request body too large")

    try:
        data: Any = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("request body is not valid JSON") from None

    try:
        bind_request = BindRequest.model_validate(data)
    except ValueError:
        raise ValidationError("busid is required") from None

    return validate_busid(bind_request.busid)


async def _change_binding(request: Request, bind: bool) -> JSONResponse:
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_BODY_SIZE:
        return _failure(413, "request body too large")

    try:
        busid = await _read_busid(request)
    except ValidationError as e:
        logger.warning(f"Rejected {request.url.path} request: {e}")
        return _failure(400, str(e))

    registry: DeviceRegistry = request.app.state.registry
    hub: SubscriberHub = request.app.state.hub
    operation = registry.bind if bind else registry.unbind

    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(None, operation, busid)
    except ValidationError as e:
        return _failure(400, str(e))

    if not result.success:
        return JSONResponse(result.to_response(), status_code=500)

    # Push before answering; skipped if the poller already sent a newer list
    hub.broadcast_devices(result.devices, result.version)
    return JSONResponse(result.to_response())


def stop_services(app: FastAPI) -> None:
    """Stop polling and end all event streams. Safe to call twice."""
    app.state.poller.stop_monitoring()
    app.state.hub.close_all()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting usbctl v{__version__}...")

    registry: DeviceRegistry = app.state.registry
    poller: DevicePoller = app.state.poller
    config_manager: ConfigManager = app.state.config_manager

    check_system(app.state.executor)

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, registry.refresh)
    restored = await loop.run_in_executor(
        None, registry.reconcile, config_manager.get_bound_devices()
    )
    if restored:
        logger.info(f"Restored bindings: {', '.join(restored)}")

    poll_task = asyncio.create_task(poller.start_monitoring())
    logger.info("usbctl started successfully")

    yield

    logger.info("Shutting down usbctl...")
    stop_services(app)
    poll_task.cancel()
    try:
        await poll_task
    except asyncio.CancelledError:
        pass
    logger.info("usbctl stopped")


def create_app(
    config_manager: Optional[ConfigManager] = None,
    executor: Optional[CommandExecutor] = None,
    is_bound: Optional[BoundPredicate] = None,
    hub: Optional[SubscriberHub] = None,
    poll_interval: Optional[float] = None,
) -> FastAPI:
    """Build the application and its services."""
    config_manager = config_manager or get_config_manager()
    executor = executor or get_executor()
    hub = hub or SubscriberHub()

    registry = DeviceRegistry(
        executor,
        is_bound=is_bound if is_bound is not None else DriverProbe(),
        bound_store=config_manager,
    )
    interval = poll_interval if poll_interval is not None else config_manager.config.poll_interval
    poller = DevicePoller(registry, hub, interval=interval)

    app = FastAPI(
        title="usbctl",
        description="USB/IP device web manager",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config_manager = config_manager
    app.state.executor = executor
    app.state.registry = registry
    app.state.hub = hub
    app.state.poller = poller

    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    @app.api_route("/", methods=["GET", "HEAD"])
    async def index(request: Request):
        """Serve the main page."""
        return templates.TemplateResponse(request, "index.html", {"version": __version__})

    @app.api_route("/favicon.ico", methods=["GET", "HEAD"])
    async def favicon():
        return FileResponse(
            FAVICON_PATH,
            media_type="image/x-icon",
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @app.api_route("/api/devices", methods=["GET", "HEAD"])
    async def get_devices(request: Request):
        """Get current USB/IP devices as JSON."""
        return JSONResponse(devices_to_json(request.app.state.registry.snapshot()))

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        return JSONResponse({
            "status": "healthy",
            "version": __version__,
            "devices": len(request.app.state.registry.snapshot()),
            "subscribers": request.app.state.hub.connection_count,
            "subscriber_details": request.app.state.hub.describe(),
            "polling": request.app.state.poller.running,
        })

    @app.get("/events")
    async def events(request: Request):
        """Server-sent event stream of device list updates."""
        stream_hub: SubscriberHub = request.app.state.hub
        if stream_hub.is_full:
            return _failure(503, "too many subscribers")

        stream = EventStream(request, stream_hub, request.app.state.registry)
        return StreamingResponse(
            stream.frames(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/bind")
    async def bind_device(request: Request):
        """Bind a device to usbip-host."""
        return await _change_binding(request, bind=True)

    @app.post("/unbind")
    async def unbind_device(request: Request):
        """Release a device from usbip-host."""
        return await _change_binding(request, bind=False)

    return app


class UsbctlServer(uvicorn.Server):
    """uvicorn server that ends event streams as soon as shutdown begins.

    uvicorn waits for open responses before running the lifespan shutdown,
    so streams have to be closed here or shutdown would hang.
    """

    def __init__(self, config: uvicorn.Config, app: FastAPI):
        super().__init__(config)
        self.usbctl_app = app

    async def shutdown(self, sockets=None) -> None:
        stop_services(self.usbctl_app)
        await super().shutdown(sockets=sockets)


def run_server(
    host: str = "0.0.0.0",
    port: int = 11980,
    config_manager: Optional[ConfigManager] = None,
    poll_interval: Optional[float] = None,
    verbose: bool = False,
) -> int:
    """Run the server until interrupted; returns the process exit status."""
    app = create_app(config_manager=config_manager, poll_interval=poll_interval)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="debug" if verbose else "info",
        timeout_graceful_shutdown=SHUTDOWN_TIMEOUT,
    )
    server = UsbctlServer(config, app)

    logger.info(f"Web interface: http://{'localhost' if host == '0.0.0.0' else host}:{port}")
    server.run()
    return 0 if server.started else 1
