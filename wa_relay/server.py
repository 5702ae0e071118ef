"""Process wiring: build the relay from settings and serve it with uvicorn."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any, Optional

import uvicorn

from .api import create_app
from .config_loader import load_settings
from .connector import build_connector
from .core import RelayCore
from .errors import FatalStartupError
from .fetcher import RemoteSource, StatusReporter
from .logger import configure_logging, get_logger
from .persistence import DedupStore, LivenessMarker
from .prometheus import RelayMetrics
from .rate_limit import SendPacer
from .shutdown import ShutdownCoordinator

logger = get_logger("WaRelay.server")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class RelayServer(uvicorn.Server):
    """uvicorn server whose signals start the relay shutdown sequence.

    uvicorn would stop on its own and re-raise the signal afterwards; here the
    first SIGINT/SIGTERM only hands over to the :class:`ShutdownCoordinator`,
    which stops the listener itself. A second SIGINT forces the exit.
    """

    def __init__(self, config: uvicorn.Config, coordinator: ShutdownCoordinator, loop: asyncio.AbstractEventLoop):
        super().__init__(config)
        self.coordinator = coordinator
        self.loop = loop

    def handle_exit(self, sig: int, frame: Any) -> None:
        if self.coordinator.requested:
            if sig == signal.SIGINT:
                logger.warning("Second interrupt received, forcing exit")
                self.force_exit = True
            return
        logger.info("Received signal %s, shutting down", signal.Signals(sig).name)
        self.loop.call_soon_threadsafe(self.coordinator.request, 0)


def ensure_directories(settings: dict[str, object]) -> None:
    for key in ("data_dir", "session_dir", "session_backup_dir"):
        path = settings.get(key)
        if path:
            os.makedirs(str(path), exist_ok=True)


def build_core(settings: dict[str, object], metrics: Optional[RelayMetrics] = None) -> RelayCore:
    """Create the relay and its collaborators from ``settings``."""
    ensure_directories(settings)
    remote_timeout = float(settings.get("remote_timeout") or 15.0)
    liveness_file = settings.get("liveness_file")
    return RelayCore(
        tenant_ids=settings.get("tenant_ids") or [],
        connector=build_connector(settings),
        source=RemoteSource(settings.get("pending_url"), timeout=remote_timeout),
        reporter=StatusReporter(settings.get("update_url"), timeout=remote_timeout),
        dedup=DedupStore(settings.get("dedup_file")),
        liveness=LivenessMarker(liveness_file) if liveness_file else None,
        metrics=metrics,
        pacer=SendPacer(
            float(settings.get("send_delay_min", 1.0)),
            float(settings.get("send_delay_max", 8.0)),
        ),
        loop_interval=float(settings.get("loop_interval") or 30.0),
        send_timeout=float(settings.get("send_timeout") or 30.0),
        fetch_attempts=int(settings.get("fetch_attempts") or 2),
        fetch_retry_delay=float(settings.get("fetch_retry_delay", 2.0)),
        dedup_flush_interval=float(settings.get("dedup_flush_interval", 300.0)),
        contact_suffix=str(settings.get("contact_suffix") or "@c.us"),
        test_mode=bool(settings.get("test_mode")),
    )


async def _serve(server: uvicorn.Server) -> None:
    # uvicorn calls sys.exit(1) when it cannot bind
    try:
        await server.serve()
    except SystemExit as exc:
        raise FatalStartupError(
            f"HTTP server failed to start on {server.config.host}:{server.config.port}"
        ) from exc


async def run_service(settings: dict[str, object]) -> int:
    """Run the relay until shutdown and return the process exit code."""
    core = build_core(settings)
    coordinator = ShutdownCoordinator(
        core,
        session_backup_dir=settings.get("session_backup_dir"),
        drain_timeout=float(settings.get("drain_timeout", 10.0)),
        grace_seconds=float(settings.get("grace_seconds", 0.5)),
    )
    app = create_app(core, api_token=settings.get("api_token"))
    config = uvicorn.Config(
        app,
        host=str(settings.get("http_host") or "127.0.0.1"),
        port=int(settings.get("http_port") or 8000),
        log_config=None,
    )
    loop = asyncio.get_running_loop()
    server = RelayServer(config, coordinator, loop)

    # uvicorn only holds SIGINT/SIGTERM while serve() runs and puts these back afterwards
    for sig in HANDLED_SIGNALS:
        loop.add_signal_handler(sig, server.handle_exit, sig, None)
    try:
        await core.start()
        for task in core.tasks:
            coordinator.watch(task)
        server_task = asyncio.create_task(_serve(server), name="http-server")
        coordinator.attach_server(server, server_task)
        logger.info("Starting HTTP server on %s:%s", config.host, config.port)
        return await coordinator.run()
    finally:
        for sig in HANDLED_SIGNALS:
            loop.remove_signal_handler(sig)


def main() -> None:
    settings = load_settings()
    configure_logging(str(settings.get("log_level") or "INFO"), settings.get("log_file"))
    sys.exit(asyncio.run(run_service(settings)))


if __name__ == "__main__":
    main()
