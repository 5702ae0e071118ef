"""Graceful shutdown sequence and supervision of the relay's background tasks."""

from __future__ import annotations

import asyncio
import inspect
import os
from typing import Any, Callable, Optional

from .core import RelayCore
from .logger import get_logger
from .persistence import backup_session


class ShutdownCoordinator:
    """Run the shutdown sequence exactly once and report the exit code.

    The coordinator is also the supervisor: every task handed to
    :meth:`watch` that ends with an exception requests a shutdown with exit
    code 1. Signals and fatal startup errors go through :meth:`request`.
    """

    def __init__(
        self,
        core: RelayCore,
        *,
        session_dir: str | os.PathLike | None = None,
        session_backup_dir: str | os.PathLike | None = None,
        drain_timeout: float = 10.0,
        grace_seconds: float = 0.5,
        logger=None,
    ):
        self.core = core
        self.session_dir = session_dir if session_dir is not None else getattr(core.connector, "session_dir", None)
        self.session_backup_dir = session_backup_dir
        self.drain_timeout = max(0.0, float(drain_timeout))
        self.grace_seconds = max(0.0, float(grace_seconds))
        self.logger = logger or get_logger("WaRelay.shutdown")
        self.server: Any = None
        self.server_task: Optional[asyncio.Task] = None
        self.exit_code = 0
        self._requested = asyncio.Event()
        self._finished = asyncio.Event()
        self._running = False

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    def attach_server(self, server: Any, task: asyncio.Task) -> None:
        """Register the uvicorn server whose listener is closed at step 2."""
        self.server = server
        self.server_task = task
        self.watch(task)

    def watch(self, task: asyncio.Task) -> None:
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Task %s failed: %r", task.get_name(), exc, exc_info=exc)
            self.request(1)
        elif task is self.server_task and not self.requested:
            self.logger.error("HTTP server stopped unexpectedly")
            self.request(1)

    def request(self, exit_code: int = 0) -> None:
        """Ask for shutdown. Only the first request counts."""
        if self._requested.is_set():
            self.logger.debug("Shutdown already in progress, ignoring request (exit code %s)", exit_code)
            return
        self.exit_code = exit_code
        self.core.request_stop()
        self._requested.set()

    async def run(self) -> int:
        """Wait for a shutdown request, execute the sequence and return the exit code."""
        await self._requested.wait()
        return await self.shutdown()

    async def shutdown(self, exit_code: Optional[int] = None) -> int:
        """Execute the shutdown sequence; concurrent callers wait for the first one."""
        self.request(0 if exit_code is None else exit_code)
        if self._running:
            await self._finished.wait()
            return self.exit_code
        self._running = True
        self.logger.info("Shutdown initiated...")

        await self._step("stop HTTP listener", self._stop_http)
        await self._step("drain reconciliation loop", self.core.stop, self.drain_timeout)
        await self._step("release connector", self._close_connector)
        await self._step("back up connector session", self._backup_session)
        await self._step("persist processed ids", self._persist_dedup)
        if self.core.liveness is not None:
            await self._step("clear liveness marker", self._clear_liveness)

        self.logger.info("Shutdown complete, exiting with code %s", self.exit_code)
        await asyncio.sleep(self.grace_seconds)
        self._finished.set()
        return self.exit_code

    async def _step(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.exception("Shutdown step '%s' failed: %s", label, exc)

    async def _stop_http(self) -> None:
        if self.server is None:
            return
        self.server.should_exit = True
        if self.server_task is None or self.server_task.done():
            return
        _, pending = await asyncio.wait({self.server_task}, timeout=self.drain_timeout)
        if pending:
            self.logger.warning("In-flight HTTP requests still running after %.1fs, forcing exit", self.drain_timeout)
            self.server.force_exit = True
            await asyncio.wait(pending, timeout=1.0)

    async def _close_connector(self) -> None:
        async with asyncio.timeout(self.drain_timeout or None):
            await self.core.connector.close()

    def _backup_session(self) -> None:
        if backup_session(self.session_dir, self.session_backup_dir):
            self.logger.info("Session backup done")

    def _persist_dedup(self) -> None:
        self.core.dedup.persist()
        self.logger.info("Saved %d processed message ids", len(self.core.dedup))

    def _clear_liveness(self) -> None:
        self.core.liveness.clear()
