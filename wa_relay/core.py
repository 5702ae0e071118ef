"""Core orchestration logic for the pending-message relay."""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .connector import CONTACT_SUFFIX, Connector, normalise_target
from .errors import ConnectorUnavailable, FatalStartupError, PersistenceError, TransportError
from .fetcher import RemoteSource, StatusReporter
from .logger import get_logger
from .models import DispatchOutcome, LoopState, PendingMessage
from .persistence import DedupStore, LivenessMarker
from .prometheus import RelayMetrics
from .rate_limit import SendPacer

DEFAULT_LOOP_INTERVAL = 30.0
DEFAULT_SEND_TIMEOUT = 30.0


class RelayCore:
    """Own the relay state and run the fetch, dedup, send, report cycle.

    ``RelayCore`` is the single writer of the loop state, the dedup store and
    the shutdown flag. The HTTP layer and the shutdown coordinator only go
    through its public methods.
    """

    def __init__(
        self,
        *,
        tenant_ids: Iterable[str],
        connector: Connector,
        source: RemoteSource,
        reporter: StatusReporter,
        dedup: DedupStore,
        liveness: Optional[LivenessMarker] = None,
        metrics: RelayMetrics | None = None,
        pacer: SendPacer | None = None,
        logger=None,
        loop_interval: float = DEFAULT_LOOP_INTERVAL,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        fetch_attempts: int = 2,
        fetch_retry_delay: float = 2.0,
        dedup_flush_interval: float = 300.0,
        contact_suffix: str = CONTACT_SUFFIX,
        test_mode: bool = False,
    ):
        """Prepare the collaborators and the loop state."""
        self.tenant_ids: List[str] = [str(t).strip() for t in tenant_ids if str(t).strip()]
        self.connector = connector
        self.source = source
        self.reporter = reporter
        self.dedup = dedup
        self.liveness = liveness
        self.metrics = metrics or RelayMetrics()
        self.pacer = pacer or SendPacer()
        self.logger = logger or get_logger()

        self._test_mode = bool(test_mode)
        self._loop_interval = math.inf if self._test_mode else max(0.05, float(loop_interval))
        self._send_timeout = max(0.1, float(send_timeout))
        self._fetch_attempts = max(1, int(fetch_attempts))
        self._fetch_retry_delay = max(0.0, float(fetch_retry_delay))
        self._dedup_flush_interval = float(dedup_flush_interval)
        self._contact_suffix = contact_suffix

        self._state = LoopState.IDLE
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._last_flush = time.monotonic()
        self._task_loop: Optional[asyncio.Task] = None
        self._task_connect: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def shutting_down(self) -> bool:
        return self._stop.is_set()

    @property
    def client_ready(self) -> bool:
        return bool(self.connector.is_ready)

    @property
    def tasks(self) -> List[asyncio.Task]:
        """Background tasks the supervisor has to watch."""
        return [task for task in (self._task_connect, self._task_loop) if task is not None]

    def request_stop(self) -> None:
        """Raise the shutdown flag. No new fetch or send starts afterwards."""
        if not self._stop.is_set():
            self._stop.set()
            self._state = LoopState.IDLE
        self._wake_event.set()

    def run_now(self) -> None:
        """Wake the loop so the next tick starts immediately."""
        self._wake_event.set()

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def status_snapshot(self) -> Dict[str, Any]:
        """Return the payload served by ``GET /status``."""
        return {
            "status": self._state.value,
            "clientReady": self.client_ready,
            "pendingIds": len(self.dedup),
            "timestamp": self._utc_now_iso(),
            "sekolah": list(self.tenant_ids),
        }

    # -------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Load local state, start the connector and the reconciliation loop."""
        loaded = self.dedup.load()
        self.metrics.set_processed(len(loaded))
        self.logger.info("Loaded %d processed message ids", len(loaded))
        if self.liveness is not None:
            try:
                self.liveness.mark_running()
            except PersistenceError as exc:
                self.logger.error("%s", exc)
        self._task_connect = asyncio.create_task(self._connect(), name="connector-start")
        self._task_loop = asyncio.create_task(self._reconcile_loop(), name="reconcile-loop")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop the background tasks, letting an in-flight send finish."""
        self.request_stop()
        if self._task_connect is not None and not self._task_connect.done():
            self._task_connect.cancel()
        tasks = self.tasks
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            self.logger.warning("Task %s did not stop within %.1fs, cancelling", task.get_name(), timeout)
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _connect(self) -> None:
        self.logger.info("Starting %s connector...", self.connector.name)
        try:
            await self.connector.start()
        except FatalStartupError:
            raise
        except Exception as exc:
            raise FatalStartupError(f"Connector failed to start: {exc}") from exc
        if self._stop.is_set():
            return
        self._state = LoopState.READY
        self.logger.info("Connector ready, relaying for tenants %s", ", ".join(self.tenant_ids) or "-")
        if not self._test_mode:
            self._wake_event.set()

    # ------------------------------------------------------------------- loop
    async def _reconcile_loop(self) -> None:
        """Run one tick per interval until the shutdown flag is raised."""
        while not self._stop.is_set():
            try:
                await self.run_tick()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in reconciliation loop: %s", exc)
            await self._maybe_flush_dedup()
            await self._wait_for_wakeup(self._loop_interval)

    async def run_tick(self) -> bool:
        """Run one pass over every tenant; return ``False`` when the tick was skipped."""
        if self._stop.is_set():
            return False
        if not self.connector.is_ready:
            self.logger.debug("Connector not ready, skipping tick")
            return False
        if self._tick_lock.locked():
            self.logger.warning("Previous tick still running, skipping")
            return False
        async with self._tick_lock:
            self._state = LoopState.PROCESSING
            self.logger.debug("Processing pending messages...")
            try:
                for tenant_id in self.tenant_ids:
                    if self._stop.is_set():
                        self.logger.info("Shutdown requested, aborting tick")
                        break
                    try:
                        await self._process_tenant(tenant_id)
                    except ConnectorUnavailable as exc:
                        self.logger.warning("Connector unavailable, skipping the rest of this tick: %s", exc)
                        break
                    except Exception as exc:
                        self.logger.exception("Unexpected error while processing tenant %s: %s", tenant_id, exc)
            finally:
                if not self._stop.is_set():
                    self._state = LoopState.READY
                self.metrics.set_processed(len(self.dedup))
            self.metrics.inc_tick()
        return True

    async def _process_tenant(self, tenant_id: str) -> None:
        try:
            messages = await self._fetch_with_retry(tenant_id)
        except TransportError as exc:
            self.logger.warning("Tenant %s skipped this tick: %s", tenant_id, exc)
            self.metrics.inc_fetch_error(tenant_id)
            return

        fresh = [msg for msg in messages if not self.dedup.contains(msg.id)]
        if len(fresh) != len(messages):
            self.logger.debug(
                "Tenant %s: %d of %d pending messages already processed",
                tenant_id,
                len(messages) - len(fresh),
                len(messages),
            )
        for index, message in enumerate(fresh):
            if self._stop.is_set():
                self.logger.info(
                    "Shutdown requested, leaving %d message(s) of tenant %s for the next run",
                    len(fresh) - index,
                    tenant_id,
                )
                return
            if self.dedup.contains(message.id):
                continue
            await self._dispatch(message)
            await self.pacer.pause(self._stop)

    async def _fetch_with_retry(self, tenant_id: str) -> List[PendingMessage]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.source.fetch_pending(tenant_id)
            except TransportError as exc:
                if attempt >= self._fetch_attempts or self._stop.is_set():
                    raise
                delay = self._fetch_retry_delay * (2 ** (attempt - 1))
                self.logger.warning(
                    "Fetch for tenant %s failed (attempt %d/%d): %s - retrying in %.1fs",
                    tenant_id,
                    attempt,
                    self._fetch_attempts,
                    exc,
                    delay,
                )
                await self._sleep_unless_stopped(delay)
                if self._stop.is_set():
                    self.logger.info("Shutdown requested, not retrying fetch for tenant %s", tenant_id)
                    return []

    async def _dispatch(self, message: PendingMessage) -> DispatchOutcome:
        """Send one message, report it and mark it processed whatever happened.

        :class:`ConnectorUnavailable` propagates and leaves the message untouched.
        """
        target = normalise_target(message.recipient, self._contact_suffix)
        delivered = False
        try:
            delivered = bool(await self._deliver(target, message.body))
        except ConnectorUnavailable:
            raise
        except Exception as exc:
            self.logger.warning("Message %s to %s failed: %s", message.id, target, exc)

        outcome = DispatchOutcome(message_id=message.id, tenant_id=message.tenant_id, delivered=delivered)
        try:
            await self.reporter.report(outcome.tenant_id, outcome.message_id, outcome.delivered)
        except TransportError as exc:
            self.logger.warning("Status report for message %s failed: %s", message.id, exc)
            self.metrics.inc_report_error(message.tenant_id)
        except Exception as exc:
            self.logger.exception("Unexpected error reporting message %s: %s", message.id, exc)
            self.metrics.inc_report_error(message.tenant_id)

        self.dedup.mark_processed(message.id)
        if delivered:
            self.metrics.inc_delivered(message.tenant_id)
        else:
            self.metrics.inc_undelivered(message.tenant_id)
        self.logger.info(
            "%s tenant:%s | id:%s | to:%s",
            outcome.status.value,
            message.tenant_id,
            message.id,
            message.recipient,
        )
        return outcome

    async def _deliver(self, target: str, body: str) -> bool:
        async with asyncio.timeout(self._send_timeout):
            return await self.connector.send(target, body)

    # --------------------------------------------------------------- HTTP path
    async def send_message(self, phone: str, message: str) -> str:
        """Send a message on behalf of ``POST /send-message``; return the chat id used."""
        if self._stop.is_set():
            raise ConnectorUnavailable("Relay is shutting down")
        if not self.connector.is_ready:
            raise ConnectorUnavailable("WhatsApp connector not ready")
        target = normalise_target(phone, self._contact_suffix)
        delivered = await self._deliver(target, message)
        if not delivered:
            raise TransportError(f"Connector did not deliver the message to {target}")
        self.logger.info("Message sent to %s", target)
        return target

    # -------------------------------------------------------------- persistence
    def flush_dedup(self) -> bool:
        """Persist the dedup store now; return ``False`` when writing failed."""
        try:
            self.dedup.persist()
        except PersistenceError as exc:
            self.logger.error("%s", exc)
            return False
        self._last_flush = time.monotonic()
        return True

    async def _maybe_flush_dedup(self) -> None:
        if self._dedup_flush_interval <= 0 or not self.dedup.dirty:
            return
        if time.monotonic() - self._last_flush >= self._dedup_flush_interval:
            # the loop task is the only writer of the store and is suspended here
            await asyncio.to_thread(self.flush_dedup)

    # ------------------------------------------------------------------ waits
    async def _sleep_unless_stopped(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(delay):
                await self._stop.wait()
        except TimeoutError:
            return

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing wake-ups via ``run_now`` or shutdown."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()
