"""Transport helpers to fetch pending messages and report delivery status."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .errors import TransportError
from .logger import get_logger
from .models import DeliveryStatus, PendingMessage

JsonDict = Dict[str, Any]
FetchCallable = Callable[[str], Awaitable[Any]]
ReportCallable = Callable[[str, str, DeliveryStatus], Awaitable[None]]

DEFAULT_TIMEOUT = 15.0


class RemoteSource:
    """Retrieve the pending messages of a tenant from the remote API."""

    def __init__(
        self,
        pending_url: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        fetch_callable: Optional[FetchCallable] = None,
        logger=None,
    ):
        """``fetch_callable`` replaces the HTTP call, mostly for tests."""
        self.pending_url = pending_url
        self.fetch_callable = fetch_callable
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or get_logger("WaRelay.fetcher")

    async def fetch_pending(self, tenant_id: str) -> List[PendingMessage]:
        """Return the pending messages for ``tenant_id`` in source order.

        Raises :class:`TransportError` when the endpoint fails or the body is
        not a JSON array. Rows that do not look like messages are skipped.
        """
        rows = await self._fetch_rows(tenant_id)
        if not isinstance(rows, list):
            raise TransportError(
                f"Malformed pending payload for tenant {tenant_id}: expected a list, got {type(rows).__name__}"
            )
        messages: List[PendingMessage] = []
        for row in rows:
            try:
                messages.append(PendingMessage.model_validate({**row, "tenant_id": tenant_id}))
            except (TypeError, ValidationError) as exc:
                self.logger.warning("Skipping malformed pending row for tenant %s: %s", tenant_id, exc)
        return messages

    async def _fetch_rows(self, tenant_id: str) -> Any:
        if self.fetch_callable is not None:
            return await self.fetch_callable(tenant_id)
        if not self.pending_url:
            return []
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.pending_url, params={"id_sekolah": tenant_id}) as resp:
                    resp.raise_for_status()
                    return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(f"Fetching pending messages for tenant {tenant_id} failed: {exc}") from exc


class StatusReporter:
    """Send the outcome of a dispatch attempt back to the remote API."""

    def __init__(
        self,
        update_url: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        report_callable: Optional[ReportCallable] = None,
    ):
        self.update_url = update_url
        self.report_callable = report_callable
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def report(self, tenant_id: str, message_id: str, delivered: bool) -> None:
        """Report ``delivered`` as ``terkirim`` or ``pending``; raises :class:`TransportError`."""
        status = DeliveryStatus.SENT if delivered else DeliveryStatus.PENDING
        if self.report_callable is not None:
            await self.report_callable(tenant_id, message_id, status)
            return
        if not self.update_url:
            return
        params = {"id": message_id, "status": status.value, "id_sekolah": tenant_id}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.update_url, params=params) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Status update for message {message_id} failed: {exc}") from exc
