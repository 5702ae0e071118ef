"""Messaging connector capability and its backends.

The relay never speaks the WhatsApp protocol itself. A :class:`Connector`
exposes ``send(target, body)`` on top of whatever owns the session:

* :class:`GatewayConnector` drives a WhatsApp HTTP gateway sidecar with a
  WAHA compatible REST API. Pairing (QR scanning) and session storage are
  the gateway's business; the relay only waits until the session works.
* :class:`DryRunConnector` sends nothing and records what it would send.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .errors import ConnectorUnavailable, FatalStartupError, TransportError
from .logger import get_logger

CONTACT_SUFFIX = "@c.us"


def normalise_target(phone: str, suffix: str = CONTACT_SUFFIX) -> str:
    """Turn a bare phone number into a chat id; full chat ids pass through."""
    phone = str(phone).strip()
    if "@" in phone:
        return phone
    return f"{phone}{suffix}"


class Connector(ABC):
    """Capability used by the relay to deliver a message to a recipient."""

    name = "connector"
    session_dir: Optional[Path] = None

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """``True`` once the connector can accept sends."""

    @abstractmethod
    async def start(self) -> None:
        """Bring the session up; raise :class:`FatalStartupError` if it cannot."""

    @abstractmethod
    async def send(self, target: str, body: str) -> bool:
        """Send ``body`` to ``target``; return ``True`` when delivered."""

    async def close(self) -> None:
        """Release the session. Safe to call more than once."""


class GatewayConnector(Connector):
    """Send through a WhatsApp HTTP gateway (WAHA compatible endpoints)."""

    name = "gateway"
    WORKING = "WORKING"
    WAITING = {"STARTING", "SCAN_QR_CODE"}

    def __init__(
        self,
        base_url: str,
        *,
        session_name: str = "default",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        poll_interval: float = 5.0,
        session_dir: Optional[str] = None,
        logger=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_name = session_name
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.poll_interval = poll_interval
        self.session_dir = Path(session_dir) if session_dir else None
        self.logger = logger or get_logger("WaRelay.connector")
        self._http: Optional[aiohttp.ClientSession] = None
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _url(self, suffix: str) -> str:
        return f"{self.base_url}/{suffix.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {"X-Api-Key": self.api_key} if self.api_key else {}

    async def _session_status(self) -> str:
        assert self._http is not None
        async with self._http.get(self._url(f"api/sessions/{self.session_name}")) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
        return str((data or {}).get("status", "")).upper()

    async def start(self) -> None:
        """Wait until the gateway reports the session as working."""
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())
        announced = None
        while True:
            try:
                status = await self._session_status()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise FatalStartupError(f"WhatsApp gateway {self.base_url} not reachable: {exc}") from exc
            if status == self.WORKING:
                self._ready = True
                self.logger.info("WhatsApp session '%s' ready", self.session_name)
                return
            if status not in self.WAITING:
                raise FatalStartupError(f"WhatsApp session '{self.session_name}' is {status or 'unknown'}")
            if status != announced:
                if status == "SCAN_QR_CODE":
                    self.logger.info(
                        "WhatsApp session '%s' waiting for pairing, scan the QR code in the gateway",
                        self.session_name,
                    )
                else:
                    self.logger.info("WhatsApp session '%s' is starting", self.session_name)
                announced = status
            await asyncio.sleep(self.poll_interval)

    async def send(self, target: str, body: str) -> bool:
        if not self._ready or self._http is None:
            raise ConnectorUnavailable("WhatsApp session not ready")
        payload = {"session": self.session_name, "chatId": target, "text": body}
        try:
            async with self._http.post(self._url("api/sendText"), json=payload) as resp:
                resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Gateway send to {target} failed: {exc}") from exc
        return True

    async def close(self) -> None:
        was_ready, self._ready = self._ready, False
        if self._http is None:
            return
        try:
            if was_ready:
                async with self._http.post(self._url(f"api/sessions/{self.session_name}/stop")) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Could not stop WhatsApp session '%s': %s", self.session_name, exc)
        finally:
            await self._http.close()
            self._http = None


class DryRunConnector(Connector):
    """Pretend to deliver every message; nothing leaves the process."""

    name = "dry-run"

    def __init__(self, session_dir: Optional[str] = None, logger=None):
        self.session_dir = Path(session_dir) if session_dir else None
        self.logger = logger or get_logger("WaRelay.connector")
        self.sent: List[Tuple[str, str]] = []
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def start(self) -> None:
        self._ready = True
        self.logger.info("Dry-run connector ready, messages will not be delivered")

    async def send(self, target: str, body: str) -> bool:
        if not self._ready:
            raise ConnectorUnavailable("Dry-run connector not started")
        self.sent.append((target, body))
        self.logger.info("DRY_RUN: message to %s not sent (%d chars)", target, len(body))
        return True

    async def close(self) -> None:
        self._ready = False


def build_connector(settings: Dict[str, Any]) -> Connector:
    """Create the connector selected by ``settings["connector"]``."""
    backend = str(settings.get("connector") or "gateway").lower()
    session_dir = settings.get("session_dir")
    if backend in {"dry-run", "dry_run", "dryrun"}:
        return DryRunConnector(session_dir=session_dir)
    if backend == "gateway":
        return GatewayConnector(
            str(settings.get("gateway_url") or "http://127.0.0.1:3000"),
            session_name=str(settings.get("gateway_session") or "default"),
            api_key=settings.get("gateway_api_key"),
            timeout=float(settings.get("send_timeout") or 30.0),
            session_dir=session_dir,
        )
    raise ValueError(f"Unknown connector backend: {backend}")
