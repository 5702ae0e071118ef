from typing import Any, Dict, List

import aiohttp
import pytest

from wa_relay.connector import (
    DryRunConnector,
    GatewayConnector,
    build_connector,
    normalise_target,
)
from wa_relay.errors import ConnectorUnavailable, FatalStartupError, TransportError


class DummyResponse:
    def __init__(self, payload: Any = None, status: int = 200):
        self.payload = payload
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP {self.status}")

    async def json(self, content_type=None):
        return self.payload


class DummyGateway:
    """Stand-in for the aiohttp session talking to the gateway."""

    def __init__(self, statuses: List[str] | None = None):
        self.statuses = list(statuses or ["WORKING"])
        self.gets: List[str] = []
        self.posts: List[tuple] = []
        self.get_error: Exception | None = None
        self.post_status = 200
        self.closed = False
        self.kwargs: Dict[str, Any] = {}

    def __call__(self, **kwargs):
        self.kwargs = kwargs
        return self

    def get(self, url):
        self.gets.append(url)
        if self.get_error:
            raise self.get_error
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return DummyResponse({"name": "default", "status": status})

    def post(self, url, json=None):
        self.posts.append((url, json))
        return DummyResponse(None, status=self.post_status)

    async def close(self):
        self.closed = True


@pytest.fixture
def gateway(monkeypatch):
    fake = DummyGateway()
    monkeypatch.setattr("wa_relay.connector.aiohttp.ClientSession", fake)
    return fake


def test_normalise_target():
    assert normalise_target("62811") == "62811@c.us"
    assert normalise_target(" 62811 ") == "62811@c.us"
    assert normalise_target("1203630@g.us") == "1203630@g.us"
    assert normalise_target("62811", "@s.whatsapp.net") == "62811@s.whatsapp.net"


@pytest.mark.asyncio
async def test_gateway_waits_for_pairing_then_sends(gateway):
    gateway.statuses = ["STARTING", "SCAN_QR_CODE", "SCAN_QR_CODE", "WORKING"]
    connector = GatewayConnector("http://gw:3000/", session_name="school", api_key="k", poll_interval=0)

    await connector.start()

    assert connector.is_ready is True
    assert gateway.gets == ["http://gw:3000/api/sessions/school"] * 4
    assert gateway.kwargs["headers"] == {"X-Api-Key": "k"}

    assert await connector.send("62811@c.us", "Halo") is True
    assert gateway.posts == [
        ("http://gw:3000/api/sendText", {"session": "school", "chatId": "62811@c.us", "text": "Halo"})
    ]


@pytest.mark.asyncio
async def test_gateway_failed_session_is_fatal(gateway):
    gateway.statuses = ["FAILED"]
    connector = GatewayConnector("http://gw:3000", poll_interval=0)

    with pytest.raises(FatalStartupError):
        await connector.start()
    assert connector.is_ready is False


@pytest.mark.asyncio
async def test_gateway_unreachable_is_fatal(gateway):
    gateway.get_error = aiohttp.ClientConnectionError("connection refused")
    connector = GatewayConnector("http://gw:3000", poll_interval=0)

    with pytest.raises(FatalStartupError):
        await connector.start()


@pytest.mark.asyncio
async def test_gateway_send_before_ready(gateway):
    connector = GatewayConnector("http://gw:3000")

    with pytest.raises(ConnectorUnavailable):
        await connector.send("62811@c.us", "x")
    assert gateway.posts == []


@pytest.mark.asyncio
async def test_gateway_send_error_is_transport_error(gateway):
    connector = GatewayConnector("http://gw:3000", poll_interval=0)
    await connector.start()
    gateway.post_status = 500

    with pytest.raises(TransportError):
        await connector.send("62811@c.us", "x")


@pytest.mark.asyncio
async def test_gateway_close_stops_session(gateway):
    connector = GatewayConnector("http://gw:3000", poll_interval=0)
    await connector.start()

    await connector.close()
    await connector.close()

    assert gateway.posts == [("http://gw:3000/api/sessions/default/stop", None)]
    assert gateway.closed is True
    assert connector.is_ready is False


@pytest.mark.asyncio
async def test_gateway_close_tolerates_stop_failure(gateway):
    connector = GatewayConnector("http://gw:3000", poll_interval=0)
    await connector.start()
    gateway.post_status = 503

    await connector.close()

    assert gateway.closed is True


@pytest.mark.asyncio
async def test_dry_run_connector_records_messages():
    connector = DryRunConnector()
    with pytest.raises(ConnectorUnavailable):
        await connector.send("62811@c.us", "x")

    await connector.start()
    assert await connector.send("62811@c.us", "hello") is True
    assert connector.sent == [("62811@c.us", "hello")]

    await connector.close()
    assert connector.is_ready is False


def test_build_connector_backends(tmp_path):
    dry = build_connector({"connector": "dry-run", "session_dir": str(tmp_path)})
    assert isinstance(dry, DryRunConnector)
    assert dry.session_dir == tmp_path

    gw = build_connector(
        {
            "connector": "gateway",
            "gateway_url": "http://gw:3000",
            "gateway_session": "school",
            "gateway_api_key": "secret",
            "send_timeout": 5,
        }
    )
    assert isinstance(gw, GatewayConnector)
    assert gw.base_url == "http://gw:3000"
    assert gw.session_name == "school"
    assert gw.api_key == "secret"
    assert gw.timeout.total == 5.0

    with pytest.raises(ValueError):
        build_connector({"connector": "carrier-pigeon"})
