import asyncio
import json

import pytest
from prometheus_client import CollectorRegistry

from wa_relay.connector import DryRunConnector
from wa_relay.core import RelayCore
from wa_relay.fetcher import RemoteSource, StatusReporter
from wa_relay.persistence import DedupStore, LivenessMarker
from wa_relay.prometheus import RelayMetrics
from wa_relay.rate_limit import SendPacer
from wa_relay.shutdown import ShutdownCoordinator


class FakeServer:
    """Mimic the should_exit/force_exit flags of a uvicorn server."""

    def __init__(self, honour_should_exit: bool = True):
        self.should_exit = False
        self.force_exit = False
        self.honour_should_exit = honour_should_exit

    async def serve(self):
        while not (self.force_exit or (self.honour_should_exit and self.should_exit)):
            await asyncio.sleep(0.01)


class FailingCloseConnector(DryRunConnector):
    async def close(self):
        raise RuntimeError("gateway gone")


async def no_rows(tenant_id):
    return []


async def ignore_report(tenant_id, message_id, status):
    return None


def make_core(tmp_path, connector=None):
    return RelayCore(
        tenant_ids=["7"],
        connector=connector or DryRunConnector(),
        source=RemoteSource(fetch_callable=no_rows),
        reporter=StatusReporter(report_callable=ignore_report),
        dedup=DedupStore(tmp_path / "sent_ids.json"),
        liveness=LivenessMarker(tmp_path / "bot_running.flag"),
        metrics=RelayMetrics(CollectorRegistry()),
        pacer=SendPacer(0, 0),
        test_mode=True,
    )


def make_coordinator(tmp_path, core, **kwargs):
    kwargs.setdefault("drain_timeout", 1.0)
    kwargs.setdefault("grace_seconds", 0)
    return ShutdownCoordinator(
        core,
        session_dir=tmp_path / "sessions",
        session_backup_dir=tmp_path / "sessions_backup",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_shutdown_sequence(tmp_path):
    (tmp_path / "sessions").mkdir()
    (tmp_path / "sessions" / "creds.json").write_text("{}")
    core = make_core(tmp_path)
    await core.start()
    await core.tasks[0]
    core.dedup.mark_processed("42")

    coordinator = make_coordinator(tmp_path, core)
    server = FakeServer()
    server_task = asyncio.create_task(server.serve())
    coordinator.attach_server(server, server_task)

    code = await coordinator.shutdown()

    assert code == 0
    assert core.shutting_down
    assert server.should_exit is True
    assert server_task.done()
    assert all(task.done() for task in core.tasks)
    assert core.connector.is_ready is False
    assert (tmp_path / "sessions_backup" / "creds.json").read_text() == "{}"
    assert json.loads((tmp_path / "sent_ids.json").read_text()) == ["42"]
    assert not (tmp_path / "bot_running.flag").exists()


@pytest.mark.asyncio
async def test_concurrent_shutdowns_run_once(tmp_path):
    core = make_core(tmp_path)
    persisted = []
    original_persist = core.dedup.persist
    core.dedup.persist = lambda *args: persisted.append(1) or original_persist(*args)
    coordinator = make_coordinator(tmp_path, core)

    codes = await asyncio.gather(coordinator.shutdown(), coordinator.shutdown(), coordinator.shutdown(5))

    assert codes == [0, 0, 0]
    assert persisted == [1]


@pytest.mark.asyncio
async def test_first_request_sets_exit_code(tmp_path):
    core = make_core(tmp_path)
    coordinator = make_coordinator(tmp_path, core)

    coordinator.request(1)
    coordinator.request(0)

    assert core.shutting_down
    assert await coordinator.run() == 1


@pytest.mark.asyncio
async def test_failed_task_triggers_shutdown_with_error_code(tmp_path):
    core = make_core(tmp_path)
    coordinator = make_coordinator(tmp_path, core)

    async def crash():
        raise RuntimeError("loop died")

    coordinator.watch(asyncio.create_task(crash()))

    assert await asyncio.wait_for(coordinator.run(), timeout=2) == 1


@pytest.mark.asyncio
async def test_server_exiting_on_its_own_is_an_error(tmp_path):
    core = make_core(tmp_path)
    coordinator = make_coordinator(tmp_path, core)

    async def serve_and_return():
        return None

    coordinator.attach_server(FakeServer(), asyncio.create_task(serve_and_return()))

    assert await asyncio.wait_for(coordinator.run(), timeout=2) == 1


@pytest.mark.asyncio
async def test_stuck_server_is_forced_to_exit(tmp_path):
    core = make_core(tmp_path)
    coordinator = make_coordinator(tmp_path, core, drain_timeout=0.05)
    server = FakeServer(honour_should_exit=False)
    server_task = asyncio.create_task(server.serve())
    coordinator.attach_server(server, server_task)

    await coordinator.shutdown()

    assert server.force_exit is True
    assert server_task.done()


@pytest.mark.asyncio
async def test_failing_step_does_not_abort_sequence(tmp_path):
    core = make_core(tmp_path, connector=FailingCloseConnector())
    core.liveness.mark_running()
    core.dedup.mark_processed("1")
    coordinator = make_coordinator(tmp_path, core)

    assert await coordinator.shutdown() == 0

    assert json.loads((tmp_path / "sent_ids.json").read_text()) == ["1"]
    assert not (tmp_path / "bot_running.flag").exists()


@pytest.mark.asyncio
async def test_session_folder_defaults_to_connector_session_dir(tmp_path):
    sessions = tmp_path / "sessions"
    sessions.mkdir()
    (sessions / "creds.json").write_text('{"me": "62811"}')
    core = make_core(tmp_path, connector=DryRunConnector(session_dir=sessions))
    coordinator = ShutdownCoordinator(
        core,
        session_backup_dir=tmp_path / "sessions_backup",
        drain_timeout=1.0,
        grace_seconds=0,
    )

    assert await coordinator.shutdown() == 0

    assert coordinator.session_dir == sessions
    assert (tmp_path / "sessions_backup" / "creds.json").read_text() == '{"me": "62811"}'
