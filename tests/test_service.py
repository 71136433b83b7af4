"""
Tests for the update tick, push ordering and shutdown of MonitorService.
"""

import asyncio
import json
from datetime import datetime, timedelta

import pytest

import store
from broadcaster import make_message
from fakes import FakeCollector, FakeContainers, FakeSocket, FakeTraffic
from models import PortSnapshot, StoredAlert, TrafficStat
from schemas import ContainerBinding, PortRecord, ProtocolEnum, TrafficSample, TrafficSnapshot
from service import MonitorService

PORTS = [
    PortRecord(port=22, protocol=ProtocolEnum.TCP, process_name="sshd", pid=860, user="root"),
    PortRecord(port=23, protocol=ProtocolEnum.TCP, process_name="telnetd", pid=999, user="root"),
    PortRecord(port=8080, protocol=ProtocolEnum.TCP, process_name="docker-proxy", pid=1200, user="root"),
]


@pytest.fixture
def make_service(settings, session_factory, analyzer):
    """Factory building a service around fake sources."""
    def factory(collector=None, containers=None, traffic=None, persistence=True, **overrides):
        return MonitorService(
            settings.model_copy(update=overrides),
            session_factory=session_factory if persistence else None,
            collector=collector or FakeCollector(PORTS),
            containers=containers or FakeContainers(),
            traffic=traffic or FakeTraffic(),
            analyzer=analyzer,
        )
    return factory


def messages(socket):
    return [json.loads(payload) for payload in socket.sent]


@pytest.mark.asyncio
async def test_tick_merges_sources(make_service):
    bindings = [ContainerBinding(host_port=8080, container_id="abc123", container_name="web")]
    snapshot = TrafficSnapshot(ports=[TrafficSample(port=22, bytes_in=10), TrafficSample(port=51000, bytes_in=5)])
    service = make_service(containers=FakeContainers(bindings), traffic=FakeTraffic(snapshot))

    result = await service.tick()

    assert [p.port for p in result.ports] == [22, 23, 8080]
    assert result.ports[2].container == "web"
    assert [s.port for s in result.traffic.ports] == [22]
    assert result.alerts
    assert service.last_snapshot is result
    assert service.last_tick == result.timestamp


@pytest.mark.asyncio
async def test_tick_tolerates_failing_sources(make_service):
    """Every source failing still produces a (empty) broadcast."""
    service = make_service(
        collector=FakeCollector(error=RuntimeError("ss exploded")),
        containers=FakeContainers(error=RuntimeError("docker down")),
        traffic=FakeTraffic(error=RuntimeError("no ss")),
    )
    socket = FakeSocket()
    session = service.broadcaster.register(socket)
    service.broadcaster.open(session)

    result = await service.tick()

    assert result.ports == []
    assert result.traffic == TrafficSnapshot()
    assert messages(socket)[0]["type"] == "port-update"


@pytest.mark.asyncio
async def test_container_failure_only_drops_enrichment(make_service):
    service = make_service(containers=FakeContainers(error=RuntimeError("docker down")))

    result = await service.tick()

    assert [p.port for p in result.ports] == [22, 23, 8080]
    assert all(p.container is None for p in result.ports)


@pytest.mark.asyncio
async def test_initial_data_precedes_port_update(make_service):
    service = make_service()
    socket = FakeSocket()
    session = service.broadcaster.register(socket)

    # A tick while the session is still connecting must not reach it
    await service.tick()
    assert socket.sent == []

    initial = await service.initial_data()
    await service.broadcaster.send(session, make_message("initial-data", initial))
    service.broadcaster.open(session)
    await service.tick()

    sent = messages(socket)
    assert [m["type"] for m in sent] == ["initial-data", "port-update"]
    assert set(sent[0]["data"]) == {"ports", "alerts"}
    assert set(sent[1]["data"]) == {"ports", "alerts", "traffic", "timestamp"}


@pytest.mark.asyncio
async def test_initial_data_does_not_feed_scan_detector(make_service):
    ports = [PortRecord(port=40000 + i, protocol=ProtocolEnum.TCP) for i in range(12)]
    service = make_service(collector=FakeCollector(ports))

    await service.initial_data()

    assert len(service.analyzer.detector) == 0


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(make_service):
    gate = asyncio.Event()

    class SlowCollector(FakeCollector):
        async def acquire(self):
            await gate.wait()
            return await super().acquire()

    collector = SlowCollector(PORTS)
    service = make_service(collector=collector)

    first = asyncio.create_task(service.tick())
    await asyncio.sleep(0)
    second = await service.tick()
    gate.set()
    first_result = await first

    assert second is None
    assert first_result is not None
    assert collector.calls == 1


@pytest.mark.asyncio
async def test_tick_persists_snapshot_and_only_new_alerts(make_service, db):
    snapshot = TrafficSnapshot(ports=[TrafficSample(port=22, bytes_in=10)])
    service = make_service(traffic=FakeTraffic(snapshot))

    first = await service.tick()
    await service.tick()
    await service.persist.drain()

    assert db.query(PortSnapshot).count() == 2 * len(PORTS)
    assert db.query(TrafficStat).count() == 2
    assert db.query(StoredAlert).count() == len(first.alerts)


@pytest.mark.asyncio
async def test_tick_without_persistence(make_service):
    service = make_service(persistence=False)

    result = await service.tick()

    assert result is not None
    assert not service.persistence_enabled


@pytest.mark.asyncio
async def test_slow_tick_is_logged(make_service, caplog):
    service = make_service(slow_tick_warning=0.0)

    await service.tick()

    assert "Slow update" in caplog.text


@pytest.mark.asyncio
async def test_trigger_runs_a_tick(make_service):
    collector = FakeCollector(PORTS)
    service = make_service(collector=collector)

    service.trigger()
    for _ in range(10):
        await asyncio.sleep(0.01)
        if service.last_snapshot:
            break

    assert collector.calls == 1
    assert service.last_snapshot is not None


@pytest.mark.asyncio
async def test_start_and_shutdown(make_service):
    service = make_service()
    socket = FakeSocket()
    service.broadcaster.open(service.broadcaster.register(socket))

    service.start()
    assert service.scheduler.running
    assert service.scheduler.get_job("tick") is not None
    assert service.scheduler.get_job("heartbeat") is not None
    assert service.scheduler.get_job("retention") is not None

    assert await service.shutdown() is True
    assert socket.closed
    assert len(service.broadcaster) == 0


@pytest.mark.asyncio
async def test_shutdown_deadline(make_service, caplog):
    service = make_service(shutdown_deadline=0.05)

    async def stuck():
        await asyncio.sleep(10)

    service._flush = stuck

    assert await service.shutdown() is False
    assert "Forced shutdown" in caplog.text


@pytest.mark.asyncio
async def test_scheduled_cleanup_goes_through_queue(make_service, db):
    store.save_port_snapshot(db, PORTS, now=datetime.now() - timedelta(days=45))
    service = make_service(retention_days=30)

    await service.schedule_cleanup()
    await service.persist.drain()

    assert db.query(PortSnapshot).count() == 0


@pytest.mark.asyncio
async def test_heartbeat_keeps_silent_subscribers(make_service):
    """Subscribers only ever receive initial-data and port-update, and never have to reply."""
    service = make_service()
    socket = FakeSocket()
    service.broadcaster.open(service.broadcaster.register(socket))

    await service.heartbeat()
    await service.heartbeat()
    await service.tick()

    assert len(service.broadcaster) == 1
    assert [m["type"] for m in messages(socket)] == ["port-update"]


@pytest.mark.asyncio
async def test_heartbeat_applies_configured_idle_timeout(make_service):
    service = make_service(idle_timeout=30.0)
    session = service.broadcaster.register(FakeSocket())
    service.broadcaster.open(session)
    session.last_ack_at = datetime.now() - timedelta(seconds=120)

    await service.heartbeat()

    assert len(service.broadcaster) == 0
