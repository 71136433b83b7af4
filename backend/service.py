import asyncio
import functools
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session as DBSession

import store
from anomaly import PortScanDetector
from broadcaster import Broadcaster, make_message
from collector import PortCollector
from config import Settings
from containers import DockerBindings, correlate
from schemas import EnrichedPortRecord, SecurityAlert, Snapshot, TrafficSnapshot
from security import SecurityAnalyzer, WhitelistStore
from traffic import TrafficMonitor

logger = logging.getLogger(__name__)

AlertKey = Tuple[str, Optional[int]]


def alert_key(alert: SecurityAlert) -> AlertKey:
    return alert.type.value, alert.port


class MonitorService:
    """
    Owns the acquisition sources, the analyzer, the push sessions and the
    persistence queue, and drives them from APScheduler interval jobs.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Optional[Callable[[], DBSession]] = None,
        collector: Optional[PortCollector] = None,
        containers: Optional[DockerBindings] = None,
        traffic: Optional[TrafficMonitor] = None,
        analyzer: Optional[SecurityAnalyzer] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.collector = collector or PortCollector(
            port_commands=settings.port_commands,
            connection_commands=settings.connection_commands,
            timeout=settings.command_timeout,
            cache_ttl=settings.cache_ttl,
        )
        self.containers = containers or DockerBindings(settings.docker_binary, settings.docker_timeout)
        self.traffic = traffic or TrafficMonitor(timeout=settings.command_timeout)
        self.analyzer = analyzer or SecurityAnalyzer(
            WhitelistStore(settings.whitelist_path),
            PortScanDetector(
                threshold=settings.scan_threshold,
                recency=settings.scan_recency_seconds,
                horizon=settings.scan_horizon_seconds,
            ),
        )
        self.broadcaster = broadcaster or Broadcaster()
        # No session factory means the database is unusable: broadcast only
        self.persist = store.PersistQueue(session_factory, settings.persist_queue_size) if session_factory else None
        self.scheduler = AsyncIOScheduler()

        self.started_at = time.monotonic()
        self.last_snapshot: Optional[Snapshot] = None
        self.last_tick: Optional[datetime] = None
        self._tick_running = False
        self._previous_alerts: Set[AlertKey] = set()

    @property
    def persistence_enabled(self) -> bool:
        return self.persist is not None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def _guarded(self, name: str, source: Awaitable[Any], default: Any) -> Any:
        try:
            return await source
        except Exception as e:
            logger.error(f"{name} failed: {e}")
            return default

    async def current_ports(self) -> List[EnrichedPortRecord]:
        ports, bindings = await asyncio.gather(
            self._guarded("Port acquisition", self.collector.acquire(), []),
            self._guarded("Container lookup", self.containers.list_bindings(), []),
        )
        return correlate(ports, bindings)

    async def initial_data(self) -> Dict[str, Any]:
        """
        `{ports, alerts}` for a new subscriber. Scan detection is skipped so that
        only the tick advances the detector.
        """
        ports = await self.current_ports()
        return {"ports": ports, "alerts": self.analyzer.analyze(ports, detect_scan=False)}

    def new_alerts(self, alerts: List[SecurityAlert]) -> List[SecurityAlert]:
        current = {alert_key(a) for a in alerts}
        fresh = [a for a in alerts if alert_key(a) not in self._previous_alerts]
        self._previous_alerts = current
        return fresh

    def _enqueue_persist(self, snapshot: Snapshot, alerts: List[SecurityAlert]) -> None:
        if not self.persistence_enabled:
            return
        self.persist.submit(functools.partial(
            store.persist_tick,
            ports=snapshot.ports,
            samples=snapshot.traffic.ports,
            connections=snapshot.traffic.connections,
            alerts=alerts,
            now=snapshot.timestamp,
        ))

    async def tick(self) -> Optional[Snapshot]:
        if self._tick_running:
            logger.debug("Previous update still running, skipping tick")
            return None

        self._tick_running = True
        started = time.monotonic()
        try:
            ports, bindings, traffic = await asyncio.gather(
                self._guarded("Port acquisition", self.collector.acquire(), []),
                self._guarded("Container lookup", self.containers.list_bindings(), []),
                self._guarded("Traffic monitoring", self.traffic.current(), TrafficSnapshot()),
            )

            enriched = correlate(ports, bindings)
            listening = {p.port for p in enriched}
            traffic = traffic.model_copy(update={"ports": [s for s in traffic.ports if s.port in listening]})
            alerts = self.analyzer.analyze(enriched)

            snapshot = Snapshot(ports=enriched, alerts=alerts, traffic=traffic, timestamp=datetime.now())
            self._enqueue_persist(snapshot, self.new_alerts(alerts))
            self.last_snapshot = snapshot
            self.last_tick = snapshot.timestamp

            await self.broadcaster.broadcast(make_message("port-update", snapshot))
            return snapshot
        except Exception:
            logger.exception("Error during update tick")
            return None
        finally:
            self._tick_running = False
            elapsed = time.monotonic() - started
            if elapsed > self.settings.slow_tick_warning:
                logger.warning(f"Slow update: {elapsed:.2f}s")

    async def heartbeat(self) -> None:
        await self.broadcaster.heartbeat(self.settings.idle_timeout)

    async def schedule_cleanup(self) -> None:
        if self.persistence_enabled:
            self.persist.submit(functools.partial(store.cleanup, days_to_keep=self.settings.retention_days))

    def start(self) -> None:
        if self.persistence_enabled:
            self.persist.start()

        # Immediate first tick, then the fixed interval
        self.scheduler.add_job(self.tick, 'date', run_date=datetime.now() + timedelta(seconds=1), id="initial-tick")
        self.scheduler.add_job(self.tick, 'interval', seconds=self.settings.update_interval,
                               id="tick", max_instances=1, coalesce=True)
        self.scheduler.add_job(self.heartbeat, 'interval', seconds=self.settings.heartbeat_interval,
                               id="heartbeat", max_instances=1, coalesce=True)
        self.scheduler.add_job(self.schedule_cleanup, 'interval', hours=24, id="retention", coalesce=True)
        self.scheduler.start()
        logger.info(f"Monitoring started, updating every {self.settings.update_interval}s")

    def trigger(self) -> None:
        """Run one tick as soon as possible, outside the interval schedule."""
        if self.scheduler.running:
            self.scheduler.add_job(self.tick, 'date', run_date=datetime.now())
        else:
            asyncio.get_running_loop().create_task(self.tick())

    def _cleanup(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return store.cleanup(db, self.settings.retention_days)
        finally:
            db.close()

    async def _flush(self) -> None:
        if not self.persistence_enabled:
            return
        await self.persist.drain()
        await self.persist.stop()
        await asyncio.to_thread(self._cleanup)

    async def shutdown(self) -> bool:
        """
        Stop the jobs, close every session, then flush and clean up the store under
        the shutdown deadline. Returns False when the deadline was exceeded.
        """
        logger.info("Shutting down gracefully...")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.broadcaster.close_all()

        try:
            await asyncio.wait_for(self._flush(), timeout=self.settings.shutdown_deadline)
        except asyncio.TimeoutError:
            logger.error("Forced shutdown")
            return False
        except Exception:
            logger.exception("Error during shutdown")
        logger.info("Shutdown complete")
        return True
