import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import distinct, func, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import ConnectionRecord, PortSnapshot, RETAINED_TABLES, StoredAlert, TrafficStat
from schemas import Connection, EnrichedPortRecord, PortRecord, SecurityAlert, TrafficSample

logger = logging.getLogger(__name__)

PERIOD_HOURS = {"1h": 1, "24h": 24, "7d": 168, "30d": 720}
DEFAULT_PERIOD_HOURS = 24
HOUR_BUCKET = "%Y-%m-%d %H:00:00"


def period_hours(period: Optional[str]) -> int:
    return PERIOD_HOURS.get(period, DEFAULT_PERIOD_HOURS)


def _since(period: Optional[str], now: Optional[datetime]) -> datetime:
    return (now or datetime.now()) - timedelta(hours=period_hours(period))


def _bucket_time(bucket: str) -> datetime:
    return datetime.strptime(bucket, "%Y-%m-%d %H:%M:%S")


# --- Writes ---

def save_port_snapshot(db: Session, ports: Sequence[PortRecord], now: Optional[datetime] = None) -> int:
    if not ports:
        return 0
    now = now or datetime.now()
    rows = [
        {
            "timestamp": now,
            "port": p.port,
            "protocol": p.protocol.value,
            "process": p.process_name,
            "pid": p.pid,
            "container": getattr(p, "container", None),
            "container_id": getattr(p, "container_id", None),
        }
        for p in ports
    ]
    db.execute(insert(PortSnapshot), rows)
    db.commit()
    return len(rows)


def save_traffic_stats(db: Session, samples: Sequence[TrafficSample], now: Optional[datetime] = None) -> int:
    if not samples:
        return 0
    now = now or datetime.now()
    rows = [
        {
            "timestamp": now,
            "port": s.port,
            "bytes_in": s.bytes_in,
            "bytes_out": s.bytes_out,
            "connections": s.connections,
            "packets_in": s.packets_in,
            "packets_out": s.packets_out,
        }
        for s in samples
    ]
    db.execute(insert(TrafficStat), rows)
    db.commit()
    return len(rows)


def save_security_alerts(db: Session, alerts: Sequence[SecurityAlert], now: Optional[datetime] = None) -> int:
    if not alerts:
        return 0
    now = now or datetime.now()
    rows = [
        {
            "timestamp": now,
            "type": a.type.value,
            "severity": a.severity.value,
            "message": a.message,
            "port": a.port,
            "process": a.process,
            "resolved": False,
        }
        for a in alerts
    ]
    db.execute(insert(StoredAlert), rows)
    db.commit()
    return len(rows)


def save_connections(db: Session, connections: Sequence[Connection], now: Optional[datetime] = None) -> int:
    if not connections:
        return 0
    now = now or datetime.now()
    rows = [
        {
            "timestamp": now,
            "local_ip": c.local_ip,
            "local_port": c.local_port,
            "remote_ip": c.remote_ip,
            "remote_port": c.remote_port,
            "state": c.state,
            "duration": None,
        }
        for c in connections
    ]
    db.execute(insert(ConnectionRecord), rows)
    db.commit()
    return len(rows)


def resolve_alert(db: Session, alert_id: int) -> bool:
    alert = db.query(StoredAlert).filter(StoredAlert.id == alert_id).first()
    if not alert:
        return False
    alert.resolved = True
    db.commit()
    return True


def cleanup(db: Session, days_to_keep: int = 30, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Delete rows strictly older than `days_to_keep` days from every table, then VACUUM.
    A failing table is logged and skipped.
    """
    cutoff = (now or datetime.now()) - timedelta(days=days_to_keep)
    deleted: Dict[str, int] = {}

    for model in RETAINED_TABLES:
        try:
            count = db.query(model).filter(model.timestamp < cutoff).delete(synchronize_session=False)
            db.commit()
            deleted[model.__tablename__] = count
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Cleanup of {model.__tablename__} failed: {e}")
            deleted[model.__tablename__] = 0

    try:
        # VACUUM cannot run inside a transaction
        with db.get_bind().connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql("VACUUM")
    except SQLAlchemyError as e:
        logger.error(f"VACUUM failed: {e}")

    logger.info(f"Cleanup removed rows older than {days_to_keep} days: {deleted}")
    return deleted


# --- Reads ---

def get_port_history(db: Session, period: str = "24h", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rows = (
        db.query(
            PortSnapshot.port,
            PortSnapshot.protocol,
            PortSnapshot.process,
            func.max(PortSnapshot.container).label("container"),
            func.count(PortSnapshot.id).label("occurrences"),
            func.min(PortSnapshot.timestamp).label("first_seen"),
            func.max(PortSnapshot.timestamp).label("last_seen"),
        )
        .filter(PortSnapshot.timestamp > _since(period, now))
        .group_by(PortSnapshot.port, PortSnapshot.protocol, PortSnapshot.process)
        .order_by(PortSnapshot.port, PortSnapshot.protocol)
        .all()
    )
    return [dict(r._mapping) for r in rows]


def get_traffic_history(db: Session, port: int, period: str = "24h",
                        now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    bucket = func.strftime(HOUR_BUCKET, TrafficStat.timestamp).label("bucket")
    rows = (
        db.query(
            bucket,
            func.avg(TrafficStat.bytes_in).label("avg_bytes_in"),
            func.avg(TrafficStat.bytes_out).label("avg_bytes_out"),
            func.max(TrafficStat.connections).label("max_connections"),
        )
        .filter(TrafficStat.port == port, TrafficStat.timestamp > _since(period, now))
        .group_by(bucket)
        .order_by(bucket)
        .all()
    )
    return [
        {
            "timestamp": _bucket_time(r.bucket),
            "avg_bytes_in": float(r.avg_bytes_in or 0),
            "avg_bytes_out": float(r.avg_bytes_out or 0),
            "max_connections": int(r.max_connections or 0),
        }
        for r in rows
    ]


def get_security_alerts(db: Session, resolved: bool = False, limit: int = 100) -> List[StoredAlert]:
    return (
        db.query(StoredAlert)
        .filter(StoredAlert.resolved == resolved)
        .order_by(StoredAlert.timestamp.desc(), StoredAlert.id.desc())
        .limit(limit)
        .all()
    )


def get_connection_stats(db: Session, period: str = "24h", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rows = (
        db.query(
            ConnectionRecord.remote_ip,
            func.count(ConnectionRecord.id).label("connection_count"),
            func.group_concat(distinct(ConnectionRecord.local_port)).label("local_ports"),
            func.max(ConnectionRecord.timestamp).label("last_seen"),
        )
        .filter(ConnectionRecord.timestamp > _since(period, now))
        .group_by(ConnectionRecord.remote_ip)
        .order_by(func.count(ConnectionRecord.id).desc())
        .all()
    )
    return [
        {
            "remote_ip": r.remote_ip,
            "connection_count": r.connection_count,
            "local_ports": sorted(int(p) for p in str(r.local_ports or "").split(",") if p),
            "last_seen": r.last_seen,
        }
        for r in rows
    ]


def get_recent_connections(db: Session, period: str = "24h", now: Optional[datetime] = None,
                           limit: int = 1000) -> List[ConnectionRecord]:
    return (
        db.query(ConnectionRecord)
        .filter(ConnectionRecord.timestamp > _since(period, now))
        .order_by(ConnectionRecord.timestamp.desc())
        .limit(limit)
        .all()
    )


def get_traffic_analytics(db: Session, period: str = "24h", now: Optional[datetime] = None) -> Dict[str, Any]:
    bucket = func.strftime(HOUR_BUCKET, TrafficStat.timestamp).label("bucket")
    rows = (
        db.query(
            bucket,
            func.sum(TrafficStat.bytes_in).label("total_in"),
            func.sum(TrafficStat.bytes_out).label("total_out"),
            func.count(distinct(TrafficStat.port)).label("active_ports"),
        )
        .filter(TrafficStat.timestamp > _since(period, now))
        .group_by(bucket)
        .order_by(bucket)
        .all()
    )

    timeline = [
        {
            "timestamp": _bucket_time(r.bucket),
            "total_in": int(r.total_in or 0),
            "total_out": int(r.total_out or 0),
            "active_ports": int(r.active_ports or 0),
        }
        for r in rows
    ]
    avg_ports = sum(t["active_ports"] for t in timeline) / len(timeline) if timeline else 0.0

    return {
        "timeline": timeline,
        "summary": {
            "total_traffic_in": sum(t["total_in"] for t in timeline),
            "total_traffic_out": sum(t["total_out"] for t in timeline),
            "avg_active_ports": round(avg_ports, 1),
            "period": period if period in PERIOD_HOURS else "24h",
        },
    }


def get_port_trends(db: Session, period: str = "24h", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    since = _since(period, now)
    # Every row of one tick shares its timestamp, so distinct timestamps count ticks
    total_snapshots = (
        db.query(func.count(distinct(PortSnapshot.timestamp)))
        .filter(PortSnapshot.timestamp > since)
        .scalar()
    ) or 0

    rows = (
        db.query(
            PortSnapshot.port,
            PortSnapshot.protocol,
            PortSnapshot.process,
            func.count(PortSnapshot.id).label("frequency"),
            func.max(PortSnapshot.timestamp).label("last_seen"),
        )
        .filter(PortSnapshot.timestamp > since)
        .group_by(PortSnapshot.port, PortSnapshot.protocol, PortSnapshot.process)
        .all()
    )

    trends = [
        {
            "port": r.port,
            "protocol": r.protocol,
            "process": r.process,
            "frequency": r.frequency,
            "activity_ratio": round(100.0 * r.frequency / total_snapshots, 1) if total_snapshots else 0.0,
            "last_seen": r.last_seen,
        }
        for r in rows
    ]
    trends.sort(key=lambda t: (-t["frequency"], t["port"], t["protocol"]))
    return trends


def persist_tick(db: Session, ports: Sequence[EnrichedPortRecord], samples: Sequence[TrafficSample],
                 connections: Sequence[Connection], alerts: Sequence[SecurityAlert],
                 now: Optional[datetime] = None) -> None:
    now = now or datetime.now()
    save_port_snapshot(db, ports, now)
    save_traffic_stats(db, samples, now)
    save_connections(db, connections, now)
    save_security_alerts(db, alerts, now)


PersistJob = Callable[[Session], Any]


class PersistQueue:
    """
    Bounded queue of database jobs run one at a time in a worker thread.
    When full, the oldest pending job is dropped to make room.
    """

    def __init__(self, session_factory: Callable[[], Session], maxsize: int = 100):
        self.session_factory = session_factory
        self.maxsize = maxsize
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._worker: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return self.queue.qsize()

    def submit(self, job: PersistJob) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.queue.task_done()
            self.dropped += 1
            logger.warning(f"Persist queue full ({self.maxsize}), dropped oldest job")
        self.queue.put_nowait(job)

    def run_job(self, job: PersistJob) -> None:
        db = self.session_factory()
        try:
            job(db)
        except Exception as e:
            logger.error(f"Persist job failed: {e}")
            db.rollback()
        finally:
            db.close()

    async def _work(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await asyncio.to_thread(self.run_job, job)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work())

    async def drain(self) -> None:
        if self._worker is None or self._worker.done():
            # Nothing consumes the queue; run what is left inline
            while not self.queue.empty():
                job = self.queue.get_nowait()
                self.queue.task_done()
                await asyncio.to_thread(self.run_job, job)
            return
        await self.queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
