from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from database import Base
import datetime

# Table and column names are read directly by external analytics tooling; keep them stable.


class PortSnapshot(Base):
    """
    One row per listening port per tick.
    """
    __tablename__ = "port_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.datetime.now, nullable=False)
    port = Column(Integer, nullable=False)
    protocol = Column(String, nullable=False)
    process = Column(String, nullable=True)
    pid = Column(Integer, nullable=True)
    container = Column(String, nullable=True)
    container_id = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_port_snapshots_timestamp", "timestamp"),
        Index("idx_port_snapshots_port", "port"),
    )


class TrafficStat(Base):
    __tablename__ = "traffic_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.datetime.now, nullable=False)
    port = Column(Integer, nullable=False)
    bytes_in = Column(Integer, default=0)
    bytes_out = Column(Integer, default=0)
    connections = Column(Integer, default=0)
    packets_in = Column(Integer, default=0)
    packets_out = Column(Integer, default=0)

    __table_args__ = (
        Index("idx_traffic_stats_timestamp", "timestamp"),
        Index("idx_traffic_stats_port", "port"),
    )


class StoredAlert(Base):
    __tablename__ = "security_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.datetime.now, nullable=False)
    type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    message = Column(String, nullable=False)
    port = Column(Integer, nullable=True)
    process = Column(String, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_security_alerts_timestamp", "timestamp"),
        Index("idx_security_alerts_severity", "severity"),
    )


class ConnectionRecord(Base):
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.datetime.now, nullable=False)
    local_ip = Column(String, nullable=False)
    local_port = Column(Integer, nullable=False)
    remote_ip = Column(String, nullable=False)
    remote_port = Column(Integer, nullable=False)
    state = Column(String, nullable=False)
    duration = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_connections_timestamp", "timestamp"),
        Index("idx_connections_ports", "local_port", "remote_port"),
    )


RETAINED_TABLES = (PortSnapshot, TrafficStat, StoredAlert, ConnectionRecord)
