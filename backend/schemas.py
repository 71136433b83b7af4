from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Generic, TypeVar, Annotated
from datetime import datetime
from enum import Enum

T = TypeVar("T")


class ProtocolEnum(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class SeverityEnum(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertTypeEnum(str, Enum):
    DANGEROUS_PORT = "dangerous_port"
    UNKNOWN_PORT = "unknown_port"
    HIGH_RISK_SERVICE = "high_risk_service"
    DEV_SERVICE_EXPOSED = "dev_service_exposed"
    PROCESS_MISMATCH = "process_mismatch"
    INFO = "info"
    SUSPICIOUS_PROCESS = "suspicious_process"
    PRIVILEGE_VIOLATION = "privilege_violation"
    PORT_SCAN = "port_scan"


class PeriodEnum(str, Enum):
    HOUR = "1h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"


class PortRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = Field(ge=1, le=65535)
    protocol: ProtocolEnum
    address: str = "0.0.0.0"
    process_name: str = "unknown"
    pid: Optional[int] = None
    state: str = ""
    user: Optional[str] = None
    cmdline: str = ""
    # True when process_name was guessed from the well-known port table
    process_inferred: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class ContainerBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_port: int
    protocol: ProtocolEnum = ProtocolEnum.TCP
    container_id: str
    container_name: str
    container_state: str = "running"
    image: Optional[str] = None
    container_port: Optional[int] = None


class EnrichedPortRecord(PortRecord):
    container: Optional[str] = None
    container_id: Optional[str] = None


class PortInfo(BaseModel):
    service: str
    description: str
    protocol: str
    risk: str
    category: str
    recommendations: List[str] = []
    common_processes: List[str] = []
    is_known: bool = False
    is_dangerous: bool = False
    is_development: bool = False
    is_database: bool = False
    process_match: bool = False


class SecurityAlert(BaseModel):
    type: AlertTypeEnum
    severity: SeverityEnum
    message: str
    port: Optional[int] = None
    process: str = "unknown"
    address: str = "unknown"
    service: Optional[str] = None
    category: Optional[str] = None
    recommendations: List[str] = []
    process_match: bool = False
    port_info: Optional[PortInfo] = None
    # Only populated for port_scan alerts
    ports: List[int] = []
    timestamp: datetime = Field(default_factory=datetime.now)


class Whitelist(BaseModel):
    ports: List[int] = []
    processes: List[str] = []


class WhitelistRequest(BaseModel):
    port: Annotated[int, Field(strict=True, ge=1, le=65535)]
    process: Optional[Annotated[str, Field(strict=True, min_length=1)]] = None


class TrafficSample(BaseModel):
    port: int
    bytes_in: int = 0
    bytes_out: int = 0
    connections: int = 0
    packets_in: int = 0
    packets_out: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)


class InterfaceStats(BaseModel):
    interface: str
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    rx_rate: float = 0.0
    tx_rate: float = 0.0
    rx_packet_rate: float = 0.0
    tx_packet_rate: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.now)


class Connection(BaseModel):
    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    state: str = "ESTABLISHED"
    timestamp: datetime = Field(default_factory=datetime.now)


class TrafficSnapshot(BaseModel):
    interfaces: List[InterfaceStats] = []
    ports: List[TrafficSample] = []
    connections: List[Connection] = []


class Snapshot(BaseModel):
    """
    One tick's merged view, broadcast as `port-update`.
    """
    ports: List[EnrichedPortRecord] = []
    alerts: List[SecurityAlert] = []
    traffic: TrafficSnapshot = Field(default_factory=TrafficSnapshot)
    timestamp: datetime = Field(default_factory=datetime.now)


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    error: Optional[str] = None


# History / analytics rows (read side of the store)

class PortHistoryRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    port: int
    protocol: str
    process: Optional[str]
    container: Optional[str]
    occurrences: int
    first_seen: datetime
    last_seen: datetime


class TrafficHistoryRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    avg_bytes_in: float
    avg_bytes_out: float
    max_connections: int


class StoredAlertDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    type: str
    severity: str
    message: str
    port: Optional[int]
    process: Optional[str]
    resolved: bool


class TopologyNode(BaseModel):
    id: str
    label: str
    type: str
    container: Optional[str] = None


class TopologyEdge(BaseModel):
    source: str = Field(serialization_alias="from")
    to: str
    label: str


class Topology(BaseModel):
    nodes: List[TopologyNode] = []
    edges: List[TopologyEdge] = []


class HealthDTO(BaseModel):
    status: str
    uptime: float
    clients: int
    last_tick: Optional[datetime]
    persistence: bool
