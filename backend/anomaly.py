import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from schemas import AlertTypeEnum, PortRecord, SecurityAlert, SeverityEnum

logger = logging.getLogger(__name__)

PORT_SCAN_RECOMMENDATIONS = [
    "Check which processes opened the new ports",
    "Look for unauthorized software or compromised services",
    "Review firewall rules and recent system changes",
]


class PortScanDetector:
    """
    Burst detector for newly opened ports.

    Each observation marks a (port, protocol) key as new if it was never seen or
    was last seen more than `recency` seconds ago. When one observation contains
    at least `threshold` new keys, a single port_scan alert is raised. Keys idle
    for longer than `horizon` seconds are forgotten.

    The count is per observation, not over wall-clock time: new ports spread
    across several ticks below the threshold never raise an alert.
    """

    def __init__(
        self,
        threshold: int = 10,
        recency: float = 60.0,
        horizon: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.recency = recency
        self.horizon = horizon
        self.clock = clock
        self.last_seen: Dict[Tuple[int, str], float] = {}

    def __len__(self) -> int:
        return len(self.last_seen)

    def _evict(self, now: float) -> None:
        stale = [key for key, ts in self.last_seen.items() if now - ts > self.horizon]
        for key in stale:
            del self.last_seen[key]

    def observe(self, records: Iterable[PortRecord], now: Optional[float] = None) -> Optional[SecurityAlert]:
        now = self.clock() if now is None else now
        new_ports: List[int] = []

        for record in records:
            key = (record.port, record.protocol.value)
            previous = self.last_seen.get(key)
            if previous is None or now - previous > self.recency:
                new_ports.append(record.port)
            self.last_seen[key] = now

        self._evict(now)

        if len(new_ports) < self.threshold:
            return None

        logger.warning(f"Possible port scan: {len(new_ports)} new ports in one observation")
        return SecurityAlert(
            type=AlertTypeEnum.PORT_SCAN,
            severity=SeverityEnum.CRITICAL,
            message=f"Possible port scanning detected: {len(new_ports)} new ports opened",
            ports=new_ports,
            recommendations=list(PORT_SCAN_RECOMMENDATIONS),
        )

    def reset(self) -> None:
        self.last_seen.clear()
