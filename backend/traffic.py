import logging
import re
import time
from datetime import datetime
from typing import Callable, Collection, Dict, List, Optional, Sequence, Tuple

import psutil

from collector import CONNECTION_RE, run_command
from errors import CommandError
from schemas import Connection, InterfaceStats, TrafficSample, TrafficSnapshot

logger = logging.getLogger(__name__)

INFO_FIELDS_RE = re.compile(r"\b(bytes_acked|bytes_received|segs_out|segs_in):(\d+)")


def parse_ss_info(output: str, now: Optional[datetime] = None) -> Tuple[List[TrafficSample], List[Connection]]:
    """
    Aggregate `ss -tin state established` output per local port.

    Each connection is printed on one line, followed by an indented line of TCP info:
        0      0      192.168.1.5:22      192.168.1.10:51234
        	 cubic wscale:7,7 rto:204 ... bytes_acked:5120 bytes_received:2048 segs_out:40 segs_in:38 ...
    """
    now = now or datetime.now()
    samples: Dict[int, TrafficSample] = {}
    connections: List[Connection] = []
    current: Optional[TrafficSample] = None

    for line in output.splitlines():
        if not line.strip():
            continue

        if line[:1].isspace():
            if current is None:
                continue
            fields = {k: int(v) for k, v in INFO_FIELDS_RE.findall(line)}
            current.bytes_out += fields.get("bytes_acked", 0)
            current.bytes_in += fields.get("bytes_received", 0)
            current.packets_out += fields.get("segs_out", 0)
            current.packets_in += fields.get("segs_in", 0)
            continue

        m = CONNECTION_RE.search(line)
        if not m:
            current = None
            continue

        local_port = int(m.group(2))
        current = samples.get(local_port)
        if current is None:
            current = samples[local_port] = TrafficSample(port=local_port, timestamp=now)
        current.connections += 1

        connections.append(Connection(
            local_ip=m.group(1).strip("[]"),
            local_port=local_port,
            remote_ip=m.group(3).strip("[]"),
            remote_port=int(m.group(4)),
            state="ESTABLISHED",
            timestamp=now,
        ))

    return sorted(samples.values(), key=lambda s: s.port), connections


class TrafficMonitor:
    """
    Interface counters (psutil) plus per-port byte/segment totals of established
    TCP connections (ss -tin).
    """

    def __init__(
        self,
        command: Sequence[str] = ("ss", "-tin", "state", "established"),
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        include_loopback: bool = False,
    ):
        self.command = list(command)
        self.timeout = timeout
        self.clock = clock
        self.include_loopback = include_loopback
        self._previous: Dict[str, Tuple[float, InterfaceStats]] = {}
        self.latest: TrafficSnapshot = TrafficSnapshot()

    def interface_stats(self) -> List[InterfaceStats]:
        try:
            counters = psutil.net_io_counters(pernic=True)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not read interface counters: {e}")
            return []

        now = self.clock()
        stats = []
        for name, c in sorted(counters.items()):
            if not self.include_loopback and name.startswith("lo"):
                continue
            current = InterfaceStats(
                interface=name,
                rx_bytes=c.bytes_recv,
                tx_bytes=c.bytes_sent,
                rx_packets=c.packets_recv,
                tx_packets=c.packets_sent,
            )
            previous = self._previous.get(name)
            if previous:
                elapsed = now - previous[0]
                if elapsed > 0:
                    before = previous[1]
                    current.rx_rate = max(0.0, (current.rx_bytes - before.rx_bytes) / elapsed)
                    current.tx_rate = max(0.0, (current.tx_bytes - before.tx_bytes) / elapsed)
                    current.rx_packet_rate = max(0.0, (current.rx_packets - before.rx_packets) / elapsed)
                    current.tx_packet_rate = max(0.0, (current.tx_packets - before.tx_packets) / elapsed)
            self._previous[name] = (now, current)
            stats.append(current)
        return stats

    async def port_traffic(self) -> Tuple[List[TrafficSample], List[Connection]]:
        try:
            output = await run_command(self.command, self.timeout)
        except CommandError as e:
            logger.debug(f"Port traffic unavailable: {e}")
            return [], []
        return parse_ss_info(output)

    async def current(self, listening_ports: Optional[Collection[int]] = None) -> TrafficSnapshot:
        samples, connections = await self.port_traffic()
        if listening_ports is not None:
            samples = [s for s in samples if s.port in listening_ports]

        self.latest = TrafficSnapshot(
            interfaces=self.interface_stats(),
            ports=samples,
            connections=connections,
        )
        return self.latest
