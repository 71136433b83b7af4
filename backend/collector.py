import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

import psutil

from errors import CommandError
from knowledge import identify_port_service
from schemas import Connection, PortRecord, ProtocolEnum

logger = logging.getLogger(__name__)

HEADER_RE = re.compile(r"\b(Proto|Active|Netid|Recv-Q)\b")

_ZONE = r"(?:%[\w.\-@]+)?"
_END = r"(?!\S)"

# Ordered (name, pattern, normalizer) table; first pattern that matches wins.
# ss:      tcp   LISTEN 0  128   0.0.0.0:22   0.0.0.0:*   users:(("sshd",pid=860,fd=3))
#          udp   UNCONN 0  0     [::]:5353    [::]:*
# netstat: tcp   0      0  :::22               :::*        LISTEN      860/sshd
ADDRESS_PATTERNS: List[Tuple[str, "re.Pattern", Callable[[str], str]]] = [
    ("wildcard",
     re.compile(rf"(?<!\S)(0\.0\.0\.0|\*|\[::\]|::){_ZONE}:(\d+){_END}"),
     lambda addr: "0.0.0.0"),
    ("loopback",
     re.compile(rf"(?<!\S)(127(?:\.\d{{1,3}}){{3}}|\[::1\]|::1|localhost){_ZONE}:(\d+){_END}"),
     lambda addr: addr.strip("[]")),
    ("ipv4",
     re.compile(rf"(?<!\S)((?:\d{{1,3}}\.){{3}}\d{{1,3}}){_ZONE}:(\d+){_END}"),
     lambda addr: addr),
    ("ipv6_bracketed",
     re.compile(rf"(?<!\S)\[([0-9A-Fa-f:.]+){_ZONE}\]{_ZONE}:(\d+){_END}"),
     lambda addr: addr),
    ("ipv6_bare",
     re.compile(rf"(?<!\S)([0-9A-Fa-f]*:[0-9A-Fa-f:.]*?){_ZONE}:(\d+){_END}"),
     lambda addr: addr),
]


# Local address precedes the peer in both grammars
LOCAL_COLUMN_RE = re.compile(r"(?<!\S)\S+:(?:\d+|\*)(?!\S)")


def _ss_users(m) -> Tuple[Optional[int], str]:
    return int(m.group(2)), m.group(1)


def _netstat_pid_name(m) -> Tuple[Optional[int], str]:
    return int(m.group(1)), m.group(2).rstrip(":")


def _name_only(m) -> Tuple[Optional[int], str]:
    return None, m.group(1)


# Ordered (pattern, extractor) table covering both grammars
PROCESS_PATTERNS = [
    (re.compile(r'users:\(\("([^"]+)",pid=(\d+)'), _ss_users),      # users:(("sshd",pid=860,fd=3))
    (re.compile(r"(?<!\S)(\d+)/(\S+)"), _netstat_pid_name),           # 860/sshd
    (re.compile(r'"([^"]+)",pid=(\d+)'), _ss_users),                 # ("sshd",pid=860 without users: prefix
    (re.compile(r'users:\(\("([^"]+)"'), _name_only),                # users:(("sshd",fd=3))
]

STATE_RE = re.compile(
    r"(?<!\S)(LISTEN|UNCONN|ESTAB(?:LISHED)?|SYN[-_](?:SENT|RECV)|FIN[-_]WAIT[-_]?[12]|"
    r"TIME[-_]WAIT|CLOSE[-_]WAIT|LAST[-_]ACK|CLOSING|CLOSED?)(?!\S)"
)

DEFAULT_STATES = {ProtocolEnum.TCP: "LISTEN", ProtocolEnum.UDP: "UNCONN"}

# local-endpoint  peer-endpoint  as printed by `ss -tan` / `netstat -tan`
_ENDPOINT = rf"(\[[0-9A-Fa-f:.]+{_ZONE}\]|[0-9A-Fa-f:.]+?|\*){_ZONE}:(\d+)"
CONNECTION_RE = re.compile(rf"(?<!\S){_ENDPOINT}\s+{_ENDPOINT}{_END}")


def detect_protocol(line: str) -> Optional[ProtocolEnum]:
    parts = line.split()
    if not parts:
        return None
    # tcp, tcp6, udp, udp6 ... u_str and friends are skipped
    column = parts[0].lower()
    if "tcp" in column:
        return ProtocolEnum.TCP
    if "udp" in column:
        return ProtocolEnum.UDP
    return None


def _search_address(text: str):
    for _name, pattern, normalize in ADDRESS_PATTERNS:
        m = pattern.search(text)
        if m:
            return m, normalize
    return None


def extract_address(line: str) -> Optional[Tuple[str, int]]:
    """
    Bind address and port of a socket-table line. The local-address column (the
    first endpoint-shaped token) is tried first so a peer column cannot win;
    the whole line is searched only when that column is not recognised.
    """
    column = LOCAL_COLUMN_RE.search(line)
    found = _search_address(column.group(0)) if column else None
    found = found or _search_address(line)
    if found is None:
        return None

    m, normalize = found
    port = int(m.group(2))
    if not 1 <= port <= 65535:
        return None
    return normalize(m.group(1)), port


def extract_process(line: str) -> Tuple[Optional[int], Optional[str]]:
    for pattern, extractor in PROCESS_PATTERNS:
        m = pattern.search(line)
        if m:
            return extractor(m)
    return None, None


def parse_port_line(line: str, now: Optional[datetime] = None) -> Optional[PortRecord]:
    if not line.strip() or HEADER_RE.search(line):
        return None

    protocol = detect_protocol(line)
    if protocol is None:
        return None

    address = extract_address(line)
    if address is None:
        return None
    bind_address, port = address

    pid, process_name = extract_process(line)
    inferred = False
    if not process_name:
        process_name = identify_port_service(port)
        inferred = process_name is not None

    state_match = STATE_RE.search(line)
    state = state_match.group(1) if state_match else DEFAULT_STATES[protocol]

    return PortRecord(
        port=port,
        protocol=protocol,
        address=bind_address,
        process_name=process_name or "unknown",
        pid=pid,
        state=state,
        process_inferred=inferred,
        timestamp=now or datetime.now(),
    )


def parse_port_output(output: str, now: Optional[datetime] = None) -> List[PortRecord]:
    """
    Parse `ss -tulpn` or `netstat -tulpn` text into port records, unique per
    (port, protocol) with the first line winning, sorted by port.
    """
    now = now or datetime.now()
    seen = {}

    for line in output.splitlines():
        try:
            record = parse_port_line(line, now)
        except ValueError as e:
            logger.debug(f"Failed to parse line {line!r}: {e}")
            continue
        if record is None:
            continue
        key = (record.port, record.protocol)
        if key in seen:
            continue
        seen[key] = record

    return sorted(seen.values(), key=lambda r: (r.port, r.protocol.value))


def parse_connection_output(output: str, now: Optional[datetime] = None) -> List[Connection]:
    """
    Parse established TCP connections from `ss -tan state established` or `netstat -tan`.
    Lines carrying any other socket state are skipped.
    """
    now = now or datetime.now()
    connections = []

    for line in output.splitlines():
        if not line.strip() or HEADER_RE.search(line):
            continue

        state_match = STATE_RE.search(line)
        if state_match and not state_match.group(1).startswith("ESTAB"):
            continue

        m = CONNECTION_RE.search(line)
        if not m:
            continue

        try:
            local_port, remote_port = int(m.group(2)), int(m.group(4))
        except ValueError:
            continue

        connections.append(Connection(
            local_ip=m.group(1).strip("[]"),
            local_port=local_port,
            remote_ip=m.group(3).strip("[]"),
            remote_port=remote_port,
            state="ESTABLISHED",
            timestamp=now,
        ))

    return connections


def get_process_details(pid: int) -> Tuple[Optional[str], str]:
    """Owner and command line of a pid, from /proc via psutil."""
    try:
        proc = psutil.Process(pid)
        return proc.username(), " ".join(proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # Process might have died or we are not root
        return None, ""


def with_process_details(records: Sequence[PortRecord]) -> List[PortRecord]:
    enriched = []
    for record in records:
        if record.pid:
            user, cmdline = get_process_details(record.pid)
            record = record.model_copy(update={"user": user, "cmdline": cmdline})
        enriched.append(record)
    return enriched


async def run_command(command: Sequence[str], timeout: float) -> str:
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError:
        raise CommandError(command, "command not found")
    except PermissionError as e:
        raise CommandError(command, str(e))

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandError(command, f"timed out after {timeout}s")

    if proc.returncode != 0:
        raise CommandError(command, f"exit status {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


class PortCollector:
    """
    Reads the socket table with the first working command (ss, then netstat) and
    caches the result for `cache_ttl` seconds. Never raises: on total failure the
    previous result is returned.
    """

    def __init__(
        self,
        port_commands: Sequence[Sequence[str]] = (("ss", "-tulpn"), ("netstat", "-tulpn")),
        connection_commands: Sequence[Sequence[str]] = (
            ("ss", "-tan", "state", "established"), ("netstat", "-tan")),
        timeout: float = 5.0,
        cache_ttl: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        resolve_processes: bool = True,
    ):
        self.port_commands = [list(c) for c in port_commands]
        self.connection_commands = [list(c) for c in connection_commands]
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.clock = clock
        self.resolve_processes = resolve_processes

        self.cached_ports: List[PortRecord] = []
        self.cached_connections: List[Connection] = []
        self.last_update: Optional[float] = None

    async def _run_first(self, commands) -> Optional[str]:
        for command in commands:
            try:
                output = await run_command(command, self.timeout)
            except CommandError as e:
                logger.warning(f"Socket table command failed: {e}")
                continue
            logger.debug(f"Using {command[0]} output")
            return output
        return None

    def _cache_fresh(self) -> bool:
        if not self.cached_ports or self.last_update is None:
            return False
        return self.clock() - self.last_update < self.cache_ttl

    async def acquire(self) -> List[PortRecord]:
        if self._cache_fresh():
            return self.cached_ports

        try:
            output = await self._run_first(self.port_commands)
            if output is None:
                logger.error("Failed to get ports with every configured command, serving cached data")
                return self.cached_ports

            ports = parse_port_output(output)
            if self.resolve_processes:
                ports = await asyncio.to_thread(with_process_details, ports)
        except Exception as e:
            logger.error(f"Error getting active ports: {e}")
            return self.cached_ports

        self.cached_ports = ports
        self.last_update = self.clock()
        return ports

    async def acquire_connections(self) -> List[Connection]:
        try:
            output = await self._run_first(self.connection_commands)
            if output is None:
                logger.error("Failed to get connections, serving cached data")
                return self.cached_connections
            connections = parse_connection_output(output)
        except Exception as e:
            logger.error(f"Error getting active connections: {e}")
            return self.cached_connections

        self.cached_connections = connections
        return connections

    def clear_cache(self) -> None:
        self.cached_ports = []
        self.cached_connections = []
        self.last_update = None
