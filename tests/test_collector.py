"""
Tests for socket-table parsing and the cached collector.
"""

from datetime import datetime

import pytest

import collector
from collector import (
    PortCollector,
    detect_protocol,
    extract_address,
    extract_process,
    parse_connection_output,
    parse_port_output,
)
from errors import CommandError
from schemas import ProtocolEnum

NOW = datetime(2026, 1, 1, 12, 0, 0)

SS_OUTPUT = """\
Netid State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process
udp   UNCONN 0      0            0.0.0.0:68         0.0.0.0:*     users:(("dhclient",pid=512,fd=6))
tcp   LISTEN 0      128          0.0.0.0:22         0.0.0.0:*     users:(("sshd",pid=860,fd=3))
tcp   LISTEN 0      511        127.0.0.1:3000       0.0.0.0:*     users:(("node",pid=4242,fd=20))
tcp   LISTEN 0      128             [::]:22            [::]:*     users:(("sshd",pid=860,fd=4))
tcp   LISTEN 0      4096   127.0.0.53%lo:53         0.0.0.0:*     users:(("systemd-resolve",pid=600,fd=14))
"""

NETSTAT_OUTPUT = """\
Active Internet connections (only servers)
Proto Recv-Q Send-Q Local Address           Foreign Address         State       PID/Program name
tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN      860/sshd
tcp6       0      0 :::80                   :::*                    LISTEN      1234/nginx: master
udp        0      0 0.0.0.0:68              0.0.0.0:*                           512/dhclient
"""


def test_parse_ss_output():
    """ss lines yield one record per (port, protocol), sorted by port."""
    records = parse_port_output(SS_OUTPUT, NOW)

    assert [(r.port, r.protocol) for r in records] == [
        (22, ProtocolEnum.TCP),
        (53, ProtocolEnum.TCP),
        (68, ProtocolEnum.UDP),
        (3000, ProtocolEnum.TCP),
    ]

    ssh = records[0]
    assert ssh.address == "0.0.0.0"
    assert ssh.process_name == "sshd"
    assert ssh.pid == 860
    assert ssh.state == "LISTEN"
    assert not ssh.process_inferred

    node = records[3]
    assert node.address == "127.0.0.1"
    assert node.process_name == "node"

    assert records[2].state == "UNCONN"


def test_parse_netstat_output():
    records = parse_port_output(NETSTAT_OUTPUT, NOW)

    by_port = {r.port: r for r in records}
    assert set(by_port) == {22, 68, 80}
    assert by_port[22].process_name == "sshd"
    assert by_port[22].pid == 860
    assert by_port[80].address == "0.0.0.0"
    assert by_port[80].process_name == "nginx"
    assert by_port[68].protocol == ProtocolEnum.UDP
    assert by_port[68].state == "UNCONN"


def test_first_line_wins_on_duplicates():
    output = (
        "tcp LISTEN 0 128 0.0.0.0:8000 0.0.0.0:* users:((\"gunicorn\",pid=10,fd=3))\n"
        "tcp LISTEN 0 128 [::]:8000 [::]:* users:((\"other\",pid=11,fd=3))\n"
    )
    records = parse_port_output(output, NOW)

    assert len(records) == 1
    assert records[0].process_name == "gunicorn"


def test_parsing_is_deterministic():
    """The same input always produces the same records."""
    assert parse_port_output(SS_OUTPUT, NOW) == parse_port_output(SS_OUTPUT, NOW)


def test_out_of_range_ports_are_skipped():
    output = (
        "tcp LISTEN 0 128 0.0.0.0:0 0.0.0.0:*\n"
        "tcp LISTEN 0 128 0.0.0.0:70000 0.0.0.0:*\n"
        "tcp LISTEN 0 128 0.0.0.0:65535 0.0.0.0:*\n"
    )
    records = parse_port_output(output, NOW)

    assert [r.port for r in records] == [65535]
    assert all(1 <= r.port <= 65535 for r in records)


def test_garbage_and_headers_are_ignored():
    output = "Netid State Recv-Q\nnot a socket line\nu_str LISTEN 0 0 /run/x.sock 123\n\n"
    assert parse_port_output(output, NOW) == []


def test_missing_process_falls_back_to_well_known_name():
    records = parse_port_output("tcp LISTEN 0 128 0.0.0.0:5432 0.0.0.0:*\n", NOW)

    assert records[0].process_name == "postgresql"
    assert records[0].process_inferred
    assert records[0].pid is None


def test_unknown_port_without_process():
    records = parse_port_output("tcp LISTEN 0 128 0.0.0.0:41234 0.0.0.0:*\n", NOW)

    assert records[0].process_name == "unknown"
    assert not records[0].process_inferred


def test_detect_protocol():
    assert detect_protocol("tcp6 0 0 :::22 :::* LISTEN") == ProtocolEnum.TCP
    assert detect_protocol("udp UNCONN 0 0 0.0.0.0:68 0.0.0.0:*") == ProtocolEnum.UDP
    assert detect_protocol("u_str LISTEN 0 0 /tmp/sock") is None
    assert detect_protocol("") is None


def test_extract_address_variants():
    assert extract_address("tcp LISTEN 0 0 *:80 *:*") == ("0.0.0.0", 80)
    assert extract_address("tcp LISTEN 0 0 [::1]:631 [::]:*") == ("::1", 631)
    assert extract_address("tcp LISTEN 0 0 192.168.1.5:8443 0.0.0.0:*") == ("192.168.1.5", 8443)
    assert extract_address("tcp LISTEN 0 0 [fe80::1]:9000 [::]:*") == ("fe80::1", 9000)


def test_local_column_beats_loopback_peer():
    line = 'udp ESTAB 0 0 10.0.0.5:40000 127.0.0.53:53 users:(("app",pid=77,fd=3))'

    assert extract_address(line) == ("10.0.0.5", 40000)
    assert [(r.port, r.address) for r in parse_port_output(line)] == [(40000, "10.0.0.5")]


def test_unrecognised_local_column_falls_back_to_line():
    assert extract_address("tcp LISTEN 0 0 *:* 0.0.0.0:8080") == ("0.0.0.0", 8080)


def test_extract_process_variants():
    assert extract_process('users:(("sshd",pid=860,fd=3))') == (860, "sshd")
    assert extract_process("LISTEN 860/sshd") == (860, "sshd")
    assert extract_process("tcp LISTEN 0 0 0.0.0.0:22 0.0.0.0:*") == (None, None)


def test_parse_connection_output():
    output = """\
Recv-Q Send-Q Local Address:Port   Peer Address:Port
0      0      192.168.1.5:22       203.0.113.9:51234
0      0      [::ffff:10.0.0.2]:443 [::ffff:10.0.0.3]:60000
tcp        0      0 10.0.0.2:5432     10.0.0.8:40000     TIME_WAIT
tcp        0      0 10.0.0.2:5432     10.0.0.9:40001     ESTABLISHED
"""
    connections = parse_connection_output(output, NOW)

    assert [(c.local_port, c.remote_ip, c.remote_port) for c in connections] == [
        (22, "203.0.113.9", 51234),
        (443, "::ffff:10.0.0.3", 60000),
        (5432, "10.0.0.9", 40001),
    ]
    assert all(c.state == "ESTABLISHED" for c in connections)


@pytest.mark.asyncio
async def test_collector_falls_back_to_secondary_command(monkeypatch):
    """When ss fails, netstat output is used."""
    calls = []

    async def fake_run(command, timeout):
        calls.append(command[0])
        if command[0] == "ss":
            raise CommandError(command, "command not found")
        return NETSTAT_OUTPUT

    monkeypatch.setattr(collector, "run_command", fake_run)
    port_collector = PortCollector(resolve_processes=False)

    records = await port_collector.acquire()

    assert calls == ["ss", "netstat"]
    assert {r.port for r in records} == {22, 68, 80}


@pytest.mark.asyncio
async def test_collector_serves_cache_when_all_commands_fail(monkeypatch):
    clock = [0.0]
    outputs = [SS_OUTPUT]

    async def fake_run(command, timeout):
        if outputs:
            return outputs.pop()
        raise CommandError(command, "exit status 1")

    monkeypatch.setattr(collector, "run_command", fake_run)
    port_collector = PortCollector(cache_ttl=5.0, clock=lambda: clock[0], resolve_processes=False)

    first = await port_collector.acquire()
    clock[0] = 10.0
    second = await port_collector.acquire()

    assert first
    assert second == first


@pytest.mark.asyncio
async def test_collector_cache_ttl(monkeypatch):
    clock = [0.0]
    runs = []

    async def fake_run(command, timeout):
        runs.append(command)
        return SS_OUTPUT

    monkeypatch.setattr(collector, "run_command", fake_run)
    port_collector = PortCollector(cache_ttl=5.0, clock=lambda: clock[0], resolve_processes=False)

    await port_collector.acquire()
    clock[0] = 3.0
    await port_collector.acquire()
    assert len(runs) == 1

    clock[0] = 6.0
    await port_collector.acquire()
    assert len(runs) == 2
