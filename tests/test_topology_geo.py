from fakes import fake_geo_lookup
from geo import country_risk, geo_stats, is_private_ip, load_lookup, null_lookup
from schemas import Connection, EnrichedPortRecord, ProtocolEnum
from topology import build_topology


def test_topology_nodes_and_edges():
    ports = [
        EnrichedPortRecord(port=22, protocol=ProtocolEnum.TCP, process_name="sshd"),
        EnrichedPortRecord(port=5353, protocol=ProtocolEnum.UDP, process_name="avahi", container="mdns"),
    ]
    connections = [
        Connection(local_ip="10.0.0.2", local_port=22, remote_ip="203.0.113.9", remote_port=51234),
        Connection(local_ip="10.0.0.2", local_port=40000, remote_ip="10.0.0.3", remote_port=41000),
    ]

    topology = build_topology(ports, connections)

    assert [n.id for n in topology.nodes] == ["22-tcp", "5353-udp"]
    assert topology.nodes[0].label == "sshd :22"
    assert topology.nodes[1].container == "mdns"
    assert len(topology.edges) == 1
    edge = topology.edges[0].model_dump(by_alias=True)
    assert edge == {"from": "22-tcp", "to": "51234-tcp", "label": "ESTABLISHED"}


def test_is_private_ip():
    assert is_private_ip("192.168.1.1")
    assert is_private_ip("10.0.0.1")
    assert is_private_ip("127.0.0.1")
    assert is_private_ip("::1")
    assert is_private_ip("invalid_ip")
    assert not is_private_ip("8.8.8.8")


def test_country_risk():
    assert country_risk("RU") == "high"
    assert country_risk("VN") == "medium"
    assert country_risk("US") == "low"
    assert country_risk(None) == "low"


def test_geo_stats_groups_external_connections():
    table = {
        "8.8.8.8": {"country": "US", "city": "Mountain View"},
        "77.88.8.8": {"country": "RU", "city": "Moscow"},
    }
    connections = [
        Connection(local_ip="10.0.0.2", local_port=22, remote_ip=ip, remote_port=1)
        for ip in ("8.8.8.8", "8.8.8.8", "77.88.8.8", "192.168.1.20", "1.1.1.1")
    ]

    stats = geo_stats(connections, table.get)

    assert stats["external_connections"] == 4
    assert stats["unresolved"] == 1
    assert stats["top_countries"][0] == {"country": "US", "count": 2, "risk": "low"}
    assert stats["top_cities"][0] == {"city": "Mountain View, US", "count": 2}
    assert stats["risk_levels"] == {"high": 1, "medium": 0, "low": 2}


def test_geo_stats_without_locator():
    connections = [Connection(local_ip="10.0.0.2", local_port=22, remote_ip="8.8.8.8", remote_port=1)]

    stats = geo_stats(connections)

    assert stats["top_countries"] == []
    assert stats["unresolved"] == 1


def test_load_lookup_from_import_string():
    lookup = load_lookup("fakes:fake_geo_lookup")

    assert lookup is fake_geo_lookup
    stats = geo_stats([Connection(local_ip="10.0.0.2", local_port=22, remote_ip="77.88.8.8", remote_port=1)], lookup)
    assert stats["top_countries"] == [{"country": "RU", "count": 1, "risk": "high"}]


def test_load_lookup_falls_back_to_null(caplog):
    assert load_lookup(None) is null_lookup
    assert load_lookup("fakes:missing_lookup") is null_lookup
    assert load_lookup("fakes:not_a_lookup") is null_lookup
    assert "not callable" in caplog.text
