from typing import Dict, Sequence

from schemas import Connection, PortRecord, Topology, TopologyEdge, TopologyNode


def node_id(port: int, protocol: str) -> str:
    return f"{port}-{protocol}"


def build_topology(ports: Sequence[PortRecord], connections: Sequence[Connection]) -> Topology:
    """
    Nodes are listening ports keyed `port-protocol`. Each active connection becomes
    an edge from its local port to its remote port when either end is a known node.
    """
    nodes: Dict[str, TopologyNode] = {}
    for p in ports:
        key = node_id(p.port, p.protocol.value)
        nodes[key] = TopologyNode(
            id=key,
            label=f"{p.process_name} :{p.port}",
            type=p.protocol.value,
            container=getattr(p, "container", None),
        )

    edges = []
    for c in connections:
        source = node_id(c.local_port, "tcp")
        target = node_id(c.remote_port, "tcp")
        if source in nodes or target in nodes:
            edges.append(TopologyEdge(source=source, to=target, label=c.state))

    return Topology(nodes=list(nodes.values()), edges=edges)
