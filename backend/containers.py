import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from errors import CommandError, ContainerRuntimeError
from collector import run_command
from schemas import ContainerBinding, EnrichedPortRecord, PortRecord, ProtocolEnum

logger = logging.getLogger(__name__)


def correlate(ports: Sequence[PortRecord], bindings: Optional[Sequence[ContainerBinding]]) -> List[EnrichedPortRecord]:
    """
    Attach container identity to each port from the first binding publishing the
    same host port. Matching is on the port number only.
    """
    by_port: Dict[int, ContainerBinding] = {}
    for binding in bindings or []:
        by_port.setdefault(binding.host_port, binding)

    enriched = []
    for port in ports:
        binding = by_port.get(port.port)
        enriched.append(EnrichedPortRecord(**{
            **port.model_dump(),
            "container": binding.container_name if binding else None,
            "container_id": binding.container_id if binding else None,
        }))
    return enriched


def parse_inspect(documents: Sequence[Dict[str, Any]]) -> List[ContainerBinding]:
    """
    Extract host port bindings from `docker inspect` output.

    NetworkSettings.Ports looks like:
        {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}, {"HostIp": "::", "HostPort": "8080"}],
         "9000/tcp": null}
    """
    bindings = []
    for doc in documents:
        container_id = (doc.get("Id") or "")[:12]
        name = (doc.get("Name") or "").lstrip("/")
        state = (doc.get("State") or {}).get("Status", "unknown")
        image = (doc.get("Config") or {}).get("Image")
        ports = (doc.get("NetworkSettings") or {}).get("Ports") or {}

        seen = set()
        for container_port, host_bindings in ports.items():
            if not host_bindings:
                continue
            port_part, _, proto_part = container_port.partition("/")
            protocol = ProtocolEnum.UDP if proto_part == "udp" else ProtocolEnum.TCP
            for host_binding in host_bindings:
                host_port = host_binding.get("HostPort")
                if not host_port:
                    continue
                try:
                    host_port = int(host_port)
                    target = int(port_part)
                except ValueError:
                    continue
                # IPv4 and IPv6 publish the same binding twice
                if (host_port, protocol) in seen:
                    continue
                seen.add((host_port, protocol))
                bindings.append(ContainerBinding(
                    host_port=host_port,
                    protocol=protocol,
                    container_id=container_id,
                    container_name=name,
                    container_state=state,
                    image=image,
                    container_port=target,
                ))
    return bindings


class DockerBindings:
    """
    Reads published port bindings of running containers through the docker CLI.
    Read-only: no lifecycle operations.
    """

    def __init__(self, docker_binary: str = "docker", timeout: float = 5.0):
        self.docker_binary = docker_binary
        self.timeout = timeout
        self.available: Optional[bool] = None

    async def _docker(self, *args: str) -> str:
        try:
            return await run_command([self.docker_binary, *args], self.timeout)
        except CommandError as e:
            raise ContainerRuntimeError(str(e)) from e

    async def inspect_running(self) -> List[Dict[str, Any]]:
        ids = (await self._docker("ps", "-q", "--no-trunc")).split()
        if not ids:
            return []
        raw = await self._docker("inspect", *ids)
        try:
            documents = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ContainerRuntimeError(f"docker inspect returned invalid JSON: {e}") from e
        if not isinstance(documents, list):
            raise ContainerRuntimeError("docker inspect returned an unexpected document")
        return documents

    async def list_bindings(self) -> List[ContainerBinding]:
        try:
            documents = await self.inspect_running()
        except ContainerRuntimeError as e:
            if self.available is not False:
                logger.warning(f"Docker integration disabled: {e}")
            self.available = False
            return []

        if self.available is not True:
            logger.info("Docker integration connected")
        self.available = True
        return parse_inspect(documents)
