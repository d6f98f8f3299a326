"""Turn a TopologySpec into the concrete config each daemon consumes.

Materialization happens in two passes. The first is pure validation: every
connection must point at a listener fragment of its peer, and every TLS name
must resolve to a profile on the right node. Only when the whole topology is
valid does the second pass allocate listener ports and build configs, so an
invalid topology never leaves ports claimed or directories half-written.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from loguru import logger

from meshharness.core.config import HarnessSettings
from meshharness.core.errors import ConstructionError, LaunchError
from meshharness.core.port_allocator import PortAllocator, get_port_allocator
from meshharness.core.workspace import MeshWorkspace
from meshharness.datastructures.type_aliases import (
    ConfigFragment,
    NodeName,
    PortNumber,
    TLSProfileName,
)
from meshharness.topology.spec import TopologySpec, fragment_body, fragment_kind

LISTENER_PEER_KINDS = {
    "tcp-listener": "tcp-peer",
    "udp-listener": "udp-peer",
    "ws-listener": "ws-peer",
}
PEER_HOST = "localhost"
CONTROL_SERVICE_NAME = "control"
CONTROL_SOCKET_NAME = "controlsock"
CONFIG_FILE_NAME = "receptor.yaml"
LOG_FILE_NAME = "daemon.log"


@dataclass(frozen=True, slots=True)
class ListenerBinding:
    """A listener fragment with its resolved port."""

    node: NodeName
    index: int
    kind: str
    port: PortNumber
    tls: TLSProfileName | None = None

    def peer_stanza(self, tls: TLSProfileName | None) -> ConfigFragment:
        """Outbound stanza a peer uses to dial this listener."""
        if self.kind == "ws-listener":
            scheme = "wss" if self.tls else "ws"
            address = f"{scheme}://{PEER_HOST}:{self.port}"
        else:
            address = f"{PEER_HOST}:{self.port}"
        body: dict[str, object] = {"address": address}
        if tls is not None:
            body["tls"] = tls
        return {LISTENER_PEER_KINDS[self.kind]: body}


@dataclass(slots=True)
class NodeConfig:
    """Everything needed to start one node."""

    name: NodeName
    working_dir: Path
    fragments: list[ConfigFragment]
    listeners: tuple[ListenerBinding, ...] = ()

    @property
    def control_socket(self) -> Path:
        return self.working_dir / CONTROL_SOCKET_NAME

    @property
    def config_path(self) -> Path:
        return self.working_dir / CONFIG_FILE_NAME

    @property
    def log_path(self) -> Path:
        return self.working_dir / LOG_FILE_NAME

    @property
    def listener_ports(self) -> frozenset[PortNumber]:
        return frozenset(binding.port for binding in self.listeners)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.fragments, default_flow_style=False, sort_keys=False)

    def write(self) -> Path:
        self.config_path.write_text(self.to_yaml())
        return self.config_path


@dataclass(slots=True)
class MaterializedMesh:
    """Per-node configs plus the ports claimed on their behalf."""

    topology: TopologySpec
    workspace: MeshWorkspace
    nodes: dict[NodeName, NodeConfig]
    allocated_ports: list[PortNumber] = field(default_factory=list)
    allocator: PortAllocator | None = None

    def listener_ports(self) -> frozenset[PortNumber]:
        return frozenset(
            port for config in self.nodes.values() for port in config.listener_ports
        )

    def release_ports(self) -> None:
        if self.allocator is None:
            return
        for port in self.allocated_ports:
            self.allocator.release_port(port)
        self.allocated_ports.clear()


def _profile_names(topology: TopologySpec, name: NodeName, kind: str) -> set[str]:
    return {
        str(body["name"])
        for _, body in topology.nodes[name].fragments_of_kind(kind)
        if body.get("name")
    }


def _listener_fragments(
    topology: TopologySpec, name: NodeName
) -> Iterator[tuple[int, str, dict]]:
    for index, fragment in enumerate(topology.nodes[name].nodedef):
        kind = fragment_kind(fragment)
        if kind in LISTENER_PEER_KINDS:
            yield index, kind, fragment_body(fragment)


def validate_topology(topology: TopologySpec) -> None:
    """Check listener indexes and TLS profile references.

    Raises:
        ConstructionError: on the first invalid reference found.
    """
    for name in topology.nodes:
        servers = _profile_names(topology, name, "tls-server")
        for index, kind, body in _listener_fragments(topology, name):
            tls = body.get("tls")
            if tls and tls not in servers:
                raise ConstructionError(
                    f"Node {name} {kind} (nodedef[{index}]) uses undefined "
                    f"tls-server profile {tls!r}"
                )

    for name, node in topology.nodes.items():
        clients = _profile_names(topology, name, "tls-client")
        for peer, connection in node.connections.items():
            peer_nodedef = topology.nodes[peer].nodedef
            if connection.index >= len(peer_nodedef):
                raise ConstructionError(
                    f"Node {name} connects to {peer} index {connection.index}, "
                    f"but {peer} only has {len(peer_nodedef)} nodedef entries"
                )
            kind = fragment_kind(peer_nodedef[connection.index])
            if kind not in LISTENER_PEER_KINDS:
                raise ConstructionError(
                    f"Node {name} connects to {peer} index {connection.index}, "
                    f"which is {kind!r}, not a listener"
                )
            if connection.tls is not None and connection.tls not in clients:
                raise ConstructionError(
                    f"Node {name} connection to {peer} uses undefined "
                    f"tls-client profile {connection.tls!r}"
                )


def _bind_listeners(
    topology: TopologySpec,
    fragments: Mapping[NodeName, list[ConfigFragment]],
    allocator: PortAllocator,
    category: str,
    allocated: list[PortNumber],
) -> dict[tuple[NodeName, int], ListenerBinding]:
    bindings: dict[tuple[NodeName, int], ListenerBinding] = {}
    for name in topology.nodes:
        for index, kind, body in _listener_fragments(topology, name):
            port = body.get("port")
            if port is None:
                port = allocator.allocate_port(category)
                allocated.append(port)
                fragments[name][index][kind] = {**body, "port": port}
            bindings[(name, index)] = ListenerBinding(
                node=name,
                index=index,
                kind=kind,
                port=int(port),
                tls=body.get("tls"),
            )
    return bindings


def materialize(
    topology: TopologySpec,
    workspace: MeshWorkspace,
    settings: HarnessSettings | None = None,
    *,
    allocator: PortAllocator | None = None,
) -> MaterializedMesh:
    """Build the daemon config for every node of ``topology``.

    Each node's config is, in order: its identity, log level and control
    service; one outbound stanza per declared connection; then its own
    nodedef fragments with any missing listener ports filled in.
    """
    settings = settings or HarnessSettings()
    allocator = allocator or get_port_allocator()
    validate_topology(topology)

    fragments = {name: node.fragments() for name, node in topology.nodes.items()}
    allocated: list[PortNumber] = []
    try:
        bindings = _bind_listeners(
            topology, fragments, allocator, settings.port_category, allocated
        )
    except RuntimeError as e:
        for port in allocated:
            allocator.release_port(port)
        raise LaunchError(f"Could not allocate listener ports: {e}") from e

    configs: dict[NodeName, NodeConfig] = {}
    for name, node in topology.nodes.items():
        working_dir = workspace.node_dir(name)
        peers = [
            bindings[(peer, connection.index)].peer_stanza(connection.tls)
            for peer, connection in node.connections.items()
        ]
        header: list[ConfigFragment] = [
            {"node": {"id": name}},
            {"log-level": settings.daemon_log_level},
            {
                "control-service": {
                    "service": CONTROL_SERVICE_NAME,
                    "filename": str(working_dir / CONTROL_SOCKET_NAME),
                }
            },
        ]
        configs[name] = NodeConfig(
            name=name,
            working_dir=working_dir,
            fragments=header + peers + fragments[name],
            listeners=tuple(
                binding for (owner, _), binding in bindings.items() if owner == name
            ),
        )

    logger.debug(
        "Materialized {} nodes with {} listener ports in {}",
        len(configs),
        len(bindings),
        workspace.root,
    )
    return MaterializedMesh(
        topology=topology,
        workspace=workspace,
        nodes=configs,
        allocated_ports=allocated,
        allocator=allocator,
    )
