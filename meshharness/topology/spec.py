"""
Declarative mesh topology types.

A ``TopologySpec`` names every node of a mesh, the outbound connections each
node makes and the raw daemon configuration fragments ("nodedef") each node
carries. Construction validates the whole graph, so an invalid topology is
rejected before anything touches the filesystem or starts a process.

Document form (YAML or a plain mapping)::

    nodes:
      node1:
        connections: {}
        nodedef:
          - tcp-listener: {cost: 4.5}
      node2:
        connections:
          node1: {index: 0}
        nodedef: []
"""

from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from meshharness.core.errors import ConstructionError
from meshharness.datastructures.type_aliases import (
    BackendIndex,
    ConfigFragment,
    NodeName,
    PeerName,
    TLSProfileName,
)


def fragment_kind(fragment: ConfigFragment) -> str:
    """Return the single key naming a nodedef fragment."""
    (kind,) = fragment.keys()
    return str(kind)


def fragment_body(fragment: ConfigFragment) -> dict[str, Any]:
    body = next(iter(fragment.values()))
    return dict(body) if isinstance(body, Mapping) else {}


@dataclass(frozen=True, slots=True)
class Connection:
    """An outbound link to a peer's listener.

    ``index`` is the position of the listener fragment inside the *peer's*
    nodedef; ``tls`` names a ``tls-client`` profile on the connecting node.
    """

    index: BackendIndex = 0
    tls: TLSProfileName | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"index": self.index}
        if self.tls is not None:
            payload["tls"] = self.tls
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> Connection:
        payload = payload or {}
        tls = payload.get("tls")
        return cls(
            index=int(payload.get("index", 0)),
            tls=str(tls) if tls else None,
        )


@dataclass(frozen=True, slots=True)
class NodeSpec:
    """One node: its outbound connections and raw config fragments."""

    connections: Mapping[PeerName, Connection] = field(default_factory=dict)
    nodedef: tuple[ConfigFragment, ...] = ()

    def fragments(self) -> list[ConfigFragment]:
        """Return a deep copy of the nodedef so callers can mutate freely."""
        return copy.deepcopy(list(self.nodedef))

    def fragments_of_kind(self, kind: str) -> Iterator[tuple[int, dict[str, Any]]]:
        for index, fragment in enumerate(self.nodedef):
            if fragment_kind(fragment) == kind:
                yield index, fragment_body(fragment)

    def to_dict(self) -> dict[str, object]:
        return {
            "connections": {
                peer: connection.to_dict()
                for peer, connection in self.connections.items()
            },
            "nodedef": self.fragments(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> NodeSpec:
        payload = payload or {}
        connections = payload.get("connections") or {}
        nodedef = payload.get("nodedef") or []
        if not isinstance(connections, Mapping):
            raise ConstructionError(f"connections must be a mapping, got {connections!r}")
        if not isinstance(nodedef, Sequence) or isinstance(nodedef, str):
            raise ConstructionError(f"nodedef must be a list, got {nodedef!r}")
        return cls(
            connections={
                str(peer): Connection.from_dict(value)
                for peer, value in connections.items()
            },
            nodedef=tuple(copy.deepcopy(list(nodedef))),
        )


@dataclass(frozen=True, slots=True)
class TopologySpec:
    """Validated mesh description: node name -> NodeSpec."""

    nodes: Mapping[NodeName, NodeSpec]

    def __post_init__(self) -> None:
        if not self.nodes:
            raise ConstructionError("A topology needs at least one node")

        for name, node in self.nodes.items():
            if not name or any(ch.isspace() for ch in name):
                raise ConstructionError(f"Invalid node name {name!r}")

            for position, fragment in enumerate(node.nodedef):
                if not isinstance(fragment, Mapping) or len(fragment) != 1:
                    raise ConstructionError(
                        f"Node {name} nodedef[{position}] must be a single-key "
                        f"mapping, got {fragment!r}"
                    )

            for peer, connection in node.connections.items():
                if peer == name:
                    raise ConstructionError(f"Node {name} cannot connect to itself")
                if peer not in self.nodes:
                    raise ConstructionError(
                        f"Node {name} connects to undeclared peer {peer!r}"
                    )
                if connection.index < 0:
                    raise ConstructionError(
                        f"Node {name} connection to {peer} has negative index "
                        f"{connection.index}"
                    )

    @property
    def node_names(self) -> frozenset[NodeName]:
        return frozenset(self.nodes)

    def edges(self) -> frozenset[frozenset[NodeName]]:
        """Undirected links implied by the declared connections."""
        return frozenset(
            frozenset((name, peer))
            for name, node in self.nodes.items()
            for peer in node.connections
        )

    def expected_peers(self, name: NodeName) -> frozenset[NodeName]:
        """Nodes that ``name`` should see as direct connections.

        A link declared on either side is expected on both sides.
        """
        return frozenset(
            other for edge in self.edges() if name in edge for other in edge - {name}
        )

    def to_dict(self) -> dict[str, object]:
        return {"nodes": {name: node.to_dict() for name, node in self.nodes.items()}}

    @classmethod
    def from_mapping(cls, document: Mapping[str, Any]) -> TopologySpec:
        """Build a topology from ``{nodes: {...}}`` or a bare node mapping."""
        if not isinstance(document, Mapping):
            raise ConstructionError(f"Topology document must be a mapping, got {document!r}")
        nodes = document.get("nodes", document)
        if not isinstance(nodes, Mapping):
            raise ConstructionError(f"nodes must be a mapping, got {nodes!r}")
        return cls(
            nodes={str(name): NodeSpec.from_dict(spec) for name, spec in nodes.items()}
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> TopologySpec:
        with Path(path).open() as handle:
            document = yaml.safe_load(handle)
        return cls.from_mapping(document or {})
