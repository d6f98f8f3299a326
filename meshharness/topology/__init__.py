"""Topology description, validation, generation and materialization."""

from .certs import generate_cert, generate_cert_with_ca
from .generators import flat_topology, linear_topology, random_topology, tree_topology
from .materialize import (
    ListenerBinding,
    MaterializedMesh,
    NodeConfig,
    materialize,
    validate_topology,
)
from .spec import Connection, NodeSpec, TopologySpec

__all__ = [
    "Connection",
    "ListenerBinding",
    "MaterializedMesh",
    "NodeConfig",
    "NodeSpec",
    "TopologySpec",
    "flat_topology",
    "generate_cert",
    "generate_cert_with_ca",
    "linear_topology",
    "materialize",
    "random_topology",
    "tree_topology",
    "validate_topology",
]
