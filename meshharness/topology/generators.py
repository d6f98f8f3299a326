"""Builders for the standard mesh shapes used across the functional tests."""

from __future__ import annotations

import random

from meshharness.datastructures.type_aliases import NodeName
from meshharness.topology.materialize import LISTENER_PEER_KINDS
from meshharness.topology.spec import Connection, NodeSpec, TopologySpec


def _check_listener(listener: str) -> None:
    if listener not in LISTENER_PEER_KINDS:
        raise ValueError(
            f"Unknown listener kind {listener!r}; expected one of "
            f"{sorted(LISTENER_PEER_KINDS)}"
        )


def _build(
    names: list[NodeName], links: dict[NodeName, list[NodeName]], listener: str
) -> TopologySpec:
    """Every node gets one listener at nodedef[0]; links dial index 0."""
    return TopologySpec(
        nodes={
            name: NodeSpec(
                connections={peer: Connection(index=0) for peer in links.get(name, [])},
                nodedef=({listener: {}},),
            )
            for name in names
        }
    )


def node_names(count: int, prefix: str = "node") -> list[NodeName]:
    return [f"{prefix}{i}" for i in range(1, count + 1)]


def linear_topology(count: int, listener: str = "tcp-listener") -> TopologySpec:
    """node(n) connects to node(n-1)."""
    _check_listener(listener)
    if count < 1:
        raise ValueError("count must be at least 1")
    names = node_names(count)
    links = {names[i]: [names[i - 1]] for i in range(1, count)}
    return _build(names, links, listener)


def flat_topology(count: int, listener: str = "tcp-listener") -> TopologySpec:
    """Every node connects to a single hub (the first node)."""
    _check_listener(listener)
    if count < 1:
        raise ValueError("count must be at least 1")
    names = node_names(count)
    links = {name: [names[0]] for name in names[1:]}
    return _build(names, links, listener)


def tree_topology(
    depth: int, fanout: int = 2, listener: str = "tcp-listener"
) -> TopologySpec:
    """A complete tree; each child connects to its parent."""
    _check_listener(listener)
    if depth < 1 or fanout < 1:
        raise ValueError("depth and fanout must be at least 1")

    names: list[NodeName] = ["node1"]
    links: dict[NodeName, list[NodeName]] = {}
    level = ["node1"]
    for _ in range(depth - 1):
        next_level = []
        for parent in level:
            for _ in range(fanout):
                child = f"node{len(names) + 1}"
                names.append(child)
                links[child] = [parent]
                next_level.append(child)
        level = next_level
    return _build(names, links, listener)


def random_topology(
    count: int,
    listener: str = "tcp-listener",
    *,
    extra_edges: int = 0,
    seed: int | None = None,
) -> TopologySpec:
    """A random spanning tree plus ``extra_edges`` random links.

    The spanning tree guarantees the mesh is connected for any seed.
    """
    _check_listener(listener)
    if count < 1:
        raise ValueError("count must be at least 1")
    rng = random.Random(seed)
    names = node_names(count)
    links: dict[NodeName, list[NodeName]] = {}
    linked: set[frozenset[NodeName]] = set()

    for i in range(1, count):
        parent = names[rng.randrange(i)]
        links.setdefault(names[i], []).append(parent)
        linked.add(frozenset((names[i], parent)))

    max_edges = count * (count - 1) // 2
    wanted = min(max_edges, len(linked) + max(0, extra_edges))
    while len(linked) < wanted:
        a, b = rng.sample(names, 2)
        if frozenset((a, b)) in linked:
            continue
        links.setdefault(a, []).append(b)
        linked.add(frozenset((a, b)))
    return _build(names, links, listener)
