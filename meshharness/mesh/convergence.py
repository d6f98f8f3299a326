"""Decide whether every node agrees on the shape of the mesh.

The checker only ever observes: it asks each node for ``status`` and compares
the answers with what the topology implies. Unreachable nodes and garbled
responses are recorded as problems, so "not converged yet" is the only
outcome a caller has to handle while polling.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, TypeAlias

from loguru import logger

from meshharness.client.control import ControlSession
from meshharness.client.models import NodeStatus
from meshharness.core.errors import (
    CommandRejectedError,
    ControlConnectionError,
    ProtocolError,
    SessionConsumedError,
)
from meshharness.datastructures.type_aliases import (
    CostTable,
    DurationSeconds,
    NodeName,
)
from meshharness.topology.spec import TopologySpec

if TYPE_CHECKING:  # pragma: no cover - typing only
    from meshharness.mesh.runner import MeshHandle

NodeObservation: TypeAlias = NodeStatus | str


@dataclass(frozen=True, slots=True)
class ConvergenceReport:
    """Outcome of one observation round across the whole mesh."""

    problems: tuple[str, ...] = ()
    statuses: Mapping[NodeName, NodeObservation] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return not self.problems

    def __bool__(self) -> bool:
        return self.converged

    def __repr__(self) -> str:
        if self.converged:
            return "ConvergenceReport(converged)"
        return f"ConvergenceReport(problems={list(self.problems)!r})"


def _normalize_costs(costs: CostTable) -> dict[str, dict[str, float]]:
    return {
        node: {peer: float(cost) for peer, cost in peers.items()}
        for node, peers in costs.items()
    }


def _connection_problems(
    topology: TopologySpec, name: NodeName, status: NodeStatus
) -> list[str]:
    problems = []
    if status.node_id != name:
        problems.append(f"{name}: reports node id {status.node_id!r}")
    expected = topology.expected_peers(name)
    observed = status.connected_nodes()
    if missing := expected - observed:
        problems.append(f"{name}: missing connections to {sorted(missing)}")
    if unexpected := observed - expected:
        problems.append(f"{name}: unexpected connections to {sorted(unexpected)}")
    return problems


def _discovery_problems(
    topology: TopologySpec, name: NodeName, status: NodeStatus
) -> list[str]:
    problems = []
    everyone = frozenset(topology.node_names)
    discovered = status.discovered_nodes()
    if discovered is not None and discovered != everyone:
        if missing := everyone - discovered:
            problems.append(f"{name}: has not discovered {sorted(missing)}")
        if unknown := discovered - everyone:
            problems.append(f"{name}: knows unconfigured nodes {sorted(unknown)}")
    if status.routing_table is not None:
        unrouted = everyone - {name} - set(status.routing_table)
        if unrouted:
            problems.append(f"{name}: no route to {sorted(unrouted)}")
    return problems


def evaluate(
    topology: TopologySpec, statuses: Mapping[NodeName, NodeObservation]
) -> ConvergenceReport:
    """Compare per-node observations with the topology.

    ``statuses`` maps each node to its ``NodeStatus``, or to a string
    describing why it could not be observed.
    """
    problems: list[str] = []
    costs: dict[NodeName, dict[str, dict[str, float]]] = {}

    for name in sorted(topology.node_names):
        status = statuses.get(name)
        if status is None:
            problems.append(f"{name}: not observed")
            continue
        if isinstance(status, str):
            problems.append(f"{name}: {status}")
            continue
        problems.extend(_connection_problems(topology, name, status))
        problems.extend(_discovery_problems(topology, name, status))
        if status.known_connection_costs is not None:
            costs[name] = _normalize_costs(status.known_connection_costs)

    if len(costs) > 1:
        reference_name, reference = next(iter(costs.items()))
        for name, table in costs.items():
            if table != reference:
                problems.append(
                    f"{name}: known connection costs differ from {reference_name}"
                )

    return ConvergenceReport(problems=tuple(problems), statuses=dict(statuses))


class ConvergenceChecker:
    """Query every node's ``status`` and evaluate the result."""

    def __init__(
        self,
        topology: TopologySpec,
        control_sockets: Mapping[NodeName, Path],
        *,
        timeout: DurationSeconds = 5.0,
    ) -> None:
        self.topology = topology
        self.control_sockets = dict(control_sockets)
        self.timeout = timeout

    async def _observe_node(self, name: NodeName) -> NodeObservation:
        socket_path = self.control_sockets.get(name)
        if socket_path is None:
            return "no control socket"
        if not socket_path.exists():
            return "control socket not yet created"
        try:
            async with ControlSession(socket_path, timeout=self.timeout) as session:
                return await session.status()
        except ControlConnectionError as e:
            return f"unreachable: {e}"
        except (ProtocolError, CommandRejectedError, SessionConsumedError) as e:
            return f"status failed: {e}"

    async def collect(self) -> dict[NodeName, NodeObservation]:
        names = sorted(self.topology.node_names)
        observations = await asyncio.gather(
            *(self._observe_node(name) for name in names)
        )
        return dict(zip(names, observations, strict=True))

    async def observe(self) -> ConvergenceReport:
        report = evaluate(self.topology, await self.collect())
        if not report.converged:
            logger.debug(
                "Mesh not converged: {} problem(s), first: {}",
                len(report.problems),
                report.problems[0],
            )
        return report

    async def check_connections(self) -> bool:
        return (await self.observe()).converged


async def check_connections(handle: MeshHandle) -> bool:
    """True when every node of ``handle`` agrees with its topology."""
    return await handle.checker.check_connections()


async def observe(handle: MeshHandle) -> ConvergenceReport:
    return await handle.checker.observe()
