"""Live node instances owned by a mesh runner."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any

from meshharness.datastructures.type_aliases import NodeName, PortNumber, ProcessId
from meshharness.topology.materialize import NodeConfig


class NodeState(IntEnum):
    """Node lifecycle; ordering lets a group report its weakest member."""

    STARTING = 0
    RUNNING = 1
    STOPPING = 2
    STOPPED = 3


@dataclass(slots=True, eq=False)
class NodeProcess:
    """One running node: an OS process or an in-process node object.

    ``handle`` is the strategy-specific execution handle. Only the runner that
    created a NodeProcess changes its ``state``.
    """

    config: NodeConfig
    handle: Any
    pid: ProcessId
    state: NodeState = NodeState.STARTING
    exit_code: int | None = None

    @property
    def name(self) -> NodeName:
        return self.config.name

    @property
    def working_dir(self) -> Path:
        return self.config.working_dir

    @property
    def control_socket(self) -> Path:
        return self.config.control_socket

    @property
    def listener_ports(self) -> frozenset[PortNumber]:
        return self.config.listener_ports

    def __repr__(self) -> str:
        return f"NodeProcess(name={self.name!r}, pid={self.pid}, state={self.state.name})"
