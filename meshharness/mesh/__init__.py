"""Running meshes: node lifecycle, convergence and shutdown verification."""

from .convergence import (
    ConvergenceChecker,
    ConvergenceReport,
    check_connections,
    evaluate,
    observe,
)
from .inprocess_runner import InProcessMeshRunner, InProcessNode, NodeFactory
from .node import NodeProcess, NodeState
from .runner import MeshHandle, MeshRunner
from .sockets import (
    OpenSocket,
    process_group_members,
    sockets_for_group,
    sockets_for_pid,
    sockets_touching,
)
from .subprocess_runner import SubprocessMeshRunner, log_tail

__all__ = [
    "ConvergenceChecker",
    "ConvergenceReport",
    "InProcessMeshRunner",
    "InProcessNode",
    "MeshHandle",
    "MeshRunner",
    "NodeFactory",
    "NodeProcess",
    "NodeState",
    "OpenSocket",
    "SubprocessMeshRunner",
    "check_connections",
    "evaluate",
    "log_tail",
    "observe",
    "process_group_members",
    "sockets_for_group",
    "sockets_for_pid",
    "sockets_touching",
]
