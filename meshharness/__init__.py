"""
meshharness - functional test harness for mesh networking daemons

Drives an externally built mesh daemon (one control socket per node) through
declarative topologies and verifies that the mesh converges and that the
control protocol behaves: pings, work submission, cancellation and release.

## Architecture

- **topology**: topology descriptions, generators, certificates and the
  per-node configs they materialize into
- **mesh**: runners (subprocess and in-process), mesh handles, convergence
  checking and OS-level shutdown verification
- **client**: control-socket sessions and work lifecycle assertions
- **core**: settings, errors, logging, polling, ports and workspaces

## Quick Start

```python
from meshharness import SubprocessMeshRunner, linear_topology

runner = SubprocessMeshRunner()
async with await runner.start(linear_topology(3)) as mesh:
    await mesh.wait_for_ready(timeout=20)
    session = await mesh.control("node1")
    await session.ping("node3")
```
"""

# Client exports
from .client import ControlSession, NodeStatus, WorkLifecycleAsserter, WorkState
from .core import (
    CommandRejectedError,
    ConstructionError,
    ControlConnectionError,
    ConvergenceTimeoutError,
    HarnessSettings,
    LaunchError,
    MeshHarnessError,
    ProtocolError,
    ProtocolTimeoutError,
    SessionConsumedError,
    ShutdownTimeoutError,
    WorkStateError,
    WorkStateTimeoutError,
    configure_logging,
    poll_until,
)
from .core.workspace import MeshWorkspace

# Mesh exports
from .mesh import (
    ConvergenceChecker,
    ConvergenceReport,
    InProcessMeshRunner,
    MeshHandle,
    MeshRunner,
    NodeProcess,
    NodeState,
    SubprocessMeshRunner,
    check_connections,
)

# Topology exports
from .topology import (
    Connection,
    NodeConfig,
    NodeSpec,
    TopologySpec,
    flat_topology,
    generate_cert,
    generate_cert_with_ca,
    linear_topology,
    materialize,
    random_topology,
    tree_topology,
)

# Version info
__version__ = "0.1.0"
__license__ = "MIT"

__all__ = [
    "CommandRejectedError",
    "Connection",
    "ConstructionError",
    "ControlConnectionError",
    "ControlSession",
    "ConvergenceChecker",
    "ConvergenceReport",
    "ConvergenceTimeoutError",
    "HarnessSettings",
    "InProcessMeshRunner",
    "LaunchError",
    "MeshHandle",
    "MeshHarnessError",
    "MeshRunner",
    "MeshWorkspace",
    "NodeConfig",
    "NodeProcess",
    "NodeSpec",
    "NodeState",
    "NodeStatus",
    "ProtocolError",
    "ProtocolTimeoutError",
    "SessionConsumedError",
    "ShutdownTimeoutError",
    "SubprocessMeshRunner",
    "TopologySpec",
    "WorkLifecycleAsserter",
    "WorkState",
    "WorkStateError",
    "WorkStateTimeoutError",
    "check_connections",
    "configure_logging",
    "flat_topology",
    "generate_cert",
    "generate_cert_with_ca",
    "linear_topology",
    "materialize",
    "poll_until",
    "random_topology",
    "tree_topology",
]
