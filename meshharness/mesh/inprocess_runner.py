"""Nodes hosted inside the test process by a caller-supplied factory."""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Protocol, TypeAlias, runtime_checkable

from meshharness.core.config import HarnessSettings
from meshharness.core.errors import LaunchError
from meshharness.core.port_allocator import PortAllocator
from meshharness.mesh.node import NodeProcess
from meshharness.mesh.runner import MeshRunner
from meshharness.mesh.sockets import OpenSocket, sockets_touching
from meshharness.topology.materialize import NodeConfig


@runtime_checkable
class InProcessNode(Protocol):
    """A node object the in-process runner can drive.

    ``start`` returns once the node is serving (or has begun to); ``stop``
    shuts down gracefully; ``abort`` closes everything immediately and must
    not raise.
    """

    @property
    def closed(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def abort(self) -> None: ...

    async def wait_closed(self) -> None: ...


NodeFactory: TypeAlias = Callable[[NodeConfig], InProcessNode]


class InProcessMeshRunner(MeshRunner):
    """Builds every node with ``factory`` and runs it on the current loop."""

    def __init__(
        self,
        factory: NodeFactory,
        settings: HarnessSettings | None = None,
        *,
        allocator: PortAllocator | None = None,
    ) -> None:
        super().__init__(settings, allocator=allocator)
        self.factory = factory

    async def _spawn(self, config: NodeConfig) -> NodeProcess:
        try:
            node = self.factory(config)
        except Exception as e:
            raise LaunchError(f"node factory failed: {e}") from e
        try:
            await node.start()
        except Exception as e:
            node.abort()
            raise LaunchError(f"node failed to start: {e}") from e
        return NodeProcess(config=config, handle=node, pid=os.getpid())

    def _has_exited(self, node: NodeProcess) -> bool:
        return node.handle.closed

    async def _terminate(self, node: NodeProcess, *, force: bool) -> None:
        if force:
            node.handle.abort()
        else:
            await node.handle.stop()

    async def _wait_exited(self, node: NodeProcess) -> None:
        await node.handle.wait_closed()

    def _open_sockets(self, node: NodeProcess) -> list[OpenSocket]:
        return sockets_touching(
            node.pid, node.listener_ports, {str(node.control_socket)}
        )
