"""Mesh lifecycle shared by every execution strategy.

A ``MeshRunner`` turns a ``TopologySpec`` into running nodes and hands back a
``MeshHandle`` that owns them. Strategies differ only in how a node is
spawned, signalled and inspected; startup rollback, readiness, teardown and
leak detection live here once.

Typical use::

    runner = SubprocessMeshRunner(settings)
    async with await runner.start(linear_topology(3)) as mesh:
        await mesh.wait_for_ready()
        session = await mesh.control("node1")
        await session.ping("node3")
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from loguru import logger

from meshharness.client.control import ControlSession
from meshharness.client.models import NodeStatus
from meshharness.core.config import HarnessSettings
from meshharness.core.errors import (
    ConvergenceTimeoutError,
    LaunchError,
    MeshHarnessError,
    ShutdownTimeoutError,
)
from meshharness.core.polling import poll_until
from meshharness.core.port_allocator import PortAllocator
from meshharness.core.workspace import MeshWorkspace
from meshharness.datastructures.type_aliases import DurationSeconds, NodeName
from meshharness.mesh.convergence import ConvergenceChecker, ConvergenceReport
from meshharness.mesh.node import NodeProcess, NodeState
from meshharness.mesh.sockets import OpenSocket
from meshharness.topology.materialize import MaterializedMesh, NodeConfig, materialize
from meshharness.topology.spec import TopologySpec


class MeshRunner(ABC):
    """Starts meshes; subclasses supply the per-node execution strategy."""

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        *,
        allocator: PortAllocator | None = None,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self.allocator = allocator

    @abstractmethod
    async def _spawn(self, config: NodeConfig) -> NodeProcess:
        """Start one node from its written config. Raise LaunchError on failure."""

    @abstractmethod
    def _has_exited(self, node: NodeProcess) -> bool: ...

    @abstractmethod
    async def _terminate(self, node: NodeProcess, *, force: bool) -> None:
        """Ask the node to stop (graceful) or stop it unconditionally (force)."""

    @abstractmethod
    async def _wait_exited(self, node: NodeProcess) -> None: ...

    @abstractmethod
    def _open_sockets(self, node: NodeProcess) -> list[OpenSocket]:
        """Sockets still held on behalf of ``node``, as seen by the OS."""

    def _failure_detail(self, node: NodeProcess) -> str:
        if node.exit_code is not None:
            return f"exited with code {node.exit_code}"
        return "exited"

    async def start(
        self,
        topology: TopologySpec,
        workspace: MeshWorkspace | None = None,
        *,
        label: str = "mesh",
    ) -> MeshHandle:
        """Materialize ``topology``, start every node and wait for control sockets.

        Raises:
            ConstructionError: the topology is invalid; nothing was started.
            LaunchError: at least one node failed to start. Every node that
                did start has been stopped and the workspace removed.
        """
        if workspace is None:
            workspace = MeshWorkspace.create(label, base_dir=self.settings.base_temp_dir)
        try:
            mesh = materialize(topology, workspace, self.settings, allocator=self.allocator)
        except MeshHarnessError:
            workspace.remove()
            raise

        handle = MeshHandle(self, mesh)
        try:
            failures = await self._launch(handle)
        except BaseException:
            await self._rollback(handle, {})
            raise
        if failures:
            await self._rollback(handle, failures)
            raise LaunchError(
                f"{len(failures)} of {len(mesh.nodes)} node(s) failed to start",
                failures,
            )
        logger.info(
            "Started {} node(s) with {} in {}",
            len(mesh.nodes),
            type(self).__name__,
            workspace.root,
        )
        return handle

    async def _launch(self, handle: MeshHandle) -> dict[NodeName, str]:
        failures: dict[NodeName, str] = {}
        for name, config in handle.mesh.nodes.items():
            try:
                config.write()
            except OSError as e:
                failures[name] = f"cannot write config {config.config_path}: {e}"
                logger.error("[{}] Failed to write config: {}", name, e)
                return failures
            try:
                node = await self._spawn(config)
            except LaunchError as e:
                failures[name] = str(e)
                logger.error("[{}] Failed to spawn: {}", name, e)
                return failures
            handle._nodes[name] = node
            logger.debug("[{}] Spawned with pid {}", name, node.pid)

        nodes = list(handle._nodes.values())
        reasons = await asyncio.gather(*(self._await_ready(node) for node in nodes))
        for node, reason in zip(nodes, reasons, strict=True):
            if reason is not None:
                failures[node.name] = reason
        return failures

    async def _await_ready(self, node: NodeProcess) -> str | None:
        """Wait for ``node``'s control socket; return a failure reason or None."""

        async def _probe() -> str:
            if self._has_exited(node):
                return "exited"
            if node.control_socket.exists():
                return "ready"
            return "waiting"

        try:
            outcome = await poll_until(
                _probe,
                lambda observed: observed != "waiting",
                timeout=self.settings.startup_timeout,
                interval=self.settings.poll_interval,
                description=f"{node.name} control socket",
            )
        except ConvergenceTimeoutError:
            return (
                f"control socket not created within {self.settings.startup_timeout:.1f}s"
            )
        if outcome == "exited":
            await self._wait_exited(node)
            node.state = NodeState.STOPPED
            reason = self._failure_detail(node)
            logger.error("[{}] Exited during startup: {}", node.name, reason)
            return reason
        node.state = NodeState.RUNNING
        logger.debug("[{}] Control socket ready", node.name)
        return None

    async def _rollback(self, handle: MeshHandle, failures: Mapping[NodeName, str]) -> None:
        logger.warning("Rolling back partial mesh start ({} failure(s))", len(failures))
        try:
            await handle.destroy()
        except MeshHarnessError as e:
            raise LaunchError(
                "Mesh start failed and teardown did not complete",
                {**failures, "teardown": str(e)},
            ) from e
        finally:
            handle.mesh.release_ports()
        handle.workspace.remove()


class MeshHandle:
    """All nodes of one started mesh, plus its workspace and ports."""

    def __init__(self, runner: MeshRunner, mesh: MaterializedMesh) -> None:
        self.runner = runner
        self.mesh = mesh
        self.settings = runner.settings
        self._nodes: dict[NodeName, NodeProcess] = {}
        self._destroy_lock = asyncio.Lock()
        self._destroyed = False
        self.checker = ConvergenceChecker(
            mesh.topology,
            {name: config.control_socket for name, config in mesh.nodes.items()},
            timeout=self.settings.control_timeout,
        )

    @property
    def topology(self) -> TopologySpec:
        return self.mesh.topology

    @property
    def workspace(self) -> MeshWorkspace:
        return self.mesh.workspace

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def nodes(self) -> Mapping[NodeName, NodeProcess]:
        return MappingProxyType(self._nodes)

    @property
    def state(self) -> NodeState:
        """The weakest state of any node."""
        if not self._nodes:
            return NodeState.STOPPED
        return min(node.state for node in self._nodes.values())

    async def observe(self) -> ConvergenceReport:
        return await self.checker.observe()

    async def check_connections(self) -> bool:
        return await self.checker.check_connections()

    async def status(self) -> dict[NodeName, NodeStatus]:
        """Every node's ``status`` response. Control errors propagate."""

        async def _status(node: NodeProcess) -> NodeStatus:
            async with ControlSession(
                node.control_socket, timeout=self.settings.control_timeout
            ) as session:
                return await session.status()

        names = list(self._nodes)
        results = await asyncio.gather(*(_status(self._nodes[name]) for name in names))
        return dict(zip(names, results, strict=True))

    async def wait_for_ready(self, timeout: DurationSeconds | None = None) -> ConvergenceReport:
        """Block until every node agrees with the topology.

        Raises:
            ConvergenceTimeoutError: not converged in time; ``last_observed``
                holds the final ``ConvergenceReport``.
            LaunchError: a node exited while waiting.
        """
        timeout = timeout if timeout is not None else self.settings.ready_timeout

        async def _probe() -> ConvergenceReport:
            exited = {
                node.name: self.runner._failure_detail(node)
                for node in self._nodes.values()
                if self.runner._has_exited(node)
            }
            if exited:
                raise LaunchError("Node(s) exited while waiting for convergence", exited)
            return await self.checker.observe()

        report = await poll_until(
            _probe,
            lambda report: report.converged,
            timeout=timeout,
            interval=self.settings.poll_interval,
            description=f"{len(self._nodes)}-node mesh to converge",
        )
        logger.info("Mesh of {} node(s) converged", len(self._nodes))
        return report

    async def control(self, name: NodeName) -> ControlSession:
        """Open a connected control session to ``name``."""
        node = self._nodes.get(name)
        if node is None:
            raise KeyError(f"No node named {name!r} in this mesh")
        session = ControlSession(
            node.control_socket,
            timeout=self.settings.control_timeout,
            work_poll_interval=self.settings.work_poll_interval,
        )
        return await session.connect()

    async def _stop_node(self, node: NodeProcess) -> None:
        runner = self.runner
        grace = self.settings.graceful_stop_timeout
        if not runner._has_exited(node):
            node.state = NodeState.STOPPING
            try:
                async with asyncio.timeout(grace):
                    await runner._terminate(node, force=False)
                    await runner._wait_exited(node)
            except TimeoutError:
                logger.warning("[{}] Still running {:.1f}s after stop, forcing", node.name, grace)
                await runner._terminate(node, force=True)
                try:
                    async with asyncio.timeout(grace):
                        await runner._wait_exited(node)
                except TimeoutError as e:
                    raise ShutdownTimeoutError(
                        f"{node.name} to exit after a forced stop",
                        timeout=grace,
                        attempts=1,
                        last_observed=node,
                    ) from e
        else:
            await runner._wait_exited(node)
        node.state = NodeState.STOPPED
        logger.debug("[{}] Stopped (exit code {})", node.name, node.exit_code)

    async def destroy(self) -> None:
        """Stop every node, then release ports and remove the workspace.

        Safe to call repeatedly and concurrently. If a node cannot be stopped
        the error is raised and the workspace is kept for inspection; a later
        call retries the remaining nodes.
        """
        async with self._destroy_lock:
            if self._destroyed:
                return
            pending = [
                node
                for node in self._nodes.values()
                if node.state is not NodeState.STOPPED
            ]
            results = await asyncio.gather(
                *(self._stop_node(node) for node in pending), return_exceptions=True
            )
            failed = [
                (node, result)
                for node, result in zip(pending, results, strict=True)
                if isinstance(result, BaseException)
            ]
            for node, error in failed:
                logger.error("[{}] Failed to stop: {}", node.name, error)
            if failed:
                raise failed[0][1]

            self.mesh.release_ports()
            self.workspace.remove()
            self._destroyed = True
            logger.info("Destroyed mesh of {} node(s)", len(self._nodes))

    def open_sockets(self) -> list[OpenSocket]:
        return [
            sock for node in self._nodes.values() for sock in self.runner._open_sockets(node)
        ]

    async def wait_for_shutdown(self, timeout: DurationSeconds | None = None) -> None:
        """Wait until the OS reports no socket held by any former node.

        Raises:
            ShutdownTimeoutError: sockets are still open at the deadline;
                ``last_observed`` lists them.
        """
        timeout = timeout if timeout is not None else self.settings.shutdown_timeout

        async def _probe() -> list[OpenSocket]:
            return self.open_sockets()

        try:
            await poll_until(
                _probe,
                lambda leaked: not leaked,
                timeout=timeout,
                interval=self.settings.poll_interval,
                description="node sockets to be released",
                error_type=ShutdownTimeoutError,
            )
        except ShutdownTimeoutError as e:
            for sock in e.last_observed or ():
                logger.error("Leaked socket after shutdown: {}", sock)
            raise

    async def __aenter__(self) -> MeshHandle:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        # Sockets are only checked after a successful destroy.
        await self.destroy()
        await self.wait_for_shutdown()

    def __repr__(self) -> str:
        return f"MeshHandle(nodes={sorted(self._nodes)!r}, state={self.state.name})"
