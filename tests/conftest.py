"""Pytest configuration and fixtures for meshharness testing.

This module provides async fixtures for starting meshes of fake nodes and
tearing them down cleanly. Every fixture destroys what it started and waits
for the OS to release node sockets, so a test can never leave orphaned
processes or listeners behind for the next one.
"""

import asyncio
import sys
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger

from meshharness.client.control import ControlSession
from meshharness.core.config import HarnessSettings
from meshharness.core.logging import configure_logging
from meshharness.core.port_allocator import PortAllocator
from meshharness.mesh.inprocess_runner import InProcessMeshRunner
from meshharness.mesh.runner import MeshHandle, MeshRunner
from meshharness.mesh.subprocess_runner import SubprocessMeshRunner
from meshharness.topology.spec import TopologySpec
from tests.fakes.fake_receptor import FakeReceptorNode

FAKE_RECEPTOR = Path(__file__).parent / "fakes" / "fake_receptor.py"


def fake_daemon_command(*extra: str) -> list[str]:
    """``daemon_command`` that runs the fake node as a real subprocess."""
    return [sys.executable, str(FAKE_RECEPTOR), *extra]


def fast_settings(**overrides: Any) -> HarnessSettings:
    """Settings tuned for fake nodes, which start and gossip in milliseconds."""
    values: dict[str, Any] = {
        "daemon_command": fake_daemon_command(),
        "startup_timeout": 10.0,
        "ready_timeout": 10.0,
        "poll_interval": 0.05,
        "graceful_stop_timeout": 3.0,
        "shutdown_timeout": 5.0,
        "control_timeout": 5.0,
        "work_poll_interval": 0.05,
    }
    values.update(overrides)
    return HarnessSettings(**values)


class AsyncTestContext:
    """Context manager for async test operations with automatic cleanup."""

    def __init__(self) -> None:
        self.meshes: list[MeshHandle] = []
        self.sessions: list[ControlSession] = []
        self.tasks: list[asyncio.Task[Any]] = []

    async def __aenter__(self) -> "AsyncTestContext":
        return self

    async def start(
        self, runner: MeshRunner, topology: TopologySpec, **kwargs: Any
    ) -> MeshHandle:
        mesh = await runner.start(topology, **kwargs)
        self.meshes.append(mesh)
        return mesh

    async def control(self, mesh: MeshHandle, name: str) -> ControlSession:
        session = await mesh.control(name)
        self.sessions.append(session)
        return session

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Ensure all resources are cleaned up properly."""
        for task in self.tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for session in self.sessions:
            await session.close()

        # Meshes are torn down in reverse start order; failures surface.
        errors: list[BaseException] = []
        for mesh in reversed(self.meshes):
            try:
                await mesh.destroy()
                await mesh.wait_for_shutdown()
            except Exception as e:
                logger.error(f"Error tearing down {mesh!r}: {e}")
                errors.append(e)

        self.meshes.clear()
        self.sessions.clear()
        self.tasks.clear()
        if errors and exc_type is None:
            raise errors[0]


@pytest_asyncio.fixture
async def test_context() -> AsyncGenerator[AsyncTestContext, None]:
    """Provides a clean async test context with automatic resource cleanup."""
    async with AsyncTestContext() as ctx:
        yield ctx


@pytest.fixture
def harness_settings() -> HarnessSettings:
    return fast_settings()


@pytest.fixture
def inprocess_runner(harness_settings: HarnessSettings) -> InProcessMeshRunner:
    """Runner hosting fake nodes on the test's event loop.

    Example Usage:
        async def test_two_nodes(test_context, inprocess_runner):
            mesh = await test_context.start(inprocess_runner, linear_topology(2))
            await mesh.wait_for_ready()
    """
    return InProcessMeshRunner(FakeReceptorNode.from_config, harness_settings)


@pytest.fixture
def subprocess_runner(harness_settings: HarnessSettings) -> SubprocessMeshRunner:
    """Runner starting each fake node as its own OS process."""
    return SubprocessMeshRunner(harness_settings)


@pytest.fixture(params=["inprocess", "subprocess"])
def mesh_runner(
    request: pytest.FixtureRequest, harness_settings: HarnessSettings
) -> MeshRunner:
    """Both strategies, so assertions are proven strategy-agnostic."""
    if request.param == "inprocess":
        return InProcessMeshRunner(FakeReceptorNode.from_config, harness_settings)
    return SubprocessMeshRunner(harness_settings)


@pytest.fixture
def isolated_port_allocator(tmp_path: Path) -> Iterator[PortAllocator]:
    """A private allocator whose lock files live in the test's tmp_path."""
    allocator = PortAllocator(base_dir=str(tmp_path))
    yield allocator
    for port in list(allocator.get_worker_info()["allocated_ports"]):
        allocator.release_port(port)


def pytest_configure(config: Any) -> None:
    """Configure harness logging from MESHHARNESS_LOG_LEVEL / _DEBUG_SCOPES."""
    settings = HarnessSettings()
    configure_logging(settings.log_level, debug_scopes=settings.debug_scopes)
