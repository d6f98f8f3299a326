"""
Functional tests against a real ``receptor`` binary.

These run only when ``receptor`` is on PATH (or ``MESHHARNESS_DAEMON_COMMAND``
points at one); everything else in the suite uses the fake node.
"""

import shutil
from pathlib import Path
from typing import Any

import pytest

from meshharness.core.config import HarnessSettings
from meshharness.core.errors import ConvergenceTimeoutError
from meshharness.core.workspace import MeshWorkspace
from meshharness.mesh.runner import MeshHandle
from meshharness.mesh.subprocess_runner import SubprocessMeshRunner
from meshharness.topology.certs import generate_cert, generate_cert_with_ca
from meshharness.topology.generators import flat_topology, random_topology, tree_topology
from meshharness.topology.spec import Connection, NodeSpec, TopologySpec
from tests.conftest import AsyncTestContext
from tests.test_helpers import hub_topology

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        shutil.which(HarnessSettings().daemon_command[0]) is None,
        reason="receptor binary not available",
    ),
]

LISTENERS = ["tcp-listener", "udp-listener", "ws-listener"]
TLS_LISTENERS = ["tcp-listener", "ws-listener"]


@pytest.fixture
def receptor_runner() -> SubprocessMeshRunner:
    return SubprocessMeshRunner(
        HarnessSettings(ready_timeout=20.0, poll_interval=0.1, work_poll_interval=0.1)
    )


async def ping_all(ctx: AsyncTestContext, mesh: MeshHandle) -> None:
    for sender in mesh.nodes():
        session = await ctx.control(mesh, sender)
        for responder in mesh.nodes():
            await session.ping(responder)


def tls_server(name: str, key: Path, cert: Path, **extra: Any) -> dict[str, Any]:
    return {"tls-server": {"name": name, "key": str(key), "cert": str(cert), **extra}}


def tls_client(name: str, key: Path | str, cert: Path | str) -> dict[str, Any]:
    return {
        "tls-client": {
            "name": name,
            "key": str(key),
            "cert": str(cert),
            "insecureskipverify": True,
        }
    }


def client_auth_topology(listener: str, cert_dir: Path) -> TopologySpec:
    """node1 requires client certs from the CA; node2 signs with it; node3 has none."""
    ca_key, ca_cert = generate_cert(cert_dir, "ca")
    key1, cert1 = generate_cert(cert_dir, "node1")
    key2, cert2 = generate_cert_with_ca(cert_dir, "node2", ca_key, ca_cert)
    return TopologySpec(
        nodes={
            "node1": NodeSpec(
                nodedef=(
                    tls_server(
                        "cert1", key1, cert1, requireclientcert=True, clientcas=str(ca_cert)
                    ),
                    {listener: {"tls": "cert1"}},
                ),
            ),
            "node2": NodeSpec(
                connections={"node1": Connection(index=1, tls="client-cert2")},
                nodedef=(
                    tls_server("server-cert2", key2, cert2),
                    tls_client("client-cert2", key2, cert2),
                    {listener: {"tls": "server-cert2"}},
                ),
            ),
            "node3": NodeSpec(
                connections={"node2": Connection(index=2, tls="client-insecure")},
                nodedef=(tls_client("client-insecure", "", ""), {listener: {}}),
            ),
        }
    )


def rejected_client_topology(listener: str, cert_dir: Path, signed: bool) -> TopologySpec:
    """node2 dials a cert-requiring node1 with no key, or a key the CA did not sign."""
    _, ca_cert = generate_cert(cert_dir, "ca")
    key1, cert1 = generate_cert(cert_dir, "node1")
    if signed:
        key2, cert2 = generate_cert(cert_dir, "node2")
        client = tls_client("client-insecure", key2, cert2)
    else:
        client = tls_client("client-insecure", "", "")
    return TopologySpec(
        nodes={
            "node1": NodeSpec(
                nodedef=(
                    tls_server(
                        "cert1", key1, cert1, requireclientcert=True, clientcas=str(ca_cert)
                    ),
                    {listener: {"tls": "cert1"}},
                ),
            ),
            "node2": NodeSpec(
                connections={"node1": Connection(index=1, tls="client-insecure")},
                nodedef=(client, {listener: {}}),
            ),
        }
    )


class TestMeshStartup:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("listener", LISTENERS)
    @pytest.mark.parametrize("shape", ["flat", "random", "tree"])
    async def test_mesh_converges_and_pings(
        self,
        test_context: AsyncTestContext,
        receptor_runner: SubprocessMeshRunner,
        shape: str,
        listener: str,
    ) -> None:
        topology = {
            "flat": lambda: flat_topology(5, listener),
            "random": lambda: random_topology(8, listener, extra_edges=4, seed=11),
            "tree": lambda: tree_topology(3, 2, listener),
        }[shape]()
        mesh = await test_context.start(receptor_runner, topology, label=f"{shape}-{listener}")
        await mesh.wait_for_ready(timeout=20)
        assert await mesh.check_connections()
        await ping_all(test_context, mesh)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("listener", LISTENERS)
    async def test_shutdown_releases_sockets(
        self, receptor_runner: SubprocessMeshRunner, listener: str
    ) -> None:
        mesh = await receptor_runner.start(random_topology(6, listener, extra_edges=3, seed=5))
        async with mesh:
            await mesh.wait_for_ready(timeout=20)
        assert mesh.open_sockets() == []


class TestTLS:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("listener", TLS_LISTENERS)
    async def test_client_certificates(
        self,
        test_context: AsyncTestContext,
        receptor_runner: SubprocessMeshRunner,
        listener: str,
    ) -> None:
        workspace = MeshWorkspace.create(f"tls-{listener}")
        topology = client_auth_topology(listener, workspace.cert_dir)
        mesh = await test_context.start(receptor_runner, topology, workspace=workspace)
        await mesh.wait_for_ready(timeout=20)
        await ping_all(test_context, mesh)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("listener", TLS_LISTENERS)
    @pytest.mark.parametrize("signed", [False, True], ids=["no-key", "bad-key"])
    async def test_rejected_client_never_converges(
        self,
        test_context: AsyncTestContext,
        receptor_runner: SubprocessMeshRunner,
        listener: str,
        signed: bool,
    ) -> None:
        workspace = MeshWorkspace.create(f"tls-fail-{listener}")
        topology = rejected_client_topology(listener, workspace.cert_dir, signed)
        mesh = await test_context.start(receptor_runner, topology, workspace=workspace)
        with pytest.raises(ConvergenceTimeoutError):
            await mesh.wait_for_ready(timeout=10)


class TestCostsAndWork:
    @pytest.mark.asyncio
    async def test_costs(
        self, test_context: AsyncTestContext, receptor_runner: SubprocessMeshRunner
    ) -> None:
        topology = hub_topology({"node2": 2.6, "node3": 3.2, "node4": 4.5})
        mesh = await test_context.start(receptor_runner, topology)
        await mesh.wait_for_ready(timeout=20)
        await ping_all(test_context, mesh)

        statuses = await mesh.status()
        costs = {c.node_id: c.cost for c in statuses["hub"].connections}
        assert costs == {"node2": 2.6, "node3": 3.2, "node4": 4.5}

    @pytest.mark.asyncio
    async def test_work_cancel(
        self, test_context: AsyncTestContext, receptor_runner: SubprocessMeshRunner
    ) -> None:
        echosleep = {
            "service": "echosleep",
            "command": "bash",
            "params": '-c "for i in {1..5}; do echo $i; sleep 2;done"',
        }
        topology = TopologySpec(
            nodes={
                "node1": NodeSpec(
                    nodedef=({"tcp-listener": {"cost": 4.5, "nodecost": {"node2": 2.6}}},),
                ),
                "node2": NodeSpec(
                    connections={"node1": Connection(index=0)},
                    nodedef=({"work-command": echosleep},),
                ),
            }
        )
        mesh = await test_context.start(receptor_runner, topology)
        await mesh.wait_for_ready(timeout=20)

        submitter = await test_context.control(mesh, "node1")
        work_id = await submitter.work_submit("node2", "echosleep")
        session = await test_context.control(mesh, "node1")
        await session.assert_work_running(20, work_id)
        await session.work_cancel(work_id)
        await session.assert_work_cancelled(20, work_id)
        await session.work_release(work_id)
        await session.assert_work_released(20, work_id)
