"""Tests for the control-socket client against a scripted Unix server."""

import asyncio
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any, TypeAlias

import pytest
import pytest_asyncio

from meshharness.client.control import ControlSession
from meshharness.client.models import WorkState
from meshharness.core.errors import (
    CommandRejectedError,
    ControlConnectionError,
    ProtocolError,
    ProtocolTimeoutError,
    SessionConsumedError,
)

Responder: TypeAlias = Callable[[str], str | None]

CLOSE = "<close>"


class ScriptedDaemon:
    """Unix socket server answering each request line via ``responder``.

    A responder returning None sends nothing (a hung daemon); returning
    ``CLOSE`` drops the connection.
    """

    def __init__(self, path: Path, responder: Responder, greeting: str) -> None:
        self.path = path
        self.responder = responder
        self.greeting = greeting
        self.requests: list[str] = []
        self.stdin: list[bytes] = []
        self.server: asyncio.Server | None = None

    async def start(self) -> None:
        self.server = await asyncio.start_unix_server(self._handle, path=str(self.path))

    async def close(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            writer.write(f"{self.greeting}\n".encode())
            while line := await reader.readline():
                request = line.decode().strip()
                self.requests.append(request)
                reply = self.responder(request)
                if reply is None:
                    continue
                if reply == CLOSE:
                    break
                writer.write(f"{reply}\n".encode())
                await writer.drain()
                if request.startswith("work submit") and reply.startswith("Work unit"):
                    self.stdin.append(await reader.read())
                    writer.write(b'{"result": "Job Started", "unitid": "abc123"}\n')
                    await writer.drain()
                    break
        except ConnectionError:
            pass
        finally:
            writer.close()


def default_responder(request: str) -> str | None:
    if request == "status":
        return (
            '{"NodeID": "node1", "Connections": [{"NodeID": "node2", "Cost": 4.5}],'
            ' "RoutingTable": {"node2": "node2"},'
            ' "KnownConnectionCosts": {"node1": {"node2": 4.5}, "node2": {"node1": 4.5}}}'
        )
    if request == "ping node2":
        return '{"From": "node2", "Success": true, "Time": 0.002}'
    if request == "ping ghost":
        return "ERROR: no route to node ghost"
    if request == "ping flaky":
        return '{"From": "flaky", "Success": false, "Error": "timeout"}'
    if request.startswith("work submit node2 sleep"):
        return "Work unit created with ID abc123. Send stdin data and EOF."
    if request.startswith("work submit"):
        return "ERROR: unknown work type"
    if request == "work status abc123":
        return '{"State": 1, "StateName": "Running", "Detail": "", "WorkType": "sleep"}'
    if request == "work status gone":
        return "ERROR: unknown work unit gone"
    if request == "work cancel abc123":
        return '{"cancelled": "abc123"}'
    return "ERROR: unknown command"


@pytest_asyncio.fixture
async def daemon_factory() -> AsyncGenerator[Any, None]:
    daemons: list[ScriptedDaemon] = []
    # Short directory: Unix socket paths are limited to 108 bytes.
    tmpdir = tempfile.TemporaryDirectory(prefix="mh-")

    async def _create(
        responder: Responder = default_responder,
        greeting: str = "Receptor Control, node node1",
    ) -> ScriptedDaemon:
        daemon = ScriptedDaemon(
            Path(tmpdir.name) / f"sock{len(daemons)}", responder, greeting
        )
        await daemon.start()
        daemons.append(daemon)
        return daemon

    yield _create
    for daemon in daemons:
        await daemon.close()
    tmpdir.cleanup()


class _Session:
    """Helper that opens sessions and guarantees they are closed."""

    def __init__(self) -> None:
        self.sessions: list[ControlSession] = []

    async def open(self, path: Path, **kwargs) -> ControlSession:
        session = ControlSession(path, **kwargs)
        self.sessions.append(session)
        return await session.connect()


@pytest_asyncio.fixture
async def sessions() -> AsyncGenerator[_Session, None]:
    helper = _Session()
    yield helper
    for session in helper.sessions:
        await session.close()


class TestConnect:
    @pytest.mark.asyncio
    async def test_greeting_names_node(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        assert session.node_name == "node1"
        assert session.is_open

    @pytest.mark.asyncio
    async def test_missing_socket(self, tmp_path: Path) -> None:
        session = ControlSession(tmp_path / "nope", timeout=1.0)
        with pytest.raises(ControlConnectionError):
            await session.connect()
        with pytest.raises(SessionConsumedError):
            await session.connect()

    @pytest.mark.asyncio
    async def test_bad_greeting(self, daemon_factory) -> None:
        daemon = await daemon_factory(greeting="HTTP/1.1 400 Bad Request")
        session = ControlSession(daemon.path, timeout=1.0)
        with pytest.raises(ProtocolError, match="greeting"):
            await session.connect()
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, daemon_factory) -> None:
        daemon = await daemon_factory()
        async with ControlSession(daemon.path) as session:
            await session.ping("node2")
        assert not session.is_open
        with pytest.raises(SessionConsumedError):
            await session.status()


class TestRequests:
    @pytest.mark.asyncio
    async def test_ping(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        result = await session.ping("node2")
        assert result.success
        assert result.from_node == "node2"
        assert daemon.requests == ["ping node2"]

    @pytest.mark.asyncio
    async def test_ping_rejection_keeps_session_usable(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        with pytest.raises(CommandRejectedError, match="no route"):
            await session.ping("ghost")
        assert session.is_open
        await session.ping("node2")

    @pytest.mark.asyncio
    async def test_unsuccessful_ping_is_rejected(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        with pytest.raises(CommandRejectedError, match="timeout"):
            await session.ping("flaky")

    @pytest.mark.asyncio
    async def test_status(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        status = await session.status()
        assert status.node_id == "node1"
        assert status.connected_nodes() == {"node2"}
        assert status.connections[0].cost == 4.5
        assert status.discovered_nodes() == {"node1", "node2"}

    @pytest.mark.asyncio
    async def test_invalid_target_rejected_locally(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        with pytest.raises(ValueError):
            await session.ping("node 2")
        assert daemon.requests == []

    @pytest.mark.asyncio
    async def test_malformed_response_invalidates(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(
            responder=lambda request: "this is not json"
        )
        session = await sessions.open(daemon.path)
        with pytest.raises(ProtocolError, match="Malformed"):
            await session.status()
        with pytest.raises(SessionConsumedError):
            await session.status()

    @pytest.mark.asyncio
    async def test_non_object_response_invalidates(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(responder=lambda request: "[1, 2, 3]")
        session = await sessions.open(daemon.path)
        with pytest.raises(ProtocolError, match="JSON object"):
            await session.status()
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_invalid_model_invalidates(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(responder=lambda request: '{"Connections": 5}')
        session = await sessions.open(daemon.path)
        with pytest.raises(ProtocolError, match="NodeStatus"):
            await session.status()
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_request_timeout(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(responder=lambda request: None)
        session = await sessions.open(daemon.path, timeout=0.2)
        with pytest.raises(ProtocolTimeoutError):
            await session.status()
        with pytest.raises(SessionConsumedError):
            await session.status()

    @pytest.mark.asyncio
    async def test_daemon_closing_stream(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(responder=lambda request: CLOSE)
        session = await sessions.open(daemon.path)
        with pytest.raises(ProtocolError, match="closed"):
            await session.status()
        assert not session.is_open


class TestWork:
    @pytest.mark.asyncio
    async def test_submit_consumes_session(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        work_id = await session.work_submit("node2", "sleep", params="60", payload=b"input")
        assert work_id == "abc123"
        assert daemon.requests == ["work submit node2 sleep 60"]
        assert daemon.stdin == [b"input"]
        assert not session.is_open
        with pytest.raises(SessionConsumedError):
            await session.work_status(work_id)

    @pytest.mark.asyncio
    async def test_rejected_submit_keeps_session(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        with pytest.raises(CommandRejectedError, match="unknown work type"):
            await session.work_submit("node2", "nope")
        assert session.is_open
        status = await session.work_status("abc123")
        assert status.work_state is WorkState.RUNNING

    @pytest.mark.asyncio
    async def test_multiline_params_rejected(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        with pytest.raises(ValueError):
            await session.work_submit("node2", "sleep", params="1\nstatus")

    @pytest.mark.asyncio
    async def test_status_cancel_and_unknown(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path)
        status = await session.work_status("abc123")
        assert status.state == 1
        assert status.work_type == "sleep"
        assert await session.work_cancel("abc123") == {"cancelled": "abc123"}
        with pytest.raises(CommandRejectedError) as excinfo:
            await session.work_status("gone")
        assert excinfo.value.is_unknown_unit

    @pytest.mark.asyncio
    async def test_assert_helpers(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory()
        session = await sessions.open(daemon.path, work_poll_interval=0.01)
        assert await session.assert_work_running(1.0, "abc123") is WorkState.RUNNING
        assert await session.assert_work_released(1.0, "gone") is WorkState.RELEASED

    @pytest.mark.asyncio
    async def test_unknown_state_name_invalidates(self, daemon_factory, sessions) -> None:
        daemon = await daemon_factory(responder=lambda request: '{"StateName": "Bogus"}')
        session = await sessions.open(daemon.path, work_poll_interval=0.01)
        with pytest.raises(ProtocolError, match="WorkStatus"):
            await session.assert_work_running(1.0, "abc123")
        assert not session.is_open
        assert daemon.requests == ["work status abc123"]
