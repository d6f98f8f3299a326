"""Client for a node's control socket.

Wire protocol (line oriented, Unix stream socket):

- On connect the daemon greets with ``Receptor Control, node <name>``.
- Each request is one text line, e.g. ``ping node2`` or ``work status <id>``.
- Each response is one line: ``ERROR: <reason>`` when the daemon declines the
  command, otherwise a JSON object.
- ``work submit`` is a two-step exchange. The daemon first answers
  ``Work unit created with ID <id>. Send stdin data and EOF.``; the client
  streams the unit's stdin and half-closes the socket; the daemon then sends
  a JSON ``{"result": ..., "unitid": ...}`` and closes the stream. Because the
  write side is gone afterwards, a submit consumes the session and any later
  request needs a fresh ``ControlSession``.

Error handling:

- ``ControlConnectionError``: the socket is missing or refuses connections.
- ``ProtocolError`` / ``ProtocolTimeoutError``: malformed, unexpected or late
  responses. The stream can no longer be trusted, so the session is closed.
- ``CommandRejectedError``: a well-formed ``ERROR:`` reply. The session stays
  usable.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any, TypeVar

import orjson
from loguru import logger
from pydantic import BaseModel, ValidationError

from meshharness.client.models import (
    NodeStatus,
    PingResult,
    SubmitResult,
    WorkState,
    WorkStatus,
)
from meshharness.client.work import WorkLifecycleAsserter
from meshharness.core.errors import (
    CommandRejectedError,
    ControlConnectionError,
    ProtocolError,
    ProtocolTimeoutError,
    SessionConsumedError,
)
from meshharness.datastructures.type_aliases import (
    DurationSeconds,
    JsonDict,
    NodeName,
    ServiceName,
    WorkUnitId,
)

M = TypeVar("M", bound=BaseModel)

GREETING_PREFIX = "Receptor Control"
GREETING_NODE_MARKER = ", node "
SUBMIT_PROMPT = "Work unit created with ID"
ERROR_PREFIX = "ERROR:"
MAX_LINE_BYTES = 1024 * 1024
DEFAULT_CONTROL_TIMEOUT = 10.0


def _check_token(kind: str, value: str) -> str:
    if not value or any(ch.isspace() for ch in value):
        raise ValueError(f"Invalid {kind} {value!r}: must be non-empty without whitespace")
    return value


class ControlSession:
    """One connection to a node's control socket.

    Requests are serialized; at most one command is in flight per session.

    Example::

        async with ControlSession(node.control_socket) as session:
            await session.ping("node2")
    """

    def __init__(
        self,
        socket_path: str | Path,
        *,
        timeout: DurationSeconds = DEFAULT_CONTROL_TIMEOUT,
        work_poll_interval: DurationSeconds = 0.25,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.work_poll_interval = work_poll_interval
        self.node_name: NodeName | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()
        self._closed_reason: str | None = None

    @property
    def label(self) -> str:
        return self.node_name or self.socket_path.parent.name

    @property
    def is_open(self) -> bool:
        return self._writer is not None and self._closed_reason is None

    async def connect(self) -> ControlSession:
        if self._writer is not None or self._closed_reason is not None:
            raise SessionConsumedError(
                f"Control session for {self.socket_path} cannot be reconnected"
            )
        try:
            async with asyncio.timeout(self.timeout):
                self._reader, self._writer = await asyncio.open_unix_connection(
                    str(self.socket_path), limit=MAX_LINE_BYTES
                )
                greeting = await self._read_line("greeting")
        except TimeoutError as e:
            self._invalidate("connect timed out")
            raise ControlConnectionError(
                f"Timed out connecting to control socket {self.socket_path}"
            ) from e
        except OSError as e:
            self._invalidate(f"connect failed: {e}")
            raise ControlConnectionError(
                f"Cannot connect to control socket {self.socket_path}: {e}"
            ) from e

        if not greeting.startswith(GREETING_PREFIX):
            self._invalidate("bad greeting")
            raise ProtocolError(f"Unexpected control greeting {greeting!r}")
        if GREETING_NODE_MARKER in greeting:
            self.node_name = greeting.split(GREETING_NODE_MARKER, 1)[1].strip()
        logger.debug("[{}] Control session connected", self.label)
        return self

    async def close(self) -> None:
        writer = self._writer
        if self._closed_reason is None:
            self._closed_reason = "closed"
        if writer is None:
            return
        self._writer = None
        self._reader = None
        writer.close()
        with contextlib.suppress(ConnectionError):
            await writer.wait_closed()

    async def __aenter__(self) -> ControlSession:
        return await self.connect()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _invalidate(self, reason: str) -> None:
        """Mark the session unusable and drop the transport."""
        self._closed_reason = reason
        if self._writer is not None:
            self._writer.close()
        self._writer = None
        self._reader = None

    def _streams(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._closed_reason is not None:
            raise SessionConsumedError(
                f"Control session for {self.label} is no longer usable: "
                f"{self._closed_reason}"
            )
        if self._reader is None or self._writer is None:
            raise SessionConsumedError(f"Control session for {self.label} is not connected")
        return self._reader, self._writer

    async def _read_line(self, command: str) -> str:
        reader = self._reader
        assert reader is not None
        try:
            raw = await reader.readline()
        except ValueError as e:
            self._invalidate("oversized response")
            raise ProtocolError(f"Response to {command!r} exceeds {MAX_LINE_BYTES} bytes") from e
        if not raw:
            self._invalidate("connection closed by daemon")
            raise ProtocolError(f"Control socket closed while waiting for {command!r}")
        try:
            return raw.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as e:
            self._invalidate("undecodable response")
            raise ProtocolError(f"Response to {command!r} is not UTF-8") from e

    def _parse(self, command: str, line: str) -> JsonDict:
        if line.startswith(ERROR_PREFIX):
            raise CommandRejectedError(command, line[len(ERROR_PREFIX) :].strip())
        try:
            payload = orjson.loads(line)
        except orjson.JSONDecodeError as e:
            self._invalidate("malformed response")
            raise ProtocolError(f"Malformed response to {command!r}: {line!r}") from e
        if not isinstance(payload, dict):
            self._invalidate("unexpected response")
            raise ProtocolError(f"Expected a JSON object for {command!r}, got {line!r}")
        return payload

    def _validate(self, model: type[M], command: str, payload: JsonDict) -> M:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            self._invalidate("response failed validation")
            raise ProtocolError(
                f"Response to {command!r} is not a valid {model.__name__}: {payload!r}"
            ) from e

    async def _exchange(self, command: str) -> JsonDict:
        async with self._lock:
            _, writer = self._streams()
            logger.debug("[{}] -> {}", self.label, command)
            try:
                async with asyncio.timeout(self.timeout):
                    writer.write(f"{command}\n".encode())
                    await writer.drain()
                    line = await self._read_line(command)
            except TimeoutError as e:
                self._invalidate("request timed out")
                raise ProtocolTimeoutError(
                    f"No response to {command!r} from {self.label} within {self.timeout:.1f}s"
                ) from e
            except ConnectionError as e:
                self._invalidate(f"connection lost: {e}")
                raise ProtocolError(f"Connection lost during {command!r}: {e}") from e
            logger.debug("[{}] <- {}", self.label, line)
            return self._parse(command, line)

    async def ping(self, target: NodeName) -> PingResult:
        """Round-trip reachability probe to any node in the mesh."""
        command = f"ping {_check_token('node name', target)}"
        result = self._validate(PingResult, command, await self._exchange(command))
        if not result.success:
            raise CommandRejectedError(command, result.error or "ping failed")
        return result

    async def status(self) -> NodeStatus:
        """This node's view of its connections, routes and known costs."""
        return self._validate(NodeStatus, "status", await self._exchange("status"))

    async def work_submit(
        self,
        target: NodeName,
        service: ServiceName,
        params: str | None = None,
        payload: bytes = b"",
    ) -> WorkUnitId:
        """Submit work to ``service`` on ``target`` and return the unit ID.

        A successful submit consumes this session.
        """
        command = (
            f"work submit {_check_token('node name', target)} "
            f"{_check_token('service name', service)}"
        )
        if params:
            if "\n" in params:
                raise ValueError("params must be a single line")
            command = f"{command} {params}"

        async with self._lock:
            _, writer = self._streams()
            logger.debug("[{}] -> {}", self.label, command)
            try:
                async with asyncio.timeout(self.timeout):
                    writer.write(f"{command}\n".encode())
                    await writer.drain()
                    prompt = await self._read_line(command)
                    if prompt.startswith(ERROR_PREFIX):
                        raise CommandRejectedError(
                            command, prompt[len(ERROR_PREFIX) :].strip()
                        )
                    if not prompt.startswith(SUBMIT_PROMPT):
                        self._invalidate("unexpected submit prompt")
                        raise ProtocolError(f"Unexpected reply to {command!r}: {prompt!r}")

                    # From here the write side is gone; the session is spent.
                    self._closed_reason = "consumed by work submit"
                    if payload:
                        writer.write(payload)
                    if writer.can_write_eof():
                        writer.write_eof()
                    await writer.drain()
                    line = await self._read_line(command)
            except TimeoutError as e:
                self._invalidate("work submit timed out")
                raise ProtocolTimeoutError(
                    f"No response to {command!r} from {self.label} within {self.timeout:.1f}s"
                ) from e
            except ConnectionError as e:
                self._invalidate(f"connection lost: {e}")
                raise ProtocolError(f"Connection lost during {command!r}: {e}") from e

        try:
            result = self._validate(SubmitResult, command, self._parse(command, line))
        finally:
            self._invalidate("consumed by work submit")
        logger.info(
            "[{}] Submitted work unit {} to {}/{}", self.label, result.unit_id, target, service
        )
        return result.unit_id

    async def work_cancel(self, work_id: WorkUnitId) -> JsonDict:
        return await self._exchange(f"work cancel {_check_token('work unit id', work_id)}")

    async def work_release(self, work_id: WorkUnitId) -> JsonDict:
        return await self._exchange(f"work release {_check_token('work unit id', work_id)}")

    async def work_status(self, work_id: WorkUnitId) -> WorkStatus:
        command = f"work status {_check_token('work unit id', work_id)}"
        return self._validate(WorkStatus, command, await self._exchange(command))

    def _asserter(self) -> WorkLifecycleAsserter:
        return WorkLifecycleAsserter(self, interval=self.work_poll_interval)

    async def assert_work_running(
        self, timeout: DurationSeconds, work_id: WorkUnitId
    ) -> WorkState:
        return await self._asserter().assert_state(timeout, work_id, WorkState.RUNNING)

    async def assert_work_cancelled(
        self, timeout: DurationSeconds, work_id: WorkUnitId
    ) -> WorkState:
        return await self._asserter().assert_state(timeout, work_id, WorkState.CANCELLED)

    async def assert_work_succeeded(
        self, timeout: DurationSeconds, work_id: WorkUnitId
    ) -> WorkState:
        return await self._asserter().assert_state(timeout, work_id, WorkState.SUCCEEDED)

    async def assert_work_released(
        self, timeout: DurationSeconds, work_id: WorkUnitId
    ) -> WorkState:
        return await self._asserter().assert_state(timeout, work_id, WorkState.RELEASED)
