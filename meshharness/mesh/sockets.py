"""OS-level socket enumeration used to prove nodes released their sockets."""

from __future__ import annotations

import os
import socket
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

import psutil

from meshharness.datastructures.type_aliases import PortNumber, ProcessId


@dataclass(frozen=True, slots=True)
class OpenSocket:
    """A socket still held open by a process."""

    pid: ProcessId
    kind: str
    local: str
    remote: str
    status: str

    def __str__(self) -> str:
        remote = f" -> {self.remote}" if self.remote else ""
        return f"{self.kind} {self.local}{remote} [{self.status}] pid={self.pid}"


def _format_addr(addr: object) -> str:
    if not addr:
        return ""
    if isinstance(addr, str):
        return addr
    ip, port = addr  # type: ignore[misc]
    return f"{ip}:{port}"


def _port_of(addr: object) -> PortNumber | None:
    if not addr or isinstance(addr, str):
        return None
    return getattr(addr, "port", None)


def _process_sockets(pid: ProcessId) -> list[Any]:
    try:
        return psutil.Process(pid).net_connections(kind="all")
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return []


def _to_open_socket(pid: ProcessId, conn: Any) -> OpenSocket:
    kind = "unix" if isinstance(conn.laddr, str) else (
        "udp" if conn.type == socket.SOCK_DGRAM else "tcp"
    )
    return OpenSocket(
        pid=pid,
        kind=kind,
        local=_format_addr(conn.laddr),
        remote=_format_addr(conn.raddr),
        status=conn.status,
    )


def sockets_for_pid(pid: ProcessId) -> list[OpenSocket]:
    """Every inet and unix socket owned by ``pid`` (empty once it has exited)."""
    return [_to_open_socket(pid, conn) for conn in _process_sockets(pid)]


def process_group_members(pgid: ProcessId) -> list[ProcessId]:
    """Live processes whose process group is ``pgid``, leader included."""
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc.pid)
        except ProcessLookupError:
            continue
    return members


def sockets_for_group(pgid: ProcessId) -> list[OpenSocket]:
    """Sockets of every process still in group ``pgid``.

    A group id is not handed out as a new pid while any member survives, so
    this keeps finding the leftovers of a reaped leader. A process that only
    reused the leader's pid is not counted unless it leads its own group.
    """
    return [sock for pid in process_group_members(pgid) for sock in sockets_for_pid(pid)]


def sockets_touching(
    pid: ProcessId,
    ports: Collection[PortNumber],
    paths: Collection[str] = (),
) -> list[OpenSocket]:
    """Sockets of ``pid`` bound to, or connected to, any of ``ports``/``paths``.

    Used for in-process nodes, where the owning pid is the test process
    itself and only the node's own listeners identify its sockets.
    """
    matches = []
    for conn in _process_sockets(pid):
        if isinstance(conn.laddr, str) or isinstance(conn.raddr, str):
            if conn.laddr in paths or conn.raddr in paths:
                matches.append(_to_open_socket(pid, conn))
        elif _port_of(conn.laddr) in ports or _port_of(conn.raddr) in ports:
            matches.append(_to_open_socket(pid, conn))
    return matches
