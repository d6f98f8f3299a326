"""One OS process per node, started from the configured daemon command."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections import deque

from loguru import logger

from meshharness.core.errors import LaunchError
from meshharness.mesh.node import NodeProcess
from meshharness.mesh.runner import MeshRunner
from meshharness.mesh.sockets import OpenSocket, sockets_for_group
from meshharness.topology.materialize import NodeConfig

LOG_TAIL_LINES = 20


def log_tail(config: NodeConfig, lines: int = LOG_TAIL_LINES) -> str:
    """Last ``lines`` lines of a node's daemon log, or "" if there is none."""
    try:
        with config.log_path.open(errors="replace") as log:
            return "".join(deque(log, maxlen=lines)).strip()
    except FileNotFoundError:
        return ""


class SubprocessMeshRunner(MeshRunner):
    """Runs ``<daemon_command> --config <node dir>/receptor.yaml`` per node.

    Each daemon gets its own session so a forced stop can take down anything
    it spawned (work units included) with a single process-group kill.
    """

    async def _spawn(self, config: NodeConfig) -> NodeProcess:
        argv = [*self.settings.daemon_command, "--config", str(config.config_path)]
        try:
            with config.log_path.open("ab") as log:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=config.working_dir,
                    start_new_session=True,
                )
        except OSError as e:
            raise LaunchError(f"cannot execute {argv[0]!r}: {e}") from e
        logger.debug("[{}] Started {}", config.name, " ".join(argv))
        return NodeProcess(config=config, handle=process, pid=process.pid)

    def _has_exited(self, node: NodeProcess) -> bool:
        return node.handle.returncode is not None

    async def _terminate(self, node: NodeProcess, *, force: bool) -> None:
        if force:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(node.pid, signal.SIGKILL)
            return
        with contextlib.suppress(ProcessLookupError):
            node.handle.send_signal(signal.SIGINT)

    async def _wait_exited(self, node: NodeProcess) -> None:
        node.exit_code = await node.handle.wait()

    def _open_sockets(self, node: NodeProcess) -> list[OpenSocket]:
        # The daemon leads its own group; anything it spawned that outlives it
        # stays in that group after the daemon itself has been reaped.
        return sockets_for_group(node.pid)

    def _failure_detail(self, node: NodeProcess) -> str:
        if node.exit_code is None:
            node.exit_code = node.handle.returncode
        detail = super()._failure_detail(node)
        tail = log_tail(node.config)
        if tail:
            return f"{detail}; log tail:\n{tail}"
        return detail
