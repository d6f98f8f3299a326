"""Exception taxonomy for the mesh harness.

Every error raised by the harness derives from ``MeshHarnessError`` so tests
can catch harness failures without also swallowing assertion errors.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from meshharness.datastructures.type_aliases import DurationSeconds, NodeName


class MeshHarnessError(Exception):
    """Base exception for harness errors."""

    pass


class ConstructionError(MeshHarnessError):
    """Raised when a topology is invalid and no process may be started."""

    pass


class LaunchError(MeshHarnessError):
    """Raised when one or more nodes fail to start.

    ``failures`` maps each failed node to a human-readable reason. By the
    time this is raised every node that did start has been torn down.
    """

    def __init__(self, message: str, failures: Mapping[NodeName, str] | None = None):
        self.failures: dict[NodeName, str] = dict(failures or {})
        if self.failures:
            details = "; ".join(
                f"{name}: {reason}" for name, reason in sorted(self.failures.items())
            )
            message = f"{message} ({details})"
        super().__init__(message)


class ConvergenceTimeoutError(MeshHarnessError):
    """Raised when a polled condition is not met before its deadline."""

    def __init__(
        self,
        description: str,
        *,
        timeout: DurationSeconds,
        attempts: int,
        last_observed: Any = None,
    ):
        self.description = description
        self.timeout = timeout
        self.attempts = attempts
        self.last_observed = last_observed
        super().__init__(
            f"Timed out after {timeout:.1f}s ({attempts} attempts) waiting for "
            f"{description}; last observed: {last_observed!r}"
        )


class WorkStateTimeoutError(ConvergenceTimeoutError):
    """Raised when a work unit never reaches the expected state."""

    pass


class ShutdownTimeoutError(ConvergenceTimeoutError):
    """Raised when node sockets are still open after the shutdown deadline."""

    pass


class ControlConnectionError(MeshHarnessError):
    """Raised when a control socket cannot be reached."""

    pass


class ProtocolError(MeshHarnessError):
    """Raised on a malformed or unexpected control-socket response."""

    pass


class ProtocolTimeoutError(ProtocolError):
    """Raised when a control request gets no response in time."""

    pass


class SessionConsumedError(MeshHarnessError):
    """Raised when a control session is used after it was consumed or closed."""

    pass


class CommandRejectedError(MeshHarnessError):
    """Raised when the daemon understood a command but declined it."""

    def __init__(self, command: str, message: str):
        self.command = command
        self.message = message
        super().__init__(f"{command!r} rejected: {message}")

    @property
    def is_unknown_unit(self) -> bool:
        lowered = self.message.lower()
        return "unknown" in lowered or "not found" in lowered


class WorkStateError(MeshHarnessError):
    """Raised when a work unit settles in a terminal state other than expected."""

    pass
