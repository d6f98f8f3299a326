"""Core harness plumbing: settings, errors, logging, polling and ports."""

from .config import HarnessSettings
from .errors import (
    CommandRejectedError,
    ConstructionError,
    ControlConnectionError,
    ConvergenceTimeoutError,
    LaunchError,
    MeshHarnessError,
    ProtocolError,
    ProtocolTimeoutError,
    SessionConsumedError,
    ShutdownTimeoutError,
    WorkStateError,
    WorkStateTimeoutError,
)
from .logging import configure_logging
from .polling import poll_until

__all__ = [
    "CommandRejectedError",
    "ConstructionError",
    "ControlConnectionError",
    "ConvergenceTimeoutError",
    "HarnessSettings",
    "LaunchError",
    "MeshHarnessError",
    "ProtocolError",
    "ProtocolTimeoutError",
    "SessionConsumedError",
    "ShutdownTimeoutError",
    "WorkStateError",
    "WorkStateTimeoutError",
    "configure_logging",
    "poll_until",
]
