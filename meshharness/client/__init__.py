"""Control-socket client and work lifecycle assertions."""

from .control import ControlSession
from .models import (
    ConnectionInfo,
    NodeStatus,
    PingResult,
    SubmitResult,
    WorkState,
    WorkStatus,
)
from .work import WorkLifecycleAsserter

__all__ = [
    "ConnectionInfo",
    "ControlSession",
    "NodeStatus",
    "PingResult",
    "SubmitResult",
    "WorkLifecycleAsserter",
    "WorkState",
    "WorkStatus",
]
