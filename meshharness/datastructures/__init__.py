"""Shared datastructure aliases for meshharness."""

from __future__ import annotations

from .type_aliases import (
    BackendIndex,
    ConfigFragment,
    ConnectionCost,
    CostTable,
    DurationSeconds,
    NodeName,
    PortNumber,
    ServiceName,
    TLSProfileName,
    WorkUnitId,
)

__all__ = [
    "BackendIndex",
    "ConfigFragment",
    "ConnectionCost",
    "CostTable",
    "DurationSeconds",
    "NodeName",
    "PortNumber",
    "ServiceName",
    "TLSProfileName",
    "WorkUnitId",
]
