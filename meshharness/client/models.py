"""Typed control-socket responses.

The daemon answers in JSON with Go-style field names (``NodeID``,
``KnownConnectionCosts``); models accept those aliases and expose
snake_case attributes.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meshharness.datastructures.type_aliases import (
    ConnectionCost,
    CostTable,
    NodeName,
    WorkUnitId,
)


class ControlModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class ConnectionInfo(ControlModel):
    """A direct connection as seen by one node."""

    node_id: NodeName = Field(alias="NodeID", description="The connected peer.")
    cost: ConnectionCost = Field(1.0, alias="Cost", description="Link cost.")


class Advertisement(ControlModel):
    """A node advertisement the reporting node has received."""

    node_id: NodeName = Field(alias="NodeID")
    time: str | float | None = Field(None, alias="Time")


class NodeStatus(ControlModel):
    """Response to ``status``: one node's view of the mesh."""

    node_id: NodeName = Field(alias="NodeID")
    connections: tuple[ConnectionInfo, ...] = Field(default=(), alias="Connections")
    routing_table: dict[NodeName, NodeName] | None = Field(None, alias="RoutingTable")
    advertisements: tuple[Advertisement, ...] = Field(
        default=(), alias="Advertisements"
    )
    known_connection_costs: CostTable | None = Field(
        None, alias="KnownConnectionCosts"
    )

    def connected_nodes(self) -> frozenset[NodeName]:
        return frozenset(connection.node_id for connection in self.connections)

    def discovered_nodes(self) -> frozenset[NodeName] | None:
        """Every node this one knows about, or None if the daemon hides it."""
        if self.advertisements:
            return frozenset(ad.node_id for ad in self.advertisements) | {self.node_id}
        if self.known_connection_costs:
            known = set(self.known_connection_costs)
            for peers in self.known_connection_costs.values():
                known.update(peers)
            return frozenset(known) | {self.node_id}
        return None


class PingResult(ControlModel):
    """Response to ``ping <node>``. Only absence of error is asserted."""

    from_node: NodeName | None = Field(None, alias="From")
    success: bool = Field(True, alias="Success")
    time: float | None = Field(None, alias="Time")
    error: str | None = Field(None, alias="Error")


class SubmitResult(ControlModel):
    """Final line of ``work submit`` once stdin was accepted."""

    result: str = ""
    unit_id: WorkUnitId = Field(alias="unitid")


class WorkState(str, Enum):
    """Work unit lifecycle states reported or inferred by the harness."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    RELEASED = "Released"

    @property
    def is_terminal(self) -> bool:
        return self in {
            WorkState.SUCCEEDED,
            WorkState.FAILED,
            WorkState.CANCELLED,
            WorkState.RELEASED,
        }

    @classmethod
    def from_name(cls, name: str, detail: str = "") -> WorkState:
        normalized = name.strip().lower()
        if normalized in {"canceled", "cancelled"}:
            return cls.CANCELLED
        for state in cls:
            if state.value.lower() == normalized:
                if state is cls.FAILED and _looks_cancelled(detail):
                    return cls.CANCELLED
                return state
        raise ValueError(f"Unknown work state {name!r}")


def _looks_cancelled(detail: str) -> bool:
    lowered = detail.lower()
    return "cancel" in lowered or "killed" in lowered


class WorkStatus(ControlModel):
    """Response to ``work status <id>``."""

    state: int | None = Field(None, alias="State")
    state_name: str = Field(alias="StateName")
    detail: str = Field("", alias="Detail")
    work_type: str = Field("", alias="WorkType")

    @field_validator("state_name")
    @classmethod
    def _known_state(cls, value: str) -> str:
        WorkState.from_name(value)
        return value

    @property
    def work_state(self) -> WorkState:
        return WorkState.from_name(self.state_name, self.detail)
