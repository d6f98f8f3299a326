"""
Semantic type aliases for meshharness datastructures.

These aliases keep signatures self-documenting: a ``NodeName`` and a
``TLSProfileName`` are both strings on the wire, but they are never
interchangeable in the harness.
"""

from typing import Any, TypeAlias

# Time and timestamp types
Timestamp: TypeAlias = float
DurationSeconds: TypeAlias = float

# Mesh identity types
NodeName: TypeAlias = str
PeerName: TypeAlias = str
ServiceName: TypeAlias = str
WorkUnitId: TypeAlias = str
TLSProfileName: TypeAlias = str

# Topology types
BackendIndex: TypeAlias = int
ConnectionCost: TypeAlias = float
ConfigFragment: TypeAlias = dict[str, Any]
CostTable: TypeAlias = dict[NodeName, dict[NodeName, ConnectionCost]]

# Network types
HostAddress: TypeAlias = str
PortNumber: TypeAlias = int
ProcessId: TypeAlias = int
SocketPath: TypeAlias = str

# Serialization types
JsonDict: TypeAlias = dict[str, Any]
