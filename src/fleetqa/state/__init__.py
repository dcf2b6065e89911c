"""State model of the agent's hierarchical health report.

- StateSnapshot: system root, fleet channel, components and units
- ControlPlaneClient: protocol for reading snapshots from the local agent
"""

from fleetqa.state.client import (
    ControlPlaneClient,
    connected,
    fetch_snapshot,
    persistent_fetch,
    reconnecting_fetch,
)
from fleetqa.state.models import (
    AgentState,
    Component,
    FleetState,
    StateSnapshot,
    Unit,
    UnitType,
)

__all__ = [
    "AgentState",
    "FleetState",
    "UnitType",
    "Unit",
    "Component",
    "StateSnapshot",
    "ControlPlaneClient",
    "connected",
    "fetch_snapshot",
    "persistent_fetch",
    "reconnecting_fetch",
]
