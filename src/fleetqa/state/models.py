"""Typed model of the hierarchical health report.

A snapshot describes the agent as reported by its local control plane:

- the system root state and message
- the fleet (remote enrollment) channel state, independent of the root
- components, each owning an ordered sequence of units

Snapshots are frozen. A fresh one is produced for every poll attempt and
discarded once the predicate has been evaluated.

Example:
    >>> snapshot = StateSnapshot.from_wire({
    ...     "state": "HEALTHY",
    ...     "fleet_state": "HEALTHY",
    ...     "components": [{
    ...         "id": "endpoint-default",
    ...         "name": "endpoint-default",
    ...         "state": "HEALTHY",
    ...         "units": [
    ...             {"unit_id": "endpoint-default-input", "unit_type": "INPUT", "state": 2},
    ...             {"unit_id": "endpoint-default", "unit_type": "OUTPUT", "state": 2},
    ...         ],
    ...     }],
    ... })
    >>> snapshot.state is AgentState.HEALTHY
    True
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentState(Enum):
    """Health state of the system root, a component or a unit.

    Wire integers follow the control protocol ordering.
    """

    STARTING = "starting"
    CONFIGURING = "configuring"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UPGRADING = "upgrading"
    ROLLBACK = "rollback"

    @classmethod
    def parse(cls, value: Any) -> AgentState:
        """Parse a state from its name, value or wire integer.

        Raises:
            ValueError: If the value names no known state.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unknown agent state: {value!r}")
        if isinstance(value, int):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            raise ValueError(f"Unknown agent state: {value!r}")
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized.startswith("state_"):
                normalized = normalized[len("state_"):]
            for member in cls:
                if member.value == normalized:
                    return member
        raise ValueError(f"Unknown agent state: {value!r}")


# The fleet channel reports with the same vocabulary as the root state.
FleetState = AgentState


class UnitType(Enum):
    """Kind of unit owned by a component."""

    INPUT = "input"
    OUTPUT = "output"

    @classmethod
    def parse(cls, value: Any) -> UnitType:
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        raise ValueError(f"Unknown unit type: {value!r}")


class Unit(BaseModel):
    """A single input or output unit inside a component."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    unit_id: str = Field(..., description="Unit identifier")
    unit_type: UnitType = Field(..., description="Input or output")
    state: AgentState = Field(..., description="Reported unit state")
    message: str = Field(default="", description="Reported unit message")

    @field_validator("unit_type", mode="before")
    @classmethod
    def validate_unit_type(cls, v: Any) -> UnitType:
        return UnitType.parse(v)

    @field_validator("state", mode="before")
    @classmethod
    def validate_state(cls, v: Any) -> AgentState:
        return AgentState.parse(v)

    @property
    def is_healthy(self) -> bool:
        return self.state is AgentState.HEALTHY


class Component(BaseModel):
    """A component running under the agent, with its units."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    component_id: str = Field(default="", description="Component identifier")
    name: str = Field(..., description="Component name")
    state: AgentState = Field(..., description="Reported component state")
    message: str = Field(default="", description="Reported component message")
    units: tuple[Unit, ...] = Field(default_factory=tuple, description="Owned units, in order")

    @field_validator("state", mode="before")
    @classmethod
    def validate_state(cls, v: Any) -> AgentState:
        return AgentState.parse(v)

    @property
    def is_healthy(self) -> bool:
        return self.state is AgentState.HEALTHY

    def matches(self, token: str) -> bool:
        """Loose identity: case-sensitive substring of the component name."""
        return token in self.name

    def units_of_type(self, unit_type: UnitType) -> list[Unit]:
        return [u for u in self.units if u.unit_type is unit_type]


class StateSnapshot(BaseModel):
    """Point-in-time health report of the whole agent.

    Attributes:
        state: Root system state.
        message: Root system message.
        fleet_state: State of the remote enrollment channel.
        fleet_message: Message of the remote enrollment channel.
        components: Components in reported order.
        agent_id: Agent identifier, when reported.
        version: Agent version, when reported.
        observed_at: When the harness received this snapshot.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    state: AgentState
    message: str = ""
    fleet_state: FleetState = AgentState.STOPPED
    fleet_message: str = ""
    components: tuple[Component, ...] = Field(default_factory=tuple)
    agent_id: str | None = None
    version: str | None = None
    observed_at: datetime = Field(default_factory=datetime.now)

    @field_validator("state", "fleet_state", mode="before")
    @classmethod
    def validate_state(cls, v: Any) -> AgentState:
        return AgentState.parse(v)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> StateSnapshot:
        """Build a snapshot from a raw status document.

        Accepts the control protocol's field names (``id``, ``units``,
        ``unit_id``, ``unit_type``) as well as this model's own names, and
        nested ``info`` blocks carrying ``id`` and ``version``.
        """
        info = data.get("info") or {}
        components = []
        for raw in data.get("components") or []:
            components.append({
                "component_id": raw.get("component_id", raw.get("id", "")),
                "name": raw.get("name", raw.get("id", "")),
                "state": raw.get("state"),
                "message": raw.get("message", ""),
                "units": [
                    {
                        "unit_id": u.get("unit_id", u.get("id", "")),
                        "unit_type": u.get("unit_type", u.get("type")),
                        "state": u.get("state"),
                        "message": u.get("message", ""),
                    }
                    for u in raw.get("units") or []
                ],
            })
        return cls.model_validate({
            "state": data.get("state"),
            "message": data.get("message", ""),
            "fleet_state": data.get("fleet_state", AgentState.STOPPED),
            "fleet_message": data.get("fleet_message", ""),
            "components": components,
            "agent_id": data.get("agent_id", info.get("id")),
            "version": data.get("version", info.get("version")),
        })

    def iter_units(self) -> Iterator[tuple[Component, Unit]]:
        """Yield every (component, unit) pair in reported order."""
        for component in self.components:
            for unit in component.units:
                yield component, unit

    def matching_components(self, token: str) -> list[Component]:
        return [c for c in self.components if c.matches(token)]

    def units_bearing(self, token: str) -> list[Unit]:
        """Units whose id carries the identity token, under any component."""
        return [u for _, u in self.iter_units() if token in u.unit_id]

    def unhealthy(self) -> list[str]:
        """Describe every component and unit that is not healthy."""
        problems: list[str] = []
        for component in self.components:
            if not component.is_healthy:
                problems.append(
                    f"component {component.name!r} is {component.state.value}"
                    + (f": {component.message}" if component.message else "")
                )
            for unit in component.units:
                if not unit.is_healthy:
                    problems.append(
                        f"unit {unit.unit_id!r} is {unit.state.value}"
                        + (f": {unit.message}" if unit.message else "")
                    )
        return problems

    def summary(self) -> str:
        """One-line summary for log records."""
        return (
            f"state={self.state.value} fleet={self.fleet_state.value} "
            f"components={len(self.components)} "
            f"unhealthy={len(self.unhealthy())}"
        )
