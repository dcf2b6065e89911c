"""fleetqa - convergence verification for a fleet-managed agent.

Installs an agent, attaches a managed sub-service through the fleet API and
checks the agent's hierarchical health converges to the expected state in
bounded time, then removes the sub-service and checks it is really gone.

Quick Start:
    from fleetqa import LifecycleOrchestrator, load_config, scenarios

    orchestrator = LifecycleOrchestrator(client, fleet, installer, load_config())
    result = orchestrator.run(scenarios.unenroll(protected=True))
"""

from __future__ import annotations

from fleetqa.artifacts import BundleLayout, BundleReport, verify_bundle
from fleetqa.config import HarnessConfig, load_config
from fleetqa.errors import ConvergenceTimeoutError, FleetQAError
from fleetqa.lifecycle import (
    InstallOptions,
    LifecycleOrchestrator,
    RemovalTrigger,
    Scenario,
    ScenarioResult,
    Stage,
    scenarios,
)
from fleetqa.poller import ConvergencePoller, Deadline, PollResult, poll
from fleetqa.predicates import (
    Predicate,
    all_of,
    any_of,
    degraded_with_message,
    managed_absent,
    managed_present_and_healthy,
    negate,
    system_healthy,
    unenrolled,
)
from fleetqa.state import AgentState, Component, StateSnapshot, Unit, UnitType

__version__ = "0.1.0"

__all__ = [
    "AgentState",
    "BundleLayout",
    "BundleReport",
    "Component",
    "ConvergencePoller",
    "ConvergenceTimeoutError",
    "Deadline",
    "FleetQAError",
    "HarnessConfig",
    "InstallOptions",
    "LifecycleOrchestrator",
    "PollResult",
    "Predicate",
    "RemovalTrigger",
    "Scenario",
    "ScenarioResult",
    "Stage",
    "StateSnapshot",
    "Unit",
    "UnitType",
    "all_of",
    "any_of",
    "degraded_with_message",
    "load_config",
    "managed_absent",
    "managed_present_and_healthy",
    "negate",
    "poll",
    "scenarios",
    "system_healthy",
    "unenrolled",
    "verify_bundle",
]
