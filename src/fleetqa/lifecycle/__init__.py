"""Scenario lifecycle: collaborators, orchestrator and scenario builders."""

from fleetqa.lifecycle.collaborators import (
    AgentHandle,
    AgentInstaller,
    AgentPolicySpec,
    ControlPlaneClient,
    InstallOptions,
    IntegrationHandle,
    ManagementAPI,
    PolicyHandle,
)
from fleetqa.lifecycle.filesystem import check_no_residuals, find_residuals
from fleetqa.lifecycle.orchestrator import (
    LifecycleOrchestrator,
    RemovalTrigger,
    Scenario,
    ScenarioResult,
    Stage,
    StageRecord,
)
from fleetqa.lifecycle import scenarios
from fleetqa.lifecycle.payload import (
    ENDPOINT_PACKAGE_POLICY_TEMPLATE,
    IntegrationPayload,
    render_integration_payload,
)

__all__ = [
    "AgentHandle",
    "AgentInstaller",
    "AgentPolicySpec",
    "ControlPlaneClient",
    "ENDPOINT_PACKAGE_POLICY_TEMPLATE",
    "InstallOptions",
    "IntegrationHandle",
    "IntegrationPayload",
    "LifecycleOrchestrator",
    "ManagementAPI",
    "PolicyHandle",
    "RemovalTrigger",
    "Scenario",
    "ScenarioResult",
    "Stage",
    "StageRecord",
    "check_no_residuals",
    "find_residuals",
    "render_integration_payload",
    "scenarios",
]
