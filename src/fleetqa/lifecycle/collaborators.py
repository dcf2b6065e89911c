"""Collaborator ports used by the lifecycle orchestrator.

The harness drives three external systems through these protocols:

- ControlPlaneClient: reads the local agent's state (see fleetqa.state)
- ManagementAPI: the remote fleet-management service
- AgentInstaller: installs, uninstalls and collects diagnostics from the agent

Handles returned by the collaborators are plain frozen dataclasses; the
orchestrator never inspects more than their identifiers.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from fleetqa.state.client import ControlPlaneClient

TAMPER_PROTECTION_FEATURE = "tamper_protection"


@dataclass(frozen=True)
class PolicyHandle:
    policy_id: str
    name: str = ""


@dataclass(frozen=True)
class IntegrationHandle:
    integration_id: str
    name: str = ""
    policy_id: str = ""


@dataclass(frozen=True)
class AgentHandle:
    """An installed agent.

    Attributes:
        agent_id: Identifier assigned by the management API, when known.
        hostname: Host identity used to look the agent up remotely.
        install_dir: Directory the agent was installed into. Its parent is
            scanned for leftovers of the managed sub-service.
    """

    agent_id: str = ""
    hostname: str = ""
    install_dir: str | None = None


@dataclass(frozen=True)
class InstallOptions:
    """Options for installing the agent.

    Attributes:
        non_interactive: Never prompt.
        force: Overwrite an existing installation.
        unprivileged: Install without root/Administrator rights.
        base_path: Custom installation base path; None for the default.
    """

    non_interactive: bool = True
    force: bool = True
    unprivileged: bool = False
    base_path: str | None = None

    def to_cli_args(self) -> list[str]:
        args: list[str] = []
        if self.non_interactive:
            args.append("--non-interactive")
        if self.force:
            args.append("--force")
        if self.unprivileged:
            args.append("--unprivileged")
        if self.base_path:
            args.extend(["--base-path", self.base_path])
        return args


@dataclass
class AgentPolicySpec:
    """Request body for a new agent policy.

    Example:
        >>> spec = AgentPolicySpec.for_run(protected=True)
        >>> spec.name
        'test-policy-3f2c...'
    """

    name: str
    namespace: str = "default"
    description: str = ""
    monitoring_enabled: list[str] = field(default_factory=lambda: ["logs", "metrics"])
    protected: bool = False

    @classmethod
    def for_run(
        cls,
        prefix: str = "test-policy",
        namespace: str = "default",
        monitoring_enabled: list[str] | None = None,
        protected: bool = False,
    ) -> AgentPolicySpec:
        """Build a spec with a unique name so repeated runs never collide."""
        run_id = str(uuid.uuid4())
        return cls(
            name=f"{prefix}-{run_id}",
            namespace=namespace,
            description=f"Test policy {run_id}",
            monitoring_enabled=list(monitoring_enabled or ["logs", "metrics"]),
            protected=protected,
        )

    def to_api_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "description": self.description,
            "monitoring_enabled": list(self.monitoring_enabled),
        }
        if self.protected:
            body["is_protected"] = True
            body["agent_features"] = [{"name": TAMPER_PROTECTION_FEATURE, "enabled": True}]
        return body


@runtime_checkable
class ManagementAPI(Protocol):
    """Remote fleet-management service.

    Every method raises ManagementAPIError (or another SetupError) on failure.
    """

    def create_policy(self, spec: AgentPolicySpec) -> PolicyHandle: ...

    def install_managed_integration(
        self, policy: PolicyHandle, payload: dict[str, Any]
    ) -> IntegrationHandle: ...

    def remove_managed_integration(self, integration: IntegrationHandle) -> None: ...

    def unenroll(self, agent: AgentHandle) -> None: ...

    def lookup_agent(self, policy: PolicyHandle, host_identity: str) -> AgentHandle: ...


@runtime_checkable
class AgentInstaller(Protocol):
    """Installs the agent binary on this host and enrolls it with a policy."""

    def install(self, options: InstallOptions, policy: PolicyHandle) -> AgentHandle: ...

    def uninstall(self, agent: AgentHandle) -> None: ...

    def collect_diagnostics(self, agent: AgentHandle, destination: Path) -> Path:
        """Write a diagnostics bundle under ``destination`` and return its path."""
        ...


__all__ = [
    "AgentHandle",
    "AgentInstaller",
    "AgentPolicySpec",
    "ControlPlaneClient",
    "InstallOptions",
    "IntegrationHandle",
    "ManagementAPI",
    "PolicyHandle",
    "TAMPER_PROTECTION_FEATURE",
]
