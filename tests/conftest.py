"""Pytest fixtures for fleetqa tests."""

from __future__ import annotations

import os
import zipfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from fleetqa.config import HarnessConfig
from fleetqa.errors import ManagementAPIError
from fleetqa.lifecycle.collaborators import (
    AgentHandle,
    AgentPolicySpec,
    InstallOptions,
    IntegrationHandle,
    PolicyHandle,
)
from fleetqa.lifecycle.orchestrator import LifecycleOrchestrator
from fleetqa.observability import log_context
from fleetqa.poller import ConvergencePoller
from fleetqa.state.models import AgentState, Component, StateSnapshot, Unit, UnitType

HOSTNAME = "test-host"


def unit(
    unit_id: str,
    unit_type: UnitType = UnitType.INPUT,
    state: AgentState = AgentState.HEALTHY,
    message: str = "",
) -> Unit:
    return Unit(unit_id=unit_id, unit_type=unit_type, state=state, message=message)


def component(
    name: str,
    state: AgentState = AgentState.HEALTHY,
    units: list[Unit] | None = None,
    message: str = "",
) -> Component:
    if units is None:
        units = [
            unit(f"{name}-input", UnitType.INPUT),
            unit(name, UnitType.OUTPUT),
        ]
    return Component(component_id=name, name=name, state=state, units=tuple(units), message=message)


def snapshot(
    state: AgentState = AgentState.HEALTHY,
    components: list[Component] | None = None,
    fleet_state: AgentState = AgentState.HEALTHY,
    message: str = "",
) -> StateSnapshot:
    return StateSnapshot(
        state=state,
        message=message,
        fleet_state=fleet_state,
        components=tuple(components or ()),
    )


def monitoring_component() -> Component:
    return component("filestream-monitoring")


def present_snapshot() -> StateSnapshot:
    """Agent healthy, running monitoring and the endpoint component."""
    return snapshot(components=[monitoring_component(), component("endpoint-default")])


def absent_snapshot() -> StateSnapshot:
    """Endpoint gone, monitoring still running."""
    return snapshot(components=[monitoring_component()])


def unenrolled_snapshot() -> StateSnapshot:
    return snapshot(components=[], fleet_state=AgentState.FAILED)


def degraded_snapshot(message: str) -> StateSnapshot:
    return snapshot(
        state=AgentState.DEGRADED,
        components=[
            monitoring_component(),
            component("endpoint-default", state=AgentState.DEGRADED, message=message),
        ],
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeControlPlane:
    """Scripted control-plane client.

    Serves queued snapshots (or raises queued exceptions) in order; the last
    item repeats forever.
    """

    def __init__(self, items: list[Any] | None = None) -> None:
        self.queue: list[Any] = list(items or [snapshot(components=[])])
        self.connected = False
        self.connects = 0
        self.disconnects = 0
        self.fetches = 0
        self.connect_error: BaseException | None = None

    def set_state(self, *items: Any) -> None:
        self.queue = list(items)

    def connect(self, timeout: float | None = None) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def fetch_state(self, timeout: float | None = None) -> StateSnapshot:
        if not self.connected:
            raise ConnectionError("not connected")
        self.fetches += 1
        item = self.queue[0] if len(self.queue) == 1 else self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeManagementAPI:
    """In-memory fleet API that drives the fake agent's reported state."""

    def __init__(self, control_plane: FakeControlPlane) -> None:
        self.control_plane = control_plane
        self.calls: list[tuple[str, Any]] = []
        self.policies: list[AgentPolicySpec] = []
        self.payloads: list[dict[str, Any]] = []
        self.fail_on: dict[str, BaseException] = {}
        self.present_state: list[Any] = [present_snapshot()]

    def _call(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        if name in self.fail_on:
            raise self.fail_on[name]

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def create_policy(self, spec: AgentPolicySpec) -> PolicyHandle:
        self._call("create_policy", spec)
        self.policies.append(spec)
        return PolicyHandle(policy_id=f"policy-{len(self.policies)}", name=spec.name)

    def install_managed_integration(
        self, policy: PolicyHandle, payload: dict[str, Any]
    ) -> IntegrationHandle:
        self._call("install_managed_integration", payload)
        self.payloads.append(payload)
        self.control_plane.set_state(*self.present_state)
        return IntegrationHandle(
            integration_id=payload["id"], name=payload["name"], policy_id=policy.policy_id
        )

    def remove_managed_integration(self, integration: IntegrationHandle) -> None:
        self._call("remove_managed_integration", integration)
        self.control_plane.set_state(absent_snapshot())

    def unenroll(self, agent: AgentHandle) -> None:
        self._call("unenroll", agent)
        self.control_plane.set_state(unenrolled_snapshot())

    def lookup_agent(self, policy: PolicyHandle, host_identity: str) -> AgentHandle:
        self._call("lookup_agent", (policy, host_identity))
        if host_identity != HOSTNAME:
            raise ManagementAPIError(message=f"No agent with hostname {host_identity}", status_code=404)
        return AgentHandle(agent_id="agent-1", hostname=host_identity)


class FakeInstaller:
    """Installs into a temporary directory and writes diagnostics zips."""

    def __init__(self, root: Path, control_plane: FakeControlPlane) -> None:
        self.root = root
        self.control_plane = control_plane
        self.install_dir = root / "Elastic" / "Agent"
        self.installs: list[tuple[InstallOptions, PolicyHandle]] = []
        self.uninstalls: list[AgentHandle] = []
        self.install_error: BaseException | None = None
        self.uninstall_error: BaseException | None = None
        self.bundle_files: dict[str, str] = {
            "components/endpoint-default/endpoint-security.yml": "output: default\n",
            "logs/services/endpoint-000000.log": "started\n",
            "logs/elastic-agent-20240101.ndjson": "{}\n",
        }

    def install(self, options: InstallOptions, policy: PolicyHandle) -> AgentHandle:
        self.installs.append((options, policy))
        if self.install_error is not None:
            raise self.install_error
        self.install_dir.mkdir(parents=True, exist_ok=True)
        self.control_plane.set_state(absent_snapshot())
        return AgentHandle(hostname=HOSTNAME, install_dir=str(self.install_dir))

    def uninstall(self, agent: AgentHandle) -> None:
        self.uninstalls.append(agent)
        if self.uninstall_error is not None:
            raise self.uninstall_error

    def collect_diagnostics(self, agent: AgentHandle, destination: Path) -> Path:
        destination.mkdir(parents=True, exist_ok=True)
        bundle = destination / "elastic-agent-diagnostics.zip"
        write_zip(bundle, self.bundle_files)
        return bundle


def write_zip(path: Path, files: dict[str, str], dirs: list[str] | None = None) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name in dirs or []:
            archive.writestr(name.rstrip("/") + "/", "")
        for name, content in files.items():
            archive.writestr(name, content)
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep FLEETQA_* variables and stray .env files out of every test."""

    for key in list(os.environ):
        if key.startswith("FLEETQA_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def isolated_log_context() -> Iterator[None]:
    """Drop log context fields added by a test once it ends."""
    with log_context():
        yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def management(control_plane: FakeControlPlane) -> FakeManagementAPI:
    return FakeManagementAPI(control_plane)


@pytest.fixture
def installer(tmp_path: Path, control_plane: FakeControlPlane) -> FakeInstaller:
    return FakeInstaller(tmp_path / "install-root", control_plane)


@pytest.fixture
def config() -> HarnessConfig:
    return HarnessConfig()


@pytest.fixture
def orchestrator(
    control_plane: FakeControlPlane,
    management: FakeManagementAPI,
    installer: FakeInstaller,
    config: HarnessConfig,
    clock: FakeClock,
) -> LifecycleOrchestrator:
    poller = ConvergencePoller(interval=config.convergence_interval, clock=clock, sleep=clock.sleep)
    return LifecycleOrchestrator(
        control_plane,
        management,
        installer,
        config=config,
        poller=poller,
        host_identity=HOSTNAME,
        clock=clock,
    )
