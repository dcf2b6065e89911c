"""Lifecycle orchestrator - drives one scenario from install to teardown."""

from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetqa.artifacts import BundleLayout, BundleReport, verify_bundle
from fleetqa.config import HarnessConfig
from fleetqa.errors import (
    CleanupError,
    EnrollmentError,
    ErrorContext,
    FleetQAError,
    InstallError,
    LifecycleError,
    ManagementAPIError,
    ScenarioTimeoutError,
    SetupError,
)
from fleetqa.lifecycle.collaborators import (
    AgentHandle,
    AgentInstaller,
    AgentPolicySpec,
    InstallOptions,
    IntegrationHandle,
    ManagementAPI,
    PolicyHandle,
)
from fleetqa.lifecycle.filesystem import check_no_residuals
from fleetqa.lifecycle.payload import render_integration_payload
from fleetqa.observability import add_context, log_context
from fleetqa.poller import ConvergencePoller, Deadline, PollResult
from fleetqa.predicates import Predicate
from fleetqa.state.client import (
    ControlPlaneClient,
    connected,
    persistent_fetch,
    reconnecting_fetch,
)

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Lifecycle stages of one scenario."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    ENROLLED = "enrolled"
    POLICY_APPLIED = "policy_applied"
    CONVERGED_PRESENT = "converged_present"
    CONVERGED_ABSENT = "converged_absent"
    DEGRADED = "degraded"
    DIAGNOSTICS_VERIFIED = "diagnostics_verified"


TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.UNINSTALLED: frozenset({Stage.INSTALLED}),
    Stage.INSTALLED: frozenset({Stage.ENROLLED, Stage.UNINSTALLED}),
    Stage.ENROLLED: frozenset({Stage.POLICY_APPLIED, Stage.UNINSTALLED}),
    Stage.POLICY_APPLIED: frozenset({Stage.CONVERGED_PRESENT, Stage.DEGRADED, Stage.UNINSTALLED}),
    Stage.CONVERGED_PRESENT: frozenset(
        {Stage.CONVERGED_ABSENT, Stage.DIAGNOSTICS_VERIFIED, Stage.UNINSTALLED}
    ),
    Stage.CONVERGED_ABSENT: frozenset({Stage.UNINSTALLED}),
    Stage.DEGRADED: frozenset({Stage.UNINSTALLED}),
    Stage.DIAGNOSTICS_VERIFIED: frozenset({Stage.UNINSTALLED}),
}


class RemovalTrigger(Enum):
    """How the managed sub-service is taken away."""

    UNENROLL = "unenroll"
    REMOVE_INTEGRATION = "remove_integration"


class StageRecord(BaseModel):
    """A stage the scenario reached, and when."""

    stage: Stage
    reached_at: datetime = Field(default_factory=datetime.now)
    elapsed_seconds: float = 0.0


class ScenarioResult(BaseModel):
    """Outcome of one scenario run.

    ``error`` is the failure that ended the scenario. Cleanup failures are
    always listed in ``cleanup_failures``; they become ``error`` only when
    nothing else failed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    protected: bool = False
    success: bool
    final_stage: Stage
    stages: list[StageRecord] = Field(default_factory=list)
    error: dict[str, Any] | None = None
    error_message: str | None = None
    cleanup_failures: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    exception: BaseException | None = Field(default=None, exclude=True, repr=False)

    def raise_for_failure(self) -> None:
        if self.exception is not None:
            raise self.exception

    def reached(self, stage: Stage) -> bool:
        return any(record.stage is stage for record in self.stages)


@dataclass
class Scenario:
    """A named sequence of orchestrator operations.

    Attributes:
        name: Scenario name used in logs and reports.
        steps: Receives the orchestrator and drives it through its stages.
        protected: Whether the agent policy enables tamper protection.
        description: One-line summary for reports.
        timeout: Overrides the configured scenario deadline.
    """

    name: str
    steps: Callable[[LifecycleOrchestrator], None]
    protected: bool = False
    description: str = ""
    timeout: float | None = None


@dataclass
class Cleanup:
    name: str
    action: Callable[[], None]


@dataclass
class _RunState:
    stage: Stage = Stage.UNINSTALLED
    records: list[StageRecord] = field(default_factory=list)
    cleanups: list[Cleanup] = field(default_factory=list)
    policy: PolicyHandle | None = None
    integration: IntegrationHandle | None = None
    agent: AgentHandle | None = None
    unenrolled: bool = False
    protected: bool = False
    bundle_report: BundleReport | None = None


class LifecycleOrchestrator:
    """Drives the agent through install, convergence and removal.

    Stages are strictly sequenced: an operation that would skip or repeat a
    stage raises LifecycleError before touching any collaborator. Cleanups
    registered along the way run in reverse order when the scenario ends,
    whatever the outcome.

    Example::

        orchestrator = LifecycleOrchestrator(client, fleet, installer, config)
        result = orchestrator.run(scenarios.unenroll(protected=True))
        reporter.scenario(result)

    Args:
        control_plane: Client for the local agent's state.
        management: Remote fleet-management API.
        installer: Agent install/uninstall collaborator.
        config: Harness configuration; defaults apply when omitted.
        poller: Convergence poller; built from the config when omitted.
        host_identity: Host name used to look the agent up remotely.
        clock: Monotonic clock shared with the deadlines.
    """

    def __init__(
        self,
        control_plane: ControlPlaneClient,
        management: ManagementAPI,
        installer: AgentInstaller,
        config: HarnessConfig | None = None,
        poller: ConvergencePoller | None = None,
        host_identity: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.control_plane = control_plane
        self.management = management
        self.installer = installer
        self.config = config or HarnessConfig()
        self.clock = clock
        self.poller = poller or ConvergencePoller(
            interval=self.config.convergence_interval, clock=clock
        )
        self.host_identity = host_identity
        self._scenario_name: str | None = None
        self._deadline: Deadline | None = None
        self._started: float = 0.0
        self._state = _RunState()

    @property
    def stage(self) -> Stage:
        return self._state.stage

    @property
    def policy(self) -> PolicyHandle | None:
        return self._state.policy

    @property
    def integration(self) -> IntegrationHandle | None:
        return self._state.integration

    @property
    def agent(self) -> AgentHandle | None:
        return self._state.agent

    @property
    def deadline(self) -> Deadline:
        if self._deadline is None:
            self._deadline = Deadline(self.config.scenario_timeout, clock=self.clock)
            self._started = self.clock()
        return self._deadline

    def _context(self, **extra: Any) -> ErrorContext:
        return ErrorContext(
            scenario_name=self._scenario_name,
            stage=self._state.stage.value,
            extra=extra,
        )

    def _require_transition(self, target: Stage) -> None:
        current = self._state.stage
        if target not in TRANSITIONS[current]:
            raise LifecycleError(
                message=f"Cannot move from {current.value} to {target.value}",
                context=self._context(target=target.value),
            )

    def _require_stage(self, *stages: Stage, operation: str) -> None:
        if self._state.stage not in stages:
            expected = ", ".join(s.value for s in stages)
            raise LifecycleError(
                message=f"{operation} requires stage {expected}, current stage is {self._state.stage.value}",
                context=self._context(),
            )

    def _check_deadline(self, operation: str) -> None:
        if self.deadline.expired:
            raise ScenarioTimeoutError(
                message=f"Scenario deadline of {self.deadline.seconds:.0f}s passed before {operation}",
                context=self._context(),
            )

    def _advance(self, target: Stage) -> None:
        self._require_transition(target)
        previous = self._state.stage
        self._state.stage = target
        self._state.records.append(
            StageRecord(stage=target, elapsed_seconds=self.clock() - self._started)
        )
        add_context(stage=target.value)
        logger.info("Stage %s -> %s", previous.value, target.value)

    def add_cleanup(self, name: str, action: Callable[[], None]) -> None:
        """Register a cleanup; cleanups run last-registered first."""
        self._state.cleanups.append(Cleanup(name=name, action=action))

    def _discard_cleanup(self, name: str) -> None:
        self._state.cleanups = [c for c in self._state.cleanups if c.name != name]

    def _host(self) -> str:
        agent = self._state.agent
        if agent is not None and agent.hostname:
            return agent.hostname
        return self.host_identity or socket.gethostname()

    def _connect_timeout(self) -> float:
        return min(self.config.connect_timeout, self.deadline.remaining())

    def install_and_enroll(
        self,
        options: InstallOptions | None = None,
        protected: bool = False,
        unenroll_on_cleanup: bool = False,
    ) -> AgentHandle:
        """Create a policy and install the agent enrolled into it.

        Args:
            options: Install options; defaults to a forced, privileged,
                non-interactive install at the default path.
            protected: Enable tamper protection on the policy.
            unenroll_on_cleanup: Also unenroll the agent during cleanup.

        Raises:
            EnrollmentError: If the policy cannot be created.
            InstallError: If the agent cannot be installed.
        """
        self._require_transition(Stage.INSTALLED)
        self._check_deadline("install")
        options = options or InstallOptions()
        self._state.protected = protected

        spec = AgentPolicySpec.for_run(
            prefix=self.config.policy_name_prefix,
            namespace=self.config.policy_namespace,
            monitoring_enabled=self.config.monitoring_enabled,
            protected=protected,
        )
        logger.info("Creating agent policy %s (protected=%s)", spec.name, protected)
        try:
            policy = self.management.create_policy(spec)
        except Exception as e:
            raise EnrollmentError(
                message=f"Failed to create agent policy {spec.name}: {e}",
                cause=e,
                context=self._context(policy=spec.name),
            ) from e
        self._state.policy = policy

        logger.info("Installing agent with options %s", " ".join(options.to_cli_args()))
        try:
            agent = self.installer.install(options, policy)
        except InstallError:
            raise
        except Exception as e:
            raise InstallError(
                message=f"Failed to install agent with policy {policy.policy_id}: {e}",
                cause=e,
                context=self._context(policy=policy.policy_id),
            ) from e
        self._state.agent = agent
        self.add_cleanup("uninstall agent", self._uninstall_agent)
        self._advance(Stage.INSTALLED)
        self._advance(Stage.ENROLLED)

        if unenroll_on_cleanup:
            self.add_cleanup("unenroll agent", self._unenroll_agent)
        return agent

    def apply_managed_policy(self) -> IntegrationHandle:
        """Render, validate and submit the managed integration.

        Raises:
            PayloadValidationError: If the rendered payload is not JSON; the
                management API is not called.
            ManagementAPIError: If the management API rejects it.
        """
        self._require_transition(Stage.POLICY_APPLIED)
        self._check_deadline("applying the managed policy")
        policy = self._state.policy
        if policy is None:
            raise LifecycleError(
                message="No agent policy to attach the integration to",
                context=self._context(),
            )

        payload = render_integration_payload(
            policy_id=policy.policy_id,
            version=self.config.package_version,
            name_prefix=self.config.integration_name_prefix,
            package=self.config.package_name,
        )
        logger.info("Installing integration %s into policy %s", payload.name, policy.policy_id)
        try:
            integration = self.management.install_managed_integration(policy, payload.body)
        except SetupError:
            raise
        except Exception as e:
            raise ManagementAPIError(
                message=f"Error installing integration {payload.name}: {e}",
                cause=e,
                context=self._context(),
            ) from e
        self._state.integration = integration
        self._advance(Stage.POLICY_APPLIED)
        return integration

    def await_convergence(
        self,
        predicate: Predicate,
        timeout: float | None = None,
        interval: float | None = None,
        reconnect: bool = False,
        reach: Stage | None = None,
    ) -> PollResult:
        """Poll the local agent until ``predicate`` holds.

        Args:
            predicate: Expected state.
            timeout: Poll budget; defaults to convergence_timeout. Always
                clipped to the scenario deadline.
            interval: Poll interval; defaults to convergence_interval.
            reconnect: Connect and disconnect around every attempt instead
                of holding one connection.
            reach: Stage entered once the predicate holds.

        Raises:
            ConvergenceTimeoutError: With the last snapshot and mismatch.
        """
        if reach is not None:
            self._require_transition(reach)
        self._check_deadline(f"waiting for {predicate.name}")
        if timeout is None:
            timeout = self.config.convergence_timeout
        if interval is None:
            interval = self.config.convergence_interval
        timeout = self.deadline.clip(timeout)
        context = self._context(predicate=predicate.name)
        poll_deadline = Deadline(timeout, clock=self.clock)

        def call_timeout() -> float:
            # A hung call must not outlive the poll.
            return min(self._connect_timeout(), poll_deadline.remaining())

        logger.info("Polling up to %.0fs for: %s", timeout, predicate)
        if reconnect:
            fetch = reconnecting_fetch(self.control_plane, call_timeout)
            result = self.poller.require(fetch, predicate, timeout, interval, context=context)
        else:
            with connected(self.control_plane, timeout=call_timeout()):
                fetch = persistent_fetch(self.control_plane, call_timeout)
                result = self.poller.require(fetch, predicate, timeout, interval, context=context)

        logger.info("Converged on %s after %d attempt(s)", predicate.name, result.attempts)
        if reach is not None:
            self._advance(reach)
        return result

    def remove_presence(self, trigger: RemovalTrigger) -> None:
        """Take the managed sub-service away from the agent.

        UNENROLL removes the agent from fleet management altogether;
        REMOVE_INTEGRATION deletes only the integration and leaves the agent
        enrolled.
        """
        self._require_stage(Stage.CONVERGED_PRESENT, operation=f"remove_presence({trigger.value})")
        self._check_deadline(f"{trigger.value}")

        try:
            if trigger is RemovalTrigger.UNENROLL:
                policy = self._state.policy
                if policy is None:
                    raise LifecycleError(message="No policy to look the agent up by", context=self._context())
                host = self._host()
                logger.info("Unenrolling agent on %s from policy %s", host, policy.policy_id)
                agent = self.management.lookup_agent(policy, host)
                self.management.unenroll(agent)
                self._state.unenrolled = True
            else:
                integration = self._state.integration
                if integration is None:
                    raise LifecycleError(message="No integration to remove", context=self._context())
                logger.info("Removing integration %s", integration.integration_id)
                self.management.remove_managed_integration(integration)
        except FleetQAError:
            raise
        except Exception as e:
            raise ManagementAPIError(
                message=f"Error during {trigger.value}: {e}",
                cause=e,
                context=self._context(),
            ) from e

    def verify_filesystem_absence(self) -> None:
        """Check no file named after the sub-service survives its removal.

        Raises:
            ResidualFilesError: Listing each leftover and its contents.
        """
        self._require_stage(Stage.CONVERGED_ABSENT, operation="verify_filesystem_absence")
        agent = self._state.agent
        if agent is None or not agent.install_dir:
            raise LifecycleError(
                message="Agent install directory is unknown, cannot check for leftovers",
                context=self._context(),
            )
        check_no_residuals(agent.install_dir, self.config.residual_token, context=self._context())

    def collect_and_verify_diagnostics(self, destination: str | Path) -> BundleReport:
        """Collect a diagnostics bundle and check it for sub-service evidence.

        Raises:
            MissingEvidenceError: Naming every failed check.
            BundleError: If the bundle cannot be read.
        """
        self._require_transition(Stage.DIAGNOSTICS_VERIFIED)
        self._check_deadline("collecting diagnostics")
        agent = self._state.agent
        if agent is None:
            raise LifecycleError(message="No agent to collect diagnostics from", context=self._context())

        destination = Path(destination)
        logger.info("Collecting diagnostics into %s", destination)
        bundle = self.installer.collect_diagnostics(agent, destination)
        report = verify_bundle(bundle, BundleLayout.from_config(self.config))
        self._state.bundle_report = report
        try:
            report.raise_for_failures()
        except FleetQAError as e:
            e.context = self._context(bundle=str(bundle))
            raise
        self._advance(Stage.DIAGNOSTICS_VERIFIED)
        return report

    def uninstall(self) -> None:
        """Uninstall the agent now instead of at cleanup."""
        self._require_transition(Stage.UNINSTALLED)
        self._uninstall_agent()
        self._discard_cleanup("uninstall agent")
        self._advance(Stage.UNINSTALLED)

    def _uninstall_agent(self) -> None:
        agent = self._state.agent
        if agent is None:
            return
        logger.info("Uninstalling agent")
        self.installer.uninstall(agent)

    def _unenroll_agent(self) -> None:
        policy = self._state.policy
        if policy is None or self._state.unenrolled:
            return
        logger.info("Un-enrolling agent")
        agent = self.management.lookup_agent(policy, self._host())
        self.management.unenroll(agent)
        self._state.unenrolled = True

    def _run_cleanups(self) -> list[str]:
        """Run cleanups in reverse registration order and collect failures."""
        failures: list[str] = []
        cleanup_deadline = Deadline(self.config.cleanup_timeout, clock=self.clock)
        while self._state.cleanups:
            cleanup = self._state.cleanups.pop()
            if cleanup_deadline.expired:
                failures.append(f"{cleanup.name}: skipped, cleanup deadline exceeded")
                logger.warning("Skipping cleanup %s: deadline exceeded", cleanup.name)
                continue
            try:
                cleanup.action()
            except Exception as e:
                failures.append(f"{cleanup.name}: {e}")
                logger.warning("Cleanup %s failed: %s", cleanup.name, e, exc_info=True)
            else:
                logger.debug("Cleanup %s done", cleanup.name)
                if cleanup.name == "uninstall agent" and self._state.stage is not Stage.UNINSTALLED:
                    self._advance(Stage.UNINSTALLED)
        return failures

    def run(self, scenario: Scenario) -> ScenarioResult:
        """Run a scenario and its cleanups.

        Cleanups run on every exit path. A cleanup failure never replaces an
        earlier failure; it becomes the scenario's failure only when
        everything else passed.
        """
        self._state = _RunState(protected=scenario.protected)
        self._scenario_name = scenario.name
        self._deadline = Deadline(scenario.timeout or self.config.scenario_timeout, clock=self.clock)
        self._started = self.clock()
        started_at = datetime.now()
        error: BaseException | None = None

        with log_context(scenario=scenario.name, protected=scenario.protected):
            logger.info("Starting scenario %s", scenario.name)
            try:
                scenario.steps(self)
            except FleetQAError as e:
                error = e
                logger.error("Scenario %s failed: %s", scenario.name, e)
            except Exception as e:
                error = e
                logger.exception("Scenario %s raised an unexpected error", scenario.name)
            finally:
                failures = self._run_cleanups()

            if error is None and failures:
                error = CleanupError(failures=failures, context=self._context())
                logger.error("Scenario %s failed during cleanup: %s", scenario.name, error)

            success = error is None
            logger.info("Scenario %s %s", scenario.name, "passed" if success else "failed")

        if isinstance(error, FleetQAError):
            error_dict: dict[str, Any] | None = error.to_dict()
        elif error is not None:
            error_dict = {"error_type": type(error).__name__, "message": str(error)}
        else:
            error_dict = None

        return ScenarioResult(
            name=scenario.name,
            protected=scenario.protected,
            success=success,
            final_stage=self._state.stage,
            stages=list(self._state.records),
            error=error_dict,
            error_message=str(error) if error is not None else None,
            cleanup_failures=failures,
            started_at=started_at,
            finished_at=datetime.now(),
            duration_seconds=self.clock() - self._started,
            exception=error,
        )


__all__ = [
    "Cleanup",
    "LifecycleOrchestrator",
    "RemovalTrigger",
    "Scenario",
    "ScenarioResult",
    "Stage",
    "StageRecord",
    "TRANSITIONS",
]
