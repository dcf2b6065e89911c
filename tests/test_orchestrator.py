"""Tests for the lifecycle orchestrator."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetqa.config import HarnessConfig
from fleetqa.errors import (
    CleanupError,
    ControlPlaneConnectionError,
    ConvergenceTimeoutError,
    EnrollmentError,
    InstallError,
    LifecycleError,
    ManagementAPIError,
    MissingEvidenceError,
    PayloadValidationError,
    ResidualFilesError,
    ScenarioTimeoutError,
)
from fleetqa.lifecycle.collaborators import InstallOptions
from fleetqa.lifecycle.orchestrator import (
    LifecycleOrchestrator,
    RemovalTrigger,
    Scenario,
    Stage,
)
from fleetqa.poller import ConvergencePoller
from fleetqa.predicates import (
    degraded_with_message,
    managed_absent,
    managed_present_and_healthy,
    unenrolled,
)
from fleetqa.state.models import StateSnapshot
from tests.conftest import (
    HOSTNAME,
    FakeClock,
    FakeControlPlane,
    FakeInstaller,
    FakeManagementAPI,
    absent_snapshot,
    degraded_snapshot,
)

PRESENT = managed_present_and_healthy("endpoint")


class HangingControlPlane(FakeControlPlane):
    """Control plane whose fetches block for the whole timeout they are given."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__()
        self.clock = clock
        self.timeouts: list[float | None] = []

    def fetch_state(self, timeout: float | None = None) -> StateSnapshot:
        self.timeouts.append(timeout)
        self.clock.advance(3600 if timeout is None else timeout)
        raise TimeoutError("deadline exceeded")


def build(
    control_plane: FakeControlPlane,
    management: FakeManagementAPI,
    installer: FakeInstaller,
    clock: FakeClock,
    **settings: object,
) -> LifecycleOrchestrator:
    config = HarnessConfig(**settings)
    return LifecycleOrchestrator(
        control_plane,
        management,
        installer,
        config=config,
        poller=ConvergencePoller(interval=config.convergence_interval, clock=clock, sleep=clock.sleep),
        host_identity=HOSTNAME,
        clock=clock,
    )


def converge_present(orchestrator: LifecycleOrchestrator, protected: bool = False) -> None:
    orchestrator.install_and_enroll(protected=protected)
    orchestrator.apply_managed_policy()
    orchestrator.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)


class TestStageOrdering:
    """Operations are only allowed in lifecycle order."""

    def test_happy_path_stages(self, orchestrator: LifecycleOrchestrator) -> None:
        assert orchestrator.stage is Stage.UNINSTALLED

        orchestrator.install_and_enroll()
        assert orchestrator.stage is Stage.ENROLLED

        orchestrator.apply_managed_policy()
        assert orchestrator.stage is Stage.POLICY_APPLIED

        orchestrator.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)
        assert orchestrator.stage is Stage.CONVERGED_PRESENT

    def test_apply_before_install_fails_without_calls(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        with pytest.raises(LifecycleError, match="Cannot move from uninstalled to policy_applied"):
            orchestrator.apply_managed_policy()
        assert management.calls == []

    def test_install_twice_fails(self, orchestrator: LifecycleOrchestrator) -> None:
        orchestrator.install_and_enroll()
        with pytest.raises(LifecycleError):
            orchestrator.install_and_enroll()

    def test_remove_before_convergence_fails(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()

        with pytest.raises(LifecycleError, match="requires stage converged_present"):
            orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        assert "unenroll" not in management.call_names()

    def test_filesystem_check_requires_absence(self, orchestrator: LifecycleOrchestrator) -> None:
        converge_present(orchestrator)
        with pytest.raises(LifecycleError):
            orchestrator.verify_filesystem_absence()

    def test_degraded_cannot_follow_present(self, orchestrator: LifecycleOrchestrator) -> None:
        converge_present(orchestrator)
        with pytest.raises(LifecycleError):
            orchestrator.await_convergence(PRESENT, reach=Stage.DEGRADED)


class TestSetup:
    """Tests for policy creation, install and integration submission."""

    def test_policy_is_unique_and_protected(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        orchestrator.install_and_enroll(protected=True)

        spec = management.policies[0]
        assert spec.name.startswith("test-policy-")
        assert spec.description == f"Test policy {spec.name.removeprefix('test-policy-')}"
        assert spec.monitoring_enabled == ["logs", "metrics"]
        body = spec.to_api_body()
        assert body["is_protected"] is True
        assert body["agent_features"] == [{"name": "tamper_protection", "enabled": True}]

    def test_install_options_passed_through(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        options = InstallOptions(unprivileged=True)
        orchestrator.install_and_enroll(options)

        installed_options, policy = installer.installs[0]
        assert installed_options is options
        assert policy == orchestrator.policy

    def test_policy_failure_is_enrollment_error(
        self,
        orchestrator: LifecycleOrchestrator,
        management: FakeManagementAPI,
        installer: FakeInstaller,
    ) -> None:
        management.fail_on["create_policy"] = ManagementAPIError("conflict", status_code=409)

        with pytest.raises(EnrollmentError) as exc_info:
            orchestrator.install_and_enroll()

        assert isinstance(exc_info.value.cause, ManagementAPIError)
        assert installer.installs == []

    def test_install_failure_is_install_error(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        installer.install_error = RuntimeError("exit status 1")

        with pytest.raises(InstallError, match="exit status 1"):
            orchestrator.install_and_enroll()
        assert orchestrator.stage is Stage.UNINSTALLED

    def test_integration_payload(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        orchestrator.install_and_enroll()
        integration = orchestrator.apply_managed_policy()

        payload = management.payloads[0]
        assert payload["policy_id"] == orchestrator.policy.policy_id
        assert payload["package"] == {"name": "endpoint", "version": "8.11.0"}
        assert payload["name"].startswith("Defend-")
        assert integration.integration_id == payload["id"]

    def test_malformed_payload_never_reaches_management(
        self,
        control_plane: FakeControlPlane,
        management: FakeManagementAPI,
        installer: FakeInstaller,
        clock: FakeClock,
    ) -> None:
        orchestrator = build(control_plane, management, installer, clock, package_version='8.11"0')
        orchestrator.install_and_enroll()

        with pytest.raises(PayloadValidationError):
            orchestrator.apply_managed_policy()

        assert "install_managed_integration" not in management.call_names()
        assert orchestrator.stage is Stage.ENROLLED

    def test_unexpected_management_error_is_wrapped(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        management.fail_on["install_managed_integration"] = RuntimeError("socket hang up")
        orchestrator.install_and_enroll()

        with pytest.raises(ManagementAPIError, match="socket hang up"):
            orchestrator.apply_managed_policy()


class TestConvergence:
    """Tests for await_convergence."""

    def test_holds_one_connection(
        self, orchestrator: LifecycleOrchestrator, control_plane: FakeControlPlane
    ) -> None:
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        control_plane.set_state(absent_snapshot(), absent_snapshot(), *orchestrator.management.present_state)

        result = orchestrator.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)

        assert result.attempts == 3
        assert control_plane.connects == 1
        assert control_plane.disconnects == 1

    def test_reconnects_every_attempt(
        self,
        orchestrator: LifecycleOrchestrator,
        control_plane: FakeControlPlane,
        config: HarnessConfig,
        clock: FakeClock,
    ) -> None:
        message = config.unprivileged_message
        orchestrator.install_and_enroll(InstallOptions(unprivileged=True))
        orchestrator.apply_managed_policy()
        control_plane.set_state(absent_snapshot(), absent_snapshot(), degraded_snapshot(message))

        result = orchestrator.await_convergence(
            degraded_with_message(message),
            timeout=config.degraded_timeout,
            interval=config.degraded_interval,
            reconnect=True,
            reach=Stage.DEGRADED,
        )

        assert result.attempts == 3
        assert control_plane.connects == 3
        assert control_plane.disconnects == 3
        assert clock.sleeps == [10, 10]
        assert orchestrator.stage is Stage.DEGRADED

    def test_timeout_carries_last_snapshot(
        self, orchestrator: LifecycleOrchestrator, control_plane: FakeControlPlane
    ) -> None:
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        absent = absent_snapshot()
        control_plane.set_state(absent)

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            orchestrator.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)

        error = exc_info.value
        assert error.last_snapshot is absent
        assert error.attempts == 121
        assert error.context.stage == "policy_applied"
        assert orchestrator.stage is Stage.POLICY_APPLIED

    def test_explicit_zero_timeout_makes_one_attempt(
        self, orchestrator: LifecycleOrchestrator, control_plane: FakeControlPlane
    ) -> None:
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        control_plane.set_state(absent_snapshot())

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            orchestrator.await_convergence(PRESENT, timeout=0)

        assert exc_info.value.attempts == 1
        assert exc_info.value.timeout_seconds == 0

    @pytest.mark.parametrize("reconnect", [False, True])
    def test_hung_fetch_bounded_by_poll_timeout(
        self, clock: FakeClock, tmp_path: Path, reconnect: bool
    ) -> None:
        control_plane = HangingControlPlane(clock)
        orchestrator = build(
            control_plane,
            FakeManagementAPI(control_plane),
            FakeInstaller(tmp_path / "install-root", control_plane),
            clock,
            convergence_timeout=5,
            convergence_interval=1,
        )
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        started = clock()

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            orchestrator.await_convergence(PRESENT, reconnect=reconnect)

        assert control_plane.timeouts == [5.0]
        assert clock() - started == 5.0
        assert exc_info.value.attempts == 1
        assert exc_info.value.elapsed_seconds == 5.0

    def test_connection_failure(
        self, orchestrator: LifecycleOrchestrator, control_plane: FakeControlPlane
    ) -> None:
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        control_plane.connect_error = OSError("no such socket")

        with pytest.raises(ControlPlaneConnectionError, match="no such socket"):
            orchestrator.await_convergence(PRESENT)


class TestRemoval:
    """Tests for removal triggers and the residual file check."""

    def test_unenroll_empties_components(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        converge_present(orchestrator)

        orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        result = orchestrator.await_convergence(unenrolled(), reach=Stage.CONVERGED_ABSENT)

        assert result.snapshot.components == ()
        assert management.call_names()[-2:] == ["lookup_agent", "unenroll"]
        assert management.calls[-2][1][1] == HOSTNAME

    def test_remove_integration_keeps_monitoring(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        converge_present(orchestrator)

        orchestrator.remove_presence(RemovalTrigger.REMOVE_INTEGRATION)
        result = orchestrator.await_convergence(managed_absent("endpoint"), reach=Stage.CONVERGED_ABSENT)

        assert [c.name for c in result.snapshot.components] == ["filestream-monitoring"]
        assert "unenroll" not in management.call_names()
        assert management.calls[-1][1] == orchestrator.integration

    def test_installed_agent_hostname_used_for_lookup(
        self,
        control_plane: FakeControlPlane,
        management: FakeManagementAPI,
        installer: FakeInstaller,
        clock: FakeClock,
    ) -> None:
        orchestrator = LifecycleOrchestrator(
            control_plane,
            management,
            installer,
            poller=ConvergencePoller(interval=1, clock=clock, sleep=clock.sleep),
            host_identity="other-host",
            clock=clock,
        )
        orchestrator.install_and_enroll()
        orchestrator.apply_managed_policy()
        orchestrator.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)

        # The installed agent reports its own hostname, which wins
        orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        assert management.calls[-2][1][1] == HOSTNAME

    def test_no_residuals_passes(self, orchestrator: LifecycleOrchestrator) -> None:
        converge_present(orchestrator)
        orchestrator.remove_presence(RemovalTrigger.REMOVE_INTEGRATION)
        orchestrator.await_convergence(managed_absent("endpoint"), reach=Stage.CONVERGED_ABSENT)

        orchestrator.verify_filesystem_absence()

    def test_empty_leftover_directory(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        converge_present(orchestrator)
        orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        orchestrator.await_convergence(unenrolled(), reach=Stage.CONVERGED_ABSENT)
        leftover = installer.install_dir.parent / "Endpoint"
        leftover.mkdir()

        with pytest.raises(ResidualFilesError) as exc_info:
            orchestrator.verify_filesystem_absence()

        error = exc_info.value
        assert error.signature == "empty"
        assert str(leftover.resolve()) in error.message
        assert "was not removed, but it's empty" in error.message

    def test_non_empty_leftover_directory(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        converge_present(orchestrator)
        orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        orchestrator.await_convergence(unenrolled(), reach=Stage.CONVERGED_ABSENT)
        leftover = installer.install_dir.parent / "Endpoint"
        leftover.mkdir()
        (leftover / "state").mkdir()
        (leftover / "elastic-endpoint.yaml").write_text("x")

        with pytest.raises(ResidualFilesError) as exc_info:
            orchestrator.verify_filesystem_absence()

        assert exc_info.value.signature == "non_empty"
        assert "the directory content is: elastic-endpoint.yaml, state" in exc_info.value.message


class TestDiagnostics:
    def test_bundle_with_evidence(self, orchestrator: LifecycleOrchestrator, tmp_path: Path) -> None:
        converge_present(orchestrator)

        report = orchestrator.collect_and_verify_diagnostics(tmp_path / "diag")

        assert report.passed
        assert orchestrator.stage is Stage.DIAGNOSTICS_VERIFIED

    def test_bundle_missing_logs(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller, tmp_path: Path
    ) -> None:
        del installer.bundle_files["logs/services/endpoint-000000.log"]
        converge_present(orchestrator)

        with pytest.raises(MissingEvidenceError) as exc_info:
            orchestrator.collect_and_verify_diagnostics(tmp_path / "diag")

        assert exc_info.value.failed_checks == ["service_logs"]
        assert "bundle" in exc_info.value.context.extra
        assert orchestrator.stage is Stage.CONVERGED_PRESENT


class TestRun:
    """Tests for run(): cleanups, deadlines and results."""

    def test_success_result(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        result = orchestrator.run(Scenario(name="present", steps=converge_present))

        assert result.success
        assert result.error is None
        assert result.reached(Stage.CONVERGED_PRESENT)
        assert [r.stage for r in result.stages] == [
            Stage.INSTALLED,
            Stage.ENROLLED,
            Stage.POLICY_APPLIED,
            Stage.CONVERGED_PRESENT,
            Stage.UNINSTALLED,
        ]
        assert result.final_stage is result.stages[-1].stage
        assert len(installer.uninstalls) == 1

    def test_explicit_uninstall_recorded_once(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        def steps(o: LifecycleOrchestrator) -> None:
            converge_present(o)
            o.uninstall()

        result = orchestrator.run(Scenario(name="uninstall", steps=steps))

        assert result.success
        assert [r.stage for r in result.stages].count(Stage.UNINSTALLED) == 1
        assert result.final_stage is Stage.UNINSTALLED
        assert len(installer.uninstalls) == 1

    def test_cleanups_run_in_reverse_order(self, orchestrator: LifecycleOrchestrator) -> None:
        order: list[str] = []

        def steps(o: LifecycleOrchestrator) -> None:
            o.add_cleanup("first", lambda: order.append("first"))
            o.add_cleanup("second", lambda: order.append("second"))
            o.add_cleanup("third", lambda: order.append("third"))
            raise RuntimeError("step failed")

        result = orchestrator.run(Scenario(name="lifo", steps=steps))

        assert order == ["third", "second", "first"]
        assert not result.success
        assert result.error == {"error_type": "RuntimeError", "message": "step failed"}

    def test_unenroll_cleanup_runs_before_uninstall(
        self,
        orchestrator: LifecycleOrchestrator,
        management: FakeManagementAPI,
        installer: FakeInstaller,
    ) -> None:
        events: list[str] = []
        original_uninstall = installer.uninstall

        def uninstall(agent):
            events.append(f"calls={len(management.calls)}")
            original_uninstall(agent)

        installer.uninstall = uninstall

        def steps(o: LifecycleOrchestrator) -> None:
            o.install_and_enroll(unenroll_on_cleanup=True)
            o.apply_managed_policy()
            o.await_convergence(PRESENT, reach=Stage.CONVERGED_PRESENT)

        result = orchestrator.run(Scenario(name="teardown", steps=steps))

        assert result.success
        assert management.call_names()[-2:] == ["lookup_agent", "unenroll"]
        assert events == [f"calls={len(management.calls)}"]

    def test_cleanup_failure_fails_successful_scenario(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        installer.uninstall_error = RuntimeError("uninstall exited 1")

        result = orchestrator.run(Scenario(name="present", steps=converge_present))

        assert not result.success
        assert isinstance(result.exception, CleanupError)
        assert result.cleanup_failures == ["uninstall agent: uninstall exited 1"]
        with pytest.raises(CleanupError):
            result.raise_for_failure()

    def test_cleanup_failure_never_masks_earlier_error(
        self,
        orchestrator: LifecycleOrchestrator,
        installer: FakeInstaller,
        management: FakeManagementAPI,
    ) -> None:
        installer.uninstall_error = RuntimeError("uninstall exited 1")
        management.present_state = [absent_snapshot()]

        result = orchestrator.run(Scenario(name="present", steps=converge_present))

        assert isinstance(result.exception, ConvergenceTimeoutError)
        assert result.error["error_code"] == "E201"
        assert result.cleanup_failures == ["uninstall agent: uninstall exited 1"]

    def test_install_failure_registers_no_uninstall(
        self, orchestrator: LifecycleOrchestrator, installer: FakeInstaller
    ) -> None:
        installer.install_error = RuntimeError("exit status 1")

        result = orchestrator.run(Scenario(name="present", steps=converge_present))

        assert isinstance(result.exception, InstallError)
        assert installer.uninstalls == []
        assert result.cleanup_failures == []

    def test_convergence_clipped_to_scenario_deadline(
        self, orchestrator: LifecycleOrchestrator, management: FakeManagementAPI
    ) -> None:
        management.present_state = [absent_snapshot()]

        result = orchestrator.run(Scenario(name="short", steps=converge_present, timeout=30))

        assert isinstance(result.exception, ConvergenceTimeoutError)
        assert result.exception.timeout_seconds == 30
        assert result.duration_seconds == 30

    def test_expired_deadline_stops_next_stage(
        self, orchestrator: LifecycleOrchestrator, clock: FakeClock, management: FakeManagementAPI
    ) -> None:
        def steps(o: LifecycleOrchestrator) -> None:
            o.install_and_enroll()
            clock.advance(61)
            o.apply_managed_policy()

        result = orchestrator.run(Scenario(name="slow", steps=steps, timeout=60))

        assert isinstance(result.exception, ScenarioTimeoutError)
        assert "install_managed_integration" not in management.call_names()

    def test_run_resets_state_between_scenarios(self, orchestrator: LifecycleOrchestrator) -> None:
        first = orchestrator.run(Scenario(name="a", steps=converge_present))
        second = orchestrator.run(Scenario(name="b", steps=converge_present, protected=True))

        assert first.success and second.success
        assert second.protected
        assert len(second.stages) == 5
