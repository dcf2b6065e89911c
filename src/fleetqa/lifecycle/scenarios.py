"""Scenario builders for the managed sub-service lifecycle.

Every builder takes ``protected`` (tamper protection on the agent policy) and
returns a Scenario for LifecycleOrchestrator.run(). Thresholds come from the
orchestrator's HarnessConfig at run time.

Example:
    >>> results = [
    ...     orchestrator.run(unenroll(protected=protected))
    ...     for protected in PROTECTION_MATRIX
    ... ]
"""

from __future__ import annotations

import sys
import tempfile
from collections.abc import Callable
from pathlib import Path, PurePosixPath, PureWindowsPath

from fleetqa.lifecycle.collaborators import InstallOptions
from fleetqa.lifecycle.orchestrator import (
    LifecycleOrchestrator,
    RemovalTrigger,
    Scenario,
    Stage,
)
from fleetqa.predicates import (
    degraded_with_message,
    managed_absent,
    managed_present_and_healthy,
    unenrolled,
)

PROTECTION_MATRIX: tuple[bool, ...] = (False, True)

DEFAULT_BASE_PATHS = {
    "linux": "/opt",
    "darwin": "/Library",
    "win32": r"C:\Program Files",
}


def default_base_path(platform: str = sys.platform) -> str:
    for prefix, path in DEFAULT_BASE_PATHS.items():
        if platform.startswith(prefix):
            return path
    return DEFAULT_BASE_PATHS["linux"]


def non_default_base_path(platform: str = sys.platform) -> str:
    """A base path next to the default one, which the sub-service rejects."""
    base = default_base_path(platform)
    if platform.startswith("win"):
        return str(PureWindowsPath(base) / "not_default")
    return str(PurePosixPath(base) / "not_default")


def _suffix(protected: bool) -> str:
    return "protected" if protected else "unprotected"


def _converge_present(orchestrator: LifecycleOrchestrator) -> None:
    orchestrator.await_convergence(
        managed_present_and_healthy(orchestrator.config.identity_token),
        reach=Stage.CONVERGED_PRESENT,
    )


def install_and_apply(
    orchestrator: LifecycleOrchestrator,
    protected: bool,
    options: InstallOptions | None = None,
    unenroll_on_cleanup: bool = False,
) -> None:
    """Install, enroll and submit the managed integration."""
    orchestrator.install_and_enroll(
        options or InstallOptions(),
        protected=protected,
        unenroll_on_cleanup=unenroll_on_cleanup,
    )
    orchestrator.apply_managed_policy()


def cli_uninstall(protected: bool = False) -> Scenario:
    """Converge with the sub-service present; teardown unenrolls and uninstalls."""

    def steps(orchestrator: LifecycleOrchestrator) -> None:
        install_and_apply(orchestrator, protected, unenroll_on_cleanup=True)
        _converge_present(orchestrator)

    return Scenario(
        name=f"cli_uninstall[{_suffix(protected)}]",
        steps=steps,
        protected=protected,
        description="Install with the managed integration, then uninstall through the CLI",
    )


def unenroll(protected: bool = False) -> Scenario:
    """Unenrolling the agent stops every component and marks fleet state failed."""

    def steps(orchestrator: LifecycleOrchestrator) -> None:
        install_and_apply(orchestrator, protected)
        _converge_present(orchestrator)
        orchestrator.remove_presence(RemovalTrigger.UNENROLL)
        orchestrator.await_convergence(unenrolled(), reach=Stage.CONVERGED_ABSENT)
        orchestrator.verify_filesystem_absence()

    return Scenario(
        name=f"unenroll[{_suffix(protected)}]",
        steps=steps,
        protected=protected,
        description="Unenroll the agent and check the managed sub-service is gone",
    )


def remove_integration(protected: bool = False) -> Scenario:
    """Removing only the integration leaves a healthy agent without the sub-service."""

    def steps(orchestrator: LifecycleOrchestrator) -> None:
        install_and_apply(orchestrator, protected)
        _converge_present(orchestrator)
        orchestrator.remove_presence(RemovalTrigger.REMOVE_INTEGRATION)
        orchestrator.await_convergence(
            managed_absent(orchestrator.config.identity_token),
            reach=Stage.CONVERGED_ABSENT,
        )
        orchestrator.verify_filesystem_absence()

    return Scenario(
        name=f"remove_integration[{_suffix(protected)}]",
        steps=steps,
        protected=protected,
        description="Remove the integration and check the managed sub-service is gone",
    )


def _degraded(
    name: str,
    protected: bool,
    options: InstallOptions,
    message: Callable[[LifecycleOrchestrator], str],
    description: str,
) -> Scenario:
    def steps(orchestrator: LifecycleOrchestrator) -> None:
        install_and_apply(orchestrator, protected, options=options)
        config = orchestrator.config
        orchestrator.await_convergence(
            degraded_with_message(message(orchestrator)),
            timeout=config.degraded_timeout,
            interval=config.degraded_interval,
            reconnect=True,
            reach=Stage.DEGRADED,
        )

    return Scenario(
        name=f"{name}[{_suffix(protected)}]",
        steps=steps,
        protected=protected,
        description=description,
    )


def non_default_base_path_scenario(
    protected: bool = False,
    base_path: str | None = None,
    platform: str = sys.platform,
) -> Scenario:
    """The sub-service refuses to run when the agent is not at the default path."""
    options = InstallOptions(base_path=base_path or non_default_base_path(platform))
    return _degraded(
        "non_default_base_path",
        protected,
        options,
        lambda orchestrator: orchestrator.config.base_path_message,
        "Install at a non-default base path and expect a degraded agent",
    )


def unprivileged(protected: bool = False, platform: str = sys.platform) -> Scenario:
    """The sub-service refuses to run when the agent lacks root/Administrator."""

    def message(orchestrator: LifecycleOrchestrator) -> str:
        if platform.startswith("win"):
            return orchestrator.config.unprivileged_message_windows
        return orchestrator.config.unprivileged_message

    return _degraded(
        "unprivileged",
        protected,
        InstallOptions(unprivileged=True),
        message,
        "Install unprivileged and expect a degraded agent",
    )


def diagnostics(protected: bool = False, destination: str | Path | None = None) -> Scenario:
    """A diagnostics bundle from a healthy agent carries sub-service evidence."""

    def steps(orchestrator: LifecycleOrchestrator) -> None:
        install_and_apply(orchestrator, protected)
        _converge_present(orchestrator)
        if destination is not None:
            orchestrator.collect_and_verify_diagnostics(destination)
            return
        with tempfile.TemporaryDirectory(prefix="fleetqa-diag-") as tmp:
            orchestrator.collect_and_verify_diagnostics(tmp)

    return Scenario(
        name=f"diagnostics[{_suffix(protected)}]",
        steps=steps,
        protected=protected,
        description="Collect diagnostics and check the bundle for sub-service files",
    )


SCENARIOS: dict[str, Callable[..., Scenario]] = {
    "cli_uninstall": cli_uninstall,
    "unenroll": unenroll,
    "remove_integration": remove_integration,
    "non_default_base_path": non_default_base_path_scenario,
    "unprivileged": unprivileged,
    "diagnostics": diagnostics,
}


def matrix(names: list[str] | None = None) -> list[Scenario]:
    """Build every named scenario once per protection setting."""
    selected = names or list(SCENARIOS)
    unknown = [name for name in selected if name not in SCENARIOS]
    if unknown:
        raise KeyError(f"Unknown scenario(s): {', '.join(unknown)}")
    return [SCENARIOS[name](protected=protected) for name in selected for protected in PROTECTION_MATRIX]


__all__ = [
    "PROTECTION_MATRIX",
    "SCENARIOS",
    "cli_uninstall",
    "default_base_path",
    "diagnostics",
    "install_and_apply",
    "matrix",
    "non_default_base_path",
    "non_default_base_path_scenario",
    "remove_integration",
    "unenroll",
    "unprivileged",
]
