"""Verification of diagnostics bundles.

A diagnostics bundle is the archive the agent produces on request. When the
managed sub-service is running, the bundle must carry evidence of it:

- ``component_directory``: the sub-service's component directory exists and
  is not empty.
- ``service_logs``: the service log directory holds a sub-service log file.

Both checks always run, so one report shows every missing piece of evidence.

Example:
    >>> report = verify_bundle("diagnostics.zip")
    >>> report.passed
    True
    >>> report.raise_for_failures()
"""

from __future__ import annotations

import fnmatch
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from fleetqa.errors import BundleError, MissingEvidenceError

if TYPE_CHECKING:
    from fleetqa.config import HarnessConfig

logger = logging.getLogger(__name__)

COMPONENT_DIRECTORY = "component_directory"
SERVICE_LOGS = "service_logs"


@dataclass(frozen=True)
class BundleLayout:
    """Where the sub-service's evidence lives inside a bundle."""

    component_dir: str = "components/endpoint-default"
    logs_dir: str = "logs/services"
    log_pattern: str = "endpoint-*.log"

    @classmethod
    def from_config(cls, config: HarnessConfig) -> BundleLayout:
        return cls(
            component_dir=config.bundle_component_dir,
            logs_dir=config.bundle_logs_dir,
            log_pattern=config.bundle_log_pattern,
        )


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class BundleReport:
    """Results of every check run against one bundle."""

    path: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failed_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def get(self, name: str) -> CheckResult | None:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def raise_for_failures(self) -> None:
        """Raise MissingEvidenceError naming every failed check."""
        failed = self.failed_checks
        if not failed:
            return
        raise MissingEvidenceError(
            message=f"Diagnostics bundle {self.path} is missing evidence: "
            + "; ".join(f"{c.name}: {c.detail}" for c in failed),
            failed_checks=[c.name for c in failed],
            bundle=self.path,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "passed": self.passed,
            "checks": [
                {"name": c.name, "passed": c.passed, "detail": c.detail}
                for c in self.checks
            ],
        }


def _normalize(name: str) -> str:
    normalized = name.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.strip("/")


def _list_archive(path: Path) -> tuple[set[str], set[str]]:
    """Return (files, directories) of a zip archive or an extracted bundle."""
    files: set[str] = set()
    dirs: set[str] = set()

    if path.is_dir():
        for entry in path.rglob("*"):
            relative = entry.relative_to(path).as_posix()
            (dirs if entry.is_dir() else files).add(relative)
        return files, dirs

    try:
        with zipfile.ZipFile(path) as archive:
            for info in archive.infolist():
                name = _normalize(info.filename)
                if not name:
                    continue
                (dirs if info.is_dir() else files).add(name)
    except (OSError, zipfile.BadZipFile) as e:
        raise BundleError(
            message=f"Could not read diagnostics archive {path}: {e}",
            cause=e,
            bundle=str(path),
        ) from e

    # Implicit parent directories of every file
    for name in list(files):
        for parent in PurePosixPath(name).parents:
            if str(parent) != ".":
                dirs.add(str(parent))
    return files, dirs


def _check_component_directory(files: set[str], dirs: set[str], layout: BundleLayout) -> CheckResult:
    target = _normalize(layout.component_dir)
    prefix = target + "/"
    contents = sorted(name for name in files | dirs if name.startswith(prefix))
    if contents:
        return CheckResult(
            name=COMPONENT_DIRECTORY,
            passed=True,
            detail=f"{target} holds {len(contents)} entr{'y' if len(contents) == 1 else 'ies'}",
        )
    if target in dirs:
        return CheckResult(name=COMPONENT_DIRECTORY, passed=False, detail=f"{target} is empty")
    return CheckResult(name=COMPONENT_DIRECTORY, passed=False, detail=f"{target} not found")


def _check_service_logs(files: set[str], dirs: set[str], layout: BundleLayout) -> CheckResult:
    logs_dir = _normalize(layout.logs_dir)
    children = sorted(
        PurePosixPath(name).name
        for name in files
        if str(PurePosixPath(name).parent) == logs_dir
    )
    matches = [name for name in children if fnmatch.fnmatchcase(name, layout.log_pattern)]
    if matches:
        return CheckResult(name=SERVICE_LOGS, passed=True, detail=", ".join(matches))
    if logs_dir not in dirs:
        return CheckResult(name=SERVICE_LOGS, passed=False, detail=f"{logs_dir} not found")
    found = ", ".join(children) if children else "no files"
    return CheckResult(
        name=SERVICE_LOGS,
        passed=False,
        detail=f"no {layout.log_pattern} file in {logs_dir} (found: {found})",
    )


def verify_bundle(path: str | Path, layout: BundleLayout | None = None) -> BundleReport:
    """Run every evidence check against a diagnostics bundle.

    Args:
        path: Zip archive, or a directory holding an extracted bundle.
        layout: Expected locations; defaults to BundleLayout().

    Raises:
        BundleError: If the archive does not exist or cannot be read.
    """
    path = Path(path)
    layout = layout or BundleLayout()
    if not path.exists():
        raise BundleError(message=f"Diagnostics bundle not found: {path}", bundle=str(path))

    files, dirs = _list_archive(path)
    report = BundleReport(
        path=str(path),
        checks=[
            _check_component_directory(files, dirs, layout),
            _check_service_logs(files, dirs, layout),
        ],
    )
    for check in report.checks:
        log = logger.info if check.passed else logger.warning
        log("Bundle check %s %s: %s", check.name, "passed" if check.passed else "failed", check.detail)
    return report


__all__ = [
    "BundleLayout",
    "BundleReport",
    "CheckResult",
    "COMPONENT_DIRECTORY",
    "SERVICE_LOGS",
    "verify_bundle",
]
