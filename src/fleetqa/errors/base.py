"""Custom exception hierarchy for fleetqa.

fleetqa errors follow the taxonomy of a convergence scenario:

- Setup errors: collaborator construction, policy creation, install. Fatal.
- Observation errors: control-plane connect/fetch failures while polling.
  Recovered by the poller and retried until the time budget runs out.
- Convergence errors: the expected state was not reached in time.
- Postcondition errors: residual files, missing diagnostic evidence.
- Lifecycle errors: out-of-order stages, scenario deadline, cleanup.

All fleetqa errors inherit from FleetQAError and include:
- error_code: A unique ErrorCode enum for categorization
- context: ErrorContext with scenario/stage details
- suggestions: List of actionable steps to resolve the issue

Example:
    try:
        orchestrator.run(scenario)
    except ConvergenceTimeoutError as e:
        print(e.format_verbose())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fleetqa.state.models import StateSnapshot


class ErrorCode(Enum):
    """Standardized error codes for fleetqa.

    Error codes are organized by category:
    - E0xx: Observation errors (control-plane connection and state fetch)
    - E1xx: Setup errors (install, enrollment, policy payloads)
    - E2xx: Convergence errors
    - E3xx: Postcondition errors (residual files, diagnostics evidence)
    - E4xx: Lifecycle errors (stage ordering, deadlines, cleanup)
    - E5xx: Configuration errors
    - E9xx: Unknown/internal errors
    """

    # Observation errors (E0xx)
    CONTROL_PLANE_UNAVAILABLE = "E001"
    STATE_FETCH_FAILED = "E002"

    # Setup errors (E1xx)
    SETUP_FAILED = "E101"
    INSTALL_FAILED = "E102"
    ENROLLMENT_FAILED = "E103"
    INVALID_PAYLOAD = "E104"
    MANAGEMENT_API_FAILED = "E105"

    # Convergence errors (E2xx)
    CONVERGENCE_TIMEOUT = "E201"

    # Postcondition errors (E3xx)
    POSTCONDITION_FAILED = "E301"
    RESIDUAL_FILES = "E302"
    MISSING_EVIDENCE = "E303"
    BUNDLE_UNREADABLE = "E304"

    # Lifecycle errors (E4xx)
    INVALID_TRANSITION = "E401"
    SCENARIO_TIMEOUT = "E402"
    CLEANUP_FAILED = "E403"

    # Configuration errors (E5xx)
    INVALID_CONFIG = "E501"

    # Unknown/internal errors (E9xx)
    UNKNOWN = "E999"

    @property
    def category(self) -> str:
        """Get the error category name."""
        code_num = int(self.value[1:])
        if code_num < 100:
            return "observation"
        elif code_num < 200:
            return "setup"
        elif code_num < 300:
            return "convergence"
        elif code_num < 400:
            return "postcondition"
        elif code_num < 500:
            return "lifecycle"
        elif code_num < 600:
            return "config"
        else:
            return "unknown"


@dataclass
class ErrorContext:
    """Structured context for error logging and debugging.

    Attributes:
        scenario_name: Name of the scenario being executed.
        stage: Lifecycle stage in progress when the error occurred.
        extra: Additional context-specific information.
        timestamp: When the error occurred.
    """

    scenario_name: str | None = None
    stage: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to dictionary for serialization."""
        result = {
            "scenario_name": self.scenario_name,
            "stage": self.stage,
            "extra": self.extra,
            "timestamp": self.timestamp.isoformat(),
        }
        return {k: v for k, v in result.items() if v is not None}

    def format_location(self) -> str:
        """Format the error location as a readable string."""
        parts = []
        if self.scenario_name:
            parts.append(f"scenario={self.scenario_name}")
        if self.stage:
            parts.append(f"stage={self.stage}")
        return " > ".join(parts) if parts else "unknown location"


class FleetQAError(Exception):
    """Base exception for all fleetqa errors.

    Attributes:
        error_code: Unique ErrorCode for this error type
        message: Human-readable error description
        context: ErrorContext with execution details
        suggestions: List of actionable steps to resolve the issue
        recoverable: Whether the error can be retried
        cause: The underlying exception (if any)
    """

    error_code: ErrorCode = ErrorCode.UNKNOWN
    default_message: str = "An unexpected error occurred"
    default_suggestions: list[str] = []
    recoverable: bool = False

    def __init__(
        self,
        message: str | None = None,
        error_code: ErrorCode | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
        recoverable: bool | None = None,
        suggestions: list[str] | None = None,
        **extra_context: Any,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.error_code
        self.context = context or ErrorContext()
        self.cause = cause
        if recoverable is not None:
            self.recoverable = recoverable
        self._suggestions = suggestions

        if extra_context:
            self.context.extra.update(extra_context)

        super().__init__(self.message)

    @property
    def suggestions(self) -> list[str]:
        """Get actionable suggestions for resolving this error."""
        if self._suggestions is not None:
            return self._suggestions
        return self.default_suggestions.copy()

    def __str__(self) -> str:
        parts = [f"[{self.error_code.value}] {self.message}"]

        location = self.context.format_location()
        if location != "unknown location":
            parts.append(f"at {location}")

        return " | ".join(parts)

    def format_verbose(self) -> str:
        """Format error with full details including suggestions."""
        lines = [
            f"Error [{self.error_code.value}]: {self.message}",
        ]

        location = self.context.format_location()
        if location != "unknown location":
            lines.append(f"Location: {location}")

        if self.cause is not None:
            lines.append(f"Caused by: {type(self.cause).__name__}: {self.cause}")

        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            for suggestion in self.suggestions:
                lines.append(f"  - {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_code": self.error_code.value,
            "error_type": self.__class__.__name__,
            "category": self.error_code.category,
            "message": self.message,
            "recoverable": self.recoverable,
            "suggestions": self.suggestions,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


class ObservationError(FleetQAError):
    """Reading state from the local control plane failed.

    Observation errors are transient: the poller logs them and treats the
    attempt as "not yet converged".
    """

    error_code = ErrorCode.STATE_FETCH_FAILED
    default_message = "Failed to observe agent state"
    recoverable = True


class ControlPlaneConnectionError(ObservationError):
    """Could not connect to the local control-plane socket."""

    error_code = ErrorCode.CONTROL_PLANE_UNAVAILABLE
    default_message = "Could not connect to the local agent control plane"
    default_suggestions = [
        "Check the agent service is running on this host",
        "Verify the harness runs with enough privilege to open the control socket",
    ]


class StateFetchError(ObservationError):
    """The control plane answered with an error or a malformed status."""

    error_code = ErrorCode.STATE_FETCH_FAILED
    default_message = "Failed to fetch agent state"


class SetupError(FleetQAError):
    """A scenario could not be set up. Never retried."""

    error_code = ErrorCode.SETUP_FAILED
    default_message = "Scenario setup failed"


class InstallError(SetupError):
    """Installing the agent failed."""

    error_code = ErrorCode.INSTALL_FAILED
    default_message = "Agent installation failed"
    default_suggestions = [
        "Check the installer output in the scenario logs",
        "Make sure no previous agent installation is left on the host",
    ]


class EnrollmentError(SetupError):
    """Creating the policy or enrolling the agent failed."""

    error_code = ErrorCode.ENROLLMENT_FAILED
    default_message = "Agent enrollment failed"


class PayloadValidationError(SetupError):
    """A templated integration payload is not well-formed JSON.

    This is a local test-construction error: nothing was sent to the
    management API.
    """

    error_code = ErrorCode.INVALID_PAYLOAD
    default_message = "Templated integration payload is not valid JSON"
    default_suggestions = [
        "Check the payload template for unbalanced braces or trailing commas",
        "Check every template placeholder has a value",
    ]

    def __init__(
        self,
        message: str | None = None,
        payload: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.payload = payload
        super().__init__(message=message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["payload"] = self.payload
        return result


class ManagementAPIError(SetupError):
    """The remote management API rejected a request."""

    error_code = ErrorCode.MANAGEMENT_API_FAILED
    default_message = "Management API request failed"

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        response_body: Any = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        if status_code == 409:
            kwargs.setdefault(
                "suggestions",
                ["An object with the same name already exists; use a unique name per run"],
            )
        elif status_code in (401, 403):
            kwargs.setdefault(
                "suggestions",
                ["Check the Fleet credentials in the harness configuration"],
            )
        super().__init__(message=message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status_code"] = self.status_code
        result["response_body"] = self.response_body
        return result


class ConvergenceTimeoutError(FleetQAError):
    """The expected state was not reached within the polling budget.

    Carries the last observed snapshot, the unmet predicate's description and
    the last mismatch detail so the failure can be diagnosed after the fact.
    """

    error_code = ErrorCode.CONVERGENCE_TIMEOUT
    default_message = "State did not converge in time"
    default_suggestions = [
        "Inspect the last observed snapshot for the unhealthy component or unit",
        "Increase convergence_timeout if the host is slow",
    ]

    def __init__(
        self,
        message: str | None = None,
        predicate: str | None = None,
        timeout_seconds: float | None = None,
        elapsed_seconds: float | None = None,
        attempts: int = 0,
        last_snapshot: StateSnapshot | None = None,
        last_detail: str | None = None,
        last_error: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        self.predicate = predicate
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
        self.attempts = attempts
        self.last_snapshot = last_snapshot
        self.last_detail = last_detail
        self.last_error = last_error

        if message is None:
            message = self._build_message()

        super().__init__(message=message, cause=last_error, **kwargs)

    def _build_message(self) -> str:
        parts = []
        if self.predicate:
            parts.append(f"'{self.predicate}' not satisfied")
        else:
            parts.append("State did not converge")
        if self.timeout_seconds is not None:
            parts.append(f"within {self.timeout_seconds:.1f}s")
        if self.attempts:
            parts.append(f"after {self.attempts} attempt(s)")
        if self.last_detail:
            parts.append(f"(last mismatch: {self.last_detail})")
        elif self.last_error is not None:
            parts.append(f"(last error: {self.last_error})")
        return " ".join(parts)

    def format_verbose(self) -> str:
        lines = [super().format_verbose()]
        if self.last_snapshot is not None:
            from fleetqa.reporting.text import format_snapshot

            lines.append("")
            lines.append("Last observed state:")
            lines.append(format_snapshot(self.last_snapshot, indent=2))
        else:
            lines.append("")
            lines.append("No state was observed before the deadline.")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({
            "predicate": self.predicate,
            "timeout_seconds": self.timeout_seconds,
            "elapsed_seconds": self.elapsed_seconds,
            "attempts": self.attempts,
            "last_detail": self.last_detail,
            "last_snapshot": (
                self.last_snapshot.model_dump(mode="json") if self.last_snapshot else None
            ),
        })
        return result


class PostconditionError(FleetQAError):
    """A postcondition checked after convergence does not hold."""

    error_code = ErrorCode.POSTCONDITION_FAILED
    default_message = "Postcondition violated"


class ResidualFilesError(PostconditionError):
    """Files of the managed sub-service survived its logical removal.

    Attributes:
        residuals: Mapping of leftover path to its directory listing. An
            empty list is an empty leftover directory; None is a plain file.
    """

    error_code = ErrorCode.RESIDUAL_FILES
    default_message = "Managed sub-service files were not removed"

    def __init__(
        self,
        message: str | None = None,
        residuals: dict[str, list[str] | None] | None = None,
        **kwargs: Any,
    ) -> None:
        self.residuals = residuals or {}
        if message is None:
            message = self._build_message()
        super().__init__(message=message, **kwargs)

    @property
    def signature(self) -> str:
        """Defect signature: ``empty``, ``non_empty`` or ``file``."""
        listings = list(self.residuals.values())
        if any(listing for listing in listings):
            return "non_empty"
        if any(listing == [] for listing in listings):
            return "empty"
        return "file"

    def _build_message(self) -> str:
        parts = []
        for path, listing in sorted(self.residuals.items()):
            if listing is None:
                parts.append(f"{path} (file) was not removed")
            elif not listing:
                parts.append(f"{path} was not removed, but it's empty")
            else:
                parts.append(
                    f"{path} was not removed, the directory content is: {', '.join(listing)}"
                )
        return "; ".join(parts) or self.default_message

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["residuals"] = self.residuals
        result["signature"] = self.signature
        return result


class MissingEvidenceError(PostconditionError):
    """A diagnostics bundle lacks expected evidence of the sub-service."""

    error_code = ErrorCode.MISSING_EVIDENCE
    default_message = "Diagnostics bundle is missing expected evidence"

    def __init__(
        self,
        message: str | None = None,
        failed_checks: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.failed_checks = failed_checks or []
        super().__init__(message=message, **kwargs)


class BundleError(PostconditionError):
    """The diagnostics archive could not be opened."""

    error_code = ErrorCode.BUNDLE_UNREADABLE
    default_message = "Diagnostics archive could not be read"


class LifecycleError(FleetQAError):
    """A lifecycle stage was requested out of order."""

    error_code = ErrorCode.INVALID_TRANSITION
    default_message = "Invalid lifecycle transition"


class ScenarioTimeoutError(LifecycleError):
    """The scenario deadline passed before the next stage could start."""

    error_code = ErrorCode.SCENARIO_TIMEOUT
    default_message = "Scenario deadline exceeded"


class CleanupError(LifecycleError):
    """One or more cleanup actions failed.

    Only raised when the scenario otherwise succeeded.
    """

    error_code = ErrorCode.CLEANUP_FAILED
    default_message = "Scenario cleanup failed"

    def __init__(
        self,
        message: str | None = None,
        failures: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        self.failures = failures or []
        if message is None and self.failures:
            message = "Cleanup failed: " + "; ".join(self.failures)
        super().__init__(message=message, **kwargs)


class ConfigValidationError(FleetQAError):
    """Harness configuration is invalid."""

    error_code = ErrorCode.INVALID_CONFIG
    default_message = "Invalid configuration"
    default_suggestions = [
        "Run 'fleetqa show-config' to see the effective configuration",
        "Check FLEETQA_* environment variables and the YAML config file",
    ]

    def __init__(
        self,
        message: str | None = None,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value
        super().__init__(message=message, **kwargs)

    def __str__(self) -> str:
        base = super().__str__()
        if self.field:
            base = f"{base} (field: {self.field})"
        return base
