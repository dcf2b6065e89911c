"""fleetqa error handling module.

Provides the exception hierarchy shared by the poller, the lifecycle
orchestrator and the artifact verifier.
"""

from fleetqa.errors.base import (
    BundleError,
    CleanupError,
    ConfigValidationError,
    ControlPlaneConnectionError,
    ConvergenceTimeoutError,
    EnrollmentError,
    ErrorCode,
    ErrorContext,
    FleetQAError,
    InstallError,
    LifecycleError,
    ManagementAPIError,
    MissingEvidenceError,
    ObservationError,
    PayloadValidationError,
    PostconditionError,
    ResidualFilesError,
    ScenarioTimeoutError,
    SetupError,
    StateFetchError,
)

__all__ = [
    # Base
    "FleetQAError",
    "ErrorCode",
    "ErrorContext",
    # Observation errors
    "ObservationError",
    "ControlPlaneConnectionError",
    "StateFetchError",
    # Setup errors
    "SetupError",
    "InstallError",
    "EnrollmentError",
    "PayloadValidationError",
    "ManagementAPIError",
    # Convergence errors
    "ConvergenceTimeoutError",
    # Postcondition errors
    "PostconditionError",
    "ResidualFilesError",
    "MissingEvidenceError",
    "BundleError",
    # Lifecycle errors
    "LifecycleError",
    "ScenarioTimeoutError",
    "CleanupError",
    # Config errors
    "ConfigValidationError",
]
