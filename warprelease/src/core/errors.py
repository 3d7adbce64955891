from typing import Any, Dict, Optional


class ReleaseError(Exception):
    """Base class for release pipeline failures.

    ``kind`` is the stable name recorded on a failed deployment; ``context``
    carries whatever the caller needs for audit (quota hit, strategy that
    failed, remote state, ...).
    """

    kind = "ReleaseError"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def __str__(self):
        return self.message


class TeamMismatchError(ReleaseError):
    kind = "TeamMismatch"


class InactiveTeamError(ReleaseError):
    kind = "InactiveTeam"


class QuotaExceededUnresolvableError(ReleaseError):
    kind = "QuotaExceededUnresolvable"


class CannotCreateError(ReleaseError):
    kind = "CannotCreate"


class NoCompatibleCertificatesError(ReleaseError):
    kind = "NoCompatibleCertificates"


class ProfileCreationFailedError(ReleaseError):
    kind = "ProfileCreationFailed"


class MalformedVersionError(ReleaseError):
    kind = "MalformedVersion"


class VersionConflictError(ReleaseError):
    kind = "VersionConflict"


class BuildFailedError(ReleaseError):
    kind = "BuildFailed"


class UploadFailedError(ReleaseError):
    kind = "UploadFailed"


class ProcessingFailedError(ReleaseError):
    kind = "ProcessingFailed"


class ProcessingTimeoutError(ReleaseError):
    kind = "ProcessingTimeout"


class CancelledError(ReleaseError):
    kind = "Cancelled"


class DeploymentInProgressError(ReleaseError):
    kind = "DeploymentInProgress"


class TeamBusyError(ReleaseError):
    kind = "TeamBusy"


class PrivacyValidationError(ReleaseError):
    kind = "PrivacyValidationFailed"
