from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

# Processing states reported by App Store Connect for an uploaded build
PROCESSING = "PROCESSING"
PROCESSING_COMPLETE = "PROCESSING_COMPLETE"
PROCESSING_FAILED = "PROCESSING_FAILED"
READY_FOR_BETA_TESTING = "READY_FOR_BETA_TESTING"
VALID = "VALID"
INVALID = "INVALID"
UNKNOWN = "UNKNOWN"

SUCCESSFUL_PROCESSING_STATES = (VALID, PROCESSING_COMPLETE, READY_FOR_BETA_TESTING)
FAILED_PROCESSING_STATES = (INVALID, PROCESSING_FAILED)
TERMINAL_PROCESSING_STATES = SUCCESSFUL_PROCESSING_STATES + FAILED_PROCESSING_STATES

STANDARD_MODE = "standard"
ENHANCED_MODE = "enhanced"


def normalize_processing_state(state: Optional[str]) -> str:
    return str(state or UNKNOWN).strip().upper() or UNKNOWN


def is_terminal_processing_state(state: Optional[str]) -> bool:
    return normalize_processing_state(state) in TERMINAL_PROCESSING_STATES


def is_successful_processing_state(state: Optional[str]) -> bool:
    return normalize_processing_state(state) in SUCCESSFUL_PROCESSING_STATES


@dataclass(frozen=True)
class UploadCredentials:
    """App Store Connect credentials handed to the upload tools.

    Either an API key (``api_key_id`` + ``api_issuer_id``) or an Apple ID
    with an app-specific password.
    """

    api_key_id: Optional[str] = None
    api_issuer_id: Optional[str] = None
    api_key_path: Optional[str] = None
    apple_id: Optional[str] = None
    app_specific_password: Optional[str] = field(default=None, repr=False)

    @property
    def uses_api_key(self) -> bool:
        return bool(self.api_key_id and self.api_issuer_id)

    @property
    def uses_apple_id(self) -> bool:
        return bool(self.apple_id and self.app_specific_password)

    @property
    def is_complete(self) -> bool:
        return self.uses_api_key or self.uses_apple_id


@dataclass(frozen=True)
class UploadOptions:
    app_identifier: str
    build_number: str
    marketing_version: Optional[str] = None
    platform: str = "ios"
    mode: str = STANDARD_MODE
    total_budget: float = 1800.0
    poll_interval: float = 30.0
    wait_budget: float = 600.0
    # per-strategy limit; the coordinator fills it in when unset
    attempt_timeout: Optional[float] = None

    def __post_init__(self):
        mode = str(self.mode or STANDARD_MODE).lower()
        if mode not in (STANDARD_MODE, ENHANCED_MODE):
            raise ValueError(f"Invalid upload mode: {self.mode}")
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "build_number", str(self.build_number))
        for name in ("total_budget", "poll_interval", "wait_budget"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")

    @property
    def enhanced(self) -> bool:
        return self.mode == ENHANCED_MODE

    @property
    def timeout(self) -> float:
        """How long a single upload tool may run"""
        if self.attempt_timeout is None:
            return self.total_budget
        return min(self.attempt_timeout, self.total_budget)


@dataclass(frozen=True)
class StrategyAttempt:
    """One upload strategy's outcome, kept for audit even when a later one succeeds"""

    strategy: str
    success: bool
    duration: float
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "success": self.success,
            "duration": round(self.duration, 3),
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class UploadResult:
    success: bool
    message: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempts: Tuple[StrategyAttempt, ...] = ()

    @classmethod
    def succeeded(cls, message: str, **metadata) -> "UploadResult":
        return cls(success=True, message=message, metadata=dict(metadata))

    @classmethod
    def failed(
        cls, error: str, error_kind: str = "UploadFailed", **metadata
    ) -> "UploadResult":
        return cls(
            success=False,
            message=error,
            error=error,
            error_kind=error_kind,
            metadata=dict(metadata),
        )

    @property
    def upload_method(self) -> Optional[str]:
        return self.metadata.get("upload_method")

    @property
    def processing_state(self) -> Optional[str]:
        return self.metadata.get("processing_state")

    def with_metadata(self, **values) -> "UploadResult":
        metadata = dict(self.metadata)
        metadata.update(values)
        return replace(self, metadata=metadata)

    def with_attempts(self, attempts) -> "UploadResult":
        return replace(self, attempts=tuple(attempts))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "error_kind": self.error_kind,
            "metadata": dict(self.metadata),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


@dataclass(frozen=True)
class RemoteBuild:
    """A build App Store Connect already knows about"""

    version: str
    build_number: str
    state: str = UNKNOWN
    uploaded_at: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "build_number", str(self.build_number))
        object.__setattr__(self, "state", normalize_processing_state(self.state))

    @property
    def build(self) -> Optional[int]:
        text = self.build_number.strip()
        return int(text) if text.isdigit() else None


@dataclass(frozen=True)
class BuildArtifact:
    archive_path: str
    size: Optional[int] = None
    log_path: Optional[str] = None
