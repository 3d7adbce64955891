import hashlib
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from warprelease.src.models.certificate import is_valid_team_id
from warprelease.src.models.timestamps import parse_timestamp, utcnow

INITIATED = "initiated"
BUILDING = "building"
UPLOADING = "uploading"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

DEPLOYMENT_STATUSES = (INITIATED, BUILDING, UPLOADING, PROCESSING, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)

# Forward edges of the deployment state machine; "failed" is reachable from any
# non-terminal state.
ALLOWED_TRANSITIONS = {
    INITIATED: (BUILDING, FAILED),
    BUILDING: (UPLOADING, FAILED),
    UPLOADING: (PROCESSING, FAILED),
    PROCESSING: (COMPLETED, FAILED),
    COMPLETED: (),
    FAILED: (),
}

DEPLOYMENT_TYPES = ("testflight", "app_store", "ad_hoc", "enterprise")

MAX_LOG_ENTRY_LENGTH = 10000
MAX_ERROR_MESSAGE_LENGTH = 5000
MAX_DEPLOYMENT_DURATION = 7200  # seconds; anything longer is flagged as excessive

DEFAULT_RETENTION_DAYS = 365
COMPLIANCE_RETENTION_DAYS = 2555  # 7 years for store and enterprise releases


class InvalidTransitionError(ValueError):
    """Raised when a record is asked to move backwards or out of a terminal state"""


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "... [truncated]"
    return text


def generate_deployment_id(
    team_id: str, app_identifier: str, now: Optional[datetime] = None
) -> str:
    """e.g. ``ABCD123456_MYAP_20250101_120000_1A2B3C4D``"""
    now = now or utcnow()
    app_prefix = (app_identifier.split(".")[-1] or "APP").upper()[:4]
    suffix = secrets.token_hex(4).upper()
    return f"{team_id}_{app_prefix}_{now:%Y%m%d_%H%M%S}_{suffix}"


@dataclass(frozen=True)
class DeploymentError:
    """Structured failure kept on a terminal record for audit."""

    kind: str
    message: str
    tag: str
    context: Mapping[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(
            self, "message", _truncate(str(self.message), MAX_ERROR_MESSAGE_LENGTH)
        )
        object.__setattr__(self, "context", MappingProxyType(dict(self.context or {})))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "tag": self.tag,
            "message": self.message,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass(frozen=True)
class DeploymentRecord:
    """Run record of one deployment.

    Records are values: every log line, status change, error or metadata
    update returns a new record and leaves the previous one untouched.
    """

    deployment_id: str
    team_id: str
    app_identifier: str
    deployment_type: str
    initiated_by: str
    initiated_at: datetime
    status: str = INITIATED
    marketing_version: Optional[str] = None
    build_number: Optional[str] = None
    completed_at: Optional[datetime] = None
    archive_path: Optional[str] = None
    archive_size: Optional[int] = None
    build_url: Optional[str] = None
    logs: Tuple[str, ...] = ()
    error: Optional[DeploymentError] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not str(self.deployment_id or "").strip():
            raise ValueError("Deployment ID cannot be empty")
        if not is_valid_team_id(self.team_id):
            raise ValueError(f"Invalid team ID format: {self.team_id}")
        if not self.app_identifier:
            raise ValueError("App identifier cannot be empty")
        if not str(self.initiated_by or "").strip():
            raise ValueError("Initiated by cannot be empty")

        deployment_type = str(self.deployment_type).lower()
        if deployment_type not in DEPLOYMENT_TYPES:
            raise ValueError(
                f"Invalid deployment type: {self.deployment_type}. "
                f"Must be one of: {', '.join(DEPLOYMENT_TYPES)}"
            )
        status = str(self.status).lower()
        if status not in DEPLOYMENT_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")

        object.__setattr__(self, "deployment_type", deployment_type)
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "initiated_at", parse_timestamp(self.initiated_at))
        if self.completed_at is not None:
            object.__setattr__(self, "completed_at", parse_timestamp(self.completed_at))
        object.__setattr__(self, "logs", tuple(self.logs))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def in_progress(self) -> bool:
        return not self.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == COMPLETED

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.initiated_at).total_seconds()

    @property
    def excessive_duration(self) -> bool:
        duration = self.duration
        return duration is not None and duration > MAX_DEPLOYMENT_DURATION

    @property
    def formatted_duration(self) -> str:
        duration = self.duration
        if duration is None:
            return "In Progress"
        minutes, seconds = divmod(int(duration), 60)
        return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"

    @property
    def formatted_archive_size(self) -> str:
        if self.archive_size is None:
            return "Unknown"
        size = float(self.archive_size)
        for unit in ("B", "KB", "MB"):
            if size < 1024:
                return f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.1f} GB"

    @property
    def build_identifier(self) -> str:
        return f"{self.app_identifier} v{self.marketing_version} ({self.build_number})"

    def to_audit_log(self) -> str:
        return (
            f"[{self.status.upper()}] [{self.initiated_at:%Y-%m-%d %H:%M:%S}] "
            f"{self.build_identifier} -> {self.deployment_type.upper()} "
            f"by {self.initiated_by} ({self.formatted_duration})"
        )

    @property
    def requires_compliance_retention(self) -> bool:
        return self.deployment_type in ("app_store", "enterprise")

    @property
    def retention_days(self) -> int:
        if self.requires_compliance_retention:
            return COMPLIANCE_RETENTION_DAYS
        return DEFAULT_RETENTION_DAYS

    def should_archive(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - self.initiated_at > timedelta(days=self.retention_days)

    @property
    def checksum(self) -> str:
        data = (
            f"{self.deployment_id}:{self.team_id}:{self.app_identifier}:"
            f"{self.marketing_version}:{self.build_number}:{self.initiated_at.isoformat()}"
        )
        return hashlib.sha256(data.encode("utf-8")).hexdigest()[:12]

    def can_transition_to(self, status: str) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def append_log(self, entry: str, at: Optional[datetime] = None) -> "DeploymentRecord":
        if not entry or not entry.strip():
            raise ValueError("Log entry cannot be empty")
        at = at or utcnow()
        line = f"[{at:%H:%M:%S}] {_truncate(entry, MAX_LOG_ENTRY_LENGTH)}"
        return replace(self, logs=self.logs + (line,))

    def with_status(self, status: str, at: Optional[datetime] = None) -> "DeploymentRecord":
        """Move forward to ``status``, logging the transition.

        Terminal transitions stamp ``completed_at`` so the duration is
        recomputed from the initiation time.
        """
        status = str(status).lower()
        if status not in DEPLOYMENT_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Deployment {self.deployment_id} cannot move from {self.status} to {status}"
            )

        at = at or utcnow()
        updated = replace(self, status=status)
        if status in TERMINAL_STATUSES:
            updated = replace(updated, completed_at=at)
        return updated.append_log(f"Status: {self.status} -> {status}", at=at)

    def with_error(self, error: DeploymentError) -> "DeploymentRecord":
        return replace(self, error=error)

    def with_metadata(self, key: str, value: Any) -> "DeploymentRecord":
        metadata = dict(self.metadata)
        metadata[str(key)] = value
        return replace(self, metadata=metadata)

    def with_version(self, marketing_version: str, build_number: Any) -> "DeploymentRecord":
        return replace(
            self, marketing_version=str(marketing_version), build_number=str(build_number)
        )

    def with_archive(self, archive_path: str, archive_size: Optional[int]) -> "DeploymentRecord":
        return replace(self, archive_path=str(archive_path), archive_size=archive_size)

    def with_build_url(self, build_url: Optional[str]) -> "DeploymentRecord":
        return replace(self, build_url=build_url)

    def complete(self, at: Optional[datetime] = None) -> "DeploymentRecord":
        return self._flag_duration(self.with_status(COMPLETED, at=at), at)

    def fail(
        self,
        kind: str,
        message: str,
        tag: str,
        context: Optional[Mapping[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> "DeploymentRecord":
        at = at or utcnow()
        error = DeploymentError(
            kind=kind, message=message, tag=tag, context=context or {}, timestamp=at
        )
        failed = self.with_error(error).append_log(f"{kind} ({tag}): {error.message}", at=at)
        return self._flag_duration(failed.with_status(FAILED, at=at), at)

    @staticmethod
    def _flag_duration(record: "DeploymentRecord", at: Optional[datetime]) -> "DeploymentRecord":
        if not record.excessive_duration:
            return record
        return record.with_metadata("excessive_duration", True).append_log(
            f"Deployment took {record.formatted_duration}, over the "
            f"{MAX_DEPLOYMENT_DURATION // 3600}h ceiling",
            at=at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "team_id": self.team_id,
            "app_identifier": self.app_identifier,
            "deployment_type": self.deployment_type,
            "status": self.status,
            "marketing_version": self.marketing_version,
            "build_number": self.build_number,
            "initiated_by": self.initiated_by,
            "initiated_at": self.initiated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "archive_path": self.archive_path,
            "archive_size": self.archive_size,
            "build_url": self.build_url,
            "logs": list(self.logs),
            "error": self.error.to_dict() if self.error else None,
            "metadata": dict(self.metadata),
            "checksum": self.checksum,
            "retention_days": self.retention_days,
        }
