import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from warprelease.src.models.timestamps import (
    DateInput,
    parse_optional_timestamp,
    parse_timestamp,
    utcnow,
)

DEVELOPMENT = "development"
DISTRIBUTION = "distribution"
CERTIFICATE_TYPES = (DEVELOPMENT, DISTRIBUTION)

# Apple Developer Portal limits on live certificates per team
DEVELOPMENT_LIMIT = 2
DISTRIBUTION_LIMIT = 3

EXPIRATION_WARNING_DAYS = 30

TEAM_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")


def is_valid_team_id(team_id: Optional[str]) -> bool:
    return bool(team_id) and TEAM_ID_PATTERN.match(team_id) is not None


def normalize_certificate_type(certificate_type: str) -> str:
    """Map portal labels like 'IOS_DISTRIBUTION' or 'Apple Development' to our two types"""
    lowered = str(certificate_type or "").strip().lower()
    if "development" in lowered:
        return DEVELOPMENT
    if "distribution" in lowered:
        return DISTRIBUTION
    return lowered


def quota_for_type(certificate_type: str) -> int:
    return {
        DEVELOPMENT: DEVELOPMENT_LIMIT,
        DISTRIBUTION: DISTRIBUTION_LIMIT,
    }.get(normalize_certificate_type(certificate_type), 0)


@dataclass(frozen=True)
class Certificate:
    """A signing identity owned by exactly one team."""

    id: str
    name: str
    certificate_type: str
    team_id: str
    expiration_date: datetime
    created_date: Optional[datetime] = None
    serial_number: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Certificate ID cannot be empty")
        if not self.name:
            raise ValueError("Certificate name cannot be empty")

        normalized = normalize_certificate_type(self.certificate_type)
        if normalized not in CERTIFICATE_TYPES:
            raise ValueError(f"Invalid certificate type: {self.certificate_type}")
        object.__setattr__(self, "certificate_type", normalized)

        if not is_valid_team_id(self.team_id):
            raise ValueError("Team ID must be 10 alphanumeric characters")
        if self.expiration_date is None:
            raise ValueError("Expiration date cannot be empty")

        object.__setattr__(
            self, "expiration_date", parse_timestamp(self.expiration_date)
        )
        object.__setattr__(
            self, "created_date", parse_optional_timestamp(self.created_date)
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiration_date <= (now or utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)

    def days_until_expiration(self, now: Optional[datetime] = None) -> int:
        return (self.expiration_date - (now or utcnow())).days

    def is_expiring_soon(
        self, now: Optional[datetime] = None, days: int = EXPIRATION_WARNING_DAYS
    ) -> bool:
        if self.is_expired(now):
            return True
        return self.days_until_expiration(now) <= days

    def health_status(self, now: Optional[datetime] = None) -> str:
        if self.is_expired(now):
            return "expired"
        if self.is_expiring_soon(now):
            return "expiring_soon"
        return "healthy"

    def belongs_to_team(self, team_id: str) -> bool:
        return bool(team_id) and self.team_id == team_id

    @property
    def is_development(self) -> bool:
        return self.certificate_type == DEVELOPMENT

    @property
    def is_distribution(self) -> bool:
        return self.certificate_type == DISTRIBUTION

    @classmethod
    def from_portal_data(
        cls, data: Dict[str, Any], team_id: Optional[str] = None
    ) -> "Certificate":
        """Build a certificate from a developer portal ``certificates`` resource.

        Accepts both the raw JSON:API shape (``id`` + ``attributes``) and the
        flattened dicts our fakes and config files use.
        """
        attrs = data.get("attributes", data)
        expiration: DateInput = attrs.get("expirationDate") or attrs.get(
            "expiration_date"
        )
        return cls(
            id=data["id"],
            name=attrs.get("name") or attrs.get("displayName") or data["id"],
            certificate_type=attrs.get("certificateType")
            or attrs.get("certificate_type"),
            team_id=team_id or attrs.get("teamId") or attrs.get("team_id"),
            expiration_date=expiration,
            created_date=attrs.get("requestedDate") or attrs.get("created_date"),
            serial_number=attrs.get("serialNumber") or attrs.get("serial_number"),
        )

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "certificate_type": self.certificate_type,
            "team_id": self.team_id,
            "expiration_date": self.expiration_date.isoformat(),
            "created_date": self.created_date.isoformat()
            if self.created_date
            else None,
            "serial_number": self.serial_number,
            "health_status": self.health_status(now),
        }
