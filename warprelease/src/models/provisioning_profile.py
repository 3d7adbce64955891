import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from warprelease.src.models.certificate import DEVELOPMENT, DISTRIBUTION, is_valid_team_id
from warprelease.src.models.timestamps import (
    DateInput,
    parse_optional_timestamp,
    parse_timestamp,
    utcnow,
)

DEVELOPMENT_PROFILE = "development"
APP_STORE_PROFILE = "app_store"
AD_HOC_PROFILE = "ad_hoc"
PROFILE_TYPES = (DEVELOPMENT_PROFILE, APP_STORE_PROFILE, AD_HOC_PROFILE)

# Profile types that carry a device allowlist
DEVICE_BOUND_TYPES = (DEVELOPMENT_PROFILE, AD_HOC_PROFILE)

FILE_EXTENSION = ".mobileprovision"
WILDCARD_SUFFIX = "*"


def normalize_profile_type(profile_type: str) -> str:
    """Normalize portal labels ('IOS_APP_STORE', 'Ad Hoc', 'limited', ...) to our profile types"""
    lowered = str(profile_type or "").strip().lower()
    if lowered in ("development", "dev", "debug", "limited"):
        return DEVELOPMENT_PROFILE
    if lowered in (
        "distribution",
        "dist",
        "appstore",
        "app-store",
        "app_store",
        "store",
        "release",
        "production",
    ):
        return APP_STORE_PROFILE
    if lowered in ("adhoc", "ad-hoc", "ad_hoc", "ad hoc"):
        return AD_HOC_PROFILE

    # Apple's own labels, e.g. IOS_APP_DEVELOPMENT / IOS_APP_ADHOC / IOS_APP_STORE
    if "development" in lowered:
        return DEVELOPMENT_PROFILE
    if "adhoc" in lowered or "ad hoc" in lowered or "ad_hoc" in lowered:
        return AD_HOC_PROFILE
    if "store" in lowered or "distribution" in lowered:
        return APP_STORE_PROFILE
    return lowered


def required_type_for_configuration(configuration: Optional[str]) -> str:
    """Profile type a build configuration has to be signed with.

    Unknown configurations fall back to development signing.
    """
    lowered = (configuration or "").strip().lower()
    if lowered in ("debug", "development"):
        return DEVELOPMENT_PROFILE
    if lowered in ("release", "production", "appstore", "app_store", "app-store"):
        return APP_STORE_PROFILE
    if lowered in ("adhoc", "ad-hoc", "ad_hoc"):
        return AD_HOC_PROFILE
    return DEVELOPMENT_PROFILE


def certificate_type_for_profile(profile_type: str) -> str:
    """Certificate type every certificate in a profile of this type must have"""
    if normalize_profile_type(profile_type) == DEVELOPMENT_PROFILE:
        return DEVELOPMENT
    return DISTRIBUTION


def is_wildcard_identifier(app_identifier: str) -> bool:
    return str(app_identifier or "").endswith(WILDCARD_SUFFIX)


def identifier_covers(profile_identifier: str, bundle_id: str) -> bool:
    """Whether a profile's app identifier covers a concrete bundle identifier.

    ``com.team.*`` covers ``com.team.app`` and, deliberately, the bare
    ``com.team`` as well.
    """
    if not profile_identifier or not bundle_id:
        return False
    if profile_identifier == bundle_id:
        return True
    if not is_wildcard_identifier(profile_identifier):
        return False

    prefix = profile_identifier[: -len(WILDCARD_SUFFIX)]
    if prefix.endswith("."):
        return bundle_id == prefix[:-1] or bundle_id.startswith(prefix)
    return bundle_id.startswith(prefix)


@dataclass(frozen=True)
class ProvisioningProfile:
    """A provisioning artifact binding an app identifier to certificates (and devices)."""

    id: str
    name: str
    profile_type: str
    app_identifier: str
    team_id: str
    expiration_date: datetime
    certificate_ids: Tuple[str, ...]
    device_ids: Tuple[str, ...] = ()
    created_date: Optional[datetime] = None
    platform: str = "ios"
    file_path: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Profile ID cannot be empty")
        if not self.name:
            raise ValueError("Profile name cannot be empty")

        normalized = normalize_profile_type(self.profile_type)
        if normalized not in PROFILE_TYPES:
            raise ValueError(f"Invalid profile type: {self.profile_type}")
        object.__setattr__(self, "profile_type", normalized)

        if not self.app_identifier:
            raise ValueError("App identifier cannot be empty")
        if not is_valid_team_id(self.team_id):
            raise ValueError("Team ID must be 10 alphanumeric characters")
        if self.expiration_date is None:
            raise ValueError("Expiration date cannot be empty")

        certificate_ids = tuple(str(cert_id) for cert_id in self.certificate_ids or ())
        if not certificate_ids:
            raise ValueError(f"Profile {self.name} must trust at least one certificate")
        object.__setattr__(self, "certificate_ids", certificate_ids)

        device_ids = tuple(str(device) for device in self.device_ids or ())
        if normalized not in DEVICE_BOUND_TYPES:
            device_ids = ()
        object.__setattr__(self, "device_ids", device_ids)

        object.__setattr__(
            self, "expiration_date", parse_timestamp(self.expiration_date)
        )
        object.__setattr__(
            self, "created_date", parse_optional_timestamp(self.created_date)
        )
        object.__setattr__(self, "platform", str(self.platform or "ios").lower())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiration_date <= (now or utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)

    def days_until_expiration(self, now: Optional[datetime] = None) -> int:
        return (self.expiration_date - (now or utcnow())).days

    @property
    def is_wildcard(self) -> bool:
        return is_wildcard_identifier(self.app_identifier)

    @property
    def requires_devices(self) -> bool:
        return self.profile_type in DEVICE_BOUND_TYPES

    @property
    def issued_at(self) -> datetime:
        """Best available issue timestamp, used to rank otherwise equal profiles"""
        return self.created_date or self.expiration_date

    def covers_app_identifier(self, bundle_id: str) -> bool:
        return identifier_covers(self.app_identifier, bundle_id)

    def belongs_to_team(self, team_id: str) -> bool:
        return bool(team_id) and self.team_id == team_id

    def contains_certificate(self, certificate_id: str) -> bool:
        return bool(certificate_id) and str(certificate_id) in self.certificate_ids

    def contains_all_certificates(self, certificate_ids: Iterable[str]) -> bool:
        return all(self.contains_certificate(cert_id) for cert_id in certificate_ids)

    def supports_device(self, device_id: str) -> bool:
        if not self.requires_devices:
            return True
        return bool(device_id) and device_id in self.device_ids

    def matches_configuration(self, configuration: str) -> bool:
        return self.profile_type == required_type_for_configuration(configuration)

    @property
    def expected_filename(self) -> str:
        safe_name = re.sub(r"[^A-Za-z0-9_\-]", "_", self.name)
        return f"{safe_name}{FILE_EXTENSION}"

    def refreshed(
        self,
        certificate_ids: Iterable[str],
        expiration_date: DateInput,
        device_ids: Optional[Iterable[str]] = None,
    ) -> "ProvisioningProfile":
        """Same profile identifier with a rotated certificate set and new expiry"""
        return replace(
            self,
            certificate_ids=tuple(certificate_ids),
            expiration_date=parse_timestamp(expiration_date),
            device_ids=tuple(device_ids) if device_ids is not None else self.device_ids,
        )

    def with_file_path(self, file_path: str) -> "ProvisioningProfile":
        return replace(self, file_path=str(file_path))

    @classmethod
    def from_portal_data(
        cls, data: Dict[str, Any], team_id: Optional[str] = None
    ) -> "ProvisioningProfile":
        attrs = data.get("attributes", data)
        return cls(
            id=attrs.get("uuid") or data["id"],
            name=attrs["name"],
            profile_type=attrs.get("profileType")
            or attrs.get("profile_type")
            or attrs.get("profileTypeLabel"),
            app_identifier=attrs.get("bundleIdIdentifier")
            or attrs.get("app_identifier"),
            team_id=team_id or attrs.get("teamId") or attrs.get("team_id"),
            expiration_date=attrs.get("expirationDate") or attrs.get("expiration_date"),
            certificate_ids=attrs.get("certificateIds")
            or attrs.get("certificate_ids")
            or (),
            device_ids=attrs.get("deviceIds") or attrs.get("device_ids") or (),
            created_date=attrs.get("createdDate") or attrs.get("created_date"),
            platform=attrs.get("platform") or "ios",
        )

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "profile_type": self.profile_type,
            "app_identifier": self.app_identifier,
            "team_id": self.team_id,
            "expiration_date": self.expiration_date.isoformat(),
            "created_date": self.created_date.isoformat()
            if self.created_date
            else None,
            "certificate_ids": list(self.certificate_ids),
            "device_ids": list(self.device_ids),
            "platform": self.platform,
            "file_path": self.file_path,
            "expired": self.is_expired(now),
            "wildcard": self.is_wildcard,
        }
