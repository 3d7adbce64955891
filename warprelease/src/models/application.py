import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Union

MAX_BUILD_NUMBER = 2147483647  # App Store Connect stores build numbers as int32
MAX_VERSION_LENGTH = 18

INCREMENT_KINDS = ("major", "minor", "patch")

SEMANTIC_VERSION_PATTERN = re.compile(
    r"^(\d+)\.(\d+)\.(\d+)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
BUNDLE_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*(\.[a-zA-Z][a-zA-Z0-9-]*)+$")
PREVIEW_KEYWORDS = ("alpha", "beta", "rc", "preview", "snapshot", "dev", "test")


@dataclass(frozen=True)
class Version:
    """A marketing version. Ordering ignores pre-release and build metadata."""

    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None
    build_metadata: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> Optional["Version"]:
        """Parse ``major.minor.patch[-pre][+build]``; returns None when the shape doesn't match"""
        match = SEMANTIC_VERSION_PATTERN.match(str(text or "").strip())
        if not match:
            return None
        major, minor, patch, prerelease, build_metadata = match.groups()
        return cls(int(major), int(minor), int(patch), prerelease, build_metadata)

    @property
    def core(self):
        return (self.major, self.minor, self.patch)

    def bump(self, kind: str) -> "Version":
        kind = str(kind or "").strip().lower()
        if kind == "major":
            return Version(self.major + 1, 0, 0)
        if kind == "minor":
            return Version(self.major, self.minor + 1, 0)
        if kind == "patch":
            return Version(self.major, self.minor, self.patch + 1)
        raise ValueError(
            f"Invalid increment kind: {kind}. Must be one of: {', '.join(INCREMENT_KINDS)}"
        )

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.core < other.core

    def __le__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.core <= other.core

    def __gt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.core > other.core

    def __ge__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.core >= other.core

    def __str__(self):
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build_metadata:
            text += f"+{self.build_metadata}"
        return text


def parse_build_number(value: Union[int, str]) -> int:
    """Validate a build number: positive digits that fit App Store Connect's int32"""
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"Build number must contain only digits: {value!r}")
    number = int(text)
    if number <= 0:
        raise ValueError(f"Build number must be positive: {value!r}")
    if number > MAX_BUILD_NUMBER:
        raise ValueError(f"Build number exceeds maximum {MAX_BUILD_NUMBER}: {value!r}")
    return number


def is_valid_bundle_identifier(bundle_id: str) -> bool:
    if not bundle_id or not 3 <= len(bundle_id) <= 255:
        return False
    return BUNDLE_ID_PATTERN.match(bundle_id) is not None


@dataclass(frozen=True)
class Application:
    """Version state of one app as it sits in the local project."""

    bundle_identifier: str
    display_name: str
    scheme: str
    marketing_version: str
    build_number: str
    team_id: Optional[str] = None
    platform: str = "ios"

    def __post_init__(self):
        if not is_valid_bundle_identifier(self.bundle_identifier):
            raise ValueError(f"Invalid bundle identifier: {self.bundle_identifier}")
        if not str(self.display_name or "").strip():
            raise ValueError("Display name cannot be empty")
        if not str(self.scheme or "").strip():
            raise ValueError("Scheme cannot be empty")
        if len(str(self.marketing_version)) > MAX_VERSION_LENGTH:
            raise ValueError(f"Marketing version too long: {self.marketing_version}")
        object.__setattr__(
            self, "build_number", str(parse_build_number(self.build_number))
        )
        object.__setattr__(self, "platform", str(self.platform or "ios").lower())

    @property
    def version(self) -> Optional[Version]:
        return Version.parse(self.marketing_version)

    @property
    def build(self) -> int:
        return int(self.build_number)

    @property
    def is_preview(self) -> bool:
        lowered = self.marketing_version.lower()
        return any(keyword in lowered for keyword in PREVIEW_KEYWORDS)

    def with_marketing_version(self, version: Union[str, Version]) -> "Application":
        return replace(self, marketing_version=str(version))

    def with_build_number(self, build_number: Union[int, str]) -> "Application":
        return replace(self, build_number=str(build_number))

    @property
    def build_identifier(self) -> str:
        return f"{self.bundle_identifier} v{self.marketing_version} ({self.build_number})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle_identifier": self.bundle_identifier,
            "display_name": self.display_name,
            "scheme": self.scheme,
            "marketing_version": self.marketing_version,
            "build_number": self.build_number,
            "team_id": self.team_id,
            "platform": self.platform,
        }
