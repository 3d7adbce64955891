import plistlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from warprelease.logger import get_console
from warprelease.src.core.errors import PrivacyValidationError

console = get_console()

# usage description key -> (what it grants, category)
PRIVACY_USAGE_KEYS = {
    "NSCameraUsageDescription": ("Camera access", "media"),
    "NSMicrophoneUsageDescription": ("Microphone access", "media"),
    "NSPhotoLibraryUsageDescription": ("Photo library access", "media"),
    "NSPhotoLibraryAddUsageDescription": ("Photo library additions", "media"),
    "NSAppleMusicUsageDescription": ("Apple Music and media library", "media"),
    "NSLocationWhenInUseUsageDescription": ("Location when app is in use", "location"),
    "NSLocationAlwaysAndWhenInUseUsageDescription": (
        "Location always and when in use",
        "location",
    ),
    "NSLocationAlwaysUsageDescription": ("Location always (deprecated)", "location"),
    "NSContactsUsageDescription": ("Contacts access", "personal_data"),
    "NSCalendarsUsageDescription": ("Calendar access", "personal_data"),
    "NSRemindersUsageDescription": ("Reminders access", "personal_data"),
    "NSSpeechRecognitionUsageDescription": ("Speech recognition", "device_capabilities"),
    "NSMotionUsageDescription": ("Motion and fitness data", "device_capabilities"),
    "NSFaceIDUsageDescription": ("Face ID authentication", "device_capabilities"),
    "NSHealthShareUsageDescription": ("Health data reading", "health"),
    "NSHealthUpdateUsageDescription": ("Health data writing", "health"),
    "NSBluetoothAlwaysUsageDescription": ("Bluetooth access", "connectivity"),
    "NSBluetoothPeripheralUsageDescription": ("Bluetooth peripheral mode", "connectivity"),
    "NSLocalNetworkUsageDescription": ("Local network access", "connectivity"),
    "NSUserTrackingUsageDescription": ("App tracking transparency", "tracking"),
    "NSDesktopFolderUsageDescription": ("Desktop folder access", "file_system"),
    "NSDocumentsFolderUsageDescription": ("Documents folder access", "file_system"),
    "NSDownloadsFolderUsageDescription": ("Downloads folder access", "file_system"),
}

FRAMEWORK_REQUIREMENTS = {
    "AVFoundation": ("NSCameraUsageDescription", "NSMicrophoneUsageDescription"),
    "CoreLocation": ("NSLocationWhenInUseUsageDescription",),
    "Contacts": ("NSContactsUsageDescription",),
    "EventKit": ("NSCalendarsUsageDescription", "NSRemindersUsageDescription"),
    "Speech": ("NSSpeechRecognitionUsageDescription",),
    "CoreMotion": ("NSMotionUsageDescription",),
    "HealthKit": ("NSHealthShareUsageDescription", "NSHealthUpdateUsageDescription"),
    "CoreBluetooth": ("NSBluetoothAlwaysUsageDescription",),
    "Photos": ("NSPhotoLibraryUsageDescription",),
    "MediaPlayer": ("NSAppleMusicUsageDescription",),
}

PLACEHOLDER_PATTERN = re.compile(
    r"^(TODO|CHANGEME|PLACEHOLDER|This app uses|App uses|Your app|Replace this"
    r"|Add description|Purpose string)",
    re.I,
)
MIN_PURPOSE_STRING_LENGTH = 20


@dataclass(frozen=True)
class PrivacyIssue:
    key: str
    kind: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class PrivacyReport:
    info_plist_path: str
    strict: bool = False
    present_keys: List[str] = field(default_factory=list)
    errors: List[PrivacyIssue] = field(default_factory=list)
    warnings: List[PrivacyIssue] = field(default_factory=list)

    @property
    def success(self) -> bool:
        if self.errors:
            return False
        return not (self.strict and self.warnings)

    def categories(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for key in self.present_keys:
            grouped.setdefault(PRIVACY_USAGE_KEYS[key][1], []).append(key)
        return grouped


def required_privacy_keys(frameworks: Iterable[str]) -> List[str]:
    """Usage description keys implied by the linked frameworks, in order"""
    keys: List[str] = []
    for framework in frameworks:
        for key in FRAMEWORK_REQUIREMENTS.get(framework, ()):
            if key not in keys:
                keys.append(key)
    return keys


def load_info_plist(info_plist_path: Path) -> Dict[str, Any]:
    """Read an Info.plist (XML or binary) into a dict."""
    try:
        with open(info_plist_path, "rb") as f:
            data = plistlib.load(f)
    except FileNotFoundError:
        raise PrivacyValidationError(
            f"Info.plist file not found: {info_plist_path}",
            {"info_plist_path": str(info_plist_path)},
        )
    except (plistlib.InvalidFileException, ValueError, OSError) as e:
        raise PrivacyValidationError(
            f"Failed to parse Info.plist file {info_plist_path}: {e}",
            {"info_plist_path": str(info_plist_path)},
        ) from e
    if not isinstance(data, dict):
        raise PrivacyValidationError(
            f"Info.plist {info_plist_path} does not contain a dictionary",
            {"info_plist_path": str(info_plist_path)},
        )
    return data


def check_privacy_descriptions(
    info_plist: Dict[str, Any],
    info_plist_path: str = "Info.plist",
    strict: bool = False,
    linked_frameworks: Optional[Iterable[str]] = None,
) -> PrivacyReport:
    """Check the privacy purpose strings App Store review looks for.

    A usage key that is present but empty is an error, as is a key that a
    linked framework needs but the plist lacks. Placeholder text and short
    purpose strings are warnings, which only fail the check in strict mode.
    """
    present = [key for key in PRIVACY_USAGE_KEYS if info_plist.get(key) is not None]
    errors: List[PrivacyIssue] = []
    warnings: List[PrivacyIssue] = []

    for key in present:
        label = PRIVACY_USAGE_KEYS[key][0]
        description = str(info_plist[key]).strip()
        if not description:
            errors.append(
                PrivacyIssue(
                    key,
                    "missing_description",
                    f"{label} ({key}): Missing or empty purpose string",
                )
            )
            continue
        if PLACEHOLDER_PATTERN.match(description):
            warnings.append(
                PrivacyIssue(
                    key,
                    "placeholder_text",
                    f"{label} ({key}): Appears to contain placeholder text",
                )
            )
        if len(description) < MIN_PURPOSE_STRING_LENGTH:
            warnings.append(
                PrivacyIssue(
                    key,
                    "insufficient_length",
                    f"{label} ({key}): Purpose string may be too brief "
                    f"({len(description)} characters)",
                )
            )

    for key in required_privacy_keys(linked_frameworks or ()):
        if key not in present:
            errors.append(
                PrivacyIssue(
                    key,
                    "missing_key",
                    f"{PRIVACY_USAGE_KEYS[key][0]} ({key}): Required by a linked "
                    "framework but missing from Info.plist",
                )
            )

    return PrivacyReport(
        info_plist_path=info_plist_path,
        strict=strict,
        present_keys=present,
        errors=errors,
        warnings=warnings,
    )


def validate_info_plist(
    info_plist_path: Path,
    strict: bool = False,
    linked_frameworks: Optional[Iterable[str]] = None,
) -> PrivacyReport:
    """Validate privacy usage descriptions before anything is built.

    Raises PrivacyValidationError when the plist cannot be read or the
    report fails; otherwise returns the report with any warnings.
    """
    info_plist = load_info_plist(Path(info_plist_path))
    report = check_privacy_descriptions(
        info_plist, str(info_plist_path), strict, linked_frameworks
    )

    for issue in report.warnings:
        console.print(f"[yellow]Warning: {issue.message}")
    if report.success:
        console.print(
            f"[green]Privacy usage descriptions OK "
            f"({len(report.present_keys)} keys, {len(report.warnings)} warnings)"
        )
        return report

    for issue in report.errors:
        console.print(f"[red]{issue.message}")
    failures = report.errors or report.warnings
    raise PrivacyValidationError(
        f"Privacy validation failed for {info_plist_path}: {failures[0].message}",
        {
            "info_plist_path": str(info_plist_path),
            "mode": "strict" if strict else "standard",
            "errors": [issue.to_dict() for issue in report.errors],
            "warnings": [issue.to_dict() for issue in report.warnings],
        },
    )
