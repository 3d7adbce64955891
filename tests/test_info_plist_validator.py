import plistlib

import pytest

from warprelease.src.build.info_plist_validator import (
    check_privacy_descriptions,
    load_info_plist,
    required_privacy_keys,
    validate_info_plist,
)
from warprelease.src.core.errors import PrivacyValidationError

CAMERA = "This app uses the camera to scan receipts for your expense reports."


def write_plist(path, data, fmt=plistlib.FMT_XML):
    with open(path, "wb") as f:
        plistlib.dump(data, f, fmt=fmt)
    return path


def test_complete_descriptions_pass():
    report = check_privacy_descriptions(
        {
            "CFBundleIdentifier": "com.example.app",
            "NSCameraUsageDescription": "Scanning receipts requires the camera.",
            "NSLocationWhenInUseUsageDescription": "Shows the stores closest to you.",
        }
    )
    assert report.success
    assert report.present_keys == [
        "NSCameraUsageDescription",
        "NSLocationWhenInUseUsageDescription",
    ]
    assert report.categories() == {
        "media": ["NSCameraUsageDescription"],
        "location": ["NSLocationWhenInUseUsageDescription"],
    }


def test_empty_description_is_an_error():
    report = check_privacy_descriptions({"NSContactsUsageDescription": "   "})
    assert not report.success
    assert [(e.key, e.kind) for e in report.errors] == [
        ("NSContactsUsageDescription", "missing_description")
    ]


def test_placeholder_and_short_text_are_warnings():
    report = check_privacy_descriptions(
        {"NSCameraUsageDescription": "TODO", "NSMicrophoneUsageDescription": CAMERA}
    )
    assert report.success
    kinds = [(w.key, w.kind) for w in report.warnings]
    assert ("NSCameraUsageDescription", "placeholder_text") in kinds
    assert ("NSCameraUsageDescription", "insufficient_length") in kinds
    # "This app uses" is a stock template opening
    assert ("NSMicrophoneUsageDescription", "placeholder_text") in kinds


def test_strict_mode_fails_on_warnings():
    report = check_privacy_descriptions({"NSFaceIDUsageDescription": "Face ID"}, strict=True)
    assert report.errors == []
    assert not report.success


def test_linked_frameworks_require_keys():
    assert required_privacy_keys(["AVFoundation", "UIKit", "AVFoundation"]) == [
        "NSCameraUsageDescription",
        "NSMicrophoneUsageDescription",
    ]
    report = check_privacy_descriptions(
        {"NSCameraUsageDescription": "Scanning receipts requires the camera."},
        linked_frameworks=["AVFoundation"],
    )
    assert [(e.key, e.kind) for e in report.errors] == [
        ("NSMicrophoneUsageDescription", "missing_key")
    ]


def test_reads_binary_plists(tmp_path):
    path = write_plist(
        tmp_path / "Info.plist",
        {"NSCameraUsageDescription": "Scanning receipts requires the camera."},
        fmt=plistlib.FMT_BINARY,
    )
    report = validate_info_plist(path)
    assert report.success
    assert report.info_plist_path == str(path)


def test_missing_and_unreadable_plists(tmp_path):
    with pytest.raises(PrivacyValidationError, match="not found"):
        load_info_plist(tmp_path / "Missing.plist")

    garbage = tmp_path / "Garbage.plist"
    garbage.write_text("not a plist")
    with pytest.raises(PrivacyValidationError, match="Failed to parse") as excinfo:
        load_info_plist(garbage)
    assert excinfo.value.kind == "PrivacyValidationFailed"


def test_failed_validation_carries_issues(tmp_path):
    path = write_plist(
        tmp_path / "Info.plist",
        {"NSCameraUsageDescription": "", "NSMotionUsageDescription": "Steps"},
    )
    with pytest.raises(PrivacyValidationError) as excinfo:
        validate_info_plist(path)

    context = excinfo.value.context
    assert context["mode"] == "standard"
    assert [e["key"] for e in context["errors"]] == ["NSCameraUsageDescription"]
    assert [w["kind"] for w in context["warnings"]] == ["insufficient_length"]
