import subprocess
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from warprelease.src.build.xcode_builder import XcodeBuilder, extract_build_error
from warprelease.src.core.errors import BuildFailedError

SIGNING = SimpleNamespace(
    team_id="ABCD123456",
    identity="Apple Distribution: Example (ABCD123456)",
    profile=SimpleNamespace(name="Example AppStore"),
)


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "Example.xcworkspace"
    path.mkdir()
    return str(path)


def test_extract_build_error():
    assert extract_build_error("ok\nfoo.swift:1: error: missing\n") == "foo.swift:1: error: missing"
    assert extract_build_error("** BUILD FAILED **") == "Build failed - check build logs for details"
    assert extract_build_error("Code Signing Error: x").startswith("Code signing failed")
    assert extract_build_error("") == "Build failed with unknown error"


def test_command_uses_manual_signing(tmp_path, project):
    builder = XcodeBuilder(tmp_path / "out")
    cmd = builder.command(
        project,
        "Example",
        "release",
        tmp_path / "out" / "Example.xcarchive",
        {**builder.signing_settings(SIGNING), "CURRENT_PROJECT_VERSION": "43"},
    )
    assert cmd[1] == "-workspace"
    assert cmd[cmd.index("-configuration") + 1] == "Release"
    assert "CODE_SIGN_STYLE=Manual" in cmd
    assert "PROVISIONING_PROFILE_SPECIFIER=Example AppStore" in cmd
    assert "CURRENT_PROJECT_VERSION=43" in cmd
    assert cmd[11] == "archive"


def test_successful_build_reports_archive(tmp_path, project):
    builder = XcodeBuilder(tmp_path / "out")

    def fake_run(args, timeout=None, cancel_token=None):
        archive = tmp_path / "out" / "Example.xcarchive"
        archive.mkdir(parents=True)
        (archive / "Info.plist").write_bytes(b"x" * 10)
        return subprocess.CompletedProcess(args, 0, stdout="** ARCHIVE SUCCEEDED **", stderr="")

    with patch("warprelease.src.build.xcode_builder.run_command", side_effect=fake_run):
        artifact = builder.build(project, "Example", "release", SIGNING)

    assert artifact.archive_path.endswith("Example.xcarchive")
    assert artifact.size == 10
    assert "ARCHIVE SUCCEEDED" in (tmp_path / "out" / "Example-build.log").read_text()


def test_failed_build_raises_with_diagnostics(tmp_path, project):
    output = "Compiling\nerror: No profiles for 'com.example.app' were found\n** ARCHIVE FAILED **"
    with patch(
        "warprelease.src.build.xcode_builder.run_command",
        return_value=subprocess.CompletedProcess([], 65, stdout=output, stderr=""),
    ):
        with pytest.raises(BuildFailedError) as excinfo:
            XcodeBuilder(tmp_path / "out").build(project, "Example", "release", SIGNING)

    assert excinfo.value.message == "error: No profiles for 'com.example.app' were found"
    assert excinfo.value.context["returncode"] == 65


def test_missing_project_and_timeout(tmp_path, project):
    with pytest.raises(BuildFailedError):
        XcodeBuilder(tmp_path).build(str(tmp_path / "Nope.xcodeproj"), "Example", "release", SIGNING)

    with patch(
        "warprelease.src.build.xcode_builder.run_command",
        side_effect=subprocess.TimeoutExpired(["xcodebuild"], 900, output="partial"),
    ):
        with pytest.raises(BuildFailedError) as excinfo:
            XcodeBuilder(tmp_path).build(project, "Example", "release", SIGNING)
    assert "timed out" in excinfo.value.message


def test_filesystem_errors_become_build_failures(tmp_path, project):
    blocked = tmp_path / "builds"
    blocked.write_text("not a directory")
    with pytest.raises(BuildFailedError) as excinfo:
        XcodeBuilder(blocked).build(project, "Example", "release", SIGNING)
    assert excinfo.value.context["exception"] == "FileExistsError"

    with patch(
        "warprelease.src.build.xcode_builder.run_command",
        side_effect=PermissionError("xcodebuild: permission denied"),
    ):
        with pytest.raises(BuildFailedError) as excinfo:
            XcodeBuilder(tmp_path / "out").build(project, "Example", "release", SIGNING)
    assert excinfo.value.kind == "BuildFailed"
    assert excinfo.value.context["exception"] == "PermissionError"
