import plistlib
import threading

import pytest
import requests

from conftest import (
    OTHER_TEAM_ID,
    FakeBuildPort,
    FakeUploadPort,
    build_failed,
    make_certificate,
)
from warprelease.src.core.deployment_history import DeploymentHistory
from warprelease.src.core.deployment_orchestrator import (
    DeploymentOrchestrator,
    DeploymentRequest,
)
from warprelease.src.core.errors import (
    CancelledError,
    DeploymentInProgressError,
    TeamBusyError,
)
from warprelease.src.core.profile_matcher import ProfileMatcher
from warprelease.src.core.scheduler import CancellationToken
from warprelease.src.core.signing_identity_manager import SigningIdentityManager
from warprelease.src.core.team_lock import TeamLockRegistry
from warprelease.src.core.upload_coordinator import UploadRetryCoordinator, UploadStrategy
from warprelease.src.core.version_resolver import VersionConflictResolver
from warprelease.src.models.application import Application
from warprelease.src.models.deployment_record import DeploymentRecord
from warprelease.src.models.upload import UploadCredentials, UploadResult

CREDENTIALS = UploadCredentials(api_key_id="KEY", api_issuer_id="ISSUER")


def make_orchestrator(clock, authority, build_port=None, uploaders=None, **kwargs):
    uploaders = uploaders or [FakeUploadPort("altool", states=["PROCESSING", "VALID"])]
    status = kwargs.pop("status_port", uploaders[0])
    return DeploymentOrchestrator(
        signing_manager=SigningIdentityManager(authority, clock),
        profile_matcher=ProfileMatcher(authority, clock),
        version_resolver=VersionConflictResolver(registry=status),
        build_port=build_port or FakeBuildPort(),
        upload_coordinator=UploadRetryCoordinator(
            [UploadStrategy(u.name, u) for u in uploaders], status_port=status, clock=clock
        ),
        status_port=status,
        clock=clock,
        processing_poll_interval=30,
        processing_budget=300,
        **kwargs,
    )


def request_for(team, application, **overrides):
    values = dict(
        team=team,
        application=application,
        project_ref="/tmp/Example.xcworkspace",
        credentials=CREDENTIALS,
        initiated_by="ci@example.com",
    )
    values.update(overrides)
    return DeploymentRequest(**values)


def test_happy_path(clock, authority, team, application):
    uploader = FakeUploadPort(
        "altool",
        results=[UploadResult.succeeded("ok", build_url="https://asc/app/1")],
        states=["PROCESSING", "VALID"],
        remote_builds=[("2.3.1", 40), ("2.3.1", 41), ("2.3.1", 42)],
    )
    build_port = FakeBuildPort()
    orchestrator = make_orchestrator(clock, authority, build_port, [uploader])

    record = orchestrator.deploy(request_for(team, application))

    assert record.status == "completed"
    assert record.build_number == "43"
    assert record.marketing_version == "2.3.1"
    assert record.build_url == "https://asc/app/1"
    assert record.metadata["upload_method"] == "altool"
    assert record.metadata["processing_state"] == "VALID"
    assert record.completed_at is not None
    assert build_port.calls[0]["build_settings"]["CURRENT_PROJECT_VERSION"] == "43"
    assert build_port.calls[0]["signing"].profile.profile_type == "app_store"
    statuses = [line for line in record.logs if "Status:" in line]
    assert [s.split("Status: ")[1] for s in statuses] == [
        "initiated -> building",
        "building -> uploading",
        "uploading -> processing",
        "processing -> completed",
    ]
    assert orchestrator.history.get(record.deployment_id) == record


def test_build_failure_never_uploads(clock, authority, team, application):
    uploader = FakeUploadPort("altool")
    orchestrator = make_orchestrator(
        clock, authority, FakeBuildPort(error=build_failed()), [uploader]
    )

    record = orchestrator.deploy(request_for(team, application))

    assert record.status == "failed"
    assert record.error.kind == "BuildFailed"
    assert record.error.tag == "build_failed"
    assert record.error.message.startswith("error: Signing")
    assert uploader.uploads == []
    assert not any("Upload attempt" in line for line in record.logs)


def test_signing_failure(clock, authority, team, application):
    authority.create_error = RuntimeError("portal down")
    build_port = FakeBuildPort()
    record = make_orchestrator(clock, authority, build_port).deploy(
        request_for(team, application)
    )
    assert record.error.kind == "CannotCreate"
    assert record.error.tag == "signing_setup_failed"
    assert build_port.calls == []


def test_version_conflict(clock, authority, team, application):
    uploader = FakeUploadPort("altool", remote_builds=[("9.0.0", 100)])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )
    assert record.error.kind == "VersionConflict"
    assert record.error.tag == "version_conflict"


def test_upload_fallback_is_recorded(clock, authority, team, application):
    failing = FakeUploadPort("altool", results=[UploadResult.failed("timeout", "Timeout")])
    working = FakeUploadPort("transporter", states=["VALID"])
    record = make_orchestrator(
        clock, authority, uploaders=[failing, working], status_port=working
    ).deploy(request_for(team, application))

    assert record.succeeded
    assert record.metadata["upload_method"] == "transporter"
    assert any("Upload attempt via altool failed: timeout" in line for line in record.logs)
    assert len(record.metadata["upload_attempts"]) == 2


def test_all_uploads_failing(clock, authority, team, application):
    uploader = FakeUploadPort("altool", results=[UploadResult.failed("bad credentials")])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )
    assert record.error.kind == "UploadFailed"
    assert record.error.tag == "upload_failed"
    assert record.error.context["failed_strategy"] == "altool"


def test_processing_timeout_keeps_last_state(clock, authority, team, application):
    uploader = FakeUploadPort("altool", states=["PROCESSING"])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )

    assert record.error.kind == "ProcessingTimeout"
    assert record.error.tag == "processing_timeout"
    assert record.error.context["last_processing_state"] == "PROCESSING"
    assert record.error.context["remote_build_failed"] is False
    assert record.metadata["last_processing_state"] == "PROCESSING"
    assert sum(clock.sleeps) <= 300


def test_processing_rejected(clock, authority, team, application):
    uploader = FakeUploadPort("altool", states=["PROCESSING", "INVALID"])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )
    assert record.error.kind == "ProcessingFailed"
    assert record.error.context["remote_build_failed"] is True


def test_cancel_during_processing(clock, authority, team, application):
    token = CancellationToken()
    clock.on_sleep = lambda seconds: token.cancel("shutting down")
    uploader = FakeUploadPort("altool", states=["PROCESSING"])

    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application), cancel_token=token
    )
    assert record.error.tag == "cancelled"
    assert record.error.message == "shutting down"


def test_unexpected_exception_is_recorded(clock, authority, team, application):
    uploader = FakeUploadPort("altool", states=[KeyError("processingState")])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )
    assert record.error.tag == "deployment_exception"
    assert record.error.kind == "KeyError"


def test_without_status_channel_upload_completes_the_deployment(
    clock, authority, team, application
):
    uploader = FakeUploadPort("altool", states=[KeyError("never polled")])
    record = make_orchestrator(clock, authority, uploaders=[uploader], status_port=None).deploy(
        request_for(team, application)
    )

    assert record.status == "completed"
    assert record.metadata["processing_state"] is None
    assert uploader.state_calls == 0


def test_portal_connection_error_fails_signing_setup(clock, authority, team, application):
    def unreachable(team_id, certificate_type):
        raise requests.ConnectionError("developer.apple.com unreachable")

    authority.list_certificates = unreachable
    build_port = FakeBuildPort()

    record = make_orchestrator(clock, authority, build_port).deploy(
        request_for(team, application)
    )

    assert record.status == "failed"
    assert record.error.tag == "signing_setup_failed"
    assert record.error.kind == "ConnectionError"
    assert build_port.calls == []


def test_build_tool_crash_is_a_build_failure(clock, authority, team, application):
    build_port = FakeBuildPort(error=OSError("No space left on device"))

    record = make_orchestrator(clock, authority, build_port).deploy(
        request_for(team, application)
    )

    assert record.error.tag == "build_failed"
    assert record.error.kind == "BuildFailed"
    assert record.error.message == "No space left on device"
    assert record.error.context["exception"] == "OSError"


def test_completed_deployment_is_returned_unchanged(clock, authority, team, application):
    orchestrator = make_orchestrator(clock, authority)
    first = orchestrator.deploy(request_for(team, application, deployment_id="DEP-1"))
    builds = len(orchestrator.build_port.calls)

    again = orchestrator.deploy(request_for(team, application, deployment_id="DEP-1"))

    assert again == first
    assert len(orchestrator.build_port.calls) == builds


def test_in_progress_deployment_cannot_be_restarted(clock, authority, team, application):
    history = DeploymentHistory()
    history.save(
        DeploymentRecord(
            deployment_id="DEP-2",
            team_id=team.team_id,
            app_identifier=application.bundle_identifier,
            deployment_type="testflight",
            initiated_by="ci",
            initiated_at=clock.now(),
            status="building",
        )
    )
    orchestrator = make_orchestrator(clock, authority, history=history)
    with pytest.raises(DeploymentInProgressError):
        orchestrator.deploy(request_for(team, application, deployment_id="DEP-2"))



def test_reused_certificate_signs_the_build(clock, authority, team, application):
    authority.certificates = [make_certificate("DIST", "distribution")]
    build_port = FakeBuildPort()
    make_orchestrator(clock, authority, build_port).deploy(request_for(team, application))
    assert build_port.calls[0]["signing"].certificate.id == "DIST"
    assert authority.created == []


def test_cancel_during_build(clock, authority, team, application):
    token = CancellationToken()
    build_port = FakeBuildPort(error=CancelledError("operator abort"))
    build_port.on_build = lambda cancel_token: cancel_token.cancel("operator abort")
    uploader = FakeUploadPort("altool")

    record = make_orchestrator(clock, authority, build_port, [uploader]).deploy(
        request_for(team, application), cancel_token=token
    )

    assert record.status == "failed"
    assert record.error.kind == "Cancelled"
    assert record.error.tag == "cancelled"
    assert uploader.uploads == []


def test_cancel_during_upload(clock, authority, team, application):
    uploader = FakeUploadPort("altool", results=[CancelledError("altool terminated")])
    record = make_orchestrator(clock, authority, uploaders=[uploader]).deploy(
        request_for(team, application)
    )
    assert record.error.kind == "Cancelled"
    assert record.error.tag == "cancelled"
    assert record.error.message == "altool terminated"


def test_same_team_is_serialized_other_teams_are_not(
    clock, authority, team, other_team, application
):
    locks = TeamLockRegistry()
    started = threading.Event()
    release = threading.Event()
    builds = []

    def first_build_blocks(cancel_token):
        builds.append(locks.is_locked(team.team_id))
        if len(builds) == 1:
            started.set()
            release.wait(5)

    build_port = FakeBuildPort()
    build_port.on_build = first_build_blocks
    orchestrator = make_orchestrator(clock, authority, build_port, locks=locks, lock_timeout=0)

    worker = threading.Thread(target=orchestrator.deploy, args=(request_for(team, application),))
    worker.start()
    try:
        assert started.wait(5)

        with pytest.raises(TeamBusyError):
            orchestrator.deploy(request_for(team, application))

        other_app = Application(
            bundle_identifier="com.other.app",
            display_name="Other",
            scheme="Other",
            marketing_version="1.0.0",
            build_number="1",
            team_id=OTHER_TEAM_ID,
        )
        other = orchestrator.deploy(request_for(other_team, other_app))
        assert other.succeeded
        assert other.team_id == OTHER_TEAM_ID
    finally:
        release.set()
        worker.join(5)

    assert builds[0] is True
    assert not locks.is_locked(team.team_id)
    assert len(orchestrator.history.for_team(team.team_id)) == 1


def test_privacy_validation_failure_stops_before_signing(
    tmp_path, clock, authority, team, application
):
    info_plist = tmp_path / "Info.plist"
    with open(info_plist, "wb") as f:
        plistlib.dump({"NSCameraUsageDescription": ""}, f)
    build_port = FakeBuildPort()

    record = make_orchestrator(clock, authority, build_port).deploy(
        request_for(team, application, info_plist_path=str(info_plist))
    )

    assert record.status == "failed"
    assert record.error.tag == "validation_failed"
    assert record.error.kind == "PrivacyValidationFailed"
    assert authority.created == []
    assert build_port.calls == []


def test_privacy_warnings_are_recorded(tmp_path, clock, authority, team, application):
    info_plist = tmp_path / "Info.plist"
    with open(info_plist, "wb") as f:
        plistlib.dump({"NSCameraUsageDescription": "Receipts"}, f)

    record = make_orchestrator(clock, authority).deploy(
        request_for(team, application, info_plist_path=str(info_plist))
    )

    assert record.status == "completed"
    assert [w["kind"] for w in record.metadata["privacy_warnings"]] == [
        "insufficient_length"
    ]
    assert any("Privacy usage descriptions validated" in entry for entry in record.logs)
