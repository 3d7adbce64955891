from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from warprelease.src.core.errors import BuildFailedError
from warprelease.src.core.ports import (
    BuildPort,
    CredentialStorePort,
    SigningAuthorityPort,
    UploadPort,
)
from warprelease.src.core.scheduler import Clock
from warprelease.src.models.application import Application
from warprelease.src.models.certificate import Certificate
from warprelease.src.models.provisioning_profile import ProvisioningProfile
from warprelease.src.models.team import Team
from warprelease.src.models.upload import BuildArtifact, RemoteBuild, UploadResult

TEAM_ID = "ABCD123456"
OTHER_TEAM_ID = "WXYZ987654"
START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Manual clock: sleeping advances time instantly"""

    def __init__(self, start: datetime = START):
        self._now = start
        self._monotonic = 0.0
        self.sleeps: List[float] = []
        self.on_sleep = None

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._now += timedelta(seconds=seconds)

    def sleep(self, seconds, token=None) -> bool:
        if token is not None and token.is_cancelled:
            return False
        self.sleeps.append(seconds)
        self.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        return not (token is not None and token.is_cancelled)


def make_certificate(
    cert_id: str,
    certificate_type: str = "development",
    team_id: str = TEAM_ID,
    expires_in_days: float = 300,
    now: datetime = START,
) -> Certificate:
    return Certificate(
        id=cert_id,
        name=f"{certificate_type.title()}: {cert_id}",
        certificate_type=certificate_type,
        team_id=team_id,
        expiration_date=now + timedelta(days=expires_in_days),
        created_date=now - timedelta(days=10),
    )


def make_profile(
    profile_id: str,
    app_identifier: str,
    certificate_ids,
    profile_type: str = "app_store",
    team_id: str = TEAM_ID,
    expires_in_days: float = 200,
    issued_days_ago: float = 10,
    now: datetime = START,
) -> ProvisioningProfile:
    return ProvisioningProfile(
        id=profile_id,
        name=f"{app_identifier} {profile_type} {profile_id}",
        profile_type=profile_type,
        app_identifier=app_identifier,
        team_id=team_id,
        expiration_date=now + timedelta(days=expires_in_days),
        certificate_ids=tuple(certificate_ids),
        created_date=now - timedelta(days=issued_days_ago),
    )


class FakeSigningAuthority(SigningAuthorityPort):
    def __init__(self, clock: FakeClock, certificates=(), profiles=(), devices=()):
        self.clock = clock
        self.certificates: List[Certificate] = list(certificates)
        self.profiles: List[ProvisioningProfile] = list(profiles)
        self.devices = list(devices)
        self.created: List[Certificate] = []
        self.revoked: List[str] = []
        self.created_profiles: List[ProvisioningProfile] = []
        self.regenerated: List[str] = []
        self.create_error: Optional[Exception] = None
        self.profile_error: Optional[Exception] = None
        self.revoke_result = True
        self.can_regenerate = False
        self.expired_on_create = False

    def list_certificates(self, team_id, certificate_type):
        return [
            c
            for c in self.certificates
            if c.team_id == team_id and c.certificate_type == certificate_type
        ]

    def create_certificate(self, team_id, certificate_type):
        if self.create_error is not None:
            raise self.create_error
        days = -1 if self.expired_on_create else 365
        cert = make_certificate(
            f"NEW{len(self.created) + 1}",
            certificate_type,
            team_id,
            expires_in_days=days,
            now=self.clock.now(),
        )
        self.created.append(cert)
        self.certificates.append(cert)
        return cert

    def revoke_certificate(self, certificate_id):
        if not self.revoke_result:
            return False
        self.revoked.append(certificate_id)
        self.certificates = [c for c in self.certificates if c.id != certificate_id]
        return True

    def list_profiles(self, team_id):
        return [p for p in self.profiles if p.team_id == team_id]

    def create_profile(self, app_identifier, certificates, team_id, profile_type, device_ids=()):
        if self.profile_error is not None:
            raise self.profile_error
        profile = ProvisioningProfile(
            id=f"PROF{len(self.created_profiles) + 1}",
            name=f"{app_identifier} {profile_type}",
            profile_type=profile_type,
            app_identifier=app_identifier,
            team_id=team_id,
            expiration_date=self.clock.now() + timedelta(days=365),
            certificate_ids=tuple(c.id for c in certificates),
            device_ids=tuple(device_ids),
            created_date=self.clock.now(),
        )
        self.created_profiles.append(profile)
        self.profiles.append(profile)
        return profile

    def delete_profile(self, profile_id):
        before = len(self.profiles)
        self.profiles = [p for p in self.profiles if p.id != profile_id]
        return len(self.profiles) < before

    def list_devices(self, team_id):
        return list(self.devices)

    def regenerate_profile(self, profile, certificates, device_ids=()):
        if not self.can_regenerate:
            raise NotImplementedError
        self.regenerated.append(profile.id)
        return profile.refreshed(
            [c.id for c in certificates],
            self.clock.now() + timedelta(days=365),
            device_ids,
        )

    def download_profile(self, profile):
        return b"<plist>profile</plist>"


class FakeCredentialStore(CredentialStorePort):
    def __init__(self, keys=None):
        self.keys = set(keys or ())

    def import_certificate(self, path, password):
        raise NotImplementedError

    def export_certificate(self, certificate, password, path):
        return certificate.id in self.keys

    def has_private_key(self, certificate):
        return certificate.id in self.keys


class FakeBuildPort(BuildPort):
    def __init__(self, error: Optional[Exception] = None, size: int = 2048):
        self.error = error
        self.size = size
        self.calls = []
        self.on_build = None

    def build(self, project_ref, scheme, configuration, signing, cancel_token=None, build_settings=None):
        self.calls.append(
            {
                "project_ref": project_ref,
                "scheme": scheme,
                "configuration": configuration,
                "signing": signing,
                "build_settings": dict(build_settings or {}),
            }
        )
        if self.on_build is not None:
            self.on_build(cancel_token)
        if self.error is not None:
            raise self.error
        return BuildArtifact(archive_path=f"/tmp/builds/{scheme}.xcarchive", size=self.size)


class FakeUploadPort(UploadPort):
    """Upload strategy and status channel in one.

    ``results`` are returned in order (the last one repeats); exceptions in
    the list are raised. ``states`` work the same way for processing polls.
    """

    def __init__(self, name="altool", results=None, states=None, remote_builds=None, clock=None, duration=0.0):
        self.name = name
        self.results = list(results or [UploadResult.succeeded("uploaded")])
        self.states = list(states or ["VALID"])
        self.remote_builds = remote_builds
        self.clock = clock
        self.duration = duration
        self.uploads = []
        self.state_calls = 0
        self.on_upload = None

    @staticmethod
    def _next(queue):
        value = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(value, Exception):
            raise value
        return value

    def upload(self, archive_path, credentials, options, cancel_token=None):
        self.uploads.append({"archive_path": archive_path, "options": options})
        if self.clock is not None and self.duration:
            self.clock.advance(self.duration)
        if self.on_upload is not None:
            self.on_upload(cancel_token)
        return self._next(self.results)

    def get_processing_state(self, app_identifier, build_number):
        self.state_calls += 1
        return self._next(self.states)

    def list_recent_builds(self, app_identifier, limit=50):
        if isinstance(self.remote_builds, Exception):
            raise self.remote_builds
        return [
            RemoteBuild(version=version, build_number=str(number), state="VALID")
            for version, number in (self.remote_builds or [])
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authority(clock):
    return FakeSigningAuthority(clock)


@pytest.fixture
def team():
    return Team(team_id=TEAM_ID, name="Example Team", program_type="organization")


@pytest.fixture
def other_team():
    return Team(team_id=OTHER_TEAM_ID, name="Other Team", program_type="organization")


@pytest.fixture
def application():
    return Application(
        bundle_identifier="com.example.app",
        display_name="Example",
        scheme="Example",
        marketing_version="2.3.1",
        build_number="41",
        team_id=TEAM_ID,
    )


def build_failed(message="error: Signing for \"Example\" requires a development team"):
    return BuildFailedError(message, {"returncode": 65})
