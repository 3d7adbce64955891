from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from warprelease.logger import get_console
from warprelease.src.core.errors import MalformedVersionError, VersionConflictError
from warprelease.src.core.ports import UploadPort
from warprelease.src.models.application import (
    INCREMENT_KINDS,
    MAX_BUILD_NUMBER,
    Application,
    Version,
)
from warprelease.src.models.upload import RemoteBuild

console = get_console()

RemoteBuildValue = Union[int, str, RemoteBuild]


def _build_value(value: RemoteBuildValue) -> Optional[int]:
    if isinstance(value, RemoteBuild):
        return value.build
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


@dataclass(frozen=True)
class ResolvedVersion:
    marketing_version: str
    build_number: int
    previous_marketing_version: str
    previous_build_number: int
    registry_reachable: bool
    max_remote_build: Optional[int] = None

    @property
    def version_changed(self) -> bool:
        return self.marketing_version != self.previous_marketing_version

    @property
    def drift_corrected(self) -> bool:
        """True when the registry forced the build number past ``local + 1``"""
        return self.build_number != self.previous_build_number + 1


class VersionConflictResolver:
    """Computes the next marketing version and a build number the store has never seen.

    The registry is read right before every resolution. When it cannot be
    reached the resolver falls back to ``local + 1`` unless
    ``strict_registry`` is set, in which case the release is stopped.
    """

    def __init__(
        self,
        registry: Optional[UploadPort] = None,
        strict_registry: bool = False,
        history_limit: int = 200,
    ):
        self.registry = registry
        self.strict_registry = strict_registry
        self.history_limit = history_limit

    def next_version(self, current: str, increment_kind: str) -> Version:
        kind = str(increment_kind or "").strip().lower()
        if kind not in INCREMENT_KINDS:
            raise ValueError(
                f"Invalid increment kind: {increment_kind}. "
                f"Must be one of: {', '.join(INCREMENT_KINDS)}"
            )
        version = Version.parse(current)
        if version is None:
            raise MalformedVersionError(
                f"Version {current!r} is not in major.minor.patch format",
                {"version": current},
            )
        return version.bump(kind)

    def resolve_build_number(
        self,
        local_build: Union[int, str],
        remote_builds: Optional[Iterable[RemoteBuildValue]],
    ) -> int:
        """Return a build number above ``local_build`` and above everything the registry holds.

        ``remote_builds=None`` means the registry could not be read.
        """
        local = _build_value(local_build)
        if local is None or local < 0:
            raise ValueError(f"Build number must contain only digits: {local_build!r}")

        candidate = local + 1
        if remote_builds is not None:
            numbers = [n for n in (_build_value(b) for b in remote_builds) if n is not None]
            if numbers and max(numbers) >= candidate:
                console.print(
                    f"[yellow]Build {candidate} conflicts with uploaded build {max(numbers)}, "
                    f"advancing to {max(numbers) + 1}"
                )
                candidate = max(numbers) + 1

        if candidate > MAX_BUILD_NUMBER:
            raise VersionConflictError(
                f"Next build number {candidate} exceeds the maximum {MAX_BUILD_NUMBER}",
                {"local_build": local, "candidate": candidate},
            )
        return candidate

    def fetch_remote_builds(self, app_identifier: str) -> Optional[List[RemoteBuild]]:
        """Builds the registry knows for the app; None when it is unreachable"""
        if self.registry is None:
            return self._unreachable(app_identifier, "no build registry configured")

        console.print(f"[blue]Fetching uploaded builds for {app_identifier}...")
        try:
            builds = list(self.registry.list_recent_builds(app_identifier, self.history_limit))
        except Exception as e:
            return self._unreachable(app_identifier, str(e))

        console.print(f"[green]Found {len(builds)} uploaded builds")
        return builds

    def resolve(
        self, application: Application, increment_kind: Optional[str] = None
    ) -> ResolvedVersion:
        if increment_kind:
            marketing_version = str(
                self.next_version(application.marketing_version, increment_kind)
            )
        else:
            marketing_version = application.marketing_version

        remote = self.fetch_remote_builds(application.bundle_identifier)
        self._check_regression(application.bundle_identifier, marketing_version, remote)

        build_number = self.resolve_build_number(application.build_number, remote)
        max_remote = None
        if remote:
            numbers = [b.build for b in remote if b.build is not None]
            max_remote = max(numbers) if numbers else None

        console.print(
            f"[green]Resolved version:[/] {marketing_version} ({build_number})"
        )
        return ResolvedVersion(
            marketing_version=marketing_version,
            build_number=build_number,
            previous_marketing_version=application.marketing_version,
            previous_build_number=application.build,
            registry_reachable=remote is not None,
            max_remote_build=max_remote,
        )

    def _check_regression(
        self,
        app_identifier: str,
        marketing_version: str,
        remote: Optional[List[RemoteBuild]],
    ) -> None:
        version = Version.parse(marketing_version)
        if version is None or not remote:
            return
        published = [v for v in (Version.parse(b.version) for b in remote) if v is not None]
        if not published:
            return
        highest = max(published)
        if version < highest:
            raise VersionConflictError(
                f"Marketing version {marketing_version} would regress below "
                f"{highest} already uploaded for {app_identifier}",
                {
                    "app_identifier": app_identifier,
                    "marketing_version": marketing_version,
                    "highest_remote_version": str(highest),
                },
            )

    def _unreachable(self, app_identifier: str, reason: str) -> None:
        if self.strict_registry:
            raise VersionConflictError(
                f"Build registry unreachable for {app_identifier}: {reason}",
                {"app_identifier": app_identifier, "reason": reason},
            )
        console.print(
            f"[yellow]Build registry unreachable for {app_identifier} ({reason}), "
            "falling back to local build number + 1"
        )
        return None
