from typing import Optional

from warprelease.logger import get_console
from warprelease.src.apple.app_store_connect_api import AppStoreConnectAPI
from warprelease.src.build.xcode_builder import XcodeBuilder
from warprelease.src.core.deployment_history import DeploymentHistory
from warprelease.src.core.deployment_orchestrator import DeploymentOrchestrator
from warprelease.src.core.ports import CredentialStorePort, SigningAuthorityPort
from warprelease.src.core.profile_matcher import ProfileMatcher
from warprelease.src.core.scheduler import Clock, SystemClock
from warprelease.src.core.signing_identity_manager import SigningIdentityManager
from warprelease.src.core.team_lock import TeamLockRegistry
from warprelease.src.core.team_workspace import TeamWorkspace
from warprelease.src.core.upload_coordinator import UploadRetryCoordinator, UploadStrategy
from warprelease.src.core.version_resolver import VersionConflictResolver
from warprelease.src.transfers.upload_tools import build_uploaders
from warprelease.src.utils.config_loader import ReleaseSettings

console = get_console()


def create_orchestrator(
    settings: ReleaseSettings,
    authority: SigningAuthorityPort,
    registry: Optional[AppStoreConnectAPI] = None,
    history: Optional[DeploymentHistory] = None,
    locks: Optional[TeamLockRegistry] = None,
    clock: Optional[Clock] = None,
) -> DeploymentOrchestrator:
    """Wire the release pipeline against Apple's portal and Xcode tooling"""
    clock = clock or SystemClock()
    uploaders = build_uploaders(list(settings.upload_strategies), registry)
    # processing state and build history come from App Store Connect, when configured
    status_port = uploaders[0] if registry is not None else None
    console.print(
        f"[blue]Upload strategies: {', '.join(settings.upload_strategies)}"
    )

    return DeploymentOrchestrator(
        signing_manager=SigningIdentityManager(authority, clock=clock),
        profile_matcher=ProfileMatcher(authority, clock=clock),
        version_resolver=VersionConflictResolver(
            registry=status_port,
            strict_registry=settings.strict_registry,
        ),
        build_port=XcodeBuilder(settings.team_root / "builds"),
        upload_coordinator=UploadRetryCoordinator(
            [UploadStrategy(u.name, u) for u in uploaders],
            status_port=status_port,
            clock=clock,
        ),
        status_port=status_port,
        history=history,
        locks=locks,
        clock=clock,
        processing_poll_interval=settings.processing_poll_interval,
        processing_budget=settings.processing_budget,
        upload_budget=settings.upload_budget,
        enhanced_wait_budget=settings.enhanced_wait_budget,
        upload_attempt_timeout=settings.upload_attempt_timeout,
        lock_timeout=settings.lock_timeout,
    )


def team_workspace(
    settings: ReleaseSettings,
    team_id: str,
    credential_store: Optional[CredentialStorePort] = None,
) -> TeamWorkspace:
    workspace = TeamWorkspace(team_id, settings.team_root, credential_store)
    workspace.ensure_directories()
    return workspace
