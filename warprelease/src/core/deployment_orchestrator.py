from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from warprelease.logger import get_console
from warprelease.src.build.info_plist_validator import validate_info_plist
from warprelease.src.core.deployment_history import DeploymentHistory
from warprelease.src.core.errors import (
    BuildFailedError,
    CancelledError,
    DeploymentInProgressError,
    ReleaseError,
)
from warprelease.src.core.ports import BuildPort, UploadPort
from warprelease.src.core.profile_matcher import ProfileMatcher
from warprelease.src.core.scheduler import (
    CancellationToken,
    Clock,
    SystemClock,
    poll_until,
)
from warprelease.src.core.signing_identity_manager import (
    EnsureResult,
    SigningIdentityManager,
)
from warprelease.src.core.team_lock import TeamLockRegistry
from warprelease.src.core.team_workspace import TeamWorkspace
from warprelease.src.core.upload_coordinator import UploadRetryCoordinator
from warprelease.src.core.version_resolver import ResolvedVersion, VersionConflictResolver
from warprelease.src.models.application import Application
from warprelease.src.models.certificate import DISTRIBUTION, Certificate
from warprelease.src.models.deployment_record import (
    BUILDING,
    DEPLOYMENT_TYPES,
    PROCESSING,
    UPLOADING,
    DeploymentRecord,
    generate_deployment_id,
)
from warprelease.src.models.provisioning_profile import ProvisioningProfile
from warprelease.src.models.team import Team
from warprelease.src.models.upload import (
    STANDARD_MODE,
    UploadCredentials,
    UploadOptions,
    UploadResult,
    is_successful_processing_state,
    is_terminal_processing_state,
    normalize_processing_state,
)

console = get_console()

VALIDATION_FAILED = "validation_failed"
SIGNING_SETUP_FAILED = "signing_setup_failed"
VERSION_CONFLICT = "version_conflict"
BUILD_FAILED = "build_failed"
UPLOAD_FAILED = "upload_failed"
PROCESSING_FAILED = "processing_failed"
PROCESSING_TIMEOUT = "processing_timeout"
CANCELLED = "cancelled"
DEPLOYMENT_EXCEPTION = "deployment_exception"

# deployment type -> (build configuration, certificate type, export method)
DEPLOYMENT_SIGNING = {
    "testflight": ("release", DISTRIBUTION, "app-store"),
    "app_store": ("release", DISTRIBUTION, "app-store"),
    "ad_hoc": ("ad_hoc", DISTRIBUTION, "ad-hoc"),
    "enterprise": ("release", DISTRIBUTION, "enterprise"),
}


@dataclass(frozen=True)
class DeploymentRequest:
    team: Team
    application: Application
    project_ref: str
    deployment_type: str = "testflight"
    initiated_by: str = "warprelease"
    increment_kind: Optional[str] = None
    credentials: Optional[UploadCredentials] = None
    upload_mode: str = STANDARD_MODE
    deployment_id: Optional[str] = None
    build_configuration: Optional[str] = None
    force_recreate_certificates: bool = False
    workspace: Optional[TeamWorkspace] = None
    # privacy purpose strings are checked before signing when set
    info_plist_path: Optional[str] = None
    strict_privacy: bool = False
    linked_frameworks: Tuple[str, ...] = ()

    def __post_init__(self):
        deployment_type = str(self.deployment_type or "").lower()
        if deployment_type not in DEPLOYMENT_TYPES:
            raise ValueError(f"Invalid deployment type: {self.deployment_type}")
        object.__setattr__(self, "deployment_type", deployment_type)
        if not str(self.project_ref or "").strip():
            raise ValueError("Project reference cannot be empty")

    @property
    def configuration(self) -> str:
        return self.build_configuration or DEPLOYMENT_SIGNING[self.deployment_type][0]

    @property
    def certificate_type(self) -> str:
        return DEPLOYMENT_SIGNING[self.deployment_type][1]

    @property
    def export_method(self) -> str:
        return DEPLOYMENT_SIGNING[self.deployment_type][2]


@dataclass(frozen=True)
class SigningSetup:
    """What the build tool needs to sign the archive"""

    team_id: str
    certificates: EnsureResult
    profile: ProvisioningProfile
    configuration: str
    export_method: str

    @property
    def certificate(self) -> Certificate:
        return self.certificates.primary

    @property
    def identity(self) -> str:
        return self.certificate.name


class DeploymentOrchestrator:
    """Drives one deployment from signing setup to processed build.

    initiated -> building -> uploading -> processing -> completed, with
    ``failed`` reachable from every non-terminal state. Every change to the
    run record is saved to the history, and the team's lock is held for the
    whole run so two deployments never race on the same keychain or quota.
    """

    def __init__(
        self,
        signing_manager: SigningIdentityManager,
        profile_matcher: ProfileMatcher,
        version_resolver: VersionConflictResolver,
        build_port: BuildPort,
        upload_coordinator: UploadRetryCoordinator,
        status_port: Optional[UploadPort] = None,
        history: Optional[DeploymentHistory] = None,
        locks: Optional[TeamLockRegistry] = None,
        clock: Optional[Clock] = None,
        processing_poll_interval: float = 30.0,
        processing_budget: float = 1800.0,
        upload_budget: float = 1800.0,
        enhanced_wait_budget: float = 600.0,
        upload_attempt_timeout: Optional[float] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.signing_manager = signing_manager
        self.profile_matcher = profile_matcher
        self.version_resolver = version_resolver
        self.build_port = build_port
        self.upload_coordinator = upload_coordinator
        self.status_port = status_port
        self.history = history or DeploymentHistory()
        self.locks = locks or TeamLockRegistry()
        self.clock = clock or SystemClock()
        self.processing_poll_interval = processing_poll_interval
        self.processing_budget = processing_budget
        self.upload_budget = upload_budget
        self.enhanced_wait_budget = enhanced_wait_budget
        self.upload_attempt_timeout = upload_attempt_timeout
        self.lock_timeout = lock_timeout

    def deploy(
        self,
        request: DeploymentRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DeploymentRecord:
        team_id = request.team.team_id
        deployment_id = request.deployment_id or generate_deployment_id(
            team_id, request.application.bundle_identifier, self.clock.now()
        )

        existing = self._existing(deployment_id)
        if existing is not None:
            return existing

        with self.locks.hold(team_id, timeout=self.lock_timeout):
            existing = self._existing(deployment_id)
            if existing is not None:
                return existing

            console.print(
                f"\n[bold blue]====== DEPLOYMENT {deployment_id} ======[/]\n"
                f"{request.application.build_identifier} -> {request.deployment_type}"
            )
            record = DeploymentRecord(
                deployment_id=deployment_id,
                team_id=team_id,
                app_identifier=request.application.bundle_identifier,
                deployment_type=request.deployment_type,
                initiated_by=request.initiated_by,
                initiated_at=self.clock.now(),
                marketing_version=request.application.marketing_version,
                build_number=request.application.build_number,
            )
            self._save(
                record.append_log(
                    f"Deployment initiated by {request.initiated_by} for "
                    f"{request.application.build_identifier} ({request.deployment_type})",
                    at=self.clock.now(),
                )
            )

            try:
                self._run(deployment_id, request, cancel_token)
            except CancelledError as e:
                self._fail(deployment_id, e, CANCELLED)
            except Exception as e:
                console.log(f"[red]Unexpected error during deployment: {e!r}")
                self._fail(deployment_id, e, DEPLOYMENT_EXCEPTION)

        record = self.history.get(deployment_id)
        self._report(record)
        return record

    def _existing(self, deployment_id: str) -> Optional[DeploymentRecord]:
        existing = self.history.get(deployment_id)
        if existing is None:
            return None
        if existing.is_terminal:
            console.print(
                f"[yellow]Deployment {deployment_id} already {existing.status}, "
                "returning the stored record"
            )
            return existing
        raise DeploymentInProgressError(
            f"Deployment {deployment_id} is still {existing.status}",
            {"deployment_id": deployment_id, "status": existing.status},
        )

    def _run(
        self,
        deployment_id: str,
        request: DeploymentRequest,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        if request.info_plist_path:
            try:
                self._validate_privacy(deployment_id, request)
            except Exception as e:
                self._fail(deployment_id, e, VALIDATION_FAILED)
                return

        self._check_cancelled(cancel_token, "signing setup")

        try:
            signing = self._setup_signing(deployment_id, request)
        except CancelledError:
            raise
        except Exception as e:
            self._fail(deployment_id, e, SIGNING_SETUP_FAILED)
            return

        self._check_cancelled(cancel_token, "version resolution")
        try:
            resolved = self.version_resolver.resolve(
                request.application, request.increment_kind
            )
        except CancelledError:
            raise
        except Exception as e:
            self._fail(deployment_id, e, VERSION_CONFLICT)
            return
        self._record_version(deployment_id, resolved)

        self._transition(deployment_id, BUILDING)
        self._check_cancelled(cancel_token, "build")
        application = request.application.with_marketing_version(
            resolved.marketing_version
        ).with_build_number(resolved.build_number)
        try:
            artifact = self.build_port.build(
                request.project_ref,
                application.scheme,
                signing.configuration,
                signing,
                cancel_token,
                build_settings={
                    "MARKETING_VERSION": application.marketing_version,
                    "CURRENT_PROJECT_VERSION": application.build_number,
                },
            )
        except CancelledError:
            raise
        except ReleaseError as e:
            self._fail(deployment_id, e, BUILD_FAILED)
            return
        except Exception as e:
            console.log(f"[red]Build tool error: {e!r}")
            self._fail(
                deployment_id,
                BuildFailedError(
                    str(e) or e.__class__.__name__,
                    {"scheme": application.scheme, "exception": e.__class__.__name__},
                ),
                BUILD_FAILED,
            )
            return
        self._update(
            deployment_id,
            lambda r: r.with_archive(artifact.archive_path, artifact.size),
            f"Archive built: {artifact.archive_path}",
        )

        self._transition(deployment_id, UPLOADING)
        self._check_cancelled(cancel_token, "upload")
        options = UploadOptions(
            app_identifier=application.bundle_identifier,
            build_number=str(resolved.build_number),
            marketing_version=resolved.marketing_version,
            platform=application.platform,
            mode=request.upload_mode,
            total_budget=self.upload_budget,
            poll_interval=self.processing_poll_interval,
            wait_budget=self.enhanced_wait_budget,
            attempt_timeout=self.upload_attempt_timeout,
        )
        result = self.upload_coordinator.upload(
            artifact.archive_path, request.credentials, options, cancel_token
        )
        self._record_upload(deployment_id, result)
        if not result.success:
            if result.error_kind == "Cancelled":
                raise CancelledError(
                    result.error or "Upload cancelled",
                    {"attempts": [a.to_dict() for a in result.attempts]},
                )
            self._fail_with(
                deployment_id,
                kind="UploadFailed",
                message=result.error or result.message,
                tag=UPLOAD_FAILED,
                context={
                    "failed_strategy": result.metadata.get("failed_strategy"),
                    "error_kind": result.error_kind,
                    "attempts": [a.to_dict() for a in result.attempts],
                },
            )
            return

        self._transition(deployment_id, PROCESSING)
        self._await_processing(deployment_id, options, result, cancel_token)

    def _setup_signing(self, deployment_id: str, request: DeploymentRequest) -> SigningSetup:
        team = request.team
        certificates = self.signing_manager.ensure(
            team,
            request.certificate_type,
            workspace=request.workspace,
            force_recreate=request.force_recreate_certificates,
        )
        self._log(
            deployment_id,
            f"Signing certificates ready: {len(certificates.reused)} reused, "
            f"{len(certificates.created)} created, {len(certificates.revoked)} revoked",
        )

        profile = self.profile_matcher.resolve(
            request.application.bundle_identifier,
            certificates.certificates,
            team.team_id,
            request.configuration,
            workspace=request.workspace,
        )
        self._log(
            deployment_id,
            f"Provisioning profile ready: {profile.name} ({profile.profile_type})",
        )
        return SigningSetup(
            team_id=team.team_id,
            certificates=certificates,
            profile=profile,
            configuration=request.configuration,
            export_method=request.export_method,
        )

    def _await_processing(
        self,
        deployment_id: str,
        options: UploadOptions,
        result: UploadResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        state = result.processing_state
        if self.status_port is None and not is_terminal_processing_state(state):
            self._update(
                deployment_id,
                lambda r: r.with_metadata("processing_state", None),
                "No processing status channel configured, not waiting for processing",
            )
            self._complete(deployment_id, result)
            return

        if not is_terminal_processing_state(state):
            console.print(
                f"[blue]Polling processing state of build {options.build_number} "
                f"every {self.processing_poll_interval:.0f}s..."
            )

            def fetch():
                return normalize_processing_state(
                    self.status_port.get_processing_state(
                        options.app_identifier, options.build_number
                    )
                )

            outcome = poll_until(
                fetch,
                is_terminal_processing_state,
                interval=self.processing_poll_interval,
                budget=self.processing_budget,
                clock=self.clock,
                token=cancel_token,
                on_change=lambda s: self._log(deployment_id, f"Processing state: {s}"),
            )
            state = outcome.value
            if outcome.timed_out:
                self._update(
                    deployment_id, lambda r: r.with_metadata("last_processing_state", state)
                )
                self._fail_with(
                    deployment_id,
                    kind="ProcessingTimeout",
                    message=(
                        f"Build {options.build_number} still {state} after "
                        f"{outcome.elapsed:.0f}s; the remote build may still complete"
                    ),
                    tag=PROCESSING_TIMEOUT,
                    context={
                        "last_processing_state": state,
                        "polls": outcome.polls,
                        "waited": outcome.elapsed,
                        "remote_build_failed": False,
                    },
                )
                return

        self._update(deployment_id, lambda r: r.with_metadata("processing_state", state))
        if is_successful_processing_state(state):
            self._complete(deployment_id, result)
            return

        self._fail_with(
            deployment_id,
            kind="ProcessingFailed",
            message=f"Build {options.build_number} was rejected during processing: {state}",
            tag=PROCESSING_FAILED,
            context={"processing_state": state, "remote_build_failed": True},
        )

    def _complete(self, deployment_id: str, result: UploadResult) -> None:
        build_url = result.metadata.get("build_url")
        if build_url:
            self._update(deployment_id, lambda r: r.with_build_url(build_url))
        self._save(self.history.get(deployment_id).complete(at=self.clock.now()))

    def _validate_privacy(self, deployment_id: str, request: DeploymentRequest) -> None:
        report = validate_info_plist(
            request.info_plist_path,
            strict=request.strict_privacy,
            linked_frameworks=request.linked_frameworks,
        )
        self._update(
            deployment_id,
            lambda r: r.with_metadata(
                "privacy_warnings", [issue.to_dict() for issue in report.warnings]
            ),
            f"Privacy usage descriptions validated: {len(report.present_keys)} keys, "
            f"{len(report.warnings)} warnings",
        )

    def _record_version(self, deployment_id: str, resolved: ResolvedVersion) -> None:
        message = f"Version resolved: {resolved.marketing_version} ({resolved.build_number})"
        if not resolved.registry_reachable:
            message += ", build registry unreachable"
        self._update(
            deployment_id,
            lambda r: r.with_version(resolved.marketing_version, resolved.build_number)
            .with_metadata("registry_reachable", resolved.registry_reachable)
            .with_metadata("max_remote_build", resolved.max_remote_build),
            message,
        )

    def _record_upload(self, deployment_id: str, result: UploadResult) -> None:
        for attempt in result.attempts:
            if attempt.success:
                self._log(deployment_id, f"Upload attempt via {attempt.strategy} succeeded")
            else:
                self._log(
                    deployment_id,
                    f"Upload attempt via {attempt.strategy} failed: {attempt.error}",
                )
        self._update(
            deployment_id,
            lambda r: r.with_metadata("upload_attempts", [a.to_dict() for a in result.attempts])
            .with_metadata("upload_method", result.upload_method),
        )

    def _check_cancelled(self, cancel_token: Optional[CancellationToken], stage: str) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled({"stage": stage})

    def _save(self, record: DeploymentRecord) -> DeploymentRecord:
        return self.history.save(record)

    def _log(self, deployment_id: str, message: str) -> None:
        console.log(f"[cyan]{message}")
        record = self.history.get(deployment_id)
        self._save(record.append_log(message, at=self.clock.now()))

    def _update(self, deployment_id: str, change, message: Optional[str] = None) -> None:
        record = change(self.history.get(deployment_id))
        if message:
            console.log(f"[cyan]{message}")
            record = record.append_log(message, at=self.clock.now())
        self._save(record)

    def _transition(self, deployment_id: str, status: str) -> None:
        console.print(f"[blue]Deployment {deployment_id}: {status}")
        record = self.history.get(deployment_id)
        self._save(record.with_status(status, at=self.clock.now()))

    def _fail(self, deployment_id: str, error: Exception, tag: str) -> None:
        if isinstance(error, ReleaseError):
            kind, message, context = error.kind, error.message, dict(error.context)
        else:
            kind = error.__class__.__name__
            message = str(error) or kind
            context = {}
        self._fail_with(deployment_id, kind, message, tag, context)

    def _fail_with(
        self,
        deployment_id: str,
        kind: str,
        message: str,
        tag: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = self.history.get(deployment_id)
        if record.is_terminal:
            return
        console.print(f"[red]Deployment failed ({tag}): {kind}: {message}")
        self._save(
            record.fail(kind, message, tag, context=context or {}, at=self.clock.now())
        )

    def _report(self, record: DeploymentRecord) -> None:
        if record.succeeded:
            console.print(
                f"[bold green]Deployment completed:[/] {record.build_identifier} "
                f"in {record.formatted_duration}"
            )
        else:
            console.print(
                f"[bold red]Deployment failed:[/] {record.build_identifier} "
                f"({record.error.kind if record.error else 'unknown error'})"
            )
        if record.metadata.get("excessive_duration"):
            console.print(
                f"[yellow]Deployment took {record.formatted_duration}, longer than expected"
            )
