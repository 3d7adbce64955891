from datetime import datetime
from typing import List, Optional, Sequence

from warprelease.logger import get_console
from warprelease.src.core.errors import (
    NoCompatibleCertificatesError,
    ProfileCreationFailedError,
    ReleaseError,
    TeamMismatchError,
)
from warprelease.src.core.ports import SigningAuthorityPort
from warprelease.src.core.scheduler import Clock, SystemClock
from warprelease.src.core.team_workspace import TeamWorkspace
from warprelease.src.models.certificate import Certificate
from warprelease.src.models.provisioning_profile import (
    DEVICE_BOUND_TYPES,
    ProvisioningProfile,
    certificate_type_for_profile,
    required_type_for_configuration,
)

console = get_console()


class ProfileMatcher:
    """Finds or creates the provisioning profile a build has to be signed with.

    A profile is usable for ``app_identifier`` when it covers the identifier
    (exactly or through a ``prefix.*`` wildcard), belongs to the team, has
    not expired and trusts every certificate the build will sign with.
    Exact identifiers beat wildcards; among equals the most recently issued
    profile wins.
    """

    def __init__(
        self,
        authority: SigningAuthorityPort,
        clock: Optional[Clock] = None,
        refresh_stale: bool = False,
    ):
        self.authority = authority
        self.clock = clock or SystemClock()
        self.refresh_stale = refresh_stale

    def compatible_certificates(
        self,
        certificates: Sequence[Certificate],
        profile_type: str,
        now: datetime,
    ) -> List[Certificate]:
        certificate_type = certificate_type_for_profile(profile_type)
        return [
            cert
            for cert in certificates
            if cert.certificate_type == certificate_type and cert.is_valid(now)
        ]

    def is_usable(
        self,
        profile: ProvisioningProfile,
        app_identifier: str,
        team_id: str,
        profile_type: str,
        certificate_ids: Sequence[str],
        now: datetime,
    ) -> bool:
        return (
            profile.profile_type == profile_type
            and profile.covers_app_identifier(app_identifier)
            and profile.belongs_to_team(team_id)
            and not profile.is_expired(now)
            and profile.contains_all_certificates(certificate_ids)
        )

    def select(
        self,
        profiles: Sequence[ProvisioningProfile],
        app_identifier: str,
        team_id: str,
        profile_type: str,
        certificate_ids: Sequence[str],
        now: datetime,
    ) -> Optional[ProvisioningProfile]:
        candidates = [
            profile
            for profile in profiles
            if self.is_usable(
                profile, app_identifier, team_id, profile_type, certificate_ids, now
            )
        ]
        if not candidates:
            return None

        # Exact identifier first, then the most recently issued
        return max(
            candidates,
            key=lambda p: (p.app_identifier == app_identifier, p.issued_at),
        )

    def resolve(
        self,
        app_identifier: str,
        certificates: Sequence[Certificate],
        team_id: str,
        build_config: str,
        workspace: Optional[TeamWorkspace] = None,
    ) -> ProvisioningProfile:
        if not app_identifier:
            raise ValueError("App identifier cannot be empty")
        if workspace is not None and workspace.team_id != team_id:
            raise TeamMismatchError(
                f"Workspace for team {workspace.team_id} cannot be used for team {team_id}",
                {"team_id": team_id, "workspace_team_id": workspace.team_id},
            )

        foreign = [cert for cert in certificates if not cert.belongs_to_team(team_id)]
        if foreign:
            raise TeamMismatchError(
                f"Certificates from another team cannot sign for team {team_id}",
                {
                    "team_id": team_id,
                    "foreign_certificates": [cert.id for cert in foreign],
                },
            )

        now = self.clock.now()
        profile_type = required_type_for_configuration(build_config)
        signing_certs = self.compatible_certificates(certificates, profile_type, now)
        if not signing_certs:
            raise NoCompatibleCertificatesError(
                f"No valid {certificate_type_for_profile(profile_type)} certificate "
                f"available for {app_identifier} ({build_config} build)",
                {
                    "app_identifier": app_identifier,
                    "team_id": team_id,
                    "build_config": build_config,
                    "profile_type": profile_type,
                },
            )
        certificate_ids = [cert.id for cert in signing_certs]

        console.print(
            f"[blue]Looking for a {profile_type} profile for {app_identifier} "
            f"trusting {len(certificate_ids)} certificate(s)..."
        )
        profiles = self.authority.list_profiles(team_id)
        profile = self.select(
            profiles, app_identifier, team_id, profile_type, certificate_ids, now
        )

        if profile is not None:
            kind = "wildcard" if profile.is_wildcard else "exact"
            console.print(
                f"[green]Reusing {kind} profile:[/] {profile.name} ({profile.app_identifier})"
            )
        else:
            stale = self._stale_exact_match(profiles, app_identifier, team_id, profile_type)
            if stale is not None and self.refresh_stale:
                profile = self._regenerate(stale, signing_certs, team_id, profile_type)
            if profile is None:
                profile = self._create(app_identifier, signing_certs, team_id, profile_type)

        if workspace is not None:
            profile = self._install(profile, workspace)
        return profile

    def _stale_exact_match(
        self,
        profiles: Sequence[ProvisioningProfile],
        app_identifier: str,
        team_id: str,
        profile_type: str,
    ) -> Optional[ProvisioningProfile]:
        stale = [
            p
            for p in profiles
            if p.app_identifier == app_identifier
            and p.belongs_to_team(team_id)
            and p.profile_type == profile_type
        ]
        if not stale:
            return None
        return max(stale, key=lambda p: p.issued_at)

    def _device_ids(self, team_id: str, profile_type: str) -> List[str]:
        if profile_type not in DEVICE_BOUND_TYPES:
            return []
        device_ids = list(self.authority.list_devices(team_id))
        console.print(f"[cyan]Using {len(device_ids)} registered devices")
        return device_ids

    def _regenerate(
        self,
        stale: ProvisioningProfile,
        certificates: Sequence[Certificate],
        team_id: str,
        profile_type: str,
    ) -> Optional[ProvisioningProfile]:
        console.print(f"[yellow]Regenerating stale profile:[/] {stale.name}")
        try:
            device_ids = self._device_ids(team_id, profile_type)
            refreshed = self.authority.regenerate_profile(stale, certificates, device_ids)
        except NotImplementedError:
            console.print("[yellow]Signing authority cannot regenerate profiles, creating a new one")
            return None
        except ReleaseError:
            raise
        except Exception as e:
            raise ProfileCreationFailedError(
                f"Failed to regenerate profile {stale.name}: {e}",
                {"profile_id": stale.id, "team_id": team_id, "reason": str(e)},
            ) from e

        if refreshed.id != stale.id:
            console.print(
                f"[yellow]Regenerated profile came back with a new identifier: {refreshed.id}"
            )
        return refreshed

    def _create(
        self,
        app_identifier: str,
        certificates: Sequence[Certificate],
        team_id: str,
        profile_type: str,
    ) -> ProvisioningProfile:
        console.print(f"[blue]Creating {profile_type} profile for {app_identifier}...")
        context = {
            "app_identifier": app_identifier,
            "team_id": team_id,
            "profile_type": profile_type,
            "certificate_ids": [cert.id for cert in certificates],
        }
        try:
            device_ids = self._device_ids(team_id, profile_type)
            profile = self.authority.create_profile(
                app_identifier, certificates, team_id, profile_type, device_ids
            )
        except ReleaseError:
            raise
        except Exception as e:
            context["reason"] = str(e)
            raise ProfileCreationFailedError(
                f"Failed to create {profile_type} profile for {app_identifier}: {e}",
                context,
            ) from e

        if profile is None:
            context["reason"] = "no profile returned"
            raise ProfileCreationFailedError(
                f"Signing authority returned no profile for {app_identifier}", context
            )
        if not profile.belongs_to_team(team_id):
            raise TeamMismatchError(
                f"Created profile {profile.name} belongs to team {profile.team_id}",
                context,
            )
        console.print(f"[green]Created profile:[/] {profile.name}")
        return profile

    def _install(
        self, profile: ProvisioningProfile, workspace: TeamWorkspace
    ) -> ProvisioningProfile:
        try:
            content = self.authority.download_profile(profile)
        except NotImplementedError:
            return profile
        if not content:
            console.print(f"[yellow]No content downloaded for profile {profile.name}")
            return profile
        return workspace.write_profile(profile, content)
