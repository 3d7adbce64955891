from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from warprelease.logger import get_console
from warprelease.src.core.errors import (
    CannotCreateError,
    InactiveTeamError,
    QuotaExceededUnresolvableError,
    ReleaseError,
    TeamMismatchError,
)
from warprelease.src.core.ports import SigningAuthorityPort
from warprelease.src.core.scheduler import Clock, SystemClock
from warprelease.src.core.team_workspace import TeamWorkspace
from warprelease.src.models.certificate import (
    CERTIFICATE_TYPES,
    Certificate,
    normalize_certificate_type,
    quota_for_type,
)
from warprelease.src.models.team import Team

console = get_console()

REMOVE_EXPIRED = "remove_expired"
REMOVE_OLDEST = "remove_oldest"
CANNOT_CREATE = "cannot_create"


@dataclass(frozen=True)
class EnsureResult:
    certificate_type: str
    reused: Tuple[Certificate, ...] = ()
    created: Tuple[Certificate, ...] = ()
    revoked: Tuple[Certificate, ...] = ()

    @property
    def certificates(self) -> Tuple[Certificate, ...]:
        return self.reused + self.created

    @property
    def primary(self) -> Certificate:
        return self.certificates[0]

    @property
    def certificate_ids(self) -> List[str]:
        return [cert.id for cert in self.certificates]


def cleanup_strategy(existing: Sequence[Certificate], now: datetime) -> str:
    """How to free a slot when a team is at its quota for a certificate type"""
    if not existing:
        return CANNOT_CREATE
    if any(cert.is_expired(now) for cert in existing):
        return REMOVE_EXPIRED
    if any(cert.is_valid(now) for cert in existing):
        return REMOVE_OLDEST
    return CANNOT_CREATE


class SigningIdentityManager:
    """Keeps a team supplied with usable signing certificates within Apple's quotas.

    Existing certificates are reused whenever possible since every creation
    consumes one of very few slots. When a new certificate is needed and the
    team is at its quota, an expired certificate is revoked first; failing
    that, the valid certificate closest to expiry. The manager keeps no state
    between calls.
    """

    def __init__(self, authority: SigningAuthorityPort, clock: Optional[Clock] = None):
        self.authority = authority
        self.clock = clock or SystemClock()

    def validate(self, team_id: str, certificates: Iterable[Certificate]) -> None:
        foreign = [cert for cert in certificates if not cert.belongs_to_team(team_id)]
        if foreign:
            raise TeamMismatchError(
                f"{len(foreign)} certificate(s) do not belong to team {team_id}: "
                + ", ".join(f"{cert.name} ({cert.team_id})" for cert in foreign),
                {
                    "team_id": team_id,
                    "foreign_certificates": [cert.id for cert in foreign],
                    "foreign_teams": sorted({cert.team_id for cert in foreign}),
                },
            )

    def cleanup_strategy(
        self, existing: Sequence[Certificate], now: Optional[datetime] = None
    ) -> str:
        return cleanup_strategy(existing, now or self.clock.now())

    def ensure(
        self,
        team: Team,
        certificate_type: str,
        required_count: int = 1,
        workspace: Optional[TeamWorkspace] = None,
        force_recreate: bool = False,
    ) -> EnsureResult:
        certificate_type = normalize_certificate_type(certificate_type)
        if certificate_type not in CERTIFICATE_TYPES:
            raise ValueError(f"Invalid certificate type: {certificate_type}")
        if required_count < 1:
            raise ValueError("required_count must be at least 1")

        if not team.is_active:
            raise InactiveTeamError(
                f"Team {team.team_id} is {team.status}; certificates can only be managed for active teams",
                {"team_id": team.team_id, "status": team.status},
            )
        if workspace is not None and workspace.team_id != team.team_id:
            raise TeamMismatchError(
                f"Workspace for team {workspace.team_id} cannot be used for team {team.team_id}",
                {"team_id": team.team_id, "workspace_team_id": workspace.team_id},
            )

        quota = quota_for_type(certificate_type)
        if required_count > quota:
            raise QuotaExceededUnresolvableError(
                f"{required_count} {certificate_type} certificates requested but the quota is {quota}",
                {
                    "team_id": team.team_id,
                    "certificate_type": certificate_type,
                    "quota": quota,
                    "required_count": required_count,
                },
            )

        now = self.clock.now()
        console.print(
            f"[blue]Checking {certificate_type} certificates for team {team.team_id}..."
        )
        live = [
            cert
            for cert in self.authority.list_certificates(team.team_id, certificate_type)
            if cert.certificate_type == certificate_type
        ]
        self.validate(team.team_id, live)

        reused = self._select_reusable(live, required_count, workspace, force_recreate, now)
        for cert in reused:
            console.print(
                f"[green]Reusing {certificate_type} certificate:[/] {cert.name} "
                f"(expires in {cert.days_until_expiration(now)} days)"
            )

        created: List[Certificate] = []
        revoked: List[Certificate] = []

        while len(reused) + len(created) < required_count:
            if len(live) < quota:
                cert = self._create(team.team_id, certificate_type, now)
                created.append(cert)
                live.append(cert)
                continue

            strategy = cleanup_strategy(live, now)
            console.print(
                f"[yellow]Team {team.team_id} is at its {certificate_type} quota "
                f"({len(live)}/{quota}), cleanup strategy: {strategy}"
            )
            if strategy == CANNOT_CREATE:
                raise CannotCreateError(
                    f"Cannot create a {certificate_type} certificate for team {team.team_id}",
                    {
                        "team_id": team.team_id,
                        "certificate_type": certificate_type,
                        "quota": quota,
                        "live_count": len(live),
                    },
                )

            keep = reused + created
            candidate = self._revoke_candidate(strategy, live, keep, now)
            if candidate is None:
                raise QuotaExceededUnresolvableError(
                    f"No {certificate_type} certificate of team {team.team_id} can be revoked "
                    f"to free a slot (quota {quota})",
                    {
                        "team_id": team.team_id,
                        "certificate_type": certificate_type,
                        "quota": quota,
                        "live_count": len(live),
                        "strategy": strategy,
                    },
                )

            self._revoke(team.team_id, candidate, strategy, quota)
            live.remove(candidate)
            revoked.append(candidate)

        return EnsureResult(
            certificate_type=certificate_type,
            reused=tuple(reused),
            created=tuple(created),
            revoked=tuple(revoked),
        )

    def health_report(self, team_id: str) -> Dict[str, Dict[str, int]]:
        """Counts per certificate type: total, valid, expired, expiring soon, free slots"""
        now = self.clock.now()
        report = {}
        for certificate_type in CERTIFICATE_TYPES:
            certs = self.authority.list_certificates(team_id, certificate_type)
            self.validate(team_id, certs)
            quota = quota_for_type(certificate_type)
            valid = [cert for cert in certs if cert.is_valid(now)]
            report[certificate_type] = {
                "total": len(certs),
                "valid": len(valid),
                "expired": len(certs) - len(valid),
                "expiring_soon": len([c for c in valid if c.is_expiring_soon(now)]),
                "quota": quota,
                "available_slots": max(quota - len(certs), 0),
            }
        return report

    def _select_reusable(
        self,
        live: Sequence[Certificate],
        required_count: int,
        workspace: Optional[TeamWorkspace],
        force_recreate: bool,
        now: datetime,
    ) -> List[Certificate]:
        if force_recreate:
            console.print("[yellow]Forced recreation requested, not reusing certificates")
            return []

        usable = []
        for cert in live:
            if not cert.is_valid(now):
                continue
            if workspace is not None and workspace.has_private_key(cert) is False:
                console.print(
                    f"[yellow]Certificate {cert.name} is missing its private key in the "
                    f"keychain for team {workspace.team_id}, not reusing it"
                )
                continue
            usable.append(cert)

        # Longest-lived first
        usable.sort(key=lambda cert: cert.expiration_date, reverse=True)
        return usable[:required_count]

    @staticmethod
    def _revoke_candidate(
        strategy: str,
        live: Sequence[Certificate],
        keep: Sequence[Certificate],
        now: datetime,
    ) -> Optional[Certificate]:
        kept_ids = {cert.id for cert in keep}
        if strategy == REMOVE_EXPIRED:
            pool = [cert for cert in live if cert.is_expired(now)]
        else:
            pool = [
                cert for cert in live if cert.is_valid(now) and cert.id not in kept_ids
            ]
        if not pool:
            return None
        return min(pool, key=lambda cert: cert.expiration_date)

    def _create(self, team_id: str, certificate_type: str, now: datetime) -> Certificate:
        console.print(f"[blue]Creating {certificate_type} certificate for team {team_id}...")
        try:
            cert = self.authority.create_certificate(team_id, certificate_type)
        except ReleaseError:
            raise
        except Exception as e:
            raise CannotCreateError(
                f"Signing authority failed to create a {certificate_type} certificate: {e}",
                {"team_id": team_id, "certificate_type": certificate_type},
            ) from e

        self.validate(team_id, [cert])
        if cert.is_expired(now):
            raise CannotCreateError(
                f"Signing authority returned an already expired certificate {cert.id}",
                {"team_id": team_id, "certificate_id": cert.id},
            )
        console.print(f"[green]Created {certificate_type} certificate:[/] {cert.name}")
        return cert

    def _revoke(self, team_id: str, cert: Certificate, strategy: str, quota: int) -> None:
        console.print(
            f"[yellow]Revoking {cert.certificate_type} certificate {cert.name} "
            f"(expires {cert.expiration_date:%Y-%m-%d})..."
        )
        context = {
            "team_id": team_id,
            "certificate_type": cert.certificate_type,
            "certificate_id": cert.id,
            "strategy": strategy,
            "quota": quota,
        }
        try:
            revoked = self.authority.revoke_certificate(cert.id)
        except Exception as e:
            raise QuotaExceededUnresolvableError(
                f"Failed to revoke certificate {cert.name}: {e}", context
            ) from e
        if not revoked:
            raise QuotaExceededUnresolvableError(
                f"Signing authority refused to revoke certificate {cert.name}", context
            )
        console.print(f"[green]Revoked certificate:[/] {cert.name}")
