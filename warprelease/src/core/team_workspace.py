from pathlib import Path
from typing import Optional, Union

from warprelease.logger import get_console
from warprelease.src.core.ports import CredentialStorePort
from warprelease.src.models.certificate import is_valid_team_id
from warprelease.src.models.provisioning_profile import ProvisioningProfile

console = get_console()


class TeamWorkspace:
    """Handle on the on-disk and keychain resources owned by one team.

    Layout under ``root``::

        <team_id>/certificates/<development|distribution>/
        <team_id>/profiles/
        <team_id>/builds/

    The handle is passed explicitly to the signing and profile components;
    nothing in the core reaches for a global keychain or directory.
    """

    def __init__(
        self,
        team_id: str,
        root: Union[str, Path],
        credential_store: Optional[CredentialStorePort] = None,
    ):
        if not is_valid_team_id(team_id):
            raise ValueError(f"Invalid team ID format: {team_id}")
        self.team_id = team_id
        self.root = Path(root).expanduser()
        self.credential_store = credential_store

    @property
    def team_dir(self) -> Path:
        return self.root / self.team_id

    @property
    def profiles_dir(self) -> Path:
        return self.team_dir / "profiles"

    @property
    def builds_dir(self) -> Path:
        return self.team_dir / "builds"

    def certificates_dir(self, certificate_type: str) -> Path:
        return self.team_dir / "certificates" / certificate_type

    def ensure_directories(self) -> None:
        for directory in (
            self.certificates_dir("development"),
            self.certificates_dir("distribution"),
            self.profiles_dir,
            self.builds_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def profile_path(self, profile: ProvisioningProfile) -> Path:
        return self.profiles_dir / profile.expected_filename

    def write_profile(self, profile: ProvisioningProfile, content: bytes) -> ProvisioningProfile:
        """Store profile content and return the profile with ``file_path`` set"""
        if profile.team_id != self.team_id:
            raise ValueError(
                f"Profile {profile.name} belongs to team {profile.team_id}, not {self.team_id}"
            )
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        path = self.profile_path(profile)
        path.write_bytes(content)
        console.log(f"[green]Saved provisioning profile:[/] {path}")
        return profile.with_file_path(str(path))

    def has_private_key(self, certificate) -> Optional[bool]:
        """Whether the team's credential store holds the key; None when there is no store"""
        if self.credential_store is None:
            return None
        return self.credential_store.has_private_key(certificate)

    def __repr__(self):
        return f"TeamWorkspace(team_id={self.team_id!r}, root={str(self.root)!r})"
