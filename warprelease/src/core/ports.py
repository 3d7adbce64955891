"""Collaborator interfaces the release core talks through.

Concrete implementations live in ``warprelease.src.apple``,
``warprelease.src.build`` and ``warprelease.src.transfers``; tests use
in-memory fakes.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from warprelease.src.models.certificate import Certificate
from warprelease.src.models.provisioning_profile import ProvisioningProfile
from warprelease.src.models.upload import (
    BuildArtifact,
    RemoteBuild,
    UploadCredentials,
    UploadOptions,
    UploadResult,
)


class SigningAuthorityPort(ABC):
    """Remote service that owns certificates, profiles and devices"""

    @abstractmethod
    def list_certificates(self, team_id: str, certificate_type: str) -> List[Certificate]:
        ...

    @abstractmethod
    def create_certificate(self, team_id: str, certificate_type: str) -> Certificate:
        ...

    @abstractmethod
    def revoke_certificate(self, certificate_id: str) -> bool:
        ...

    @abstractmethod
    def list_profiles(self, team_id: str) -> List[ProvisioningProfile]:
        ...

    @abstractmethod
    def create_profile(
        self,
        app_identifier: str,
        certificates: Sequence[Certificate],
        team_id: str,
        profile_type: str,
        device_ids: Sequence[str] = (),
    ) -> ProvisioningProfile:
        ...

    @abstractmethod
    def delete_profile(self, profile_id: str) -> bool:
        ...

    @abstractmethod
    def list_devices(self, team_id: str) -> List[str]:
        """Identifiers of the devices currently registered (and enabled) for the team"""

    def regenerate_profile(
        self,
        profile: ProvisioningProfile,
        certificates: Sequence[Certificate],
        device_ids: Sequence[str] = (),
    ) -> ProvisioningProfile:
        raise NotImplementedError

    def download_profile(self, profile: ProvisioningProfile) -> bytes:
        raise NotImplementedError


class CredentialStorePort(ABC):
    """Keychain-like store holding a team's private keys and certificates"""

    @abstractmethod
    def import_certificate(self, path: Union[str, Path], password: str) -> Certificate:
        ...

    @abstractmethod
    def export_certificate(
        self, certificate: Certificate, password: str, path: Union[str, Path]
    ) -> bool:
        ...

    @abstractmethod
    def has_private_key(self, certificate: Certificate) -> bool:
        ...


class BuildPort(ABC):
    @abstractmethod
    def build(
        self,
        project_ref: str,
        scheme: str,
        configuration: str,
        signing,
        cancel_token=None,
        build_settings: Optional[Dict[str, str]] = None,
    ) -> BuildArtifact:
        """Compile and archive; raise ``BuildFailedError`` carrying the tool's diagnostics"""


class UploadPort(ABC):
    @abstractmethod
    def upload(
        self,
        archive_path: str,
        credentials: Optional[UploadCredentials],
        options: UploadOptions,
        cancel_token=None,
    ) -> UploadResult:
        """Submit the archive; failures are reported in the result, not raised"""

    @abstractmethod
    def get_processing_state(self, app_identifier: str, build_number: str) -> str:
        ...

    @abstractmethod
    def list_recent_builds(self, app_identifier: str, limit: int = 50) -> List[RemoteBuild]:
        ...
