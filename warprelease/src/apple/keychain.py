import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from warprelease.logger import get_console
from warprelease.src.core.errors import ReleaseError
from warprelease.src.core.ports import CredentialStorePort
from warprelease.src.models.certificate import (
    DEVELOPMENT,
    DISTRIBUTION,
    Certificate,
    is_valid_team_id,
)

IDENTITY_PATTERN = re.compile(r'\d+\) ([A-F0-9]{40}) "(.*?)"')
# find-certificate -Z -p prints each certificate's hashes followed by its PEM
CERTIFICATE_ENTRY = re.compile(
    r"SHA-1 hash: ([A-F0-9]{40}).*?(-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----)",
    re.S,
)

DEVELOPMENT_PREFIXES = ("apple development", "iphone developer", "ios development")
DISTRIBUTION_PREFIXES = ("apple distribution", "iphone distribution", "ios distribution")


def certificate_type_from_common_name(common_name: str) -> Optional[str]:
    lowered = (common_name or "").lower()
    if lowered.startswith(DEVELOPMENT_PREFIXES):
        return DEVELOPMENT
    if lowered.startswith(DISTRIBUTION_PREFIXES):
        return DISTRIBUTION
    return None


def normalize_serial(serial: Optional[str]) -> str:
    return (serial or "").replace(":", "").strip().upper().lstrip("0")


def parse_subject(subject: str) -> Dict[str, str]:
    """Parse ``openssl x509 -subject`` output into a field dict"""
    subject = subject.strip()
    if subject.startswith("subject="):
        subject = subject[8:].strip()

    fields = {}
    for field in subject.split(","):
        field = field.strip().lstrip("/")
        if not field or "=" not in field:
            continue
        key, value = field.split("=", 1)
        fields[key.strip()] = value.strip()
    return fields


def parse_openssl_date(value: str) -> datetime:
    """``Jan  1 00:00:00 2026 GMT`` -> aware UTC datetime"""
    normalized = " ".join(value.split())
    return datetime.strptime(normalized, "%b %d %H:%M:%S %Y %Z").replace(
        tzinfo=timezone.utc
    )


class KeychainCredentialStore(CredentialStorePort):
    """Per-team macOS keychain driven through the ``security`` tool.

    Each team gets its own keychain file so certificates of different teams
    never share a search list entry.
    """

    def __init__(
        self,
        team_id: str,
        keychain: Optional[str] = None,
        keychain_password: str = "warprelease",
    ):
        if not is_valid_team_id(team_id):
            raise ValueError(f"Invalid team ID format: {team_id}")
        self.console = get_console()
        self.team_id = team_id
        self.keychain = keychain or f"warprelease-{team_id.lower()}.keychain"
        self.keychain_password = keychain_password

    def _run(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        return subprocess.run(args, input=input, capture_output=True, text=True)

    def setup(self) -> None:
        """Create, unlock and register the team keychain"""
        self.console.log(f"[yellow]Creating keychain: {self.keychain}")
        create_result = self._run(
            ["security", "create-keychain", "-p", self.keychain_password, self.keychain]
        )
        if create_result.returncode != 0 and "already exists" not in create_result.stderr:
            raise ReleaseError(
                f"Failed to create keychain {self.keychain}: {create_result.stderr.strip()}",
                {"team_id": self.team_id, "keychain": self.keychain},
            )

        unlock_result = self._run(
            ["security", "unlock-keychain", "-p", self.keychain_password, self.keychain]
        )
        if unlock_result.returncode != 0:
            raise ReleaseError(
                f"Failed to unlock keychain {self.keychain}: {unlock_result.stderr.strip()}",
                {"team_id": self.team_id, "keychain": self.keychain},
            )

        # lock on sleep, user lock, 6 hour timeout
        settings_result = self._run(
            ["security", "set-keychain-settings", "-lut", "21600", self.keychain]
        )
        if settings_result.returncode != 0:
            self.console.log(
                f"[red]Settings failed:[/]\nstdout: {settings_result.stdout}\nstderr: {settings_result.stderr}"
            )

        keychains = self._get_keychain_list()
        if not any(self.keychain in k for k in keychains):
            search_result = self._run(
                ["security", "list-keychains", "-d", "user", "-s", *keychains, self.keychain]
            )
            if search_result.returncode != 0:
                self.console.log(
                    f"[red]Search list update failed:[/]\nstdout: {search_result.stdout}\nstderr: {search_result.stderr}"
                )

    def import_certificate(self, path: Union[str, Path], password: str) -> Certificate:
        path = Path(path)
        if not path.exists():
            raise ReleaseError(f"Certificate not found: {path}", {"path": str(path)})

        self.console.log(f"[yellow]Importing certificate: {path}")
        import_result = self._run(
            [
                "security",
                "import",
                str(path),
                "-k",
                self.keychain,
                "-f",
                "pkcs12",
                "-A",
                "-T",
                "/usr/bin/codesign",
                "-T",
                "/usr/bin/security",
                "-P",
                password,
            ]
        )
        if import_result.returncode != 0:
            raise ReleaseError(
                f"Failed to import {path.name}: {import_result.stderr.strip() or import_result.stdout.strip()}",
                {"path": str(path), "keychain": self.keychain},
            )

        partition_result = self._run(
            [
                "security",
                "set-key-partition-list",
                "-S",
                "apple-tool:,apple:",
                "-k",
                self.keychain_password,
                self.keychain,
            ]
        )
        if partition_result.returncode != 0:
            self.console.log(
                f"[red]Partition list setup failed:[/]\nstdout: {partition_result.stdout}\nstderr: {partition_result.stderr}"
            )

        certificate = self._read_certificate(path, password)
        self.console.log(
            f"[green]Imported {certificate.certificate_type} certificate:[/] {certificate.name}"
        )
        return certificate

    def _read_certificate(self, path: Path, password: str) -> Certificate:
        pem_result = self._run(
            [
                "openssl",
                "pkcs12",
                "-in",
                str(path),
                "-nokeys",
                "-clcerts",
                "-passin",
                f"pass:{password}",
            ]
        )
        if pem_result.returncode != 0:
            raise ReleaseError(
                f"Failed to read certificate from {path.name}: {pem_result.stderr.strip()}",
                {"path": str(path)},
            )

        info_result = self._run(
            ["openssl", "x509", "-noout", "-serial", "-subject", "-enddate"],
            input=pem_result.stdout,
        )
        if info_result.returncode != 0:
            raise ReleaseError(
                f"Failed to inspect certificate {path.name}: {info_result.stderr.strip()}",
                {"path": str(path)},
            )

        serial = subject = end_date = None
        for line in info_result.stdout.splitlines():
            if line.startswith("serial="):
                serial = line.split("=", 1)[1].strip()
            elif line.startswith("subject="):
                subject = parse_subject(line)
            elif line.startswith("notAfter="):
                end_date = parse_openssl_date(line.split("=", 1)[1])

        if not serial or not subject or end_date is None:
            raise ReleaseError(
                f"Incomplete certificate information in {path.name}", {"path": str(path)}
            )

        common_name = subject.get("CN", "")
        certificate_type = certificate_type_from_common_name(common_name)
        if certificate_type is None:
            raise ReleaseError(
                f"Unrecognized certificate type: {common_name}", {"path": str(path)}
            )

        return Certificate(
            id=serial,
            name=common_name,
            certificate_type=certificate_type,
            team_id=subject.get("OU", ""),
            expiration_date=end_date,
            serial_number=serial,
        )

    def export_certificate(
        self, certificate: Certificate, password: str, path: Union[str, Path]
    ) -> bool:
        if not certificate.belongs_to_team(self.team_id):
            raise ValueError(
                f"Certificate {certificate.name} does not belong to team {self.team_id}"
            )
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        self.console.log(f"[yellow]Exporting identities from {self.keychain} to {path}")
        export_result = self._run(
            [
                "security",
                "export",
                "-k",
                self.keychain,
                "-t",
                "identities",
                "-f",
                "pkcs12",
                "-P",
                password,
                "-o",
                str(path),
            ]
        )
        if export_result.returncode != 0:
            self.console.log(
                f"[red]Export failed:[/]\nstdout: {export_result.stdout}\nstderr: {export_result.stderr}"
            )
            return False
        return True

    def signing_identities(self) -> List[tuple]:
        """(sha1, name) pairs of valid codesigning identities in the keychain"""
        result = self._run(
            ["security", "find-identity", "-v", "-p", "codesigning", self.keychain]
        )
        if result.returncode != 0:
            return []
        return IDENTITY_PATTERN.findall(result.stdout)

    def identity_serials(self) -> Set[str]:
        """Serial numbers of the certificates whose private key is in the keychain"""
        # Only identities with a private key show up in find-identity
        fingerprints = {sha1 for sha1, _ in self.signing_identities()}
        if not fingerprints:
            return set()

        result = self._run(["security", "find-certificate", "-a", "-Z", "-p", self.keychain])
        if result.returncode != 0:
            return set()

        serials = set()
        for sha1, pem in CERTIFICATE_ENTRY.findall(result.stdout):
            if sha1 not in fingerprints:
                continue
            info = self._run(["openssl", "x509", "-noout", "-serial"], input=pem)
            if info.returncode == 0 and "=" in info.stdout:
                serials.add(normalize_serial(info.stdout.split("=", 1)[1]))
        return serials

    def has_private_key(self, certificate: Certificate) -> bool:
        # Team certificates share a common name, so match on the serial
        serial = normalize_serial(certificate.serial_number or certificate.id)
        return bool(serial) and serial in self.identity_serials()

    def cleanup(self) -> None:
        keychains = [k for k in self._get_keychain_list() if self.keychain not in k]
        self._run(["security", "list-keychains", "-d", "user", "-s", *keychains])
        self._run(["security", "delete-keychain", self.keychain])
        self.console.log(f"[green]Cleaned up keychain {self.keychain}[/]")

    def _get_keychain_list(self) -> List[str]:
        result = self._run(["security", "list-keychains", "-d", "user"])
        return [k.strip().strip('"') for k in result.stdout.splitlines() if k.strip()]
