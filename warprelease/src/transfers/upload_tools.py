import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from warprelease.logger import get_console
from warprelease.src.apple.app_store_connect_api import AppStoreConnectAPI
from warprelease.src.core.errors import ReleaseError
from warprelease.src.core.ports import UploadPort
from warprelease.src.models.upload import (
    RemoteBuild,
    UploadCredentials,
    UploadOptions,
    UploadResult,
)
from warprelease.src.utils.process import first_error_line, run_command

console = get_console()

PASSWORD_ENV = "WARPRELEASE_APP_SPECIFIC_PASSWORD"


class ToolUploader(UploadPort):
    """Uploads an archive with one of Apple's command line tools.

    Processing state and build history come from App Store Connect through
    ``registry``.
    """

    name = "tool"

    def __init__(self, registry: Optional[AppStoreConnectAPI] = None):
        self.registry = registry

    def command(
        self, archive_path: str, credentials: UploadCredentials, options: UploadOptions
    ) -> List[str]:
        raise NotImplementedError

    def environment(self, credentials: UploadCredentials) -> Dict[str, str]:
        env = {}
        if credentials.api_key_path:
            # altool and iTMSTransporter look for AuthKey_<id>.p8 in this directory
            env["API_PRIVATE_KEYS_DIR"] = str(Path(credentials.api_key_path).expanduser().parent)
        if credentials.app_specific_password:
            env[PASSWORD_ENV] = credentials.app_specific_password
        return env

    def succeeded(self, output: str) -> bool:
        return True

    def upload(
        self,
        archive_path: str,
        credentials: Optional[UploadCredentials],
        options: UploadOptions,
        cancel_token=None,
    ) -> UploadResult:
        if credentials is None or not credentials.is_complete:
            return UploadResult.failed(
                f"{self.name}: App Store Connect credentials are missing",
                error_kind="InvalidCredentials",
            )
        if not Path(archive_path).exists():
            return UploadResult.failed(
                f"{self.name}: archive not found: {archive_path}",
                error_kind="ArchiveMissing",
            )

        console.print(f"[blue]Uploading with {self.name}")
        try:
            result = run_command(
                self.command(archive_path, credentials, options),
                timeout=options.timeout,
                cancel_token=cancel_token,
                env=self.environment(credentials),
            )
        except subprocess.TimeoutExpired:
            return UploadResult.failed(
                f"{self.name} upload timed out after {options.timeout:.0f}s",
                error_kind="Timeout",
            )
        except FileNotFoundError as e:
            return UploadResult.failed(
                f"{self.name} is not available: {e}", error_kind="ToolUnavailable"
            )

        output = result.stdout
        if result.returncode == 0 and self.succeeded(output):
            metadata = {"tool_output_tail": output[-2000:]}
            if self.registry is not None:
                try:
                    metadata["build_url"] = self.registry.app_url(options.app_identifier)
                except ReleaseError as e:
                    console.print(f"[yellow]Could not resolve App Store Connect URL: {e}")
            return UploadResult.succeeded(f"Upload successful via {self.name}", **metadata)

        reason = first_error_line(output) or f"Unknown {self.name} error"
        return UploadResult.failed(
            f"{self.name} upload failed: {reason}",
            returncode=result.returncode,
        )

    def _registry(self) -> AppStoreConnectAPI:
        if self.registry is None:
            raise ReleaseError(f"{self.name} has no App Store Connect client configured")
        return self.registry

    def get_processing_state(self, app_identifier: str, build_number: str) -> str:
        return self._registry().get_processing_state(app_identifier, build_number)

    def list_recent_builds(self, app_identifier: str, limit: int = 50) -> List[RemoteBuild]:
        return self._registry().list_recent_builds(app_identifier, limit)


class AltoolUploader(ToolUploader):
    name = "altool"

    def command(
        self, archive_path: str, credentials: UploadCredentials, options: UploadOptions
    ) -> List[str]:
        cmd = [
            "xcrun",
            "altool",
            "--upload-app",
            "--type",
            "ios" if options.platform == "ios" else "macos",
            "--file",
            str(archive_path),
        ]
        if credentials.uses_api_key:
            cmd += [
                "--apiKey",
                credentials.api_key_id,
                "--apiIssuer",
                credentials.api_issuer_id,
            ]
        else:
            cmd += ["-u", credentials.apple_id, "-p", f"@env:{PASSWORD_ENV}"]
        return cmd + ["--verbose"]


class TransporterUploader(ToolUploader):
    name = "transporter"

    def command(
        self, archive_path: str, credentials: UploadCredentials, options: UploadOptions
    ) -> List[str]:
        cmd = ["xcrun", "iTMSTransporter", "-m", "upload", "-assetFile", str(archive_path)]
        if credentials.uses_api_key:
            cmd += [
                "-apiKey",
                credentials.api_key_id,
                "-apiIssuer",
                credentials.api_issuer_id,
            ]
        else:
            cmd += ["-u", credentials.apple_id, "-p", f"@env:{PASSWORD_ENV}"]
        return cmd + ["-v", "eXtreme"]

    def succeeded(self, output: str) -> bool:
        # iTMSTransporter can exit 0 and still report errors
        return "ERROR" not in output


UPLOADERS = {
    AltoolUploader.name: AltoolUploader,
    TransporterUploader.name: TransporterUploader,
}


def build_uploaders(
    names: List[str], registry: Optional[AppStoreConnectAPI] = None
) -> List[ToolUploader]:
    unknown = [name for name in names if name not in UPLOADERS]
    if unknown:
        raise ValueError(
            f"Unknown upload strategies: {', '.join(unknown)}. "
            f"Available: {', '.join(UPLOADERS)}"
        )
    return [UPLOADERS[name](registry) for name in names]
