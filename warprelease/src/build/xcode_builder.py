import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from warprelease.logger import get_console
from warprelease.src.core.errors import BuildFailedError
from warprelease.src.core.ports import BuildPort
from warprelease.src.models.upload import BuildArtifact
from warprelease.src.utils.process import first_error_line, run_command

console = get_console()

BUILD_TIMEOUT = 900

XCODE_CONFIGURATIONS = {
    "debug": "Debug",
    "development": "Debug",
    "release": "Release",
    "ad_hoc": "Release",
    "enterprise": "Release",
}


def xcode_configuration(configuration: str) -> str:
    return XCODE_CONFIGURATIONS.get((configuration or "").lower(), configuration)


def extract_build_error(output: str) -> str:
    """Pick the most useful line out of xcodebuild's output"""
    line = first_error_line(output, markers=("error:", "ERROR"))
    if line:
        return line
    if "BUILD FAILED" in output:
        return "Build failed - check build logs for details"
    if "Code Signing Error" in output:
        return "Code signing failed - check certificates and provisioning profiles"
    return "Build failed with unknown error"


class XcodeBuilder(BuildPort):
    """Archives an Xcode project or workspace with manual signing."""

    def __init__(self, build_root: Path, timeout: float = BUILD_TIMEOUT):
        self.build_root = Path(build_root)
        self.timeout = timeout

    def signing_settings(self, signing) -> Dict[str, str]:
        return {
            "CODE_SIGN_STYLE": "Manual",
            "DEVELOPMENT_TEAM": signing.team_id,
            "CODE_SIGN_IDENTITY": signing.identity,
            "PROVISIONING_PROFILE_SPECIFIER": signing.profile.name,
        }

    def command(
        self,
        project_ref: str,
        scheme: str,
        configuration: str,
        archive_path: Path,
        settings: Dict[str, str],
    ) -> List[str]:
        project_flag = "-workspace" if project_ref.endswith(".xcworkspace") else "-project"
        cmd = [
            "xcodebuild",
            project_flag,
            project_ref,
            "-scheme",
            scheme,
            "-configuration",
            xcode_configuration(configuration),
            "-archivePath",
            str(archive_path),
            "-derivedDataPath",
            str(self.build_root / "DerivedData"),
            "archive",
        ]
        cmd.extend(f"{key}={value}" for key, value in settings.items() if value)
        return cmd

    def build(
        self,
        project_ref: str,
        scheme: str,
        configuration: str,
        signing,
        cancel_token=None,
        build_settings: Optional[Dict[str, str]] = None,
    ) -> BuildArtifact:
        if not Path(project_ref).exists():
            raise BuildFailedError(
                f"Project not found: {project_ref}", {"project_ref": project_ref}
            )

        try:
            self.build_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildFailedError(
                f"Cannot create build directory {self.build_root}: {e}",
                {"scheme": scheme, "exception": e.__class__.__name__},
            ) from e
        archive_path = self.build_root / f"{scheme}.xcarchive"
        log_path = self.build_root / f"{scheme}-build.log"
        settings = {**self.signing_settings(signing), **(build_settings or {})}

        console.print(
            f"[blue]Building {scheme} ({xcode_configuration(configuration)}) "
            f"signed as {signing.identity}"
        )
        try:
            result = run_command(
                self.command(project_ref, scheme, configuration, archive_path, settings),
                timeout=self.timeout,
                cancel_token=cancel_token,
            )
        except subprocess.TimeoutExpired as e:
            raise BuildFailedError(
                f"Build timed out after {self.timeout:.0f}s",
                {"scheme": scheme, "output_tail": (e.output or "")[-2000:]},
            )
        except FileNotFoundError as e:
            raise BuildFailedError(f"xcodebuild is not available: {e}")
        except OSError as e:
            raise BuildFailedError(
                f"Could not run xcodebuild: {e}",
                {"scheme": scheme, "exception": e.__class__.__name__},
            ) from e

        try:
            log_path.write_text(result.stdout)
        except OSError as e:
            console.print(f"[yellow]Could not write build log {log_path}: {e}")
            log_path = None
        if result.returncode != 0 or not archive_path.exists():
            message = extract_build_error(result.stdout)
            console.print(f"[red]Build failed: {message}")
            raise BuildFailedError(
                message,
                {
                    "scheme": scheme,
                    "configuration": configuration,
                    "returncode": result.returncode,
                    "log_path": str(log_path) if log_path else None,
                    "output_tail": result.stdout[-2000:],
                },
            )

        size = sum(p.stat().st_size for p in archive_path.rglob("*") if p.is_file())
        console.print(f"[green]Archive created: {archive_path}")
        return BuildArtifact(
            archive_path=str(archive_path),
            size=size,
            log_path=str(log_path) if log_path else None,
        )
