from typing import Dict, List, Optional

import requests

from warprelease.logger import get_console
from warprelease.src.core.errors import ReleaseError
from warprelease.src.models.upload import UNKNOWN, RemoteBuild, normalize_processing_state

console = get_console()


class AppStoreConnectError(ReleaseError):
    kind = "AppStoreConnectRequestFailed"


class AppStoreConnectAPI:
    """Read side of App Store Connect: uploaded builds and their processing state.

    ``token`` is a ready-made API bearer token; minting it from the ``.p8``
    key is left to whoever constructs the client.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.appstoreconnect.apple.com/v1",
        session: Optional[requests.Session] = None,
        timeout: float = 60,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }
        self._app_ids: Dict[str, str] = {}

    def _get(self, path: str, params: Dict[str, str]) -> dict:
        response = self.session.get(
            f"{self.base_url}/{path}",
            params=params,
            headers=self.headers,
            timeout=self.timeout,
        )
        if response.status_code != 200:
            console.print(f"[red]App Store Connect request failed: {response.status_code}")
            console.print(f"[red]Error response: {response.text}")
            raise AppStoreConnectError(
                f"GET {path} failed with {response.status_code}",
                {"path": path, "status_code": response.status_code},
            )
        return response.json()

    def app_id(self, app_identifier: str) -> str:
        if app_identifier in self._app_ids:
            return self._app_ids[app_identifier]

        data = self._get("apps", {"filter[bundleId]": app_identifier, "limit": "1"})
        apps = data.get("data", [])
        if not apps:
            raise AppStoreConnectError(
                f"No App Store Connect app found for {app_identifier}",
                {"app_identifier": app_identifier},
            )
        self._app_ids[app_identifier] = apps[0]["id"]
        return apps[0]["id"]

    def app_url(self, app_identifier: str) -> str:
        return f"https://appstoreconnect.apple.com/apps/{self.app_id(app_identifier)}/testflight/ios"

    def get_processing_state(self, app_identifier: str, build_number: str) -> str:
        data = self._get(
            "builds",
            {
                "filter[app]": self.app_id(app_identifier),
                "filter[version]": str(build_number),
                "limit": "1",
            },
        )
        builds = data.get("data", [])
        if not builds:
            # Freshly uploaded builds take a while to show up
            return UNKNOWN
        return normalize_processing_state(builds[0]["attributes"].get("processingState"))

    def list_recent_builds(self, app_identifier: str, limit: int = 50) -> List[RemoteBuild]:
        data = self._get(
            "builds",
            {
                "filter[app]": self.app_id(app_identifier),
                "sort": "-uploadedDate",
                "limit": str(min(max(limit, 1), 200)),
                "include": "preReleaseVersion",
            },
        )

        versions = {
            item["id"]: item["attributes"].get("version")
            for item in data.get("included", [])
            if item.get("type") == "preReleaseVersions"
        }

        builds = []
        for item in data.get("data", []):
            attrs = item["attributes"]
            pre_release = (
                item.get("relationships", {}).get("preReleaseVersion", {}).get("data") or {}
            )
            builds.append(
                RemoteBuild(
                    version=versions.get(pre_release.get("id"), ""),
                    build_number=attrs.get("version", ""),
                    state=attrs.get("processingState"),
                    uploaded_at=attrs.get("uploadedDate"),
                )
            )
        return builds
