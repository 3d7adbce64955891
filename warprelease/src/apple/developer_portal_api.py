from typing import Any, Dict, List, Optional, Sequence

import requests

from warprelease.logger import get_console
from warprelease.src.core.errors import (
    CannotCreateError,
    ProfileCreationFailedError,
    ReleaseError,
)
from warprelease.src.core.ports import SigningAuthorityPort
from warprelease.src.models.certificate import DEVELOPMENT, Certificate
from warprelease.src.models.provisioning_profile import (
    AD_HOC_PROFILE,
    APP_STORE_PROFILE,
    DEVELOPMENT_PROFILE,
    ProvisioningProfile,
)

console = get_console()

BASE_URL = "https://developer.apple.com/services-account/v1"
DOWNLOAD_URL = "https://developer.apple.com/services-account/QH65B2/account/ios/profile/downloadProfileContent"
REGEN_URL = "https://developer.apple.com/services-account/QH65B2/account/ios/profile/regenProvisioningProfile.action"

PORTAL_CERTIFICATE_TYPES = {
    DEVELOPMENT: "DEVELOPMENT",
    "distribution": "DISTRIBUTION",
}

PORTAL_PROFILE_TYPES = {
    DEVELOPMENT_PROFILE: "IOS_APP_DEVELOPMENT",
    APP_STORE_PROFILE: "IOS_APP_STORE",
    AD_HOC_PROFILE: "IOS_APP_ADHOC",
}

# Values regenProvisioningProfile.action expects for distributionType
REGEN_DISTRIBUTION_TYPES = {
    DEVELOPMENT_PROFILE: "limited",
    AD_HOC_PROFILE: "adhoc",
    APP_STORE_PROFILE: "store",
}


class PortalRequestError(ReleaseError):
    kind = "PortalRequestFailed"


class DeveloperPortalAPI(SigningAuthorityPort):
    """Apple Developer Portal client backed by an authenticated web session.

    ``session`` is a ``requests.Session`` that already carries the portal
    cookies; ``csrf``/``csrf_ts`` are only needed for the legacy profile
    endpoints. Creating certificates needs the PEM content of a CSR.
    """

    def __init__(
        self,
        session: requests.Session,
        csrf: Optional[str] = None,
        csrf_ts: Optional[str] = None,
        csr_content: Optional[str] = None,
    ):
        self.session = session
        self.csrf = csrf
        self.csrf_ts = csrf_ts
        self.csr_content = csr_content
        self.default_headers = {
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.5",
            "Content-Type": "application/vnd.api+json",
            "X-Requested-With": "XMLHttpRequest",
            "X-HTTP-Method-Override": "GET",
        }
        # certificate/profile id -> team id, for the endpoints keyed by id only
        self._owners: Dict[str, str] = {}

    def _headers(self, method_override: Optional[str] = "GET") -> Dict[str, str]:
        headers = self.default_headers.copy()
        if method_override:
            headers["X-HTTP-Method-Override"] = method_override
        else:
            headers.pop("X-HTTP-Method-Override", None)
        if self.csrf:
            headers["csrf"] = self.csrf
            headers["csrf_ts"] = str(self.csrf_ts)
        return headers

    def _report_failure(self, what: str, response: requests.Response) -> str:
        console.print(f"[red]Failed to {what}: {response.status_code}")
        console.print(f"[red]Error response: {response.text}")
        return f"{response.status_code} {response.text}".strip()

    def _request(self, what: str, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return getattr(self.session, method)(url, **kwargs)
        except requests.RequestException as e:
            console.print(f"[red]Failed to {what}: {e}")
            raise PortalRequestError(
                f"Developer Portal request to {what} failed: {e}",
                {"url": url, "exception": e.__class__.__name__},
            ) from e

    def _query(self, resource: str, team_id: str, query: str) -> Dict[str, Any]:
        response = self._request(
            f"fetch {resource}",
            "post",
            f"{BASE_URL}/{resource}",
            json={"urlEncodedQueryParams": query, "teamId": team_id},
            headers=self._headers("GET"),
        )
        if response.status_code != 200:
            reason = self._report_failure(f"fetch {resource}", response)
            raise PortalRequestError(
                f"Developer Portal request for {resource} failed: {reason}",
                {"team_id": team_id, "status_code": response.status_code},
            )
        return response.json()

    def list_certificates(self, team_id: str, certificate_type: str) -> List[Certificate]:
        console.print(f"[blue]Fetching {certificate_type} certificates for team {team_id}...")
        data = self._query(
            "certificates",
            team_id,
            f"limit=1000&sort=displayName&filter[certificateType]="
            f"{PORTAL_CERTIFICATE_TYPES.get(certificate_type, certificate_type.upper())}",
        )

        certificates = []
        for cert in data.get("data", []):
            try:
                certificate = Certificate.from_portal_data(cert, team_id=team_id)
            except (KeyError, ValueError) as e:
                console.print(f"[yellow]Skipping unreadable certificate {cert.get('id')}: {e}")
                continue
            self._owners[certificate.id] = team_id
            certificates.append(certificate)

        console.print(f"[green]Found {len(certificates)} certificates")
        return certificates

    def create_certificate(self, team_id: str, certificate_type: str) -> Certificate:
        if not self.csr_content:
            raise CannotCreateError(
                "A certificate signing request is required to create certificates",
                {"team_id": team_id, "certificate_type": certificate_type},
            )

        console.print(f"[blue]Requesting {certificate_type} certificate for team {team_id}...")
        payload = {
            "data": {
                "type": "certificates",
                "attributes": {
                    "certificateType": PORTAL_CERTIFICATE_TYPES[certificate_type],
                    "csrContent": self.csr_content,
                    "teamId": team_id,
                },
            }
        }
        response = self._request(
            "create certificate",
            "post",
            f"{BASE_URL}/certificates",
            json=payload,
            headers=self._headers(None),
        )
        if response.status_code not in (200, 201):
            reason = self._report_failure("create certificate", response)
            raise CannotCreateError(
                f"Certificate creation failed: {reason}",
                {"team_id": team_id, "status_code": response.status_code},
            )

        certificate = Certificate.from_portal_data(response.json()["data"], team_id=team_id)
        self._owners[certificate.id] = team_id
        return certificate

    def revoke_certificate(self, certificate_id: str) -> bool:
        console.print(f"[blue]Revoking certificate {certificate_id}...")
        payload = {"teamId": self._owners.get(certificate_id)}
        response = self._request(
            "revoke certificate",
            "post",
            f"{BASE_URL}/certificates/{certificate_id}",
            json=payload,
            headers=self._headers("DELETE"),
        )
        if response.status_code not in (200, 204):
            self._report_failure("revoke certificate", response)
            return False
        self._owners.pop(certificate_id, None)
        return True

    def list_devices(self, team_id: str) -> List[str]:
        console.print(f"[blue]Fetching devices for team {team_id}...")
        data = self._query(
            "devices", team_id, "limit=1000&offset=0&filter[status]=ENABLED"
        )
        device_ids = [
            device["id"]
            for device in data.get("data", [])
            if device.get("attributes", {}).get("deviceClass") in ("IPHONE", "IPAD")
        ]
        console.print(
            f"[green]Found {len(data.get('data', []))} devices (showing {len(device_ids)})"
        )
        return device_ids

    def list_profiles(self, team_id: str) -> List[ProvisioningProfile]:
        console.print(f"[blue]Fetching profiles for team {team_id}...")
        data = self._query(
            "profiles",
            team_id,
            "limit=1000&include=bundleId,certificates,devices&sort=name",
        )

        bundle_ids = {
            item["id"]: item["attributes"]["identifier"]
            for item in data.get("included", [])
            if item.get("type") == "bundleIds"
        }

        profiles = []
        for item in data.get("data", []):
            try:
                profile = self._profile_from_resource(item, team_id, bundle_ids)
            except (KeyError, ValueError) as e:
                console.print(f"[yellow]Skipping unreadable profile {item.get('id')}: {e}")
                continue
            profiles.append(profile)

        console.print(
            f"[green]Found {len(data.get('data', []))} profiles (showing {len(profiles)})"
        )
        return profiles

    def _profile_from_resource(
        self, item: Dict[str, Any], team_id: str, bundle_ids: Dict[str, str]
    ) -> ProvisioningProfile:
        attrs = item["attributes"]
        relationships = item.get("relationships", {})

        def related_ids(name: str) -> List[str]:
            return [r["id"] for r in (relationships.get(name, {}).get("data") or [])]

        bundle_ref = (relationships.get("bundleId", {}).get("data") or {}).get("id")
        profile = ProvisioningProfile(
            id=item["id"],
            name=attrs["name"],
            profile_type=attrs.get("profileType") or attrs.get("profileTypeLabel"),
            app_identifier=bundle_ids.get(bundle_ref) or attrs.get("bundleIdIdentifier"),
            team_id=team_id,
            expiration_date=attrs["expirationDate"],
            certificate_ids=related_ids("certificates"),
            device_ids=related_ids("devices"),
            created_date=attrs.get("createdDate"),
            platform=attrs.get("platform") or "ios",
        )
        self._owners[profile.id] = team_id
        return profile

    def _bundle_resource_id(self, team_id: str, identifier: str) -> str:
        data = self._query("bundleIds", team_id, f"filter[identifier]={identifier}")
        match = next(
            (
                b
                for b in data.get("data", [])
                if b["attributes"]["identifier"] == identifier
            ),
            None,
        )
        if match is None:
            raise ProfileCreationFailedError(
                f"Bundle ID {identifier} is not registered for team {team_id}",
                {"app_identifier": identifier, "team_id": team_id, "reason": "unknown bundle id"},
            )
        return match["id"]

    def create_profile(
        self,
        app_identifier: str,
        certificates: Sequence[Certificate],
        team_id: str,
        profile_type: str,
        device_ids: Sequence[str] = (),
    ) -> ProvisioningProfile:
        name = f"warprelease {app_identifier} {profile_type}"
        console.print(f"[blue]Creating {profile_type} profile:[/] {name}")
        console.print(f"[cyan]Using {len(device_ids)} iOS devices")

        bundle_resource_id = self._bundle_resource_id(team_id, app_identifier)
        relationships = {
            "bundleId": {"data": {"type": "bundleIds", "id": bundle_resource_id}},
            "certificates": {
                "data": [{"type": "certificates", "id": c.id} for c in certificates]
            },
        }
        if device_ids:
            relationships["devices"] = {
                "data": [{"type": "devices", "id": d} for d in device_ids]
            }

        payload = {
            "data": {
                "type": "profiles",
                "attributes": {
                    "name": name,
                    "profileType": PORTAL_PROFILE_TYPES[profile_type],
                    "teamId": team_id,
                },
                "relationships": relationships,
            }
        }
        response = self._request(
            "create profile",
            "post",
            f"{BASE_URL}/profiles",
            json=payload,
            headers=self._headers(None),
        )
        if response.status_code not in (200, 201):
            reason = self._report_failure("create profile", response)
            raise ProfileCreationFailedError(
                f"Profile creation for {app_identifier} failed: {reason}",
                {
                    "app_identifier": app_identifier,
                    "team_id": team_id,
                    "status_code": response.status_code,
                    "reason": response.text,
                },
            )

        item = response.json()["data"]
        return self._profile_from_resource(item, team_id, {bundle_resource_id: app_identifier})

    def regenerate_profile(
        self,
        profile: ProvisioningProfile,
        certificates: Sequence[Certificate],
        device_ids: Sequence[str] = (),
    ) -> ProvisioningProfile:
        console.print(f"[blue]Regenerating {profile.profile_type} profile:[/] {profile.name}")
        bundle_resource_id = self._bundle_resource_id(profile.team_id, profile.app_identifier)
        payload = {
            "appIdId": bundle_resource_id,
            "provisioningProfileId": profile.id,
            "distributionType": REGEN_DISTRIBUTION_TYPES[profile.profile_type],
            "provisioningProfileName": profile.name,
            "certificateIds": ",".join(c.id for c in certificates),
            "deviceIds": ",".join(device_ids),
            "teamId": profile.team_id,
            "returnFullObjects": "false",
        }
        headers = {
            "Accept": "application/json, text/javascript, */*; q=0.01",
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Requested-With": "XMLHttpRequest",
            "csrf": self.csrf or "",
            "csrf_ts": str(self.csrf_ts or ""),
        }
        response = self._request(
            "regenerate profile", "post", REGEN_URL, data=payload, headers=headers
        )
        if response.status_code != 200:
            reason = self._report_failure("regenerate profile", response)
            raise ProfileCreationFailedError(
                f"Profile regeneration failed: {reason}",
                {"profile_id": profile.id, "reason": response.text},
            )

        data = response.json()
        if data.get("resultCode") != 0:
            console.print(f"[red]API error: {data}")
            raise ProfileCreationFailedError(
                f"Profile regeneration failed: {data.get('userString') or data}",
                {"profile_id": profile.id, "reason": str(data)},
            )

        profile_data = data.get("provisioningProfile", {})
        return profile.refreshed(
            certificate_ids=[c.id for c in certificates],
            expiration_date=profile_data.get("dateExpire") or profile.expiration_date,
            device_ids=device_ids,
        )

    def delete_profile(self, profile_id: str) -> bool:
        console.print(f"[blue]Deleting profile {profile_id}...")
        response = self._request(
            "delete profile",
            "post",
            f"{BASE_URL}/profiles/{profile_id}",
            json={"teamId": self._owners.get(profile_id)},
            headers=self._headers("DELETE"),
        )
        if response.status_code not in (200, 204):
            self._report_failure("delete profile", response)
            return False
        self._owners.pop(profile_id, None)
        return True

    def download_profile(self, profile: ProvisioningProfile) -> bytes:
        console.print(f"[blue]Downloading provisioning profile {profile.id}...")
        response = self._request(
            "download profile",
            "get",
            DOWNLOAD_URL,
            params={"teamId": profile.team_id, "provisioningProfileId": profile.id},
            headers={"Accept": "*/*", "X-Requested-With": "XMLHttpRequest"},
        )
        if response.status_code != 200:
            reason = self._report_failure("download profile", response)
            raise PortalRequestError(
                f"Profile download failed: {reason}",
                {"profile_id": profile.id, "status_code": response.status_code},
            )
        return response.content
