from unittest.mock import MagicMock

import pytest

from warprelease.src.apple.app_store_connect_api import (
    AppStoreConnectAPI,
    AppStoreConnectError,
)

APPS = {"data": [{"id": "6440000000", "attributes": {"bundleId": "com.example.app"}}]}


def response(status_code=200, data=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data or {}
    resp.text = text
    return resp


@pytest.fixture
def session():
    return MagicMock()


def test_processing_state(session):
    session.get.side_effect = [
        response(data=APPS),
        response(data={"data": [{"attributes": {"processingState": "processing"}}]}),
        response(data={"data": []}),
    ]
    api = AppStoreConnectAPI("token", session=session)

    assert api.get_processing_state("com.example.app", "43") == "PROCESSING"
    assert api.get_processing_state("com.example.app", "44") == "UNKNOWN"
    assert session.get.call_count == 3
    assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer token"


def test_recent_builds_include_marketing_version(session):
    session.get.side_effect = [
        response(data=APPS),
        response(
            data={
                "data": [
                    {
                        "attributes": {
                            "version": "42",
                            "processingState": "VALID",
                            "uploadedDate": "2025-01-01T00:00:00Z",
                        },
                        "relationships": {
                            "preReleaseVersion": {"data": {"type": "preReleaseVersions", "id": "PRV1"}}
                        },
                    }
                ],
                "included": [
                    {"type": "preReleaseVersions", "id": "PRV1", "attributes": {"version": "2.3.1"}}
                ],
            }
        ),
    ]
    builds = AppStoreConnectAPI("token", session=session).list_recent_builds("com.example.app", 500)

    assert len(builds) == 1
    assert builds[0].version == "2.3.1"
    assert builds[0].build == 42
    assert session.get.call_args.kwargs["params"]["limit"] == "200"


def test_unknown_app_and_http_errors(session):
    session.get.return_value = response(data={"data": []})
    with pytest.raises(AppStoreConnectError):
        AppStoreConnectAPI("token", session=session).app_id("com.missing.app")

    session.get.return_value = response(401, text="unauthorized")
    with pytest.raises(AppStoreConnectError) as excinfo:
        AppStoreConnectAPI("token", session=session).list_recent_builds("com.example.app")
    assert excinfo.value.context["status_code"] == 401


def test_app_url(session):
    session.get.return_value = response(data=APPS)
    api = AppStoreConnectAPI("token", session=session)
    assert api.app_url("com.example.app").endswith("/apps/6440000000/testflight/ios")
