import subprocess
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from conftest import TEAM_ID, make_certificate
from warprelease.src.apple.keychain import (
    KeychainCredentialStore,
    certificate_type_from_common_name,
    parse_openssl_date,
    parse_subject,
)
from warprelease.src.core.errors import ReleaseError

X509_OUTPUT = (
    "serial=5A1B2C3D\n"
    "subject=UID = 7X9, CN = Apple Distribution: Example Inc (ABCD123456), "
    "OU = ABCD123456, O = Example Inc, C = US\n"
    "notAfter=Jan  1 00:00:00 2026 GMT\n"
)

FIND_IDENTITY_OUTPUT = (
    '  1) 0123456789ABCDEF0123456789ABCDEF01234567 '
    '"Apple Distribution: Example Inc (ABCD123456)"\n'
    "     1 valid identities found\n"
)

FIND_CERTIFICATE_OUTPUT = (
    "SHA-256 hash: AA\n"
    "SHA-1 hash: 0123456789ABCDEF0123456789ABCDEF01234567\n"
    "-----BEGIN CERTIFICATE-----\nWITHKEY\n-----END CERTIFICATE-----\n"
    "SHA-256 hash: BB\n"
    "SHA-1 hash: FEDCBA9876543210FEDCBA9876543210FEDCBA98\n"
    "-----BEGIN CERTIFICATE-----\nNOKEY\n-----END CERTIFICATE-----\n"
)


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def test_parsing_helpers():
    subject = parse_subject("subject=CN = Apple Development: Dev (XYZ), OU = ABCD123456")
    assert subject == {"CN": "Apple Development: Dev (XYZ)", "OU": "ABCD123456"}
    assert parse_openssl_date("Jan  1 00:00:00 2026 GMT") == datetime(
        2026, 1, 1, tzinfo=timezone.utc
    )
    assert certificate_type_from_common_name("iPhone Distribution: X") == "distribution"
    assert certificate_type_from_common_name("Apple Development: X") == "development"
    assert certificate_type_from_common_name("Developer ID Application: X") is None


def test_import_reads_certificate_details(tmp_path):
    p12 = tmp_path / "dist.p12"
    p12.write_bytes(b"p12")
    store = KeychainCredentialStore(TEAM_ID)

    with patch.object(
        store,
        "_run",
        side_effect=[
            completed(),  # security import
            completed(),  # set-key-partition-list
            completed("-----BEGIN CERTIFICATE-----"),  # openssl pkcs12
            completed(X509_OUTPUT),  # openssl x509
        ],
    ) as run:
        certificate = store.import_certificate(p12, "secret")

    assert certificate.id == "5A1B2C3D"
    assert certificate.certificate_type == "distribution"
    assert certificate.team_id == TEAM_ID
    assert certificate.expiration_date.year == 2026
    assert run.call_args_list[0].args[0][:3] == ["security", "import", str(p12)]


def test_import_failure_raises(tmp_path):
    p12 = tmp_path / "bad.p12"
    p12.write_bytes(b"p12")
    store = KeychainCredentialStore(TEAM_ID)
    with patch.object(store, "_run", return_value=completed(returncode=1, stderr="bad password")):
        with pytest.raises(ReleaseError):
            store.import_certificate(p12, "wrong")

    with pytest.raises(ReleaseError):
        store.import_certificate(tmp_path / "absent.p12", "secret")


def test_private_key_lookup_matches_serial_not_name():
    def run(args, input=None):
        if args[:2] == ["security", "find-identity"]:
            return completed(FIND_IDENTITY_OUTPUT)
        if args[:2] == ["security", "find-certificate"]:
            return completed(FIND_CERTIFICATE_OUTPUT)
        if args[:2] == ["openssl", "x509"]:
            return completed("serial=05A1B2C3D\n" if "WITHKEY" in input else "serial=77EE\n")
        raise AssertionError(args)

    name = "Apple Distribution: Example Inc (ABCD123456)"
    with_key = replace(
        make_certificate("CERT1", "distribution"), name=name, serial_number="5A:1B:2C:3D"
    )
    without_key = replace(
        make_certificate("CERT2", "distribution"), name=name, serial_number="77EE"
    )
    store = KeychainCredentialStore(TEAM_ID)

    with patch.object(store, "_run", side_effect=run) as runner:
        assert store.has_private_key(with_key)
        assert not store.has_private_key(without_key)

    pems = [c.kwargs["input"] for c in runner.call_args_list if c.args[0][0] == "openssl"]
    assert pems and all("WITHKEY" in pem for pem in pems)


def test_keychain_is_scoped_to_team():
    store = KeychainCredentialStore(TEAM_ID)
    assert store.keychain == "warprelease-abcd123456.keychain"
    with pytest.raises(ValueError):
        store.export_certificate(
            make_certificate("X", team_id="WXYZ987654"), "secret", "/tmp/x.p12"
        )
    with pytest.raises(ValueError):
        KeychainCredentialStore("short")


def test_setup_registers_keychain():
    store = KeychainCredentialStore(TEAM_ID)
    with patch.object(
        store,
        "_run",
        side_effect=[
            completed(),
            completed(),
            completed(),
            completed('    "/Users/ci/Library/Keychains/login.keychain-db"\n'),
            completed(),
        ],
    ) as run:
        store.setup()

    assert run.call_args_list[-1].args[0] == [
        "security",
        "list-keychains",
        "-d",
        "user",
        "-s",
        "/Users/ci/Library/Keychains/login.keychain-db",
        store.keychain,
    ]
