"""
Local bundle archive: file layout, permissions and metadata.
"""
from __future__ import annotations

import json
import stat

import pytest
from cryptography.hazmat.primitives.serialization import pkcs12

from acmev2.crypto import build_bundle, generate_certificate_key
from storage.filesystem import cert_dir, write_bundle_files

DOMAINS = ["www.example.com", "api.example.com"]


@pytest.fixture()
def bundle(issuing_ca):
    key = generate_certificate_key("ec256")
    return build_bundle(issuing_ca.issue(key.public_key(), DOMAINS), key, "pw", DOMAINS)


def test_writes_all_files_under_first_domain(tmp_path, bundle):
    d = write_bundle_files(str(tmp_path), bundle, "https://ca.test/order/1")

    assert d == tmp_path / "www.example.com"
    assert (d / "fullchain.pem").read_text() == bundle.fullchain_pem
    assert (d / "cert.pem").read_text() + (d / "chain.pem").read_text() == bundle.fullchain_pem
    assert "PRIVATE KEY" in (d / "privkey.pem").read_text()
    key, cert, _ = pkcs12.load_key_and_certificates((d / "certificate.pfx").read_bytes(), b"pw")
    assert cert.serial_number == bundle.certificate.serial_number


def test_private_material_is_owner_only(tmp_path, bundle):
    d = write_bundle_files(str(tmp_path), bundle)

    assert stat.S_IMODE((d / "privkey.pem").stat().st_mode) == 0o600
    assert stat.S_IMODE((d / "certificate.pfx").stat().st_mode) == 0o600


def test_metadata_describes_bundle(tmp_path, bundle):
    d = write_bundle_files(str(tmp_path), bundle, "https://ca.test/order/1")
    metadata = json.loads((d / "metadata.json").read_text())

    assert metadata["domains"] == DOMAINS
    assert metadata["serial_number"] == bundle.serial_number
    assert metadata["expires_at"] == bundle.not_after.isoformat()
    assert metadata["acme_order_url"] == "https://ca.test/order/1"


def test_archive_directory_is_named_after_first_domain(tmp_path):
    assert cert_dir(str(tmp_path), "www.example.com") == tmp_path / "www.example.com"
