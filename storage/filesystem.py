"""
Local archive of issued certificate bundles.

Directory layout per certificate (named after its first domain):
  <CERT_STORE_PATH>/<domain>/
      cert.pem          - leaf certificate
      chain.pem         - intermediate chain
      fullchain.pem     - leaf + chain, as issued
      privkey.pem       - certificate private key (mode 0o600)
      certificate.pfx   - PKCS#12 bundle as installed on the gateway (0o600)
      metadata.json     - domains, serial, expiry, order URL

All writes are atomic: temp file + fsync + rename.  The PFX passphrase is
never written to disk.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from acmev2.crypto import private_key_to_pem, split_pem_chain
from acmev2.models import CertificateBundle
from storage.atomic import atomic_write_bytes, atomic_write_text

logger = logging.getLogger(__name__)

_PRIVATE = 0o600


def cert_dir(cert_store_path: str, domain: str) -> Path:
    return Path(cert_store_path) / domain


def write_bundle_files(cert_store_path: str, bundle: CertificateBundle, order_url: str = "") -> Path:
    """
    Archive *bundle* under the directory of its first domain.

    Returns the directory written.  Raises OSError if any file cannot be
    written.
    """
    d = cert_dir(cert_store_path, bundle.domains[0])
    leaf_pem, chain_pem = split_pem_chain(bundle)

    atomic_write_text(d / "cert.pem", leaf_pem)
    atomic_write_text(d / "chain.pem", chain_pem)
    atomic_write_text(d / "fullchain.pem", bundle.fullchain_pem)
    atomic_write_text(d / "privkey.pem", private_key_to_pem(bundle.private_key), mode=_PRIVATE)
    atomic_write_bytes(d / "certificate.pfx", bundle.pfx, mode=_PRIVATE)

    metadata = {
        "domains": list(bundle.domains),
        "serial_number": bundle.serial_number,
        "issued_at": datetime.now(tz=timezone.utc).isoformat(),
        "expires_at": bundle.not_after.isoformat(),
        "acme_order_url": order_url,
    }
    atomic_write_text(d / "metadata.json", json.dumps(metadata, indent=2))

    logger.info("Archived certificate %s for %s in %s", bundle.serial_number, ", ".join(bundle.domains), d)
    return d
