"""
Account key, JWK thumbprint, key-authorization and JWS helpers (RFC 8555,
RFC 7638) built on *josepy* and *cryptography*.

Account-key persistence lives here; certificate-key and CSR handling live
in acmev2/crypto.py.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA

from storage.atomic import atomic_write_bytes

logger = logging.getLogger(__name__)


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))


def save_account_key(jwk: JWKRSA, path: str) -> None:
    """Persist the account key as unencrypted PKCS8 PEM, mode 0600."""
    pem = jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    atomic_write_bytes(Path(path), pem, mode=0o600)


def load_account_key(path: str) -> JWKRSA:
    pem = Path(path).read_bytes()
    return JWKRSA(key=serialization.load_pem_private_key(pem, password=None))


def load_or_create_account_key(path: Optional[str]) -> JWKRSA:
    """
    Reuse the key at *path* when it exists, otherwise generate one and save
    it there.  With no path the key lives only for this run.
    """
    if path and Path(path).exists():
        logger.info("Loading existing account key from %s", path)
        return load_account_key(path)

    key = generate_account_key()
    if path:
        save_account_key(key, path)
        logger.info("Generated new account key at %s", path)
    else:
        logger.info("Generated ephemeral account key")
    return key


# ─── Thumbprint & key authorization ───────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """Base64url SHA-256 JWK thumbprint of the public key (RFC 7638)."""
    return b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return ``token + "." + thumbprint``, the http-01 response body."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


def public_jwk(jwk: JWKRSA) -> dict:
    pub = jwk.public_key().fields_to_partial_json()
    pub["kty"] = "RSA"
    return pub


# ─── JWS signing ─────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request and return the flattened JWS to POST.

    Without *account_url* the protected header embeds the public JWK
    (newAccount); otherwise it carries ``kid``.  A None payload produces the
    empty string used for POST-as-GET.
    """
    header: dict[str, Any] = {"alg": "RS256", "nonce": nonce, "url": url}
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = public_jwk(account_key)

    protected = b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {"protected": protected, "payload": payload_b64, "signature": b64url(signature)}


def create_eab_jws(
    account_jwk: JWKRSA,
    eab_kid: str,
    eab_hmac_key_b64url: str,
    new_account_url: str,
) -> dict:
    """
    Build the External Account Binding inner JWS (RFC 8555 section 7.3.4):
    the account public JWK signed with HS256 under the CA-issued MAC key.

    Raises ValueError for an empty kid, a key that is not base64url, or a
    decoded key shorter than 16 bytes.
    """
    if not eab_kid or not eab_kid.strip():
        raise ValueError("EAB key ID cannot be empty")
    if not eab_hmac_key_b64url or not eab_hmac_key_b64url.strip():
        raise ValueError("EAB HMAC key cannot be empty")

    try:
        hmac_key = b64url_decode(eab_hmac_key_b64url)
    except Exception as exc:
        raise ValueError(f"EAB HMAC key is not valid base64url: {exc!s}") from exc

    if len(hmac_key) < 16:
        raise ValueError(f"EAB HMAC key is too short: {len(hmac_key)} bytes (minimum 16)")

    protected = b64url(json.dumps({"alg": "HS256", "kid": eab_kid, "url": new_account_url}).encode())
    payload = b64url(json.dumps(public_jwk(account_jwk)).encode())
    mac = hmac.new(hmac_key, f"{protected}.{payload}".encode(), hashlib.sha256).digest()

    return {"protected": protected, "payload": payload, "signature": b64url(mac)}


# ─── Base64url ───────────────────────────────────────────────────────────────


def b64url(data: bytes) -> str:
    """URL-safe base64 with no padding, as JOSE requires."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64url_decode(s: str) -> bytes:
    pad = 4 - len(s) % 4
    if pad != 4:
        s += "=" * pad
    return base64.urlsafe_b64decode(s)
