"""
Certificate-key generation, SAN CSR creation and bundle packaging.

The certificate key is generated locally and never leaves the process
except inside the passphrase-protected PKCS#12 handed to the gateway.
Account-key operations live in acmev2/jws.py.
"""
from __future__ import annotations

from typing import Literal, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from acmev2.errors import ProtocolError
from acmev2.models import CertificateBundle

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """EC P-256 key (smaller and faster than RSA)."""
    return ec.generate_private_key(ec.SECP256R1())


def generate_certificate_key(key_type: Literal["rsa2048", "ec256"] = "rsa2048") -> PrivateKey:
    if key_type == "ec256":
        return generate_ec_key()
    return generate_rsa_key(2048)


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key to an unencrypted PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def create_csr(private_key: PrivateKey, domains: Sequence[str]) -> bytes:
    """
    Create one DER-encoded CSR covering every domain of the order.

    The first domain becomes the subject CN; all domains, in order, are
    listed as SubjectAlternativeNames.
    """
    if not domains:
        raise ValueError("create_csr needs at least one domain")
    all_domains = list(dict.fromkeys(domains))

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def build_bundle(
    fullchain_pem: str,
    private_key: PrivateKey,
    passphrase: str,
    domains: Sequence[str],
) -> CertificateBundle:
    """
    Decode the downloaded PEM chain and package it with *private_key* as a
    PKCS#12 archive protected by *passphrase*.

    Raises ProtocolError when the chain is empty, undecodable, or its leaf
    does not match the certificate key.
    """
    try:
        certs = x509.load_pem_x509_certificates(fullchain_pem.encode())
    except ValueError as exc:
        raise ProtocolError(0, {"type": "badCertificate", "detail": f"Undecodable certificate chain: {exc}"}) from exc
    if not certs:
        raise ProtocolError(0, {"type": "badCertificate", "detail": "Empty certificate chain"})

    leaf, chain = certs[0], tuple(certs[1:])
    leaf_pub = leaf.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_pub = private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if leaf_pub != key_pub:
        raise ProtocolError(0, {"type": "badCertificate", "detail": "Leaf certificate does not match the certificate key"})

    pfx = pkcs12.serialize_key_and_certificates(
        name=domains[0].encode() if domains else None,
        key=private_key,
        cert=leaf,
        cas=list(chain) or None,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode()),
    )
    return CertificateBundle(
        domains=tuple(domains),
        fullchain_pem=fullchain_pem,
        certificate=leaf,
        chain=chain,
        private_key=private_key,
        pfx=pfx,
        passphrase=passphrase,
    )


def split_pem_chain(bundle: CertificateBundle) -> tuple[str, str]:
    """Return (leaf_pem, chain_pem) for the local archive."""
    leaf = bundle.certificate.public_bytes(serialization.Encoding.PEM).decode()
    chain = "".join(c.public_bytes(serialization.Encoding.PEM).decode() for c in bundle.chain)
    return leaf, chain
