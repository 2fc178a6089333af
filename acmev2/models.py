"""
Local mirrors of the CA-side ACME objects (RFC 8555 section 7.1).

The CA owns Order / Authorization / Challenge state; these frozen
dataclasses are snapshots returned by each fetch so the orchestrator can
thread explicit values between stages instead of sharing mutable state.
"""
from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from acmev2.errors import DomainError

ORDER_STATUSES = frozenset({"pending", "ready", "processing", "valid", "invalid"})
AUTHZ_TERMINAL = frozenset({"valid", "invalid", "expired", "revoked", "deactivated"})

HTTP01 = "http-01"
CHALLENGE_PATH_PREFIX = ".well-known/acme-challenge/"

_LABEL_RE = re.compile(r"(?!-)[a-z0-9-]{1,63}(?<!-)")


def validate_domains(domains: Iterable[str]) -> list[str]:
    """
    Return *domains* as a list after checking it is a non-empty ordered set
    of syntactically valid DNS names.  Order and spelling are preserved, so
    names are checked exactly as they will be sent: surrounding whitespace
    and a trailing root dot are rejected.

    Raises DomainError on empty input, malformed names or duplicates
    (compared case-insensitively).
    """
    result = list(domains)
    if not result:
        raise DomainError("At least one domain is required")

    seen: set[str] = set()
    for domain in result:
        name = domain.lower()
        if not name or len(name) > 253 or not all(_LABEL_RE.fullmatch(p) for p in name.split(".")):
            raise DomainError(f"Invalid domain name: {domain!r}")
        if name.count(".") < 1:
            raise DomainError(f"Domain must be fully qualified: {domain!r}")
        if name in seen:
            raise DomainError(f"Duplicate domain: {domain!r}")
        seen.add(name)
    return result


def challenge_path(token: str) -> str:
    """Store path at which the key authorization for *token* is served."""
    return f"{CHALLENGE_PATH_PREFIX}{token}"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a ``Retry-After`` header into seconds from now.

    Handles delta-seconds and HTTP-date forms; returns None when absent or
    unparseable.  Dates in the past yield 0.
    """
    if not value:
        return None
    try:
        return max(0.0, float(int(value.strip())))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    delta = (when - datetime.datetime.now(tz=datetime.timezone.utc)).total_seconds()
    return max(0.0, delta)


@dataclass(frozen=True)
class Challenge:
    type: str
    url: str
    token: str
    status: str = "pending"
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, body: dict) -> "Challenge":
        return cls(
            type=body.get("type", ""),
            url=body.get("url", ""),
            token=body.get("token", ""),
            status=body.get("status", "pending"),
            error=body.get("error"),
        )


@dataclass(frozen=True)
class Authorization:
    url: str
    domain: str
    status: str
    challenges: tuple[Challenge, ...] = ()
    retry_after: Optional[float] = None

    @classmethod
    def from_json(cls, url: str, body: dict, retry_after: Optional[float] = None) -> "Authorization":
        return cls(
            url=url,
            domain=body.get("identifier", {}).get("value", ""),
            status=body.get("status", "pending"),
            challenges=tuple(Challenge.from_json(c) for c in body.get("challenges", [])),
            retry_after=retry_after,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in AUTHZ_TERMINAL

    def failure_detail(self) -> Optional[dict]:
        """Return the first challenge error problem document, if any."""
        for challenge in self.challenges:
            if challenge.error:
                return challenge.error
        return None


@dataclass(frozen=True)
class Order:
    url: str
    status: str
    identifiers: tuple[str, ...]
    authorization_urls: tuple[str, ...]
    finalize_url: str
    certificate_url: Optional[str] = None
    error: Optional[dict] = None
    retry_after: Optional[float] = None

    @classmethod
    def from_json(cls, url: str, body: dict, retry_after: Optional[float] = None) -> "Order":
        return cls(
            url=url,
            status=body.get("status", "pending"),
            identifiers=tuple(i.get("value", "") for i in body.get("identifiers", [])),
            authorization_urls=tuple(body.get("authorizations", [])),
            finalize_url=body.get("finalize", ""),
            certificate_url=body.get("certificate") or None,
            error=body.get("error"),
            retry_after=retry_after,
        )


@dataclass(frozen=True)
class CertificateBundle:
    """
    The issued chain plus the locally generated key, packaged for the gateway.

    ``pfx`` is the PKCS#12 archive protected by ``passphrase``; the PEM
    fields are kept for the local archive.
    """

    domains: tuple[str, ...]
    fullchain_pem: str
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...]
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey = field(repr=False)
    pfx: bytes = field(repr=False)
    passphrase: str = field(repr=False)

    @property
    def not_after(self) -> datetime.datetime:
        try:
            return self.certificate.not_valid_after_utc
        except AttributeError:
            return self.certificate.not_valid_after.replace(tzinfo=datetime.timezone.utc)

    @property
    def serial_number(self) -> str:
        return format(self.certificate.serial_number, "x")
