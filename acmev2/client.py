"""
ACME v2 issuance state machine (RFC 8555).

``AcmeClient`` drives one certificate issuance: account registration,
order creation, authorization retrieval, http-01 challenge signalling,
finalization and certificate download.  Each operation takes and returns
explicit ``Order`` / ``Authorization`` / ``Challenge`` snapshots; the only
state kept on the instance is the account (key + URL) and the record of
challenges already signalled.

All network I/O goes through ``AcmeTransport`` which serializes nonce use.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator, Optional

from josepy.jwk import JWKRSA

from acmev2 import jws as jwslib
from acmev2.crypto import PrivateKey, build_bundle, create_csr
from acmev2.errors import ProtocolError, StateError, UnsupportedChallengeError
from acmev2.models import (
    HTTP01,
    Authorization,
    CertificateBundle,
    Challenge,
    Order,
    parse_retry_after,
    validate_domains,
)
from acmev2.transport import AcmeTransport

logger = logging.getLogger(__name__)


class AcmeClient:
    def __init__(
        self,
        transport: AcmeTransport,
        account_key_path: Optional[str] = None,
        eab_key_id: str = "",
        eab_hmac_key: str = "",
        account_key: Optional[JWKRSA] = None,
    ) -> None:
        self.transport = transport
        self.account_key_path = account_key_path
        self.eab_key_id = eab_key_id
        self.eab_hmac_key = eab_hmac_key
        self._account_key = account_key
        self.account_url: Optional[str] = None
        self._signal_lock = threading.Lock()
        self._signalled: dict[str, Challenge] = {}

    # ── Account ───────────────────────────────────────────────────────────

    @property
    def account_key(self) -> JWKRSA:
        if self._account_key is None or not self.account_url:
            raise StateError("register_account() must succeed before signed requests")
        return self._account_key

    def register_account(self, contact_email: str = "") -> JWKRSA:
        """
        POST /newAccount agreeing to the terms of service.

        Reuses the key at ``account_key_path`` when present; the CA answers
        with the existing account for a known key.  Raises ProtocolError when
        the contact is malformed or the CA rejects the registration.
        """
        if contact_email and (" " in contact_email or contact_email.count("@") != 1):
            raise ProtocolError(
                0,
                {
                    "type": "urn:ietf:params:acme:error:invalidContact",
                    "detail": f"Malformed contact email: {contact_email!r}",
                },
            )

        if self._account_key is None:
            self._account_key = jwslib.load_or_create_account_key(self.account_key_path)

        new_account_url = self.transport.endpoint("newAccount")
        payload: dict = {"termsOfServiceAgreed": True}
        if contact_email:
            payload["contact"] = [f"mailto:{contact_email}"]
        if self.eab_key_id and self.eab_hmac_key:
            payload["externalAccountBinding"] = jwslib.create_eab_jws(
                self._account_key, self.eab_key_id, self.eab_hmac_key, new_account_url
            )

        resp = self.transport.post(new_account_url, payload, self._account_key)
        body = resp.json() if resp.content else {}
        if body.get("status", "valid") != "valid":
            raise ProtocolError(resp.status_code, {"type": "accountNotValid", "detail": f"Account status is {body['status']}"})

        self.account_url = resp.headers.get("Location", "")
        if not self.account_url:
            raise ProtocolError(resp.status_code, {"detail": "newAccount response has no Location header"})

        logger.info(
            "%s ACME account %s", "Registered" if resp.status_code == 201 else "Reusing", self.account_url
        )
        return self._account_key

    # ── Orders & authorizations ───────────────────────────────────────────

    def create_order(self, domains: Iterable[str]) -> Order:
        """
        POST /newOrder for *domains* in the given order.

        Empty, malformed or duplicate input raises DomainError before any
        network call; CA-side rejections raise ProtocolError.
        """
        names = validate_domains(domains)
        payload = {"identifiers": [{"type": "dns", "value": d} for d in names]}
        resp = self.transport.post(self.transport.endpoint("newOrder"), payload, self.account_key, self.account_url)

        order_url = resp.headers.get("Location", "")
        if not order_url:
            raise ProtocolError(resp.status_code, {"detail": "newOrder response has no Location header"})
        order = Order.from_json(order_url, resp.json(), parse_retry_after(resp.headers.get("Retry-After")))
        logger.info("Order %s created for %s (%s)", order.url, ", ".join(names), order.status)
        return order

    def get_order(self, order: Order) -> Order:
        """POST-as-GET the order URL and return a fresh snapshot."""
        resp = self.transport.post(order.url, None, self.account_key, self.account_url)
        return Order.from_json(order.url, resp.json(), parse_retry_after(resp.headers.get("Retry-After")))

    def get_authorization(self, url: str) -> Authorization:
        resp = self.transport.post(url, None, self.account_key, self.account_url)
        return Authorization.from_json(url, resp.json(), parse_retry_after(resp.headers.get("Retry-After")))

    def fetch_authorizations(self, order: Order) -> Iterator[Authorization]:
        """Yield one authorization per identifier of *order*, fetched lazily."""
        for url in order.authorization_urls:
            yield self.get_authorization(url)

    # ── Challenges ────────────────────────────────────────────────────────

    @staticmethod
    def select_challenge(authorization: Authorization, challenge_type: str = HTTP01) -> Challenge:
        for challenge in authorization.challenges:
            if challenge.type == challenge_type:
                return challenge
        raise UnsupportedChallengeError(
            authorization.domain, challenge_type, [c.type for c in authorization.challenges]
        )

    def key_authorization(self, challenge: Challenge) -> str:
        return jwslib.compute_key_authorization(challenge.token, self.account_key)

    def signal_challenge_ready(self, challenge: Challenge) -> Challenge:
        """
        POST ``{}`` to the challenge URL so the CA starts validation.

        Idempotent: a challenge already signalled in this session, or one the
        CA no longer reports as pending, is returned without another POST.
        """
        with self._signal_lock:
            if challenge.url in self._signalled:
                logger.debug("Challenge %s already signalled", challenge.url)
                return self._signalled[challenge.url]
            if challenge.status != "pending":
                logger.debug("Challenge %s is %s - not signalling", challenge.url, challenge.status)
                return challenge

            resp = self.transport.post(challenge.url, {}, self.account_key, self.account_url)
            updated = Challenge.from_json({"type": challenge.type, "token": challenge.token, "url": challenge.url, **resp.json()})
            self._signalled[challenge.url] = updated
            logger.info("Signalled challenge %s (%s)", challenge.url, updated.status)
            return updated

    # ── Finalization & download ───────────────────────────────────────────

    def finalize_order(self, order: Order, certificate_key: PrivateKey) -> Order:
        """
        Submit one CSR covering every identifier of *order*.

        Requires ``order.status == "ready"``; raises StateError otherwise.
        """
        if order.status != "ready":
            raise StateError(f"Cannot finalize order {order.url} in status {order.status!r}")

        csr_der = create_csr(certificate_key, order.identifiers)
        resp = self.transport.post(
            order.finalize_url, {"csr": jwslib.b64url(csr_der)}, self.account_key, self.account_url
        )
        updated = Order.from_json(order.url, resp.json(), parse_retry_after(resp.headers.get("Retry-After")))
        logger.info("Finalized order %s (%s)", order.url, updated.status)
        return updated

    def download_certificate(
        self,
        order: Order,
        certificate_key: PrivateKey,
        passphrase: str,
    ) -> CertificateBundle:
        """
        POST-as-GET the certificate URL and decode the PEM chain into a
        passphrase-protected bundle.

        Requires ``order.status == "valid"`` and a certificate URL.
        """
        if order.status != "valid" or not order.certificate_url:
            raise StateError(
                f"Cannot download certificate for order {order.url} "
                f"(status={order.status!r}, certificate={order.certificate_url!r})"
            )

        resp = self.transport.post(
            order.certificate_url, None, self.account_key, self.account_url,
            accept="application/pem-certificate-chain",
        )
        bundle = build_bundle(resp.text, certificate_key, passphrase, order.identifiers)
        logger.info(
            "Downloaded certificate serial %s for %s (expires %s)",
            bundle.serial_number, ", ".join(order.identifiers), bundle.not_after.isoformat(),
        )
        return bundle


def make_client() -> AcmeClient:
    """
    Create an AcmeClient from the current application settings.
    Late-imports config to avoid circular imports at module load time.
    """
    from config import settings  # noqa: PLC0415

    transport = AcmeTransport(
        directory_url=settings.ACME_DIRECTORY_URL,
        timeout=settings.ACME_REQUEST_TIMEOUT,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
        max_attempts=settings.TRANSPORT_MAX_ATTEMPTS,
    )
    return AcmeClient(
        transport,
        account_key_path=settings.ACCOUNT_KEY_PATH or None,
        eab_key_id=settings.ACME_EAB_KEY_ID,
        eab_hmac_key=settings.ACME_EAB_HMAC_KEY,
    )
