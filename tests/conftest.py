"""
Shared pytest fixtures.

Fakes
-----
FakeCA              in-process stand-in for AcmeClient with scripted
                    authorization / order transitions; issues real X.509
                    chains so bundle packaging is exercised end to end.
FakeChallengeStore  in-memory ChallengeStore with failure injection.
FakeGatewayProvider in-memory gateway with named certificate slots.
FakeClock           virtual monotonic clock whose sleep() advances time and
                    records every requested delay.
"""
from __future__ import annotations

import datetime
import threading
from collections import defaultdict
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from acmev2 import jws as jwslib
from acmev2.client import AcmeClient
from acmev2.crypto import build_bundle
from acmev2.errors import StateError, TransientError
from acmev2.models import Authorization, Challenge, Order
from acmev2.poll import Deadline, PollController
from challenge.provisioner import ChallengeProvisioner
from challenge.store import ChallengeStore
from gateway.installer import GatewayInstaller
from gateway.provider import GatewayProvider
from rotation.context import RotationContext

PASSPHRASE = "correct-horse-battery"


# ─── Key material ─────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def account_key():
    return jwslib.generate_account_key(key_size=2048)


class IssuingCA:
    """Self-signed issuing CA used to mint leaf certificates for tests."""

    def __init__(self) -> None:
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")])
        now = datetime.datetime.now(tz=datetime.timezone.utc)
        self.name = name
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self.key, hashes.SHA256())
        )

    def issue(self, public_key, domains, days: int = 90) -> str:
        """Return leaf + issuer as a PEM fullchain."""
        now = datetime.datetime.now(tz=datetime.timezone.utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
            .issuer_name(self.name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
            .sign(self.key, hashes.SHA256())
        )
        return (leaf.public_bytes(Encoding.PEM) + self.cert.public_bytes(Encoding.PEM)).decode()


@pytest.fixture(scope="session")
def issuing_ca() -> IssuingCA:
    return IssuingCA()


# ─── Clock ────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ─── Challenge store ──────────────────────────────────────────────────────────

class FakeChallengeStore(ChallengeStore):
    """
    ``fail_puts`` / ``fail_deletes`` map a path (or ``"*"``) to the number of
    upcoming calls that raise ``TransientError``.  ``fatal_put`` makes every
    put raise a non-retryable RuntimeError.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.puts: list[str] = []
        self.deletes: list[str] = []
        self.fail_puts: dict[str, int] = defaultdict(int)
        self.fail_deletes: dict[str, int] = defaultdict(int)
        self.fatal_put = False
        self._lock = threading.Lock()

    def _should_fail(self, table: dict[str, int], path: str) -> bool:
        for key in (path, "*"):
            if table.get(key, 0) > 0:
                table[key] -= 1
                return True
        return False

    def put(self, path: str, content: bytes) -> None:
        self._check_path(path)
        with self._lock:
            self.puts.append(path)
            if self.fatal_put:
                raise RuntimeError("store is read-only")
            if self._should_fail(self.fail_puts, path):
                raise TransientError(f"simulated put failure for {path}")
            self.objects[path] = content

    def delete(self, path: str) -> None:
        self._check_path(path)
        with self._lock:
            self.deletes.append(path)
            if self._should_fail(self.fail_deletes, path):
                raise TransientError(f"simulated delete failure for {path}")
            self.objects.pop(path, None)


@pytest.fixture()
def store() -> FakeChallengeStore:
    return FakeChallengeStore()


# ─── Gateway ──────────────────────────────────────────────────────────────────

class FakeGatewayProvider(GatewayProvider):
    def __init__(self, slots: dict[str, dict[str, dict]] | None = None) -> None:
        # gateway_ref -> slot name -> {"pfx": bytes, "passphrase": str}
        self.gateways = slots if slots is not None else {
            "rg-web/appgw-prod": {
                "old-cert": {"pfx": b"previous", "passphrase": "old"},
                "other-cert": {"pfx": b"untouched", "passphrase": "other"},
            }
        }
        self.commits: list[tuple[str, dict]] = []
        self.commit_error: Optional[Exception] = None
        self.on_read = None

    def read_configuration(self, gateway_ref: str) -> dict:
        if self.on_read is not None:
            self.on_read()
        if gateway_ref not in self.gateways:
            raise LookupError(f"no gateway {gateway_ref}")
        return {name: dict(slot) for name, slot in self.gateways[gateway_ref].items()}

    def certificate_slots(self, configuration: dict) -> list[str]:
        return list(configuration)

    def replace_certificate(self, configuration: dict, slot_name: str, pfx: bytes, passphrase: str) -> None:
        configuration[slot_name] = {"pfx": pfx, "passphrase": passphrase}

    def commit(self, gateway_ref: str, configuration: dict) -> None:
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append((gateway_ref, configuration))
        self.gateways[gateway_ref] = configuration


@pytest.fixture()
def gateway() -> FakeGatewayProvider:
    return FakeGatewayProvider()


# ─── CA ───────────────────────────────────────────────────────────────────────

class FakeCA:
    """
    Duck-typed AcmeClient.

    ``authz_initial``  domain -> status reported before signalling (default pending)
    ``authz_after``    domain -> statuses returned by successive polls after
                       signalling (last one repeats; default ["valid"])
    ``offered``        domain -> challenge types offered (default http-01)
    ``order_script``   statuses of successive get_order calls before finalize
    ``cert_script``    statuses of successive get_order calls after finalize
    """

    BASE = "https://ca.test/acme"

    def __init__(
        self,
        issuer: IssuingCA,
        authz_initial: dict[str, str] | None = None,
        authz_after: dict[str, list[str]] | None = None,
        offered: dict[str, list[str]] | None = None,
        order_script: list[str] | None = None,
        cert_script: list[str] | None = None,
        finalize_status: str = "processing",
    ) -> None:
        self.issuer = issuer
        self.authz_initial = authz_initial or {}
        self.authz_after = {d: list(s) for d, s in (authz_after or {}).items()}
        self.offered = offered or {}
        self.order_script = list(order_script or ["pending", "ready"])
        self.cert_script = list(cert_script or ["processing", "valid"])
        self.finalize_status = finalize_status
        self.account_url: Optional[str] = None
        self.calls: list[tuple[str, str]] = []
        self.signalled: list[str] = []
        self.finalized = False
        self.order: Optional[Order] = None
        self._lock = threading.Lock()

    def _record(self, name: str, arg: str = "") -> None:
        with self._lock:
            self.calls.append((name, arg))

    def calls_named(self, name: str) -> list[str]:
        return [arg for n, arg in self.calls if n == name]

    # account
    def register_account(self, contact_email: str = ""):
        self._record("register_account", contact_email)
        self.account_url = f"{self.BASE}/acct/1"

    # orders
    def create_order(self, domains) -> Order:
        self._record("create_order", ",".join(domains))
        self.domains = list(domains)
        self.order = Order(
            url=f"{self.BASE}/order/1",
            status="pending",
            identifiers=tuple(self.domains),
            authorization_urls=tuple(f"{self.BASE}/authz/{d}" for d in self.domains),
            finalize_url=f"{self.BASE}/order/1/finalize",
        )
        return self.order

    def _authz(self, domain: str, status: str) -> Authorization:
        types = self.offered.get(domain, ["http-01"])
        url = f"{self.BASE}/authz/{domain}"
        challenges = tuple(
            Challenge(type=t, url=f"{url}/chall/{t}", token=f"tok-{domain.replace('.', '-')}-{t}")
            for t in types
        )
        error = {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "bad key"} if status == "invalid" else None
        if error:
            challenges = tuple(Challenge(c.type, c.url, c.token, "invalid", error) for c in challenges)
        return Authorization(url=url, domain=domain, status=status, challenges=challenges)

    def get_authorization(self, url: str) -> Authorization:
        self._record("get_authorization", url)
        domain = url.rsplit("/", 1)[-1]
        with self._lock:
            signalled = any(u.startswith(url + "/") for u in self.signalled)
            if not signalled:
                status = self.authz_initial.get(domain, "pending")
            else:
                script = self.authz_after.setdefault(domain, ["valid"])
                status = script.pop(0) if len(script) > 1 else script[0]
        return self._authz(domain, status)

    def fetch_authorizations(self, order: Order):
        for url in order.authorization_urls:
            yield self.get_authorization(url)

    select_challenge = staticmethod(AcmeClient.select_challenge)

    def key_authorization(self, challenge: Challenge) -> str:
        return f"{challenge.token}.thumbprint"

    def signal_challenge_ready(self, challenge: Challenge) -> Challenge:
        self._record("signal_challenge_ready", challenge.url)
        with self._lock:
            self.signalled.append(challenge.url)
        return Challenge(challenge.type, challenge.url, challenge.token, "processing")

    def _next(self, script: list[str]) -> str:
        with self._lock:
            return script.pop(0) if len(script) > 1 else script[0]

    def get_order(self, order: Order) -> Order:
        self._record("get_order", order.url)
        status = self._next(self.cert_script if self.finalized else self.order_script)
        certificate = f"{self.BASE}/cert/1" if status == "valid" and self.finalized else None
        error = {"type": "urn:ietf:params:acme:error:serverInternal", "detail": "order failed"} if status == "invalid" else None
        return Order(
            order.url, status, order.identifiers, order.authorization_urls, order.finalize_url, certificate, error
        )

    def finalize_order(self, order: Order, certificate_key) -> Order:
        self._record("finalize_order", order.url)
        if order.status != "ready":
            raise StateError(f"Cannot finalize order in status {order.status!r}")
        self.finalized = True
        self.certificate_public_key = certificate_key.public_key()
        certificate = f"{self.BASE}/cert/1" if self.finalize_status == "valid" else None
        return Order(
            order.url, self.finalize_status, order.identifiers, order.authorization_urls,
            order.finalize_url, certificate,
        )

    def download_certificate(self, order: Order, certificate_key, passphrase: str):
        self._record("download_certificate", order.certificate_url or "")
        if order.status != "valid" or not order.certificate_url:
            raise StateError("certificate not ready")
        fullchain = self.issuer.issue(certificate_key.public_key(), list(order.identifiers))
        return build_bundle(fullchain, certificate_key, passphrase, order.identifiers)


@pytest.fixture()
def make_ca(issuing_ca):
    def factory(**kwargs) -> FakeCA:
        return FakeCA(issuing_ca, **kwargs)

    return factory


# ─── Rotation context ─────────────────────────────────────────────────────────

@pytest.fixture()
def make_context(clock, store, gateway):
    """Build a RotationContext around the fakes; keyword overrides apply."""

    def factory(
        ca,
        timeout: Optional[float] = 900,
        cert_store_path: str = "",
        fan_out: int = 4,
        poll_max_attempts: int = 30,
    ) -> RotationContext:
        deadline = Deadline(timeout, clock=clock.monotonic)
        poller = PollController(sleep=clock.sleep, deadline=deadline)
        provisioner = ChallengeProvisioner(
            ca,
            store,
            poller,
            fan_out=fan_out,
            store_max_attempts=3,
            store_retry_delay=2.0,
            poll_interval=10.0,
            poll_max_attempts=poll_max_attempts,
            sleep=clock.sleep,
        )
        return RotationContext(
            client=ca,
            provisioner=provisioner,
            installer=GatewayInstaller(gateway),
            poller=poller,
            deadline=deadline,
            passphrase=PASSPHRASE,
            order_poll_interval=10.0,
            cert_poll_interval=15.0,
            poll_max_attempts=poll_max_attempts,
            certificate_key_type="ec256",
            cert_store_path=cert_store_path,
        )

    return factory
