"""
Signed HTTP exchange with an ACME v2 server.

``AcmeTransport`` owns the single anti-replay nonce slot of an account
session.  Every signed POST runs under one lock: take the slot (or HEAD
newNonce when empty), sign, send, then refill the slot from the response's
``Replay-Nonce``.  Concurrent callers therefore never sign with the same
nonce.

Retry policy
------------
* ``badNonce``: one transparent re-sign with the nonce carried by the error
  response (or a freshly fetched one when the header is missing).
* Connection errors, timeouts, HTTP 429 and 5xx: re-signed and retried up to
  ``max_attempts`` with ``retry_delay`` (or the server's ``Retry-After``)
  between tries, then surfaced as ``TransientError``.
* Any other non-2xx response becomes ``ProtocolError``.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests
from josepy.jwk import JWKRSA

from acmev2 import jws as jwslib
from acmev2.errors import ProtocolError, TransientError
from acmev2.models import parse_retry_after

logger = logging.getLogger(__name__)

USER_AGENT = "acme-gateway-rotator/1.0"

_TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})


class AcmeTransport:
    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})

        if insecure:
            import urllib3

            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

        self._lock = threading.RLock()
        self._directory: Optional[dict] = None
        self._nonce: Optional[str] = None

    # ── Directory & nonce ─────────────────────────────────────────────────

    @property
    def directory(self) -> dict:
        """GET /directory once per session and cache the endpoint map."""
        with self._lock:
            if self._directory is None:
                resp = self._send("GET", self.directory_url)
                self._directory = resp.json()
            return self._directory

    def endpoint(self, name: str) -> str:
        try:
            return self.directory[name]
        except KeyError:
            raise ProtocolError(0, {"type": "malformedDirectory", "detail": f"Directory has no {name!r}"}) from None

    def fetch_nonce(self) -> str:
        """HEAD /newNonce - a fresh anti-replay nonce."""
        resp = self._send("HEAD", self.endpoint("newNonce"))
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise ProtocolError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    def _take_nonce(self) -> str:
        nonce, self._nonce = self._nonce, None
        return nonce or self.fetch_nonce()

    def _store_nonce(self, resp: requests.Response) -> None:
        nonce = resp.headers.get("Replay-Nonce")
        if nonce:
            self._nonce = nonce

    # ── Signed POST ───────────────────────────────────────────────────────

    def post(
        self,
        url: str,
        payload: dict | None,
        account_key: JWKRSA,
        account_url: str | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Sign *payload* and POST it to *url*.  ``payload=None`` is POST-as-GET.

        Returns the successful response; raises ProtocolError or
        TransientError otherwise.
        """
        def sign() -> dict:
            return jwslib.sign_request(payload, account_key, self._take_nonce(), url, account_url)

        with self._lock:
            retried_nonce = False
            while True:
                resp = self._send(
                    "POST",
                    url,
                    prepare=sign,
                    headers={"Content-Type": "application/jose+json", "Accept": accept},
                )
                self._store_nonce(resp)
                if resp.ok:
                    return resp

                error = ProtocolError(resp.status_code, _problem(resp), resp.headers.get("Replay-Nonce", ""))
                if error.is_bad_nonce and not retried_nonce:
                    logger.debug("badNonce from %s - re-signing once with a fresh nonce", url)
                    retried_nonce = True
                    continue
                raise error

    # ── Raw send with transient retry ─────────────────────────────────────

    def _send(
        self, method: str, url: str, prepare: Optional[Callable[[], dict]] = None, **kwargs
    ) -> requests.Response:
        """
        Send with transient retry.  *prepare* builds a fresh JSON body for
        every attempt, so a signed POST never resends a spent nonce.
        """
        last_exc: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            delay = self.retry_delay
            if prepare is not None:
                kwargs["json"] = prepare()
            try:
                resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_exc = exc
                logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt, self.max_attempts, exc)
            else:
                if resp.status_code not in _TRANSIENT_STATUS:
                    if method == "GET" and not resp.ok:
                        raise ProtocolError(resp.status_code, _problem(resp))
                    return resp
                self._store_nonce(resp)
                last_exc = ProtocolError(resp.status_code, _problem(resp))
                hint = parse_retry_after(resp.headers.get("Retry-After"))
                if hint is not None:
                    delay = hint
                logger.warning(
                    "%s %s returned %d (attempt %d/%d)", method, url, resp.status_code, attempt, self.max_attempts
                )
            if attempt < self.max_attempts:
                self._sleep(delay)

        raise TransientError(f"{method} {url} failed after {self.max_attempts} attempt(s): {last_exc}") from last_exc


def _problem(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"detail": resp.text}
    return body if isinstance(body, dict) else {"detail": str(body)}
