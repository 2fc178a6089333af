"""
ChallengeProvisioner - makes each pending authorization's key
authorization reachable, lets the CA validate it, then removes it.

Per authorization the order is strict:

    publish -> signal -> poll until terminal -> delete

Authorizations are unrelated CA-side state machines, so they run
concurrently on a bounded ``ThreadPoolExecutor``.  Every artifact is
registered before its first write and deleted exactly once, whether the
authorization ended valid, invalid, timed out, or a sibling failed.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from acmev2.client import AcmeClient
from acmev2.errors import AuthorizationFailedError, ProvisioningError, TransientError
from acmev2.models import HTTP01, Authorization, Challenge, challenge_path
from acmev2.poll import PollCancelled, PollController
from challenge.store import ChallengeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeArtifact:
    domain: str
    authorization_url: str
    challenge: Challenge
    path: str
    content: bytes


class ChallengeProvisioner:
    def __init__(
        self,
        client: AcmeClient,
        store: ChallengeStore,
        poller: PollController,
        fan_out: int = 4,
        store_max_attempts: int = 3,
        store_retry_delay: float = 2.0,
        poll_interval: float = 10.0,
        poll_max_attempts: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.store = store
        self.poller = poller
        self.fan_out = max(1, fan_out)
        self.store_max_attempts = max(1, store_max_attempts)
        self.store_retry_delay = store_retry_delay
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self._sleep = sleep
        self._lock = threading.Lock()
        self._published: dict[str, ChallengeArtifact] = {}
        self.deleted: list[str] = []
        # Set by the first failing worker of the current provision() call
        self.aborted = threading.Event()

    @property
    def published(self) -> list[str]:
        """Store paths written (or being written) and not yet deleted."""
        with self._lock:
            return list(self._published)

    # ── Planning ──────────────────────────────────────────────────────────

    def prepare(self, authorizations: Sequence[Authorization]) -> list[ChallengeArtifact]:
        """
        Select the http-01 challenge and compute the content for every
        pending authorization.  Runs before any store write, so an
        unsupported challenge aborts with nothing published.
        """
        artifacts: list[ChallengeArtifact] = []
        for authz in authorizations:
            if authz.status == "valid":
                logger.info("Authorization for %s already valid - nothing to publish", authz.domain)
                continue
            if authz.status != "pending":
                raise AuthorizationFailedError(authz.domain, authz.status, authz.failure_detail())

            challenge = self.client.select_challenge(authz, HTTP01)
            artifacts.append(
                ChallengeArtifact(
                    domain=authz.domain,
                    authorization_url=authz.url,
                    challenge=challenge,
                    path=challenge_path(challenge.token),
                    content=self.client.key_authorization(challenge).encode("ascii"),
                )
            )
        return artifacts

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def provision(self, authorizations: Sequence[Authorization]) -> list[Authorization]:
        """
        Drive every pending authorization to a terminal status.

        Returns the final authorizations in input order.  Raises the first
        failure (ProvisioningError, PollTimeoutError, ProtocolError ...) or
        AuthorizationFailedError when any authorization did not end valid.
        Published artifacts are always deleted before returning or raising.
        """
        artifacts = self.prepare(authorizations)
        final = {authz.url: authz for authz in authorizations}
        errors: list[Exception] = []

        if artifacts:
            abort = self.aborted = threading.Event()
            workers = min(self.fan_out, len(artifacts))
            logger.info("Provisioning %d challenge(s) with %d worker(s)", len(artifacts), workers)
            try:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="acme-challenge") as pool:
                    futures = {pool.submit(self._run_one, artifact, abort): artifact for artifact in artifacts}
                    for future in as_completed(futures):
                        artifact = futures[future]
                        try:
                            result = future.result()
                        except Exception as exc:
                            logger.error("Challenge for %s failed: %s", artifact.domain, exc)
                            abort.set()
                            errors.append(exc)
                            continue
                        if result is not None:
                            final[artifact.authorization_url] = result
            finally:
                self.cleanup()

        if errors:
            raise errors[0]

        ordered = [final[authz.url] for authz in authorizations]
        for authz in ordered:
            if authz.status != "valid":
                raise AuthorizationFailedError(authz.domain, authz.status, authz.failure_detail())
        return ordered

    def _run_one(self, artifact: ChallengeArtifact, abort: threading.Event) -> Optional[Authorization]:
        try:
            return self._drive(artifact, abort)
        except PollCancelled:
            logger.info("Stopped polling %s after another challenge failed", artifact.domain)
            return None
        except Exception:
            abort.set()
            raise

    def _drive(self, artifact: ChallengeArtifact, abort: threading.Event) -> Optional[Authorization]:
        if abort.is_set():
            return None
        self._publish(artifact)
        try:
            if abort.is_set():
                return None
            self.client.signal_challenge_ready(artifact.challenge)
            authz = self.poller.poll_until(
                fetch=lambda: self.client.get_authorization(artifact.authorization_url),
                predicate=lambda a: a.is_terminal,
                interval=self.poll_interval,
                max_attempts=self.poll_max_attempts,
                hint=lambda a: a.retry_after,
                what=f"authorization for {artifact.domain}",
                cancel=abort,
            )
            logger.info("Authorization for %s is %s", artifact.domain, authz.status)
            return authz
        finally:
            self._release(artifact)

    # ── Store operations ──────────────────────────────────────────────────

    def _publish(self, artifact: ChallengeArtifact) -> None:
        with self._lock:
            self._published[artifact.path] = artifact

        last_exc: Exception | None = None
        for attempt in range(1, self.store_max_attempts + 1):
            try:
                self.store.put(artifact.path, artifact.content)
                logger.info("Published challenge for %s at %s", artifact.domain, artifact.path)
                return
            except TransientError as exc:
                last_exc = exc
                logger.warning(
                    "Publishing %s failed (attempt %d/%d): %s",
                    artifact.path, attempt, self.store_max_attempts, exc,
                )
            except Exception as exc:
                raise ProvisioningError(f"Publishing challenge for {artifact.domain} failed: {exc}") from exc
            if attempt < self.store_max_attempts:
                self._sleep(self.store_retry_delay)

        raise ProvisioningError(
            f"Publishing challenge for {artifact.domain} failed after {self.store_max_attempts} attempt(s)"
        ) from last_exc

    def _release(self, artifact: ChallengeArtifact) -> bool:
        """Delete *artifact* once; returns False when it is left behind."""
        with self._lock:
            if artifact.path not in self._published:
                return True

        for attempt in range(1, self.store_max_attempts + 1):
            try:
                self.store.delete(artifact.path)
                break
            except TransientError as exc:
                logger.warning(
                    "Deleting %s failed (attempt %d/%d): %s",
                    artifact.path, attempt, self.store_max_attempts, exc,
                )
            except Exception as exc:
                logger.error("Deleting %s failed: %s", artifact.path, exc)
                return False
            if attempt < self.store_max_attempts:
                self._sleep(self.store_retry_delay)
        else:
            logger.error("Giving up deleting %s after %d attempt(s)", artifact.path, self.store_max_attempts)
            return False

        with self._lock:
            self._published.pop(artifact.path, None)
            self.deleted.append(artifact.path)
        logger.info("Removed challenge for %s", artifact.domain)
        return True

    def cleanup(self) -> list[str]:
        """
        Best-effort removal of every artifact still published.  Safe to call
        repeatedly; returns the paths that could not be deleted.
        """
        with self._lock:
            pending = list(self._published.values())
        return [artifact.path for artifact in pending if not self._release(artifact)]
