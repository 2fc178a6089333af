"""
Error taxonomy for certificate rotation.

Every failure surfaced by the protocol layer, the challenge provisioner,
the gateway installer or the orchestrator is a ``RenewalError`` subclass so
callers can classify a failed run with a single ``except`` clause.

  ProtocolError              CA rejected a request (problem document)
  AuthorizationFailedError   an authorization ended invalid/expired/revoked
  UnsupportedChallengeError  CA did not offer http-01 for a domain
  TransientError             network / store hiccup, retried locally
  PollTimeoutError           poll attempts or run deadline exhausted
  ProvisioningError          challenge publication failed after retries
  StateError                 operation invoked out of order
  InstallError               gateway slot missing or commit rejected
  DomainError                invalid or duplicate domain input
"""
from __future__ import annotations

from typing import Optional


class RenewalError(Exception):
    """Base class for every classified rotation failure."""


class ProtocolError(RenewalError):
    """Raised when the ACME server returns an error response."""

    def __init__(
        self,
        status_code: int,
        body: Optional[dict] = None,
        new_nonce: str = "",
    ) -> None:
        self.status_code = status_code
        self.body = body or {}
        self.new_nonce = new_nonce
        self.problem_type = self.body.get("type", "unknown")
        self.detail = self.body.get("detail", str(self.body))
        super().__init__(f"ACME {status_code}: {self.problem_type} - {self.detail}")

    @property
    def is_bad_nonce(self) -> bool:
        return self.problem_type.endswith(":badNonce")


class AuthorizationFailedError(ProtocolError):
    """An authorization reached a terminal status other than ``valid``."""

    def __init__(self, domain: str, status: str, body: Optional[dict] = None) -> None:
        self.domain = domain
        self.status = status
        problem = dict(body or {})
        problem.setdefault("type", "urn:ietf:params:acme:error:unauthorized")
        problem.setdefault("detail", f"Authorization for {domain} is {status}")
        super().__init__(0, problem)


class UnsupportedChallengeError(RenewalError):
    def __init__(self, domain: str, challenge_type: str, offered: list[str]) -> None:
        self.domain = domain
        self.challenge_type = challenge_type
        self.offered = offered
        super().__init__(
            f"CA does not offer {challenge_type} for {domain} "
            f"(offered: {', '.join(offered) or 'none'})"
        )


class TransientError(RenewalError):
    """A retryable network or store failure."""


class PollTimeoutError(RenewalError, TimeoutError):
    """Polling gave up: attempts exhausted or the run deadline expired."""


class ProvisioningError(RenewalError):
    """Challenge content could not be published to the store."""


class StateError(RenewalError):
    """An operation was invoked before its precondition held."""


class InstallError(RenewalError):
    """The gateway slot could not be replaced or the commit was rejected."""


class DomainError(RenewalError, ValueError):
    """Invalid, empty or duplicate domain input."""
