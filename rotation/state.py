"""
Run state threaded through the rotation graph.

Every stage reads the values produced by earlier stages from this dict and
returns only the keys it changes.  The state is never checkpointed: it
carries the certificate key and live exception objects.
"""
from __future__ import annotations

from typing import Any, List, Optional

from typing_extensions import TypedDict

from acmev2.errors import RenewalError
from acmev2.models import Authorization, CertificateBundle, Order


class RotationState(TypedDict):
    # ── Inputs ─────────────────────────────────────────────────────────────
    domains: List[str]
    contact_email: str
    gateway_ref: str
    slot_name: str

    # ── ACME flow ──────────────────────────────────────────────────────────
    account_url: Optional[str]
    order: Optional[Order]
    authorizations: List[Authorization]
    certificate_key: Optional[Any]          # never sent to the CA
    bundle: Optional[CertificateBundle]

    # ── Outcome ────────────────────────────────────────────────────────────
    installed: bool
    archive_dir: Optional[str]
    failed_stage: Optional[str]
    error: Optional[RenewalError]
    error_log: List[str]
    leftover_artifacts: List[str]


def initial_state(
    domains: list[str],
    gateway_ref: str,
    slot_name: str,
    contact_email: str = "",
) -> RotationState:
    return {
        "domains": list(domains),
        "contact_email": contact_email,
        "gateway_ref": gateway_ref,
        "slot_name": slot_name,
        "account_url": None,
        "order": None,
        "authorizations": [],
        "certificate_key": None,
        "bundle": None,
        "installed": False,
        "archive_dir": None,
        "failed_stage": None,
        "error": None,
        "error_log": [],
        "leftover_artifacts": [],
    }
