"""
GatewayInstaller - swap a new certificate bundle into an existing named
slot of the gateway and commit the configuration once.

Nothing is created: a missing slot fails the install before any change.
If the commit fails the previous configuration stays active, since the
provider applies the whole configuration or nothing.  At most one install
per gateway reference is in flight at any time.
"""
from __future__ import annotations

import logging
import threading

from acmev2.errors import InstallError, RenewalError
from acmev2.models import CertificateBundle
from gateway.provider import GatewayProvider

logger = logging.getLogger(__name__)

_inflight_guard = threading.Lock()
_inflight: dict[str, threading.Lock] = {}


def _gateway_lock(gateway_ref: str) -> threading.Lock:
    with _inflight_guard:
        return _inflight.setdefault(gateway_ref, threading.Lock())


class GatewayInstaller:
    def __init__(self, provider: GatewayProvider) -> None:
        self.provider = provider

    def install(
        self,
        gateway_ref: str,
        slot_name: str,
        bundle: CertificateBundle,
        passphrase: str,
    ) -> None:
        """
        Replace the content and passphrase of *slot_name* with *bundle*,
        then commit.  Raises InstallError on a missing slot, a passphrase
        that does not protect the bundle, a concurrent install for the same
        gateway, or a rejected read/commit.
        """
        if passphrase != bundle.passphrase:
            raise InstallError("Passphrase does not match the certificate bundle")

        lock = _gateway_lock(gateway_ref)
        if not lock.acquire(blocking=False):
            raise InstallError(f"Another install for gateway {gateway_ref} is in progress")
        try:
            try:
                configuration = self.provider.read_configuration(gateway_ref)
            except RenewalError:
                raise
            except Exception as exc:
                raise InstallError(f"Reading gateway {gateway_ref} failed: {exc}") from exc

            try:
                slots = self.provider.certificate_slots(configuration)
            except Exception as exc:
                raise InstallError(f"Gateway {gateway_ref} configuration is unreadable: {exc}") from exc
            if slot_name not in slots:
                raise InstallError(
                    f"Certificate slot {slot_name!r} not found on gateway {gateway_ref} "
                    f"(present: {', '.join(slots) or 'none'})"
                )

            try:
                self.provider.replace_certificate(configuration, slot_name, bundle.pfx, passphrase)
            except Exception as exc:
                raise InstallError(f"Replacing slot {slot_name!r} on gateway {gateway_ref} failed: {exc}") from exc
            logger.info(
                "Replacing slot %s on %s with certificate serial %s (expires %s)",
                slot_name, gateway_ref, bundle.serial_number, bundle.not_after.isoformat(),
            )

            try:
                self.provider.commit(gateway_ref, configuration)
            except Exception as exc:
                raise InstallError(f"Commit to gateway {gateway_ref} rejected: {exc}") from exc
            logger.info("Gateway %s committed with new certificate in slot %s", gateway_ref, slot_name)
        finally:
            lock.release()
