"""
Gateway configuration providers.

A provider exposes the three primitives the installer needs: read the
gateway's current configuration, replace the bytes of one named
certificate slot inside that configuration object, and commit it back.
The commit is the only externally visible mutation and is atomic on the
provider side.

  GatewayProvider (ABC)
  AzureApplicationGatewayProvider - Azure Application Gateway
                                    (``azure-mgmt-network``)
  make_gateway_provider() -> GatewayProvider
"""
from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class GatewayProvider(ABC):
    """Abstract base for reading and committing gateway configuration."""

    @abstractmethod
    def read_configuration(self, gateway_ref: str) -> Any:
        """Return the gateway's current configuration object."""

    @abstractmethod
    def certificate_slots(self, configuration: Any) -> list[str]:
        """Names of the certificate slots present in *configuration*."""

    @abstractmethod
    def replace_certificate(self, configuration: Any, slot_name: str, pfx: bytes, passphrase: str) -> None:
        """Overwrite the content and passphrase of *slot_name* in place.

        Everything else in *configuration* must be left untouched.
        """

    @abstractmethod
    def commit(self, gateway_ref: str, configuration: Any) -> None:
        """Apply *configuration* to the running gateway."""


# ─── Azure Application Gateway ────────────────────────────────────────────────


class AzureApplicationGatewayProvider(GatewayProvider):
    """
    ``gateway_ref`` is ``"<resource-group>/<gateway-name>"`` or a bare
    gateway name resolved against the default resource group.
    """

    def __init__(
        self,
        subscription_id: str = "",
        resource_group: str = "",
        credential: Any = None,
        client: Any = None,
    ) -> None:
        if client is None:
            try:
                from azure.mgmt.network import NetworkManagementClient
            except ImportError as exc:
                raise ImportError(
                    "azure-mgmt-network is required for GATEWAY_PROVIDER='azure_appgw'. "
                    "Install it with: pip install '.[azure]'"
                ) from exc

            if credential is None:
                from azure.identity import DefaultAzureCredential

                credential = DefaultAzureCredential()
            client = NetworkManagementClient(credential, subscription_id)

        self._client = client
        self._default_resource_group = resource_group

    def _split(self, gateway_ref: str) -> tuple[str, str]:
        group, _, name = gateway_ref.rpartition("/")
        group = group or self._default_resource_group
        if not group or not name:
            raise ValueError(f"Cannot resolve application gateway from {gateway_ref!r}")
        return group, name

    def read_configuration(self, gateway_ref: str) -> Any:
        group, name = self._split(gateway_ref)
        logger.info("Reading application gateway %s/%s", group, name)
        return self._client.application_gateways.get(group, name)

    def certificate_slots(self, configuration: Any) -> list[str]:
        return [cert.name for cert in (configuration.ssl_certificates or [])]

    def replace_certificate(self, configuration: Any, slot_name: str, pfx: bytes, passphrase: str) -> None:
        for cert in configuration.ssl_certificates or []:
            if cert.name == slot_name:
                cert.data = base64.b64encode(pfx).decode("ascii")
                cert.password = passphrase
                return
        raise KeyError(slot_name)

    def commit(self, gateway_ref: str, configuration: Any) -> None:
        group, name = self._split(gateway_ref)
        logger.info("Committing application gateway %s/%s", group, name)
        poller = self._client.application_gateways.begin_create_or_update(group, name, configuration)
        result = poller.result()
        state = getattr(result, "provisioning_state", None)
        if state and state != "Succeeded":
            raise RuntimeError(f"Application gateway {group}/{name} provisioning state is {state}")


# ─── Factory ──────────────────────────────────────────────────────────────────


def make_gateway_provider(kind: Optional[str] = None) -> GatewayProvider:
    from config import settings  # late import to avoid circular dependency

    kind = kind or settings.GATEWAY_PROVIDER
    if kind == "azure_appgw":
        if not settings.AZURE_SUBSCRIPTION_ID:
            raise ValueError("AZURE_SUBSCRIPTION_ID must be set when GATEWAY_PROVIDER='azure_appgw'")
        return AzureApplicationGatewayProvider(
            subscription_id=settings.AZURE_SUBSCRIPTION_ID,
            resource_group=settings.AZURE_RESOURCE_GROUP,
        )
    raise ValueError(f"Unknown GATEWAY_PROVIDER: {kind!r}. Must be one of: azure_appgw")
