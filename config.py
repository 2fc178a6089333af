"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_DIRECTORY_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "zerossl":             "https://acme.zerossl.com/v2/DV90",
    "sectigo":             "https://acme.sectigo.com/v2/DV",
    "digicert":            "https://acme.digicert.com/v2/DV/directory",
}


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run, so a plain value such as
    ``www.example.com,api.example.com`` would raise SettingsError before
    parse_domains can split it.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA ─────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal[
        "letsencrypt", "letsencrypt_staging", "zerossl", "sectigo", "digicert", "custom"
    ] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""
    # External Account Binding (required by DigiCert, ZeroSSL and Sectigo)
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""
    ACME_REQUEST_TIMEOUT: float = 30.0
    # For Pebble / private CAs
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── Account ────────────────────────────────────────────────────────────
    CONTACT_EMAIL: str = ""
    ACCOUNT_KEY_PATH: str = "./account.key"

    # ── Certificate ────────────────────────────────────────────────────────
    MANAGED_DOMAINS: List[str] = []
    CERT_KEY_TYPE: Literal["rsa2048", "ec256"] = "rsa2048"

    # ── HTTP-01 challenge store ────────────────────────────────────────────
    CHALLENGE_STORE: Literal["azure_blob", "webroot"] = "azure_blob"
    AZURE_STORAGE_ACCOUNT_URL: str = ""
    AZURE_STORAGE_CONTAINER: str = "$web"
    WEBROOT_PATH: Optional[str] = None

    # ── Gateway ────────────────────────────────────────────────────────────
    GATEWAY_PROVIDER: Literal["azure_appgw"] = "azure_appgw"
    AZURE_SUBSCRIPTION_ID: str = ""
    AZURE_RESOURCE_GROUP: str = ""
    AZURE_APPGW_NAME: str = ""
    CERT_SLOT_NAME: str = ""
    PFX_PASSPHRASE: str = ""       # empty = random passphrase per run

    # ── Polling / concurrency ──────────────────────────────────────────────
    ORDER_POLL_INTERVAL: float = 10.0
    CERT_POLL_INTERVAL: float = 15.0
    POLL_MAX_ATTEMPTS: int = 30
    CHALLENGE_FANOUT: int = 4
    STORE_MAX_ATTEMPTS: int = 3
    STORE_RETRY_DELAY: float = 2.0
    TRANSPORT_MAX_ATTEMPTS: int = 3
    RUN_TIMEOUT_SECONDS: float = 900.0

    # ── Local archive (empty disables) ─────────────────────────────────────
    CERT_STORE_PATH: str = ""

    # ── Scheduling ─────────────────────────────────────────────────────────
    SCHEDULE_TIME: str = "06:00"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("MANAGED_DOMAINS", mode="before")
    @classmethod
    def parse_domains(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("MANAGED_DOMAINS")
    @classmethod
    def reject_duplicate_domains(cls, v: List[str]) -> List[str]:
        seen: set[str] = set()
        for domain in v:
            if domain.lower() in seen:
                raise ValueError(f"MANAGED_DOMAINS lists {domain!r} more than once")
            seen.add(domain.lower())
        return v

    @field_validator("ORDER_POLL_INTERVAL", "CERT_POLL_INTERVAL", "STORE_RETRY_DELAY", "RUN_TIMEOUT_SECONDS")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("POLL_MAX_ATTEMPTS", "CHALLENGE_FANOUT", "STORE_MAX_ATTEMPTS", "TRANSPORT_MAX_ATTEMPTS")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_webroot(self) -> "Settings":
        if self.CHALLENGE_STORE == "webroot" and not self.WEBROOT_PATH:
            raise ValueError("WEBROOT_PATH must be set when CHALLENGE_STORE='webroot'")
        return self

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _DIRECTORY_PRESETS:
            self.ACME_DIRECTORY_URL = _DIRECTORY_PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self

    @property
    def gateway_ref(self) -> str:
        """``<resource-group>/<gateway-name>`` as understood by the gateway provider."""
        if self.AZURE_RESOURCE_GROUP:
            return f"{self.AZURE_RESOURCE_GROUP}/{self.AZURE_APPGW_NAME}"
        return self.AZURE_APPGW_NAME


# Module-level singleton - import and use everywhere.
settings = Settings()
