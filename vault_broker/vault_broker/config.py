"""Broker configuration loaded from environment variables.

Variable names carry no prefix (``VAULT_ADDR``, ``SECURITY_USER_NAME`` ...)
so the broker drops into platforms that already export the conventional
names.  When ``CREDHUB_URL`` is set, values can additionally be sourced from
CredHub -- see :mod:`vault_broker.credhub`.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Self
from urllib.parse import urlsplit, urlunsplit

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_PLAN_BULLETS = [
    "The Vault server is already running and is accessible by the broker.",
    "The Vault server may be used by other applications (it is not exclusively tied to Cloud Foundry).",
    "All instances of an application will share a token. This goes against the recommended Vault usage. "
    "This is a limitation of the Cloud Foundry service broker model.",
    "Any Vault operations performed outside of Cloud Foundry will require users to rebind their instances.",
]


def normalize_addr(address: str) -> str:
    """Ensure *address* has a scheme (default https) and exactly one trailing slash.

    ``www.example.com:8200`` becomes ``https://www.example.com:8200/``; an
    explicit scheme such as ``http://`` or ``ftp://`` is preserved.
    """
    if not address:
        return address

    if "://" not in address:
        address = f"https://{address}"

    parts = urlsplit(address)
    path = parts.path.rstrip("/") + "/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class BrokerSettings(BaseSettings):
    """Service broker settings.

    All values can be overridden via environment variables (e.g.
    ``VAULT_ADDR=https://vault:8200``) or through a ``.env`` file in the
    working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker API basic-auth credentials (required).
    security_user_name: str = ""
    security_user_password: SecretStr = SecretStr("")

    # Vault connection.
    vault_token: SecretStr = SecretStr("")
    vault_addr: str = "https://127.0.0.1:8200"
    vault_advertise_addr: str = ""
    vault_namespace: str = ""
    vault_cacert: str = ""
    vault_skip_verify: bool = False
    vault_timeout: float = 30.0

    # Keep the broker's own Vault token alive.
    vault_renew: bool = True

    # HTTP listener.
    host: str = "0.0.0.0"
    port: int = 8000

    # Optional CredHub overlay.
    credhub_url: str = ""
    uaa_endpoint: str = ""
    uaa_client_name: str = ""
    uaa_client_secret: SecretStr = SecretStr("")
    uaa_ca_certs: str = ""
    uaa_skip_verification: bool = False

    # Service catalog.
    service_id: str = "0654695e-0760-a1d4-1cad-5dd87b75ed99"
    service_name: str = "hashicorp-vault"
    service_description: str = "HashiCorp Vault Service Broker"
    service_tags: Annotated[list[str], NoDecode] = []
    plan_name: str = "shared"
    plan_description: str = "Secure access to Vault's storage and transit backends"
    plan_metadata_name: str = "Architecture and Assumptions"
    plan_bullets: Annotated[list[str], NoDecode] = list(DEFAULT_PLAN_BULLETS)
    display_name: str = "Vault for PCF"
    image_url: str = ""
    long_description: str = (
        "The official HashiCorp Vault broker integration to the Open Service Broker API. "
        "This service broker provides support for secure secret storage and "
        "encryption-as-a-service to HashiCorp Vault."
    )
    provider_display_name: str = "HashiCorp"
    documentation_url: str = "https://www.vaultproject.io/"
    support_url: str = "https://support.hashicorp.com/"

    # Lease and renewal tuning.
    token_role_period_seconds: int = 5 * 24 * 60 * 60
    renewal_retry_seconds: float = 30.0
    renewal_jitter_seconds: float = 5.0
    shutdown_grace_seconds: float = 5.0

    # Logging.
    log_level: str = "INFO"
    structured_logging: bool = False

    @field_validator("service_tags", "plan_bullets", mode="before")
    @classmethod
    def _parse_comma_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @model_validator(mode="after")
    def _validate_and_normalize(self) -> Self:
        """Reject missing credentials and normalise the Vault addresses."""
        if not self.security_user_name:
            raise ValueError("missing SECURITY_USER_NAME")
        if not self.security_user_password.get_secret_value():
            raise ValueError("missing SECURITY_USER_PASSWORD")
        if not self.vault_token.get_secret_value():
            raise ValueError("missing VAULT_TOKEN")

        if not self.vault_advertise_addr:
            self.vault_advertise_addr = self.vault_addr
        self.vault_addr = normalize_addr(self.vault_addr)
        self.vault_advertise_addr = normalize_addr(self.vault_advertise_addr)
        return self

    @property
    def vault_verify(self) -> bool | str:
        """TLS verification setting handed to httpx."""
        if self.vault_skip_verify:
            return False
        return self.vault_cacert or True


def load_settings(**overrides: Any) -> BrokerSettings:
    """Construct settings from the environment, applying the CredHub overlay if configured.

    Explicit keyword *overrides* win over CredHub values, which win over the
    environment.
    """
    from vault_broker.credhub import credhub_overrides

    # Read the environment unvalidated first: required values may only exist
    # in CredHub, and we need the CredHub/UAA settings to reach it.
    raw = _RawSettings(**overrides)
    if raw.credhub_url:
        logger.info("Loading configuration overrides from CredHub at %s", raw.credhub_url)
        overrides = {**credhub_overrides(raw, list(BrokerSettings.model_fields)), **overrides}
    return BrokerSettings(**overrides)


class _RawSettings(BrokerSettings):
    """Environment view used before validation, so CredHub can fill required values."""

    @model_validator(mode="after")
    def _validate_and_normalize(self) -> Self:
        return self
