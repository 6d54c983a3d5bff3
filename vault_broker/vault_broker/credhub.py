"""CredHub overlay for broker settings.

Every setting may also be stored in CredHub under
``VAULT_SERVICE_BROKER_<FIELD>`` (e.g. ``VAULT_SERVICE_BROKER_VAULT_TOKEN``).
The broker authenticates against UAA with the client-credentials grant and
fetches the current value of each name.  Values are returned as plain
strings; type coercion (booleans, ints, comma lists) is left to
:class:`~vault_broker.config.BrokerSettings`.

This runs once, synchronously, before the application starts, so it uses a
blocking ``httpx.Client``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from vault_broker.config import BrokerSettings

logger = logging.getLogger(__name__)

CREDHUB_PREFIX = "VAULT_SERVICE_BROKER_"

# Settings needed to reach CredHub cannot themselves come from CredHub.
_BOOTSTRAP_FIELDS = frozenset(
    {
        "credhub_url",
        "uaa_endpoint",
        "uaa_client_name",
        "uaa_client_secret",
        "uaa_ca_certs",
        "uaa_skip_verification",
    }
)


class CredHubError(Exception):
    """Raised when CredHub or UAA cannot be queried, or returns an unusable value."""


def credhub_name(field_name: str) -> str:
    """CredHub credential name for the setting *field_name*."""
    return f"{CREDHUB_PREFIX}{field_name.upper()}"


class CredHubClient:
    """Minimal CredHub reader authenticated through UAA.

    Parameters
    ----------
    credhub_url:
        Base URL of the CredHub server.
    uaa_endpoint:
        Base URL of the UAA server issuing the bearer token.
    client_name, client_secret:
        UAA client credentials.
    verify:
        Passed straight to httpx.
    transport:
        Optional httpx transport, used by tests to inject ``MockTransport``.
    """

    def __init__(
        self,
        credhub_url: str,
        uaa_endpoint: str,
        client_name: str,
        client_secret: str,
        *,
        verify: bool | str = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._credhub_url = credhub_url.rstrip("/")
        self._uaa_endpoint = uaa_endpoint.rstrip("/")
        self._client_name = client_name
        self._client_secret = client_secret
        self._client = httpx.Client(timeout=httpx.Timeout(timeout), verify=verify, transport=transport)
        self._access_token: str | None = None

    def __enter__(self) -> CredHubClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def get_current(self, name: str) -> Any:
        """Return the current value stored under *name*, or ``None`` if absent."""
        try:
            response = self._client.get(
                f"{self._credhub_url}/api/v1/data",
                params={"name": name, "current": "true"},
                headers={"Authorization": f"bearer {self._token()}"},
            )
        except httpx.RequestError as exc:
            raise CredHubError(f"error reading {name} from CredHub: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CredHubError(f"error reading {name} from CredHub: HTTP {response.status_code}")

        try:
            data = response.json().get("data") or []
        except ValueError as exc:
            raise CredHubError(f"error decoding CredHub response for {name}: {exc}") from exc
        if not data:
            return None
        latest = max(data, key=lambda cred: str(cred.get("version_created_at", "")))
        return latest.get("value")

    def _token(self) -> str:
        if self._access_token is not None:
            return self._access_token
        try:
            response = self._client.post(
                f"{self._uaa_endpoint}/oauth/token",
                data={"grant_type": "client_credentials", "response_type": "token"},
                auth=(self._client_name, self._client_secret),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            self._access_token = str(response.json()["access_token"])
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise CredHubError(f"error fetching UAA token: {exc}") from exc
        return self._access_token


def credhub_overrides(
    settings: BrokerSettings,
    field_names: list[str],
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, str]:
    """Look up every field in CredHub and return the values that are set.

    Names CredHub does not know, and empty values, are skipped.  A value that
    is not a string is rejected, matching the shell-style variables the
    settings are otherwise read from.
    """
    verify: bool | str = False if settings.uaa_skip_verification else (settings.uaa_ca_certs or True)
    found: dict[str, str] = {}

    with CredHubClient(
        settings.credhub_url,
        settings.uaa_endpoint,
        settings.uaa_client_name,
        settings.uaa_client_secret.get_secret_value(),
        verify=verify,
        transport=transport,
    ) as client:
        for field_name in field_names:
            if field_name in _BOOTSTRAP_FIELDS:
                continue
            name = credhub_name(field_name)
            value = client.get_current(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise CredHubError(
                    f"only string values are supported in CredHub, but {name} is a {type(value).__name__}"
                )
            if value == "":
                continue
            found[field_name] = value

    logger.info("Loaded %d setting(s) from CredHub", len(found))
    return found
