"""Async HTTP client for the Vault primitives the broker depends on.

Only the handful of endpoints the broker actually calls are wrapped: ACL
policies, token roles, token create/renew/revoke, the mount table, and the
generic logical read/write/list/delete used for the broker's durable records.

Every method raises :class:`VaultError` on a non-2xx answer and
:class:`VaultUnavailableError` on transport failures; the lifecycle layer
decides what to do with them.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class VaultError(Exception):
    """Raised when Vault answers with a non-success status.

    The string form mirrors Vault's own multi-line API error layout; callers
    that surface it to users collapse the newlines first.
    """

    def __init__(
        self,
        method: str,
        url: str,
        status_code: int | None,
        errors: list[str] | None = None,
    ) -> None:
        self.method = method
        self.url = url
        self.status_code = status_code
        self.errors = list(errors or [])
        lines = [
            "Error making API request.",
            "",
            f"URL: {method} {url}",
            f"Code: {status_code}. Errors:",
            "",
        ]
        lines.extend(f"* {err}" for err in self.errors)
        super().__init__("\n".join(lines))

    @property
    def is_invalid_accessor(self) -> bool:
        """Whether Vault rejected a revoke because the accessor no longer exists."""
        return self.status_code == 400 and any("invalid accessor" in err.lower() for err in self.errors)


class VaultUnavailableError(VaultError):
    """Raised when Vault cannot be reached at all (DNS, TLS, timeout, reset)."""

    def __init__(self, method: str, url: str, reason: str) -> None:
        super().__init__(method, url, None, [reason])


class TokenAuth(BaseModel):
    """The ``auth`` block Vault returns from token create and renew calls."""

    client_token: str
    accessor: str = ""
    lease_duration: int = 0
    renewable: bool = False
    policies: list[str] = []


class VaultClient:
    """Thin async wrapper around the Vault HTTP API.

    Parameters
    ----------
    address:
        Vault base URL (e.g. ``https://vault.service:8200/``).
    token:
        Token the broker authenticates with.
    namespace:
        Optional Vault Enterprise namespace sent on every request.
    timeout:
        Per-request timeout in seconds.
    verify:
        Passed straight to httpx -- ``True``, ``False``, or a CA bundle path.
    transport:
        Optional httpx transport, used by tests to inject ``MockTransport``.
    """

    def __init__(
        self,
        address: str,
        token: str,
        *,
        namespace: str | None = None,
        timeout: float = 30.0,
        verify: bool | str = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._address = address.rstrip("/")
        headers: dict[str, str] = {"X-Vault-Token": token}
        if namespace:
            headers["X-Vault-Namespace"] = namespace

        self._client = httpx.AsyncClient(
            base_url=self._address,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            verify=verify,
            transport=transport,
        )

    @property
    def address(self) -> str:
        return self._address

    # -- ACL policies --------------------------------------------------------

    async def write_policy(self, name: str, document: str) -> None:
        await self._request("PUT", f"/v1/sys/policy/{name}", json={"policy": document})

    async def delete_policy(self, name: str) -> None:
        await self._request("DELETE", f"/v1/sys/policy/{name}")

    # -- Token roles ---------------------------------------------------------

    async def write_role(
        self,
        name: str,
        *,
        allowed_policies: list[str],
        period: int,
        renewable: bool = True,
    ) -> None:
        payload = {
            "allowed_policies": ",".join(allowed_policies),
            "period": period,
            "renewable": renewable,
        }
        await self._request("POST", f"/v1/auth/token/roles/{name}", json=payload)

    async def delete_role(self, name: str) -> None:
        await self._request("DELETE", f"/v1/auth/token/roles/{name}")

    # -- Tokens --------------------------------------------------------------

    async def create_token(
        self,
        role: str,
        *,
        policies: list[str],
        metadata: dict[str, str],
        display_name: str,
        renewable: bool = True,
    ) -> TokenAuth:
        """Create a token against token role *role* and return its ``auth`` block."""
        payload = {
            "policies": policies,
            "meta": metadata,
            "display_name": display_name,
            "renewable": renewable,
        }
        body = await self._request("POST", f"/v1/auth/token/create/{role}", json=payload)
        return self._auth_from(body, "POST", f"/v1/auth/token/create/{role}")

    async def renew_self(self, token: str, increment: int | None = None) -> TokenAuth:
        """Renew *token* using the token itself as the credential.

        Renew-self is used rather than renew-by-accessor so the answer reflects
        exactly what the token holder would see, including the fresh lease.
        """
        payload: dict[str, Any] = {}
        if increment is not None:
            payload["increment"] = increment
        body = await self._request(
            "POST",
            "/v1/auth/token/renew-self",
            json=payload,
            headers={"X-Vault-Token": token},
        )
        return self._auth_from(body, "POST", "/v1/auth/token/renew-self")

    async def lookup_self(self) -> dict[str, Any]:
        """Return the ``data`` block describing the broker's own token."""
        body = await self._request("GET", "/v1/auth/token/lookup-self")
        return dict(body.get("data") or {})

    async def revoke_accessor(self, accessor: str) -> None:
        await self._request("POST", "/v1/auth/token/revoke-accessor", json={"accessor": accessor})

    # -- Mount table ---------------------------------------------------------

    async def list_mounts(self) -> dict[str, str]:
        """Return the mount table as ``{path: backend_type}``.

        Newer Vault versions nest the table under ``data``; older ones return
        it at the top level alongside request metadata.  Both are accepted.
        """
        body = await self._request("GET", "/v1/sys/mounts")
        table = body.get("data") if isinstance(body.get("data"), dict) else body
        return {
            path: str(info["type"])
            for path, info in table.items()
            if isinstance(info, dict) and "type" in info
        }

    async def mount(self, path: str, backend_type: str) -> None:
        await self._request("POST", f"/v1/sys/mounts/{path}", json={"type": backend_type})

    async def unmount(self, path: str) -> None:
        await self._request("DELETE", f"/v1/sys/mounts/{path}")

    # -- Logical (generic) store ---------------------------------------------

    async def read(self, path: str) -> dict[str, Any] | None:
        """Read the ``data`` at *path*, or ``None`` if nothing is stored there."""
        body = await self._request("GET", f"/v1/{path}", allow_404=True)
        if body is None:
            return None
        data = body.get("data")
        return dict(data) if data else None

    async def write(self, path: str, data: dict[str, Any]) -> None:
        await self._request("PUT", f"/v1/{path}", json=data)

    async def delete(self, path: str) -> None:
        await self._request("DELETE", f"/v1/{path}")

    async def list(self, path: str) -> list[str]:
        """List child keys under *path*; an absent directory lists as empty."""
        body = await self._request("GET", f"/v1/{path}", params={"list": "true"}, allow_404=True)
        if body is None:
            return []
        keys = (body.get("data") or {}).get("keys") or []
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise VaultError("LIST", f"{self._address}/v1/{path}", 200, ["keys are not a list of strings"])
        return keys

    # -- Lifecycle -----------------------------------------------------------

    async def health_check(self) -> bool:
        """Return ``True`` if Vault is initialised, unsealed, and answering."""
        try:
            resp = await self._client.get("/v1/sys/health")
            return resp.status_code in (200, 429, 473)
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        allow_404: bool = False,
    ) -> dict[str, Any] | None:
        """Send one request and return the decoded JSON body (``{}`` for 204)."""
        url = f"{self._address}{path}"
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.RequestError as exc:
            logger.warning("Vault request %s %s failed: %s", method, path, exc)
            raise VaultUnavailableError(method, url, str(exc) or exc.__class__.__name__) from exc

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            raise VaultError(method, url, response.status_code, self._errors_from(response))
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise VaultError(method, url, response.status_code, [f"invalid JSON response: {exc}"]) from exc
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _errors_from(response: httpx.Response) -> list[str]:
        try:
            body = response.json()
        except ValueError:
            text = response.text.strip()
            return [text] if text else []
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list):
            return [str(err) for err in errors]
        return []

    def _auth_from(self, body: dict[str, Any] | None, method: str, path: str) -> TokenAuth:
        auth = (body or {}).get("auth")
        if not auth:
            raise VaultError(method, f"{self._address}{path}", 200, ["response has no auth data"])
        return TokenAuth.model_validate(auth)
