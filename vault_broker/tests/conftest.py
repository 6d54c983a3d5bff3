"""Shared fixtures for the broker tests.

Provides an in-memory Vault double, a controllable clock, ready-made
settings, and a started :class:`LifecycleManager` wired to the fake.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from vault_broker.config import BrokerSettings
from vault_broker.lifecycle import LifecycleManager
from vault_broker.vault import TokenAuth, VaultError

VAULT_ADDR = "https://vault.test:8200/"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVault:
    """In-memory stand-in for :class:`vault_broker.vault.VaultClient`.

    Records every call in ``calls`` and raises the exception registered for
    a method name in ``failures``.  ``renew_gate``, when set, makes
    ``renew_self`` block until the event is set.
    """

    def __init__(self) -> None:
        self.address = VAULT_ADDR.rstrip("/")
        self.policies: dict[str, str] = {}
        self.roles: dict[str, dict[str, Any]] = {}
        self.mounts: dict[str, str] = {"secret/": "kv", "sys/": "system", "auth/": "system"}
        self.data: dict[str, dict[str, Any]] = {}
        self.tokens: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[str, Exception] = {}
        self.lease_duration = 3600
        self.self_info: dict[str, Any] = {"expire_time": None}
        self.healthy = True
        self.renewed_tokens: list[str] = []
        self.renew_started = asyncio.Event()
        self.renew_gate: asyncio.Event | None = None
        self._ids = itertools.count(1)

    # -- Test helpers --------------------------------------------------------

    def fail(self, method: str, status_code: int = 500, errors: list[str] | None = None) -> None:
        self.failures[method] = VaultError("PUT", f"{self.address}/v1/{method}", status_code, errors or ["internal error"])

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    # -- Policies and roles --------------------------------------------------

    async def write_policy(self, name: str, document: str) -> None:
        self._call("write_policy", name)
        self.policies[name] = document

    async def delete_policy(self, name: str) -> None:
        self._call("delete_policy", name)
        self.policies.pop(name, None)

    async def write_role(self, name: str, *, allowed_policies: list[str], period: int, renewable: bool = True) -> None:
        self._call("write_role", name)
        self.roles[name] = {"allowed_policies": allowed_policies, "period": period, "renewable": renewable}

    async def delete_role(self, name: str) -> None:
        self._call("delete_role", name)
        self.roles.pop(name, None)

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
        self._call("create_token", role)
        n = next(self._ids)
        token, accessor = f"s.token-{n}", f"accessor-{n}"
        self.tokens[accessor] = {
            "token": token,
            "role": role,
            "policies": policies,
            "meta": metadata,
            "display_name": display_name,
            "renewable": renewable,
        }
        return TokenAuth(
            client_token=token,
            accessor=accessor,
            lease_duration=self.lease_duration,
            renewable=renewable,
            policies=policies,
        )

    async def renew_self(self, token: str, increment: int | None = None) -> TokenAuth:
        self.renew_started.set()
        if self.renew_gate is not None:
            await self.renew_gate.wait()
        self._call("renew_self", token)
        accessor = next((acc for acc, info in self.tokens.items() if info["token"] == token), "")
        if token != "root-token" and not accessor:
            raise VaultError("POST", f"{self.address}/v1/auth/token/renew-self", 403, ["permission denied"])
        self.renewed_tokens.append(token)
        return TokenAuth(client_token=token, accessor=accessor, lease_duration=self.lease_duration, renewable=True)

    async def lookup_self(self) -> dict[str, Any]:
        self._call("lookup_self")
        return dict(self.self_info)

    async def revoke_accessor(self, accessor: str) -> None:
        self._call("revoke_accessor", accessor)
        if accessor not in self.tokens:
            raise VaultError(
                "POST",
                f"{self.address}/v1/auth/token/revoke-accessor",
                400,
                ["1 error occurred:\n\t* invalid accessor\n\n"],
            )
        del self.tokens[accessor]

    # -- Mounts --------------------------------------------------------------

    async def list_mounts(self) -> dict[str, str]:
        self._call("list_mounts")
        return dict(self.mounts)

    async def mount(self, path: str, backend_type: str) -> None:
        self._call("mount", path)
        self.mounts[f"{path}/"] = backend_type

    async def unmount(self, path: str) -> None:
        self._call("unmount", path)
        self.mounts.pop(f"{path}/", None)
        prefix = f"{path}/"
        for key in [k for k in self.data if k.startswith(prefix)]:
            del self.data[key]

    # -- Logical store -------------------------------------------------------

    async def read(self, path: str) -> dict[str, Any] | None:
        self._call("read", path)
        data = self.data.get(path)
        return dict(data) if data else None

    async def write(self, path: str, data: dict[str, Any]) -> None:
        self._call("write", path)
        self.data[path] = dict(data)

    async def delete(self, path: str) -> None:
        self._call("delete", path)
        self.data.pop(path, None)

    async def list(self, path: str) -> list[str]:
        self._call("list", path)
        keys: set[str] = set()
        for stored in self.data:
            if not stored.startswith(path):
                continue
            rest = stored[len(path) :]
            head, sep, _ = rest.partition("/")
            keys.add(head + sep)
        return sorted(keys)

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self._call("close")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll *predicate* until it is true or *timeout* seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> BrokerSettings:
    values: dict[str, Any] = {
        "security_user_name": "broker-admin",
        "security_user_password": "broker-secret",
        "vault_token": "root-token",
        "vault_addr": VAULT_ADDR,
        "vault_renew": False,
        "renewal_retry_seconds": 0.05,
        "renewal_jitter_seconds": 0.0,
        "shutdown_grace_seconds": 1.0,
    }
    values.update(overrides)
    return BrokerSettings(_env_file=None, **values)


@pytest.fixture
def settings() -> BrokerSettings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., BrokerSettings]:
    return make_settings


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def waiter() -> Callable[..., Any]:
    return wait_until


@pytest_asyncio.fixture
async def manager(fake_vault: FakeVault, settings: BrokerSettings) -> AsyncGenerator[LifecycleManager, None]:
    """A started manager on the real clock, stopped after the test."""
    mgr = LifecycleManager(fake_vault, settings)  # type: ignore[arg-type]
    await mgr.start()
    yield mgr
    await mgr.stop()
