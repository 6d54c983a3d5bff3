"""Tests for idempotent mount management."""

from __future__ import annotations

import pytest

from vault_broker.mounts import MountManager, format_mounts, normalize_mount_path
from vault_broker.vault import VaultError


class TestHelpers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("cf/x", "cf/x"), ("/cf/x/", "cf/x"), ("cf/x///", "cf/x"), ("", "")],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_mount_path(raw) == expected

    def test_format_is_sorted(self) -> None:
        assert format_mounts({"b": "transit", "a": "generic"}) == "a=generic, b=transit"


class TestMountManager:
    @pytest.mark.asyncio
    async def test_ensure_mounts_only_missing(self, fake_vault) -> None:
        fake_vault.mounts["cf/org/secret/"] = "generic"
        manager = MountManager(fake_vault)

        created = await manager.ensure_mounts({"cf/org/secret": "generic", "cf/inst/transit": "transit"})

        assert created == ["cf/inst/transit"]
        assert fake_vault.mounts["cf/inst/transit/"] == "transit"
        assert fake_vault.count("mount") == 1

    @pytest.mark.asyncio
    async def test_ensure_mounts_twice_is_noop(self, fake_vault) -> None:
        manager = MountManager(fake_vault)
        mounts = {"cf/inst/secret": "generic", "/cf/inst/transit/": "transit"}

        first = await manager.ensure_mounts(mounts)
        table_after_first = dict(fake_vault.mounts)
        second = await manager.ensure_mounts(mounts)

        assert first == ["cf/inst/secret", "cf/inst/transit"]
        assert second == []
        assert fake_vault.mounts == table_after_first

    @pytest.mark.asyncio
    async def test_remove_mounts_skips_absent(self, fake_vault) -> None:
        fake_vault.mounts["cf/inst/secret/"] = "generic"
        manager = MountManager(fake_vault)

        removed = await manager.remove_mounts(["cf/inst/secret", "cf/inst/transit"])

        assert removed == ["cf/inst/secret"]
        assert "cf/inst/secret/" not in fake_vault.mounts
        assert fake_vault.count("unmount") == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_earlier_mounts(self, fake_vault) -> None:
        manager = MountManager(fake_vault)
        original_mount = fake_vault.mount

        async def flaky_mount(path: str, backend_type: str) -> None:
            if path == "cf/inst/transit":
                raise VaultError("POST", "https://vault.test/v1/sys/mounts/cf/inst/transit", 500, ["boom"])
            await original_mount(path, backend_type)

        fake_vault.mount = flaky_mount

        with pytest.raises(VaultError):
            await manager.ensure_mounts({"cf/inst/secret": "generic", "cf/inst/transit": "transit"})

        assert "cf/inst/secret/" in fake_vault.mounts
        assert "cf/inst/transit/" not in fake_vault.mounts

        fake_vault.mount = original_mount
        assert await manager.ensure_mounts({"cf/inst/secret": "generic", "cf/inst/transit": "transit"}) == [
            "cf/inst/transit"
        ]

    @pytest.mark.asyncio
    async def test_list_failure_propagates(self, fake_vault) -> None:
        fake_vault.fail("list_mounts")
        with pytest.raises(VaultError):
            await MountManager(fake_vault).ensure_mounts({"cf/x": "generic"})
