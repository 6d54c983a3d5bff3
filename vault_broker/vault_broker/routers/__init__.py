"""API router modules for the broker."""

from __future__ import annotations

from vault_broker.routers import health, osb

__all__ = [
    "health",
    "osb",
]
