"""Vault service broker: tenant and binding lifecycle with lease renewal."""

__version__ = "0.4.0"
