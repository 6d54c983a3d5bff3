"""Entry point for ``python -m vault_broker``."""

from __future__ import annotations

from vault_broker.cli import main

if __name__ == "__main__":
    main()
