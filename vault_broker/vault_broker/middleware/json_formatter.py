"""One-JSON-object-per-line log output, enabled with ``STRUCTURED_LOGGING=true``.

Fields per line::

    {
        "timestamp": "2026-03-01T12:00:00.000000+00:00",
        "level": "INFO",
        "logger": "vault_broker.lifecycle",
        "message": "Unbinding bind-1 for instance inst-1",
        "instance_id": "inst-1",      // when passed via ``extra``
        "binding_id": "bind-1",       // when passed via ``extra``
        "request": { ... },           // access log records only
        "exc_info": "Traceback ..."   // exceptions only
    }

Anything shaped like a Vault service token is masked in the message and the
traceback; accessors are left readable.
"""

from __future__ import annotations

import json
import logging
import re
import traceback
from datetime import UTC, datetime
from typing import Any

# Legacy ``s.`` tokens and the newer ``hvs.`` / ``hvb.`` prefixes.
_VAULT_TOKEN = re.compile(r"\b(?:hvs|hvb|s)\.[A-Za-z0-9_-]{20,}")
_TOKEN_MASK = "<vault-token>"

# ``extra`` attributes promoted to top-level fields.
_CONTEXT_FIELDS = ("instance_id", "binding_id", "accessor")


def mask_tokens(text: str) -> str:
    """Replace every Vault token found in *text* with a placeholder."""
    return _VAULT_TOKEN.sub(_TOKEN_MASK, text)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_tokens(record.getMessage()),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = mask_tokens("".join(traceback.format_exception(*record.exc_info)))

        return json.dumps(payload, default=str, ensure_ascii=False)
