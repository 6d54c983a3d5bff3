"""Access log for the broker API.

One record per request on logger ``vault_broker.access``.  OSB requests also
carry the instance and binding IDs parsed from the path and the platform's
``X-Broker-API-*`` headers.  The Authorization header is never recorded.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("vault_broker.access")

CORRELATION_HEADER = "X-Correlation-ID"

_OSB_PATH = re.compile(r"^/v2/service_instances/(?P<instance_id>[^/]+)(?:/service_bindings/(?P<binding_id>[^/]+))?")

_BROKER_HEADERS = {
    "x-broker-api-version": "api_version",
    "x-broker-api-originating-identity": "originating_identity",
    "user-agent": "user_agent",
}


def osb_ids(path: str) -> dict[str, str]:
    """Instance and binding IDs addressed by an OSB *path*, if any."""
    match = _OSB_PATH.match(path)
    if match is None:
        return {}
    return {key: value for key, value in match.groupdict().items() if value}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration for every request.

    The ``X-Correlation-ID`` request header is reused when present, otherwise
    a UUID-4 is generated; either way it is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            entry: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                **osb_ids(request.url.path),
            }
            for header, field in _BROKER_HEADERS.items():
                value = request.headers.get(header)
                if value is not None:
                    entry[field] = value
            logger.log(_level_for(status_code), "request completed", extra={"request": entry})
