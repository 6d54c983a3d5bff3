"""HTTP basic authentication for the Open Service Broker API.

Every request under ``/v2`` must carry ``Authorization: Basic ...`` matching
the configured security user.  Health and readiness probes are public.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_PROTECTED_PREFIX = "/v2"
_REALM = 'Basic realm="vault-service-broker"'


def _is_protected(path: str) -> bool:
    return path == _PROTECTED_PREFIX or path.startswith(_PROTECTED_PREFIX + "/")


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode a ``Basic`` Authorization header into ``(username, password)``.

    Returns ``None`` for a missing, non-Basic or malformed header.
    """
    if not header:
        return None
    parts = header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Reject ``/v2`` requests whose credentials do not match.

    Both the username and the password are compared in constant time, and
    both comparisons always run.
    """

    def __init__(self, app: Any, *, username: str, password: str) -> None:
        super().__init__(app)
        self._username = username.encode("utf-8")
        self._password = password.encode("utf-8")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not _is_protected(request.url.path):
            return await call_next(request)

        credentials = parse_basic_auth(request.headers.get("authorization"))
        if credentials is None:
            return self._unauthorized()

        user_ok = secrets.compare_digest(credentials[0].encode("utf-8"), self._username)
        password_ok = secrets.compare_digest(credentials[1].encode("utf-8"), self._password)
        if not (user_ok and password_ok):
            logger.warning("Rejected broker API request to %s: invalid credentials", request.url.path)
            return self._unauthorized()

        return await call_next(request)

    @staticmethod
    def _unauthorized() -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"description": "Not Authorized"},
            headers={"WWW-Authenticate": _REALM},
        )
