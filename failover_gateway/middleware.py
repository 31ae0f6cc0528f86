"""Middleware for origin policy enforcement and shared-secret authentication.

Both are plain ASGI middleware: ``receive`` reaches the route untouched, so
the forwarder can see a caller disconnect while an upstream attempt runs.
"""

import logging
import secrets
from typing import Iterable, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .responses import error_response

logger = logging.getLogger(__name__)

PREFLIGHT_METHOD = "OPTIONS"
ALLOWED_METHODS = "GET,POST,OPTIONS"


def origin_allowed(allowed_origins: tuple[str, ...], origin: Optional[str]) -> bool:
    """
    Check an Origin header against the allow-list.

    An empty allow-list admits everything, and so does a request without an
    Origin header (same-origin and non-browser callers).
    """
    if not allowed_origins or not origin:
        return True
    return origin in allowed_origins


def cors_headers(origin: Optional[str], token_header: str) -> dict[str, str]:
    """Return the CORS headers to stamp on a response for an allowed origin."""
    headers = {
        "Access-Control-Allow-Headers": f"Content-Type, {token_header}",
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
    }
    if origin:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return headers


class CorsMiddleware:
    """
    CORS negotiation, run before any other processing.

    - Rejects disallowed origins with 403
    - Answers preflight requests with 204, without authentication
    - Echoes allowed origins on every response
    """

    def __init__(self, app: ASGIApp, allowed_origins: Iterable[str] = (), token_header: str = "x-proxy-token"):
        self.app = app
        self._allowed_origins = tuple(allowed_origins)
        self._token_header = token_header

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")

        if not origin_allowed(self._allowed_origins, origin):
            logger.warning("Rejected request from disallowed origin %s", origin, extra={"origin": origin})
            await error_response(403, "Origin not allowed")(scope, receive, send)
            return

        headers = cors_headers(origin, self._token_header)

        if scope["method"] == PREFLIGHT_METHOD:
            await Response(status_code=204, headers=headers)(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).update(headers)
            await send(message)

        await self.app(scope, receive, send_with_cors)


class AccessGuardMiddleware:
    """Requires the shared secret on every request except preflight and exempt paths."""

    def __init__(
        self,
        app: ASGIApp,
        shared_secret: Optional[str] = None,
        token_header: str = "x-proxy-token",
        exempt_paths: Iterable[str] = (),
    ):
        self.app = app
        self._secret = shared_secret
        self._token_header = token_header
        self._exempt_paths = frozenset(exempt_paths)

    def is_authorized(self, presented: Optional[str]) -> bool:
        """Exact match against the configured secret; always true when none is set."""
        if not self._secret:
            return True
        if presented is None:
            return False
        return secrets.compare_digest(presented.encode(), self._secret.encode())

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] == PREFLIGHT_METHOD
            or scope["path"] in self._exempt_paths
        ):
            await self.app(scope, receive, send)
            return

        if not self.is_authorized(Headers(scope=scope).get(self._token_header)):
            logger.warning(
                "Rejected %s %s: missing or invalid %s",
                scope["method"],
                scope["path"],
                self._token_header,
                extra={"method": scope["method"], "path": scope["path"]},
            )
            await error_response(401, f"Missing or invalid {self._token_header}")(scope, receive, send)
            return

        await self.app(scope, receive, send)
