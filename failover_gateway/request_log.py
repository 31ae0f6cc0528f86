"""Access logging for the Failover Gateway."""

import logging
import time
from typing import Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# These log full request URLs, and upstream URLs carry the credential.
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging and silence client libraries that would leak credentials."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class RequestLogger:
    """Structured logging for requests."""

    def __init__(self, log_level: int = logging.INFO):
        """Initialize request logger."""
        self._logger = logging.getLogger("failover_gateway.requests")
        self._logger.setLevel(log_level)

    def log_request(
        self,
        method: str,
        path: str,
        status_code: int,
        latency_ms: float,
        content_length: Optional[str] = None,
    ) -> None:
        """Log one line per request, in the spirit of a ``tiny`` access log."""
        log_data = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 2),
            "content_length": content_length or "-",
        }
        self._logger.info(
            "%s %s %d %s - %.2f ms",
            method,
            path,
            status_code,
            log_data["content_length"],
            log_data["latency_ms"],
            extra=log_data,
        )


class AccessLogMiddleware:
    """Outermost middleware: times every request and writes the access log line."""

    def __init__(self, app: ASGIApp, request_logger: Optional[RequestLogger] = None):
        self.app = app
        self._request_logger = request_logger or RequestLogger()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.monotonic()
        status_code = 500
        content_length = None

        async def send_and_record(message: Message) -> None:
            nonlocal status_code, content_length
            if message["type"] == "http.response.start":
                status_code = message["status"]
                content_length = Headers(raw=message.get("headers", [])).get("content-length")
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            self._request_logger.log_request(
                method=scope["method"],
                path=scope["path"],
                status_code=status_code,
                latency_ms=(time.monotonic() - start_time) * 1000,
                content_length=content_length,
            )
