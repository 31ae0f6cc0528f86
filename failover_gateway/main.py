"""Main FastAPI application for the Failover Gateway."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from .config import GatewayConfig
from .forwarder import FailoverForwarder
from .middleware import AccessGuardMiddleware, CorsMiddleware
from .request_log import AccessLogMiddleware, configure_logging
from .responses import error_response, render_result

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    config: GatewayConfig = app.state.config
    forwarder: FailoverForwarder = app.state.forwarder

    logger.info(
        "Starting Failover Gateway: %d upstream key(s), shared secret %s, %s",
        config.pool_size,
        "required" if config.shared_secret else "DISABLED",
        f"{len(config.allowed_origins)} allowed origin(s)" if config.allowed_origins else "all origins allowed",
    )
    await forwarder.start()

    yield

    logger.info("Shutting down Failover Gateway...")
    await forwarder.stop()


async def read_body(request: Request, limit: int) -> Optional[bytes]:
    """Read the request body, or return None as soon as it exceeds ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        return None

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def raw_request_path(request: Request) -> str:
    """The request path as the caller encoded it, so escapes like %3F survive the hop."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return request.url.path
    return raw_path.split(b"?", 1)[0].decode("utf-8", errors="replace")


def create_app(
    config: Optional[GatewayConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Gateway configuration (loaded from the environment if not provided)
        transport: Optional httpx transport for upstream calls

    Returns:
        Configured FastAPI application

    Raises:
        ConfigurationError: If no configuration is given and the environment is invalid
    """
    if config is None:
        config = GatewayConfig.from_env()

    configure_logging(config.log_level)

    app = FastAPI(
        title="Failover Gateway",
        description="Reverse proxy with ordered upstream credential failover",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.forwarder = FailoverForwarder(config, transport=transport)

    # Starlette runs the last-added middleware first.
    secret = config.shared_secret.get_secret_value() if config.shared_secret else None
    app.add_middleware(
        AccessGuardMiddleware,
        shared_secret=secret,
        token_header=config.token_header,
        exempt_paths=[config.health_path] if config.public_health else [],
    )
    app.add_middleware(
        CorsMiddleware,
        allowed_origins=config.allowed_origins,
        token_header=config.token_header,
    )
    app.add_middleware(AccessLogMiddleware)

    @app.get(config.health_path, response_class=PlainTextResponse, tags=["Health"])
    async def health_check():
        """Liveness check; never touches the upstream."""
        return "ok"

    @app.api_route(f"{config.api_prefix}/{{path:path}}", methods=PROXY_METHODS, tags=["Proxy"])
    async def proxy_request(request: Request, path: str) -> Response:
        """Forward a request upstream with credential failover."""
        body = await read_body(request, config.max_body_bytes)
        if body is None:
            return error_response(413, "Request body too large")

        result = await app.state.forwarder.forward(
            method=request.method,
            path=raw_request_path(request),
            query=request.scope.get("query_string", b""),
            body=body,
            content_type=request.headers.get("content-type"),
            is_disconnected=request.is_disconnected,
        )
        return render_result(result)

    return app
