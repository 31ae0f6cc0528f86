#!/usr/bin/env python3
"""
Run the Failover Gateway.

Usage:
    GEMINI_API_KEYS=key1,key2 python run_gateway.py [--host HOST] [--port PORT]

Environment:
    GEMINI_API_KEYS   - Comma-separated upstream keys, tried in order (required)
    PROXY_TOKEN       - Shared secret expected in x-proxy-token (optional)
    ALLOWED_ORIGINS   - Comma-separated CORS allow-list (default: allow all)
    PORT              - Port to listen on (default: 8080)
    UPSTREAM_BASE_URL - Upstream API origin
    UPSTREAM_TIMEOUT  - Per-attempt timeout in seconds (default: 60)
    MAX_BODY_BYTES    - Request body limit (default: 50 MiB)
    LOG_LEVEL         - Logging level (default: INFO)
"""

import argparse
import logging
import sys

import uvicorn

from failover_gateway.config import ConfigurationError, GatewayConfig
from failover_gateway.main import create_app
from failover_gateway.request_log import configure_logging

logger = logging.getLogger("failover_gateway")


def main():
    """Run the gateway server."""
    parser = argparse.ArgumentParser(description="Run the Failover Gateway")
    parser.add_argument("--host", default=None, help="Host to bind to (overrides GATEWAY_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (overrides PORT)")

    args = parser.parse_args()

    try:
        config = GatewayConfig.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error("%s", e)
        sys.exit(1)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if overrides:
        config = config.model_copy(update=overrides)

    app = create_app(config)
    logger.info("proxy listening on :%d", config.port)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        server_header=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
