"""Shared fixtures: a scripted mock upstream and config builders."""

from typing import Union

import httpx
import pytest

from failover_gateway.config import GatewayConfig
from failover_gateway.models import UpstreamConfig

UPSTREAM_URL = "https://upstream.test"


def upstream_response(status_code: int, body: bytes = b"", content_type: str = "application/json") -> httpx.Response:
    """Build a canned upstream response with an exact body."""
    headers = {"content-type": content_type} if content_type else {}
    return httpx.Response(status_code, content=body, headers=headers)


class MockUpstream:
    """
    In-process upstream driven by httpx.MockTransport.

    Each credential maps to either a response or an exception to raise.
    Every request is recorded so tests can assert call counts and order.
    """

    def __init__(self, script: dict[str, Union[httpx.Response, Exception]]):
        self.script = script
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        action = self.script[request.url.params["key"]]
        if isinstance(action, Exception):
            raise action
        return action

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def keys_tried(self) -> list[str]:
        return [r.url.params["key"] for r in self.requests]


def make_config(keys=("K1", "K2", "K3"), **overrides) -> GatewayConfig:
    """Create a test configuration pointing at the mock upstream."""
    overrides.setdefault("upstream", UpstreamConfig(base_url=UPSTREAM_URL, timeout=5.0))
    return GatewayConfig(credentials=keys, **overrides)


@pytest.fixture
def config():
    """Three-key pool, no secret, all origins allowed."""
    return make_config()
