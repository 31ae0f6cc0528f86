"""Failover Forwarder: delivers one request using the credential pool in order."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from .config import GatewayConfig

logger = logging.getLogger(__name__)

# Methods sent upstream without a body.
BODYLESS_METHODS = frozenset({"GET", "HEAD"})


class Decision(str, Enum):
    """What the forwarder does after an attempt."""
    RETRY = "retry"          # Try the next credential
    STOP = "stop"            # Forward this response to the caller
    EXHAUSTED = "exhausted"  # Retryable failure on the last credential


@dataclass(frozen=True)
class UpstreamOutcome:
    """Result of one upstream attempt."""
    credential_index: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def transport_failed(self) -> bool:
        return self.status_code is None


@dataclass(frozen=True)
class UpstreamReply:
    """An acceptable upstream response, body fully read."""
    status_code: int
    content_type: Optional[str]
    body: bytes
    content_length: Optional[str] = None


@dataclass
class FailoverResult:
    """Outcome of a whole failover run for one inbound request."""
    reply: Optional[UpstreamReply] = None
    attempts: int = 0
    aborted: bool = False

    @property
    def exhausted(self) -> bool:
        return self.reply is None and not self.aborted


def is_retryable(outcome: UpstreamOutcome, retryable_statuses: frozenset[int]) -> bool:
    """Transport failures and statuses from the retryable set move on to the next credential."""
    if outcome.transport_failed:
        return True
    return outcome.status_code in retryable_statuses


def decide(
    outcome: UpstreamOutcome,
    pool_size: int,
    retryable_statuses: frozenset[int],
) -> Decision:
    """
    Classify an attempt outcome.

    Any status outside the retryable set stops the run, including client
    errors such as 400 or 404: another credential would get the same answer.

    Args:
        outcome: Outcome of the attempt made with ``outcome.credential_index``
        pool_size: Number of credentials in the pool
        retryable_statuses: Statuses that justify trying the next credential

    Returns:
        STOP, RETRY, or EXHAUSTED when the last credential failed
    """
    if not is_retryable(outcome, retryable_statuses):
        return Decision.STOP
    if outcome.credential_index + 1 >= pool_size:
        return Decision.EXHAUSTED
    return Decision.RETRY


class FailoverForwarder:
    """
    Forwards requests upstream, failing over across the credential pool.

    Features:
    - Strict pool-order, sequential attempts
    - Credential injected as a query parameter, never logged
    - Retryable response bodies discarded unread
    - Bounded per-attempt timeouts, per phase and in total
    - Abort on caller disconnect
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        disconnect_poll_interval: float = 0.25,
    ):
        """
        Initialize the forwarder.

        Args:
            config: Gateway configuration holding the credential pool
            transport: Optional httpx transport (tests pass a MockTransport)
            disconnect_poll_interval: Seconds between caller disconnect checks
        """
        self._upstream = config.upstream
        self._credentials = config.credentials
        self._transport = transport
        self._poll_interval = disconnect_poll_interval
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Open the shared HTTP client."""
        self._client = httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._upstream.timeout, connect=self._upstream.connect_timeout),
        )

    async def stop(self) -> None:
        """Close the shared HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_upstream_url(self, path: str, query: bytes, credential: str) -> httpx.URL:
        """
        Combine the upstream origin with the caller's path and query and inject the credential.

        ``path`` is percent-encoded as received; existing escapes are kept as-is.
        """
        url = httpx.URL(self._upstream.base_url + path, query=query)
        return url.copy_set_param(self._upstream.credential_param, credential)

    async def forward(
        self,
        method: str,
        path: str,
        query: bytes = b"",
        body: bytes = b"",
        content_type: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> FailoverResult:
        """
        Deliver one request, trying credentials in pool order.

        Args:
            method: Caller's HTTP method
            path: Caller's path, forwarded unchanged
            query: Caller's raw query string, as received
            body: Caller's body (ignored for GET/HEAD)
            content_type: Caller's content type, defaulted when absent
            is_disconnected: Coroutine function reporting caller disconnect

        Returns:
            FailoverResult holding the acceptable reply, or none when every
            credential failed or the caller went away
        """
        if not self._client:
            raise RuntimeError("Forwarder not started")

        method = method.upper()
        headers = {"content-type": content_type or self._upstream.default_content_type}
        content = None if method in BODYLESS_METHODS else body
        pool_size = len(self._credentials)

        index = 0
        while True:
            attempt = self._attempt(index, method, path, query, headers, content)
            completed = await self._race_disconnect(attempt, is_disconnected)
            if completed is None:
                logger.info(
                    "Caller disconnected, aborting at Key[%d]",
                    index,
                    extra={"credential_index": index, "outcome": "aborted"},
                )
                return FailoverResult(attempts=index + 1, aborted=True)

            outcome, reply = completed
            decision = decide(outcome, pool_size, self._upstream.retryable_statuses)

            if decision is Decision.STOP:
                logger.info(
                    "Request served using Key[%d] (status %d)",
                    index,
                    outcome.status_code,
                    extra={"credential_index": index, "status_code": outcome.status_code},
                )
                return FailoverResult(reply=reply, attempts=index + 1)

            self._log_retryable(outcome)

            if decision is Decision.EXHAUSTED:
                logger.error(
                    "All API keys failed for %s %s",
                    method,
                    path,
                    extra={"attempts": pool_size, "outcome": "exhausted"},
                )
                return FailoverResult(attempts=index + 1)

            index += 1

    async def _attempt(
        self,
        index: int,
        method: str,
        path: str,
        query: bytes,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> tuple[UpstreamOutcome, Optional[UpstreamReply]]:
        """Make one upstream call with credential ``index``, bounded by the upstream timeout in total."""
        try:
            return await asyncio.wait_for(
                self._send_attempt(index, method, path, query, headers, content),
                timeout=self._upstream.timeout,
            )
        except asyncio.TimeoutError:
            message = f"Timeout: no complete response within {self._upstream.timeout}s"
            return UpstreamOutcome(index, error=message), None

    async def _send_attempt(
        self,
        index: int,
        method: str,
        path: str,
        query: bytes,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> tuple[UpstreamOutcome, Optional[UpstreamReply]]:
        """Send one request. Retryable bodies are never read."""
        credential = self._credentials[index].get_secret_value()

        try:
            url = self.build_upstream_url(path, query, credential)
            request = self._client.build_request(method, url, headers=headers, content=content)
            response = await self._client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._transport_failure(index, e, credential), None

        try:
            if response.status_code in self._upstream.retryable_statuses:
                return UpstreamOutcome(index, status_code=response.status_code), None

            body = await response.aread()
        except httpx.HTTPError as e:
            return self._transport_failure(index, e, credential), None
        finally:
            await response.aclose()

        reply = UpstreamReply(
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            body=body,
            # HEAD carries no body, so keep the size the upstream advertised.
            content_length=response.headers.get("content-length") if method == "HEAD" else None,
        )
        return UpstreamOutcome(index, status_code=response.status_code), reply

    @staticmethod
    def _transport_failure(index: int, error: Exception, credential: str) -> UpstreamOutcome:
        message = str(error).replace(credential, "***") or type(error).__name__
        return UpstreamOutcome(index, error=f"{type(error).__name__}: {message}")

    def _log_retryable(self, outcome: UpstreamOutcome) -> None:
        index = outcome.credential_index
        if outcome.transport_failed:
            logger.error(
                "Network error with Key[%d]: %s",
                index,
                outcome.error,
                extra={"credential_index": index, "error": outcome.error},
            )
        else:
            logger.warning(
                "Key[%d] failed with status %d. Trying next key...",
                index,
                outcome.status_code,
                extra={"credential_index": index, "status_code": outcome.status_code},
            )

    async def _race_disconnect(
        self,
        attempt: Awaitable,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ):
        """Run an attempt, cancelling it if the caller disconnects first. Returns None on disconnect."""
        if is_disconnected is None:
            return await attempt

        attempt_task = asyncio.ensure_future(attempt)
        watcher = asyncio.ensure_future(self._wait_for_disconnect(is_disconnected))
        try:
            await asyncio.wait({attempt_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            attempt_task.cancel()
            raise
        finally:
            watcher.cancel()

        if attempt_task.done():
            return attempt_task.result()

        if not watcher.cancelled() and watcher.exception() is not None:
            logger.debug("Disconnect check failed: %s", watcher.exception())
            return await attempt_task

        attempt_task.cancel()
        try:
            await attempt_task
        except asyncio.CancelledError:
            pass
        return None

    async def _wait_for_disconnect(self, is_disconnected: Callable[[], Awaitable[bool]]) -> None:
        while not await is_disconnected():
            await asyncio.sleep(self._poll_interval)
