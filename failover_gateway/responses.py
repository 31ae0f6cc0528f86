"""Passthrough Responder and gateway error responses."""

from fastapi import Response
from fastapi.responses import JSONResponse

from .forwarder import FailoverResult, UpstreamReply
from .models import ErrorResponse

EXHAUSTED_MESSAGE = "All upstream keys failed"

# Non-standard "client closed request"; the caller is gone and never sees it.
CLIENT_CLOSED_REQUEST = 499


def error_response(status_code: int, message: str) -> JSONResponse:
    """Build a gateway-originated JSON error."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


def passthrough(reply: UpstreamReply) -> Response:
    """Copy status, content type and exact body bytes of an upstream reply."""
    headers = {}
    if reply.content_type:
        headers["content-type"] = reply.content_type
    if reply.content_length is not None:
        headers["content-length"] = reply.content_length
    return Response(content=reply.body, status_code=reply.status_code, headers=headers)


def render_result(result: FailoverResult) -> Response:
    """Turn a failover run into the single response returned to the caller."""
    if result.reply is not None:
        return passthrough(result.reply)
    if result.aborted:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    return error_response(502, EXHAUSTED_MESSAGE)
