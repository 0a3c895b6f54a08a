"""ASGI middleware for request validation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


_JSON_ENDPOINTS: re.Pattern[str] = re.compile(
    r"^/(annotations/(regular|translation|revision)|admin/verify|qa/verify)$"
)


def _rejection(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )


def _too_large() -> JSONResponse:
    return _rejection(413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size")


class RequestValidationMiddleware:
    """
    Reject malformed submissions and dispositions before routing.

    Only POSTs to the annotation, QA and admin endpoints are inspected: a
    Content-Type other than application/json gets 415, and a body larger
    than ``max_body_size`` gets 413. The body is buffered and replayed.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope.get("method") != "POST"
            or _JSON_ENDPOINTS.match(cast("str", scope.get("path", ""))) is None
        ):
            await self.app(scope, receive, send)
            return

        headers = dict(cast("list[tuple[bytes, bytes]]", scope.get("headers", [])))
        content_type = headers.get(b"content-type", b"").decode().lower()
        if not content_type.startswith("application/json"):
            response = _rejection(
                415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json"
            )
            await response(scope, receive, send)
            return

        declared = headers.get(b"content-length", b"").decode()
        if declared.isdigit() and int(declared) > self.max_body_size:
            await _too_large()(scope, receive, send)
            return

        body = bytearray()
        more_body = True
        while more_body:
            message = cast("dict[str, Any]", await receive())
            body.extend(cast("bytes", message.get("body", b"")))
            if len(body) > self.max_body_size:
                await _too_large()(scope, receive, send)
                return
            more_body = bool(message.get("more_body", False))

        replayed = False

        async def replay() -> dict[str, Any]:
            nonlocal replayed
            if replayed:
                return {"type": "http.disconnect"}
            replayed = True
            return {"type": "http.request", "body": bytes(body), "more_body": False}

        await self.app(scope, replay, send)
