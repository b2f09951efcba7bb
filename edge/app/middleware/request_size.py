"""Request body size limit middleware.

The sign-up form posts a few hundred bytes at most; anything much larger
is rejected before it is buffered. Enforced for both Content-Length and
chunked transfer encoding.
"""

import json

from starlette.types import Message, Receive, Scope, Send

from edge.app.exceptions import PayloadTooLargeError


class SizeLimitedStream:
    """Wraps the ASGI receive callable and counts body bytes as they arrive."""

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        """Receive and enforce size limit.

        Raises:
            PayloadTooLargeError: If body size exceeds max_size
        """
        message = await self._receive()

        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise PayloadTooLargeError(
                    f"Request body too large. Maximum allowed: {self._max_size} bytes"
                )

        return message


class RequestSizeLimitMiddleware:
    """ASGI middleware to limit request body size.

    Returns HTTP 413 with a JSON error body if the limit is exceeded.
    Implemented as raw ASGI middleware so the receive callable is wrapped
    before Starlette's Request is constructed.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=16 * 1024)
    """

    def __init__(self, app, max_body_size: int = 16 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = None
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                content_length = value.decode()
                break

        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None  # Malformed header, fall back to counting bytes
            if size is not None and size > self.max_body_size:
                await self._send_413_response(send)
                return

        limited = SizeLimitedStream(receive, self.max_body_size)
        try:
            await self.app(scope, limited.receive, send)
        except PayloadTooLargeError as exc:
            await self._send_413_response(send, exc)

    async def _send_413_response(self, send: Send, exc: PayloadTooLargeError | None = None) -> None:
        if exc is None:
            exc = PayloadTooLargeError(
                f"Request body too large. Maximum allowed: {self.max_body_size} bytes"
            )
        body = json.dumps(exc.to_response()).encode()

        await send(
            {
                "type": "http.response.start",
                "status": exc.status_code,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                    [b"cache-control", b"no-store"],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
