"""Request body size limit middleware.

This middleware limits the size of incoming request bodies to prevent
memory exhaustion and keeps uploads within what the platform accepts.

Enforces size limits for both Content-Length and chunked transfer encoding.
"""

from starlette.types import Message, Receive, Scope, Send

from portal.app.core.logging import log_security_event
from portal.app.exceptions import PayloadTooLargeError


class SizeLimitedStream:
    """A receive wrapper that counts body bytes as they are read.

    This prevents chunked transfer encoding bypass of the Content-Length
    check.
    """

    class SizeExceededError(Exception):
        """Raised when request body exceeds size limit."""

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        """Receive and enforce size limit.

        Raises:
            SizeExceededError: If body size exceeds max_size
        """
        message = await self._receive()

        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise self.SizeExceededError(
                    f"Request body too large. Maximum allowed: {self._max_size} bytes"
                )

        return message


class RequestSizeLimitMiddleware:
    """ASGI middleware to limit request body size.

    Returns HTTP 413 (Payload Too Large) with the portal's structured
    error body if the limit is exceeded.

    This is raw ASGI middleware so it can wrap the receive callable
    before Starlette's Request is constructed.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=10*1024*1024)
    """

    def __init__(self, app, max_body_size: int = 10 * 1024 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Check Content-Length header first (fast path for most requests)
        content_length = None
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                content_length = value.decode("latin-1")
                break

        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None
            if size is not None and size > self.max_body_size:
                await self._send_413_response(scope, receive, send)
                return

        size_limited_receive = SizeLimitedStream(receive, self.max_body_size).receive
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, size_limited_receive, tracking_send)
        except SizeLimitedStream.SizeExceededError:
            if response_started:
                raise
            await self._send_413_response(scope, receive, send)

    async def _send_413_response(self, scope: Scope, receive: Receive, send: Send) -> None:
        log_security_event(
            "payload_too_large",
            "warning",
            path=scope.get("path"),
            method=scope.get("method"),
        )
        response = PayloadTooLargeError(self.max_body_size).to_response()
        await response(scope, receive, send)
