# backend/marketsync/middleware/correlation.py
"""
Correlation ID middleware (pure ASGI).

The ID is taken from X-Correlation-ID, then X-Request-ID, and generated
otherwise. Header values that are too long or contain characters outside
[A-Za-z0-9._:/-] are replaced by a generated ID so they cannot inject text
into log lines. The ID is echoed in the X-Correlation-ID response header.
"""

import logging
import re
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from marketsync.utils.context import correlation_scope

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

_VALID_ID = re.compile(r"^[A-Za-z0-9._:/-]{1,128}$")


def extract_correlation_id(headers: Headers) -> str:
    for header in (CORRELATION_ID_HEADER, REQUEST_ID_HEADER):
        value = headers.get(header)
        if not value:
            continue
        if _VALID_ID.match(value):
            return value
        logger.debug(f"Ignoring malformed {header} header")
    return str(uuid.uuid4())


class CorrelationIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = extract_correlation_id(Headers(scope=scope))

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[CORRELATION_ID_HEADER] = correlation_id
            await send(message)

        with correlation_scope(correlation_id):
            await self.app(scope, receive, send_with_id)
