"""Security headers middleware.

Every response gets content-type and framing protection.  Responses under
``/api/`` carry per-device configuration, secrets issued once, or command
state, so they are additionally marked uncacheable and locked to a
``default-src 'none'`` policy.  The interactive docs keep the browser defaults.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

COMMON_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}

API_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, api_prefix: str = "/api/") -> None:
        super().__init__(app)
        self._api_prefix = api_prefix

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        headers = dict(COMMON_HEADERS)
        if request.url.path.startswith(self._api_prefix):
            headers.update(API_HEADERS)
        for header, value in headers.items():
            response.headers.setdefault(header, value)
        return response
