"""Bearer-token verification for the management API.

Only paths under ``/api/v1/admin`` are guarded; the device poll endpoint
authenticates with per-device HMAC signatures instead and health checks are
public.  Tokens are HS256 JWTs signed with ``OPERATOR_JWT_SECRET`` whose
``sub`` claim is the operator's account id.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from feedersync.config import Settings, get_settings
from feedersync.dependencies import OperatorContext

logger = logging.getLogger("feedersync.operator_auth")

PROTECTED_PREFIX = "/api/v1/admin"


def _unauthorized(code: str) -> Response:
    return Response(
        content=f'{{"error":"{code}"}}',
        status_code=401,
        media_type="application/json",
    )


class OperatorAuthMiddleware(BaseHTTPMiddleware):
    """Verify operator JWTs and populate ``request.state.operator``."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("missing_bearer_token")

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            payload = pyjwt.decode(
                token,
                self._settings.operator_jwt_secret,
                algorithms=["HS256"],
                options={"require": ["sub", "exp"]},
            )
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("token_expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("Operator JWT validation failed: %s", exc)
            return _unauthorized("invalid_token")

        subject = str(payload["sub"])
        try:
            account_id = uuid.UUID(subject)
        except ValueError:
            logger.warning("Operator JWT subject is not an account id: %r", subject)
            return _unauthorized("invalid_token")

        request.state.operator = OperatorContext(subject=subject, account_id=account_id)
        return await call_next(request)
