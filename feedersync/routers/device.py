"""Device poll endpoint.

The body is read raw and parsed here: the signature covers the exact bytes
the device sent.
"""

from __future__ import annotations

from fastapi import APIRouter, Header, Request
from pydantic import ValidationError

from feedersync.dependencies import Polls
from feedersync.errors import ApiError
from feedersync.models.poll import PollRequest, PollResponse
from feedersync.security.device_auth import PollHeaders

router = APIRouter(prefix="/api/device", tags=["device"])


@router.post("/poll", response_model=PollResponse, response_model_by_alias=True)
async def poll(
    request: Request,
    polls: Polls,
    x_device_id: str | None = Header(default=None, alias="X-Device-Id"),
    x_nonce: str | None = Header(default=None, alias="X-Nonce"),
    x_sign: str | None = Header(default=None, alias="X-Sign"),
) -> PollResponse:
    body = await request.body()
    if not body:
        raise ApiError.bad_request("request_body_required")

    try:
        poll_request = PollRequest.model_validate_json(body)
    except ValidationError:
        raise ApiError.bad_request("invalid_request_body") from None

    return await polls.handle_poll(
        body,
        poll_request,
        PollHeaders(device_id=x_device_id, nonce=x_nonce, signature=x_sign),
    )
