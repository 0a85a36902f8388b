"""Management endpoints that feed the device protocol.

Guarded by ``OperatorAuthMiddleware``; every handler is scoped to the
operator's account.  Secrets appear in responses only on issue/rotation.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Query

from feedersync.dependencies import CurrentOperator, Management
from feedersync.models.devices import (
    ActiveProfileUpdate,
    CommandCreate,
    CommandEnqueued,
    CommandRead,
    DeviceCreate,
    DeviceSecretRead,
    FeedNowRequest,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------- Devices & secrets ----------

@router.post("/devices", response_model=DeviceSecretRead, status_code=201)
async def create_device(
    operator: CurrentOperator, management: Management, body: DeviceCreate
) -> Any:
    return await management.provision_device(operator.account_id, body.device_id, body.name)


@router.post("/devices/{device_id}/rotate-secret", response_model=DeviceSecretRead)
async def rotate_secret(
    device_id: str, operator: CurrentOperator, management: Management
) -> Any:
    return await management.rotate_secret(operator.account_id, device_id)


@router.put("/devices/{device_id}/active-profile", response_model=CommandEnqueued)
async def set_active_profile(
    device_id: str,
    operator: CurrentOperator,
    management: Management,
    body: ActiveProfileUpdate,
) -> Any:
    command_id = await management.set_active_profile(
        operator.account_id, device_id, body.profile_name
    )
    return CommandEnqueued(command_id=command_id)


# ---------- Commands ----------

@router.get("/devices/{device_id}/commands", response_model=list[CommandRead])
async def list_commands(
    device_id: str,
    operator: CurrentOperator,
    management: Management,
    limit: int = Query(default=50, ge=1, le=200),
) -> Any:
    return await management.list_commands(operator.account_id, device_id, limit)


@router.post("/devices/{device_id}/commands", response_model=CommandEnqueued, status_code=201)
async def enqueue_command(
    device_id: str,
    operator: CurrentOperator,
    management: Management,
    body: CommandCreate,
) -> Any:
    command_id = await management.enqueue_command(
        operator.account_id, device_id, body.command_type, body.payload
    )
    return CommandEnqueued(command_id=command_id)


@router.post("/devices/{device_id}/feed-now", response_model=CommandEnqueued, status_code=201)
async def feed_now(
    device_id: str,
    operator: CurrentOperator,
    management: Management,
    body: FeedNowRequest,
) -> Any:
    command_id = await management.feed_now(operator.account_id, device_id, body.portion_ms)
    return CommandEnqueued(command_id=command_id)


@router.post("/devices/{device_id}/commands/{command_id}/cancel", status_code=204)
async def cancel_command(
    device_id: str,
    command_id: uuid.UUID,
    operator: CurrentOperator,
    management: Management,
) -> None:
    await management.cancel_command(operator.account_id, device_id, command_id)
