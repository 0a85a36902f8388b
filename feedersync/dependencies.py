"""Service wiring and shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from feedersync.config import Settings, get_settings
from feedersync.errors import ApiError
from feedersync.security.device_auth import build_authenticator
from feedersync.security.device_secrets import SecretEnvelope
from feedersync.services.command_queue import CommandQueue
from feedersync.services.management import DeviceManagementService
from feedersync.services.nonce_guard import NonceGuard
from feedersync.services.poll import PollService
from feedersync.services.rate_limiter import PollRateLimiter
from feedersync.services.storage import PostgresStorage


@dataclass(frozen=True)
class OperatorContext:
    """Authenticated operator extracted from the management bearer token."""

    subject: str
    account_id: uuid.UUID


@dataclass
class AppServices:
    """Long-lived service objects, built once per process."""

    poll: PollService
    management: DeviceManagementService


def build_services(settings: Settings) -> AppServices:
    envelope = SecretEnvelope(settings.device_secret_encryption_key)
    storage = PostgresStorage(
        queue=CommandQueue(
            batch_size=settings.command_batch_size,
            redeliver_unacked=settings.redeliver_unacked_commands,
        )
    )
    poll = PollService(
        store=storage,
        authenticator=build_authenticator(settings, NonceGuard()),
        envelope=envelope,
        rate_limiter=PollRateLimiter(settings.max_poll_per_minute),
        poll_interval_sec=settings.poll_interval_sec,
    )
    return AppServices(
        poll=poll,
        management=DeviceManagementService(storage, envelope),
    )


def get_services(request: Request) -> AppServices:
    services: AppServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized, app lifespan has not run")
    return services


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with."""
    settings: Settings | None = getattr(request.app.state, "settings", None)
    return settings or get_settings()


def get_poll_service(request: Request) -> PollService:
    return get_services(request).poll


def get_management_service(request: Request) -> DeviceManagementService:
    return get_services(request).management


async def get_current_operator(request: Request) -> OperatorContext:
    """Return the operator set on ``request.state`` by the auth middleware."""
    operator: OperatorContext | None = getattr(request.state, "operator", None)
    if operator is None:
        raise ApiError.unauthorized("missing_bearer_token")
    return operator


# Annotated shortcuts for route signatures
CurrentOperator = Annotated[OperatorContext, Depends(get_current_operator)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Polls = Annotated[PollService, Depends(get_poll_service)]
Management = Annotated[DeviceManagementService, Depends(get_management_service)]
