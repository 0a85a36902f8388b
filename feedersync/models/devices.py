"""Pydantic models for devices, commands and the management API."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from feedersync.models.base import FeederBase


# ---------- Enums ----------

class CommandType(str, Enum):
    FEED_NOW = "FEED_NOW"
    SET_PROFILE = "SET_PROFILE"
    SET_SCHEDULE = "SET_SCHEDULE"
    SET_DEFAULT_PORTION = "SET_DEFAULT_PORTION"
    REBOOT = "REBOOT"
    PING = "PING"


class CommandStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKED = "ACKED"
    FAILED = "FAILED"


class LogType(str, Enum):
    """Server-side event log types.  Devices may report any other type."""

    INFO = "INFO"
    MANUAL_FEED = "MANUAL_FEED"
    PROFILE_CHANGED = "PROFILE_CHANGED"
    SCHEDULE_UPDATED = "SCHEDULE_UPDATED"
    SECRET_ROTATED = "SECRET_ROTATED"


# ---------- Devices ----------

class DeviceCreate(FeederBase):
    device_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)


class DeviceSecretRead(FeederBase):
    """Returned exactly once when a secret is issued or rotated."""

    device_id: str
    secret: str
    note: str


# ---------- Commands ----------

class CommandCreate(FeederBase):
    command_type: CommandType
    payload: dict[str, Any] = Field(default_factory=dict)


class FeedNowRequest(FeederBase):
    portion_ms: int | None = Field(default=None, gt=0)


class ActiveProfileUpdate(FeederBase):
    profile_name: str = Field(min_length=1)


class CommandRead(FeederBase):
    command_id: uuid.UUID
    device_id: str
    command_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: CommandStatus
    created_at: datetime
    sent_at: datetime | None = None
    acked_at: datetime | None = None


class CommandEnqueued(FeederBase):
    command_id: uuid.UUID
    status: CommandStatus = CommandStatus.PENDING
