"""Wire models for the device poll protocol (``POST /api/device/poll``)."""

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field

from feedersync.models.base import DeviceWireBase


# ---------- Request ----------

class PollStatus(DeviceWireBase):
    """Device-reported status snapshot.  Unknown fields are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    fw: str | None = None
    uptime_sec: int | None = None
    rssi: int | None = None
    error: str | None = None
    last_feed_ts: int | None = None


class PollLogItem(DeviceWireBase):
    ts: int = 0
    type: str | None = None
    msg: str | None = None
    meta: dict[str, Any] | None = None


class PollRequest(DeviceWireBase):
    device_id: str | None = None
    ts: int = 0
    status: PollStatus | None = None
    log: list[PollLogItem] = Field(default_factory=list)
    ack: list[str] = Field(default_factory=list)


# ---------- Response ----------

class PollCommand(DeviceWireBase):
    id: str
    command_type: str
    payload_json: dict[str, Any] = Field(default_factory=dict)


class ProfileConfig(DeviceWireBase):
    name: str
    default_portion_ms: int


class ScheduleConfig(DeviceWireBase):
    profile_name: str
    hh: int
    mm: int
    portion_ms: int


class PollConfig(DeviceWireBase):
    active_profile: str | None = None
    profiles: list[ProfileConfig] = Field(default_factory=list)
    schedule: list[ScheduleConfig] = Field(default_factory=list)


class PollResponse(DeviceWireBase):
    server_time: int
    interval_sec: int
    commands: list[PollCommand] = Field(default_factory=list)
    config: PollConfig
