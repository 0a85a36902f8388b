"""Reference feeder simulator.

Polls the service the way firmware does: canonical JSON body, optional HMAC
signature headers, and acknowledgment of every command received on the
previous poll.  Useful for local development and as a worked example for
firmware implementers.

Run::

    python -m feedersync.simulator --device-id feeder-001 --secret <secret> --sign
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

from feedersync.security.signing import canonical_json, sign

logger = logging.getLogger("feedersync.simulator")


@dataclass
class SimulatedFeeder:
    """State a real feeder keeps between polls."""

    device_id: str
    secret: str = ""
    signature_enabled: bool = False
    firmware: str = "1.0.3-sim"
    interval_sec: int = 60
    uptime_sec: int = 0
    pending_acks: list[str] = field(default_factory=list)

    def build_body(self, now: int | None = None) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "ts": int(time.time()) if now is None else now,
            "status": {
                "fw": self.firmware,
                "uptimeSec": self.uptime_sec,
                "rssi": -55,
                "error": None,
                "lastFeedTs": None,
            },
            "log": [],
            "ack": list(self.pending_acks),
        }

    def build_request(self, now: int | None = None) -> tuple[bytes, dict[str, str]]:
        """Return the exact body bytes and headers for one poll."""
        payload = canonical_json(self.build_body(now))
        headers = {"Content-Type": "application/json"}
        if self.signature_enabled:
            if not self.secret:
                raise ValueError("a device secret is required when signing is enabled")
            headers["X-Device-Id"] = self.device_id
            headers["X-Nonce"] = str(uuid.uuid4())
            headers["X-Sign"] = sign(payload, self.secret)
        return payload, headers

    def handle_response(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Queue acks for received commands and adopt the server's interval."""
        commands = [c for c in data.get("commands") or [] if c.get("id")]
        self.pending_acks = [c["id"] for c in commands]
        self.interval_sec = int(data.get("intervalSec") or self.interval_sec)
        return commands


async def poll_once(client: httpx.AsyncClient, url: str, feeder: SimulatedFeeder) -> bool:
    feeder.uptime_sec += feeder.interval_sec
    body, headers = feeder.build_request()
    response = await client.post(url, content=body, headers=headers)
    if response.status_code != 200:
        logger.error("Poll failed: %s %s", response.status_code, response.text)
        return False

    commands = feeder.handle_response(response.json())
    if commands:
        logger.info("Received %d command(s): %s", len(commands), commands)
    else:
        logger.info("Heartbeat ok")
    return True


async def run(url: str, feeder: SimulatedFeeder, count: int | None = None) -> None:
    polls = 0
    async with httpx.AsyncClient(timeout=10.0) as client:
        while count is None or polls < count:
            try:
                await poll_once(client, url, feeder)
            except httpx.HTTPError as exc:
                logger.error("Poll transport error: %s", exc)
            polls += 1
            if count is None or polls < count:
                await asyncio.sleep(feeder.interval_sec)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Simulate a feeder polling the sync API.")
    parser.add_argument("--url", default="http://localhost:8080/api/device/poll")
    parser.add_argument("--device-id", default="feeder-001")
    parser.add_argument("--secret", default="")
    parser.add_argument("--sign", action="store_true", help="send X-Nonce/X-Sign headers")
    parser.add_argument("--interval", type=int, default=60)
    parser.add_argument("--count", type=int, default=None, help="stop after N polls")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    feeder = SimulatedFeeder(
        device_id=args.device_id,
        secret=args.secret,
        signature_enabled=args.sign,
        interval_sec=args.interval,
    )
    try:
        asyncio.run(run(args.url, feeder, args.count))
    except ValueError as exc:
        parser.error(str(exc))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
