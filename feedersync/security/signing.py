"""HMAC-SHA256 request signing for device polls.

Devices sign the exact bytes of the request body with their per-device
secret and send the lowercase hex digest in the ``X-Sign`` header.  The
server verifies against the raw bytes it received, so the body must be
byte-identical on both ends.

Firmware implementers should serialize the body with :func:`canonical_json`
(sorted keys, compact separators, UTF-8) so that the signed bytes are
reproducible regardless of the JSON library on the device.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def canonical_json(payload: Any) -> bytes:
    """Serialize ``payload`` deterministically for signing."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign(body: bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify(body: bytes, secret: str, candidate_hex: str | None) -> bool:
    """Constant-time check of ``candidate_hex`` against the expected signature.

    A missing or blank candidate is never valid.  ``hmac.compare_digest``
    returns False on a length mismatch without comparing contents.
    """
    if not candidate_hex or not candidate_hex.strip():
        return False
    expected = sign(body, secret).encode("ascii")
    # compare bytes: str arguments must be pure ASCII
    provided = candidate_hex.strip().lower().encode("utf-8")
    return hmac.compare_digest(expected, provided)
