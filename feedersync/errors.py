"""API error type shared by the device protocol and the management surface.

Every error carries a short machine-readable code and nothing else.  The
device never learns *why* a check failed beyond that code.
"""

from __future__ import annotations


class ApiError(Exception):
    """An error that is rendered to the client as ``{"error": code}``."""

    def __init__(self, status_code: int, code: str) -> None:
        super().__init__(code)
        self.status_code = status_code
        self.code = code

    def __repr__(self) -> str:
        return f"ApiError({self.status_code}, {self.code!r})"

    @classmethod
    def bad_request(cls, code: str) -> ApiError:
        return cls(400, code)

    @classmethod
    def unauthorized(cls, code: str) -> ApiError:
        return cls(401, code)

    @classmethod
    def forbidden(cls, code: str) -> ApiError:
        return cls(403, code)

    @classmethod
    def not_found(cls, code: str) -> ApiError:
        return cls(404, code)

    @classmethod
    def conflict(cls, code: str) -> ApiError:
        return cls(409, code)

    @classmethod
    def too_many_requests(cls, code: str) -> ApiError:
        return cls(429, code)


class ConfigurationError(RuntimeError):
    """Raised at startup when a required setting is unusable."""
