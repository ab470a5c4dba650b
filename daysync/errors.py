from __future__ import annotations


class DaySyncError(Exception):
    status_code = 500
    public_message: str | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_payload(self) -> dict[str, str]:
        return {"error": self.public_message or self.message}


class ValidationError(DaySyncError):
    status_code = 400


class AuthError(DaySyncError):
    status_code = 401
    public_message = "Unauthorized"


class ConfigError(DaySyncError):
    status_code = 500


class UpstreamFetchError(DaySyncError):
    status_code = 502


class ResourceLimitError(DaySyncError):
    status_code = 413


class SyncUnavailable(DaySyncError):
    """Remote replication failed; callers fall back to local-only state."""

    status_code = 503
