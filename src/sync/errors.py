"""Exception hierarchy for the sync engine.

Only ``PersistenceExhausted`` ever reaches a caller of ``SyncEngine.add_record``.
Remote and probe errors are recorded on the record or on the connectivity
state instead of being raised.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""


class BackendUnavailable(SyncError):
    """A single local storage tier could not complete an operation."""

    def __init__(self, backend: str, reason: str) -> None:
        super().__init__(f"{backend}: {reason}")
        self.backend = backend
        self.reason = reason


class PersistenceExhausted(SyncError):
    """Every local storage tier failed; the record is not durable anywhere."""

    def __init__(self, errors: list[BackendUnavailable]) -> None:
        detail = "; ".join(str(error) for error in errors) or "no storage tiers"
        super().__init__(f"All local storage tiers failed ({detail})")
        self.errors = errors


class RemoteError(SyncError):
    """A remote submission attempt failed."""


class RemoteUnreachable(RemoteError):
    """The endpoint could not be reached (transport error, timeout, offline)."""


class RemoteRejected(RemoteError):
    """The endpoint answered but did not accept the submission."""

    def __init__(self, status_code: int, body: str = "") -> None:
        message = f"Remote rejected submission with HTTP {status_code}"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProbeTimeout(SyncError):
    """A health check did not answer within its ceiling."""

    def __init__(self, address: str, timeout: float) -> None:
        super().__init__(f"Health check for {address} timed out after {timeout:.1f}s")
        self.address = address
        self.timeout = timeout
