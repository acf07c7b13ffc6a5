from __future__ import annotations


class YtRelayError(RuntimeError):
    """Base class for errors surfaced to callers and recorded on jobs."""


class ValidationError(YtRelayError):
    """Submission rejected before any job exists."""


class ProbeError(YtRelayError):
    """Metadata lookup for a submitted URL failed."""


class FetchError(YtRelayError):
    """The fetch subprocess failed, timed out or produced no artifact."""


class ProtocolError(YtRelayError):
    """The remote upload endpoint answered outside the resumable-upload protocol."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ResourceError(YtRelayError):
    """Disk reclamation could not restore the free-space headroom."""

    def __init__(self, message: str, *, deleted: list[str] | None = None) -> None:
        super().__init__(message)
        self.deleted = deleted or []


class JobNotFoundError(YtRelayError):
    pass


class InvalidTransitionError(YtRelayError):
    pass


class JobCancelledError(YtRelayError):
    """Raised inside a running phase once its job has been cancelled."""
