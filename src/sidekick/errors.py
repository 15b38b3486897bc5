"""Error taxonomy for backend discovery and per-request failures."""

from __future__ import annotations


class SidekickError(Exception):
    """Base class for all sidekick errors."""


# ─── Discovery / launch ─────────────────────────────────────────────────────


class ExecutableNotFoundError(SidekickError):
    """No llama.cpp server executable was found in any known location."""


class ModelNotFoundError(SidekickError):
    """No model file was found at the configured path or in the model directory."""


class BackendUnhealthyError(SidekickError):
    """The backend failed to launch or never answered its health endpoint."""


# ─── Per-request ────────────────────────────────────────────────────────────


class RequestFailedError(ConnectionError, SidekickError):
    """Network error or non-success HTTP status from the backend.

    ``unreachable`` is set when the connection itself was refused, which
    means the backend is gone rather than slow or unhappy with the request.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        unreachable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.unreachable = unreachable


class MalformedResponseError(ValueError, SidekickError):
    """The backend answered, but the body had no usable ``content`` field."""


class RequestCancelledError(SidekickError):
    """The editor superseded the request before a result could be used."""
