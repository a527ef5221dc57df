"""Error taxonomy for the analysis streaming pipeline.

Each exception carries a stable `error_code` that is copied verbatim into
relay `error` events and task error details, so clients can branch on it.
The relay converts these into events; only the stop path lets them reach
the HTTP error handler.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class AnalysisStreamError(Exception):
    """Base class for analysis streaming errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class UpstreamProtocolError(AnalysisStreamError):
    """The generation service answered with a non-success status or an error frame."""

    def __init__(
        self,
        message: str = "Generation service returned an error",
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message=message, error_code="upstream_error")
        self.status_code = status_code
        self.body = body


class UpstreamTransportError(AnalysisStreamError):
    def __init__(self, message: str = "Error while reading the generation stream") -> None:
        super().__init__(message=message, error_code="transport_error")


class UpstreamTimeoutError(AnalysisStreamError):
    def __init__(self, message: str = "Generation service timed out") -> None:
        super().__init__(message=message, error_code="network_timeout")


class InvalidTransitionError(AnalysisStreamError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            message=f"Cannot move task from {current} to {target}",
            error_code="invalid_transition",
        )
