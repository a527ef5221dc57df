"""Streaming document analysis: fenced-JSON extraction, relay and task manager."""

from .exceptions import (
    AnalysisStreamError,
    InvalidTransitionError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .fence_extractor import FenceExtractor, extract_json_from_markdown
from .repair import loads_tolerant, repair_json


__all__ = [
    "AnalysisStreamError",
    "FenceExtractor",
    "InvalidTransitionError",
    "UpstreamProtocolError",
    "UpstreamTimeoutError",
    "UpstreamTransportError",
    "extract_json_from_markdown",
    "loads_tolerant",
    "repair_json",
]
