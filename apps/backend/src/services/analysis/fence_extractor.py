"""Incremental extraction of a ```json fenced block from streamed text.

The generation service answers in markdown and embeds its structured result
in a single fenced block. Text arrives in arbitrary fragments, so either
fence marker may be split across two chunks. The extractor only reports an
object once the closing fence has been seen and the enclosed text parses;
a half-built object is never returned.

Two equivalent entry points are provided: the pure :func:`process_chunk`
over an immutable :class:`FenceState`, and the :class:`FenceExtractor`
wrapper that keeps that state for one stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from .repair import loads_tolerant


logger = logging.getLogger(__name__)

OPEN_MARKER = "```json"
CLOSE_MARKER = "```"


@dataclass(frozen=True, slots=True)
class FenceState:
    """Scanner state between chunks.

    ``pending`` holds a tail that may be the start of the opening marker.
    ``buffer`` is the block content seen so far and ``held`` the trailing
    backticks that may be the start of the closing marker.
    """

    in_block: bool = False
    buffer: str = ""
    pending: str = ""
    held: str = ""


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Outcome of feeding one chunk (or of the final flush).

    ``value`` is set only when a complete block parsed. ``partial`` carries
    the block content seen so far for previews. ``failed`` is set by the
    final flush when an unterminated block could not be recovered.
    """

    value: Any = None
    partial: str | None = None
    repaired: bool = False
    failed: bool = False

    @property
    def has_value(self) -> bool:
        return self.value is not None


_NOTHING = ExtractionResult()


def _open_marker_prefix_len(text: str) -> int:
    """Length of the longest suffix of ``text`` that starts the open marker."""
    for size in range(min(len(text), len(OPEN_MARKER) - 1), 0, -1):
        if OPEN_MARKER.startswith(text[-size:]):
            return size
    return 0


def _scan_block(state: FenceState, text: str) -> tuple[FenceState, ExtractionResult]:
    """Consume ``text`` while inside a block, looking for the closing fence."""
    text = state.held + text
    buffer = state.buffer
    while True:
        idx = text.find(CLOSE_MARKER)
        if idx == -1:
            break
        candidate = buffer + text[:idx]
        try:
            value, repaired = loads_tolerant(candidate, allow_open_string=False)
        except ValueError:
            # A fence inside a string literal is content; keep scanning
            logger.debug("Fence closed but block did not parse yet (%d chars)", len(candidate))
            buffer = candidate + CLOSE_MARKER
            text = text[idx + len(CLOSE_MARKER) :]
            continue
        rest = text[idx + len(CLOSE_MARKER) :]
        next_state, later = _scan_outside(FenceState(), rest)
        if later.has_value:
            return next_state, later
        return next_state, ExtractionResult(value=value, repaired=repaired)

    hold = min(len(text) - len(text.rstrip("`")), len(CLOSE_MARKER) - 1)
    if hold:
        buffer += text[:-hold]
        held = text[-hold:]
    else:
        buffer += text
        held = ""
    new_state = replace(state, in_block=True, buffer=buffer, held=held, pending="")
    return new_state, ExtractionResult(partial=buffer)


def _scan_outside(state: FenceState, text: str) -> tuple[FenceState, ExtractionResult]:
    text = state.pending + text
    idx = text.find(OPEN_MARKER)
    if idx == -1:
        keep = _open_marker_prefix_len(text)
        return replace(state, pending=text[-keep:] if keep else ""), _NOTHING
    opened = FenceState(in_block=True)
    return _scan_block(opened, text[idx + len(OPEN_MARKER) :])


def process_chunk(state: FenceState, text: str) -> tuple[FenceState, ExtractionResult]:
    """Feed one chunk of streamed text; returns the next state and result."""
    if not text:
        return state, _NOTHING
    if state.in_block:
        return _scan_block(state, text)
    return _scan_outside(state, text)


def final_flush(state: FenceState) -> ExtractionResult:
    """Recover a block that was still open when the stream ended.

    The repair pass here may close an unterminated string since no more
    text can arrive.
    """
    if not state.in_block:
        return _NOTHING
    candidate = state.buffer + state.held
    try:
        value, repaired = loads_tolerant(candidate)
    except ValueError:
        logger.warning(
            "Unterminated JSON block could not be recovered (%d chars)", len(candidate)
        )
        return ExtractionResult(partial=candidate, failed=True)
    return ExtractionResult(value=value, repaired=repaired)


def extract_json_from_markdown(text: str) -> Any:
    """Parse the ```json block of a whole response, recovering a truncated one.

    Returns None when there is no block or it cannot be parsed.
    """
    state, result = process_chunk(FenceState(), text)
    if result.has_value:
        return result.value
    return final_flush(state).value


class FenceExtractor:
    """Stateful wrapper around :func:`process_chunk` for a single stream."""

    def __init__(self) -> None:
        self.state = FenceState()
        self.value: Any = None

    @property
    def in_block(self) -> bool:
        return self.state.in_block

    def process_chunk(self, text: str) -> ExtractionResult:
        self.state, result = process_chunk(self.state, text)
        if result.has_value:
            self.value = result.value
        return result

    def final_flush(self) -> ExtractionResult:
        result = final_flush(self.state)
        self.state = FenceState()
        if result.has_value:
            self.value = result.value
        return result

    def reset(self) -> None:
        self.state = FenceState()
        self.value = None
