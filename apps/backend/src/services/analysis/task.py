"""Per-document analysis task and its status state machine.

Status only moves forward::

    queued -> connecting -> streaming -> completed | failed | cancelled

Cancellation is allowed from any non-terminal status. Once terminal, every
later event is ignored, so a frame racing a cancel cannot revive a task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from schemas.analysis import RelayEvent, TaskError, TaskSnapshot, TaskStatus

from .exceptions import InvalidTransitionError
from .fence_extractor import FenceExtractor


logger = logging.getLogger(__name__)

EXTRACTION_WARNING = "Analysis finished but no structured JSON result could be parsed"

_RANK = {
    TaskStatus.QUEUED: 0,
    TaskStatus.CONNECTING: 1,
    TaskStatus.STREAMING: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.FAILED: 3,
    TaskStatus.CANCELLED: 3,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class AnalysisTask:
    """Mutable state of one document's analysis run.

    Only the task's runner, the cancel path and the connection-error path
    mutate an instance.
    """

    document_id: str
    user: str
    status: TaskStatus = TaskStatus.QUEUED
    upstream_task_id: str | None = None
    accumulated_text: str = ""
    parsed_result: dict[str, Any] | list[Any] | None = None
    partial_json: str | None = None
    error_detail: TaskError | None = None
    extraction_warning: str | None = None
    extractor: FenceExtractor = field(default_factory=FenceExtractor, repr=False)
    connection: asyncio.Task[None] | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    last_delta: str = field(default="", repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _transition(self, target: TaskStatus) -> bool:
        """Move to ``target``; returns False when already there."""
        if target == self.status:
            return False
        if self.status.is_terminal or _RANK[target] < _RANK[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        self.updated_at = _utcnow()
        if target.is_terminal:
            self.completed_at = self.updated_at
            self.last_delta = ""
        return True

    def mark_connecting(self) -> bool:
        if self.is_terminal:
            return False
        return self._transition(TaskStatus.CONNECTING)

    def apply_event(self, event: RelayEvent) -> bool:
        """Apply one relay event; returns whether the task changed.

        Events for a terminal task are ignored.
        """
        if self.is_terminal:
            return False
        self.last_delta = ""

        if event.event == "start":
            return self.mark_connecting()

        changed = False
        if event.task_id and self.upstream_task_id is None:
            self.upstream_task_id = event.task_id
            changed = True

        # A connect failure fails the task straight from connecting
        if event.event == "error":
            return self.fail(
                TaskError(
                    code=event.code or "upstream_error",
                    message=event.message or "Generation service reported an error",
                    status=event.status,
                    body=event.body,
                )
            )

        changed = self._transition(TaskStatus.STREAMING) or changed
        if event.event == "message":
            return self._append(event.answer or "") or changed
        return self.complete()

    def _append(self, answer: str) -> bool:
        if not answer:
            return False
        self.accumulated_text += answer
        self.last_delta = answer
        self.updated_at = _utcnow()

        result = self.extractor.process_chunk(answer)
        if result.has_value:
            self.parsed_result = result.value
            self.partial_json = None
            logger.debug("Parsed JSON result for %s", self.document_id)
        elif result.partial is not None:
            self.partial_json = result.partial
        return True

    def complete(self) -> bool:
        if self.is_terminal:
            return False
        if self.extractor.in_block:
            result = self.extractor.final_flush()
            if result.has_value:
                self.parsed_result = result.value
                self.partial_json = None
        if self.parsed_result is None and self.accumulated_text:
            self.extraction_warning = EXTRACTION_WARNING
        if self.status != TaskStatus.STREAMING:
            self._transition(TaskStatus.STREAMING)
        return self._transition(TaskStatus.COMPLETED)

    def fail(self, error: TaskError) -> bool:
        if self.is_terminal:
            return False
        self.error_detail = error
        logger.warning(
            "Analysis task %s failed: %s (%s)", self.document_id, error.code, error.message
        )
        return self._transition(TaskStatus.FAILED)

    def cancel(self) -> bool:
        """Mark the task cancelled; accumulated text is kept."""
        if self.is_terminal:
            return False
        return self._transition(TaskStatus.CANCELLED)

    def release_connection(self) -> None:
        """Cancel the runner owning the upstream connection, if still alive."""
        connection, self.connection = self.connection, None
        if connection is not None and not connection.done():
            connection.cancel()

    def snapshot(self, *, include_delta: bool = False) -> TaskSnapshot:
        return TaskSnapshot(
            document_id=self.document_id,
            status=self.status,
            upstream_task_id=self.upstream_task_id,
            text=self.accumulated_text,
            delta=self.last_delta if include_delta else "",
            parsed_result=self.parsed_result,
            partial_json=self.partial_json,
            error=self.error_detail,
            extraction_warning=self.extraction_warning,
            cancelled=self.status == TaskStatus.CANCELLED,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


__all__ = ["AnalysisTask", "EXTRACTION_WARNING", "TaskStatus"]
