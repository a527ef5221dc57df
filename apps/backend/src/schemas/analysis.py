"""Schemas for document analysis streaming and task management."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


MAX_SSE_EVENT_BYTES: int = 262_144
MAX_TASK_EVENT_BYTES: int = 1_048_576
# At most 6 bytes per char once JSON-escaped, well under MAX_TASK_EVENT_BYTES
TASK_TEXT_SLICE_CHARS: int = 65_536


def _encode_sse(payload: str, limit: int) -> str:
    if len(payload.encode("utf-8")) > limit:
        raise ValueError("SSE payload exceeded the maximum event size")
    return f"data: {payload}\n\n"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class RelayEvent(BaseModel):
    """Normalized server-push event for one document's generation stream.

    ``start`` is sent once before the upstream call, ``message`` for every
    content frame, and exactly one of ``done``/``error`` ends the document.
    """

    event: Literal["start", "message", "done", "error"]
    document_id: str
    task_id: str | None = None
    answer: str | None = None
    upstream_event: str | None = None
    message: str | None = None
    code: str | None = None
    status: int | None = None
    body: str | None = None

    model_config = ConfigDict(extra="forbid")

    @property
    def is_terminal(self) -> bool:
        return self.event in ("done", "error")

    def to_sse(self) -> str:
        """Serialize event to SSE format, leaving out unset fields."""
        return _encode_sse(self.model_dump_json(exclude_none=True), MAX_SSE_EVENT_BYTES)


class TaskError(BaseModel):
    code: str
    message: str
    status: int | None = None
    body: str | None = None


class TaskSnapshot(BaseModel):
    """Point-in-time view of one analysis task.

    ``delta`` is the text appended by the change that produced this
    snapshot; it is empty for snapshots taken on demand.
    """

    document_id: str
    status: TaskStatus
    upstream_task_id: str | None = None
    text: str = ""
    delta: str = ""
    parsed_result: dict[str, Any] | list[Any] | None = None
    partial_json: str | None = None
    error: TaskError | None = None
    extraction_warning: str | None = None
    cancelled: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class TaskUpdateEvent(BaseModel):
    """SSE envelope for the task update feed.

    ``task.updated`` events carry the snapshot without ``text`` and
    ``partial_json``; clients append ``delta`` to rebuild the text. The
    initial ``task.snapshot`` carries the first slice of ``text`` and the rest
    follows in ``task.text`` events, appended in order.
    """

    event: Literal["task.snapshot", "task.text", "task.updated"]
    document_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_snapshot(
        cls, snapshot: TaskSnapshot, *, initial: bool = False
    ) -> list[TaskUpdateEvent]:
        data = snapshot.model_dump(mode="json", exclude={"text", "partial_json"})
        if not initial:
            return [cls(event="task.updated", document_id=snapshot.document_id, data=data)]

        text = snapshot.text
        slices = [
            text[start : start + TASK_TEXT_SLICE_CHARS]
            for start in range(0, len(text), TASK_TEXT_SLICE_CHARS)
        ] or [""]
        events = [
            cls(
                event="task.snapshot",
                document_id=snapshot.document_id,
                data={**data, "text": slices[0]},
            )
        ]
        events.extend(
            cls(event="task.text", document_id=snapshot.document_id, data={"text": part})
            for part in slices[1:]
        )
        return events

    def to_sse(self) -> str:
        payload = self.model_dump_json()
        if (
            len(payload.encode("utf-8")) > MAX_TASK_EVENT_BYTES
            and self.data.get("parsed_result") is not None
        ):
            # Oversized results stay available from GET /tasks/{document_id}
            data = {**self.data, "parsed_result": None, "parsed_result_omitted": True}
            payload = self.model_copy(update={"data": data}).model_dump_json()
        return _encode_sse(payload, MAX_TASK_EVENT_BYTES)


class SubmitAnalysisRequest(BaseModel):
    """Request payload for starting analysis of a batch of documents."""

    document_ids: list[str]

    model_config = ConfigDict(extra="forbid")


class StopGenerationRequest(BaseModel):
    """Request payload for stopping one upstream generation."""

    task_id: str | None = Field(
        default=None, validation_alias=AliasChoices("task_id", "taskId")
    )


class StopOutcome(BaseModel):
    task_id: str
    success: bool
    status_code: int | None = None
    detail: str | None = None


class CancelOutcome(BaseModel):
    """Result of cancelling one task.

    ``upstream_stopped`` is None when no upstream task id was known, so no
    stop request was sent.
    """

    document_id: str
    status: TaskStatus
    cancelled: bool
    upstream_task_id: str | None = None
    upstream_stopped: bool | None = None
    detail: str | None = None
