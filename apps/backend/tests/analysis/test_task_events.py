"""Tests for the task update feed: event framing, size limits and subscriptions."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from api.v1.analysis import task_events
from generation_fakes import FakeGenerationService, message_frame, sse
from schemas.analysis import (
    MAX_TASK_EVENT_BYTES,
    RelayEvent,
    TaskSnapshot,
    TaskStatus,
    TaskUpdateEvent,
)
from services.analysis.manager import AnalysisManager
from services.analysis.task import AnalysisTask


KILOBYTE_OF_TEXT = "y" * 1024


def _message(answer: str) -> RelayEvent:
    return RelayEvent(event="message", document_id="doc-1", answer=answer)


def _payload(frame: str) -> dict[str, Any]:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    assert len(frame.encode("utf-8")) <= MAX_TASK_EVENT_BYTES
    return json.loads(frame[6:])


def _rebuild_text(frames: list[dict[str, Any]]) -> str:
    return "".join(
        f["data"]["text"] for f in frames if f["event"] in ("task.snapshot", "task.text")
    )


def test_initial_snapshot_of_long_task_is_split_across_events() -> None:
    task = AnalysisTask(document_id="doc-1", user="user-1")
    for _ in range(1200):
        task.apply_event(_message(KILOBYTE_OF_TEXT))

    events = TaskUpdateEvent.from_snapshot(task.snapshot(), initial=True)
    frames = [_payload(event.to_sse()) for event in events]

    assert frames[0]["event"] == "task.snapshot"
    assert frames[0]["data"]["status"] == "streaming"
    assert len(frames) > 1
    assert {f["event"] for f in frames[1:]} == {"task.text"}
    assert _rebuild_text(frames) == task.accumulated_text


def test_initial_snapshot_of_empty_task_is_one_event() -> None:
    task = AnalysisTask(document_id="doc-1", user="user-1")

    (event,) = TaskUpdateEvent.from_snapshot(task.snapshot(), initial=True)

    assert event.event == "task.snapshot"
    assert event.data["text"] == ""


def test_updates_stay_small_while_json_block_grows() -> None:
    task = AnalysisTask(document_id="doc-1", user="user-1")
    task.apply_event(_message('```json\n{"notes": "'))
    largest = 0
    for _ in range(1100):
        task.apply_event(_message(KILOBYTE_OF_TEXT))
        (event,) = TaskUpdateEvent.from_snapshot(task.snapshot(include_delta=True))
        frame = event.to_sse()
        largest = max(largest, len(frame))

    assert len(task.partial_json) > MAX_TASK_EVENT_BYTES
    payload = _payload(frame)
    assert payload["event"] == "task.updated"
    assert payload["data"]["delta"] == KILOBYTE_OF_TEXT
    assert "partial_json" not in payload["data"]
    assert "text" not in payload["data"]
    assert largest < 4096


def test_oversized_parsed_result_is_left_out_of_the_event() -> None:
    now = datetime.now(UTC)
    snapshot = TaskSnapshot(
        document_id="doc-1",
        status=TaskStatus.COMPLETED,
        parsed_result={"notes": "z" * (MAX_TASK_EVENT_BYTES + 10)},
        created_at=now,
        updated_at=now,
        completed_at=now,
    )

    (event,) = TaskUpdateEvent.from_snapshot(snapshot)
    payload = _payload(event.to_sse())

    assert payload["data"]["parsed_result"] is None
    assert payload["data"]["parsed_result_omitted"] is True
    assert payload["data"]["status"] == "completed"


@pytest.mark.asyncio
async def test_feed_replays_task_larger_than_event_limit(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    manager: AnalysisManager,
) -> None:
    frames = [message_frame(KILOBYTE_OF_TEXT) for _ in range(1200)]
    fake_service.add_stream("doc-1", sse(*frames, "[DONE]"))
    await manager.submit(["doc-1"], "user-1")
    await manager.join()

    resp = await async_client.get(
        "/api/v1/analysis/tasks/events", params={"until_idle": "true"}
    )

    assert resp.status_code == 200
    blocks = [b for b in resp.text.split("\n\n") if b.startswith("data: ")]
    events = [_payload(f"{block}\n\n") for block in blocks]
    assert events[0]["data"]["status"] == "completed"
    assert _rebuild_text(events) == manager.get("doc-1").text
    assert len(manager.get("doc-1").text) == 1200 * 1024
    assert manager.observer_count == 0


@pytest.mark.asyncio
async def test_unstarted_feed_never_subscribes(manager: AnalysisManager) -> None:
    response = await task_events(manager, until_idle=False)

    assert manager.observer_count == 0
    await response.body_iterator.aclose()
    assert manager.observer_count == 0


@pytest.mark.asyncio
async def test_closed_feed_unsubscribes(
    fake_service: FakeGenerationService, manager: AnalysisManager
) -> None:
    fake_service.add_hanging_stream("doc-1", sse(message_frame("x")))
    await manager.submit(["doc-1"], "user-1")
    response = await task_events(manager, until_idle=False)

    first = await anext(response.body_iterator)
    assert manager.observer_count == 1
    assert json.loads(first[6:])["event"] == "task.snapshot"

    await response.body_iterator.aclose()
    assert manager.observer_count == 0
