"""API tests for the analysis relay and task endpoints."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from fastapi import status

from dependencies.analysis import get_relay
from generation_fakes import FakeGenerationService, build_relay, message_frame, sse
from main import app
from services.analysis.manager import AnalysisManager
from services.analysis.relay import AnalysisRelay


CALLER = {"X-User-Id": "user-1"}
STREAM_URL = "/api/v1/analysis/stream"
TASKS_URL = "/api/v1/analysis/tasks"


def _parse_sse(raw: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in raw.split("\n"):
        if line.startswith("data: "):
            events.append(json.loads(line[6:]))
    return events


# -----------------------------------------------------------------------------
# Relay stream
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_relays_each_document(
    async_client: httpx.AsyncClient, fake_service: FakeGenerationService
) -> None:
    fake_service.add_stream("doc-1", sse(message_frame("one", task_id="t-1"), "[DONE]"))
    fake_service.add_stream("doc-2", sse(message_frame("two", task_id="t-2"), "[DONE]"))

    resp = await async_client.get(
        STREAM_URL, params={"document_ids": ["doc-1", "doc-2"]}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_200_OK
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    events = _parse_sse(resp.text)
    for document_id, answer in (("doc-1", "one"), ("doc-2", "two")):
        kinds = [e["event"] for e in events if e["document_id"] == document_id]
        assert kinds == ["start", "message", "done"]
        message = next(
            e for e in events if e["document_id"] == document_id and e["event"] == "message"
        )
        assert message["answer"] == answer
    assert all("body" not in e for e in events)
    assert {r["user"] for r in fake_service.stream_requests} == {"user-1"}


@pytest.mark.asyncio
async def test_stream_accepts_file_ids_json(
    async_client: httpx.AsyncClient, fake_service: FakeGenerationService
) -> None:
    fake_service.add_stream("doc-1", sse("[DONE]"))

    resp = await async_client.get(
        STREAM_URL, params={"fileIds": '["doc-1", "doc-1"]'}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_200_OK
    assert [e["event"] for e in _parse_sse(resp.text)] == ["start", "done"]
    assert len(fake_service.stream_requests) == 1


@pytest.mark.asyncio
async def test_stream_reports_upstream_failure_per_document(
    async_client: httpx.AsyncClient, fake_service: FakeGenerationService
) -> None:
    fake_service.add_stream("doc-1", b"rate limited", status_code=429)

    resp = await async_client.get(
        STREAM_URL, params={"document_ids": "doc-1"}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_200_OK
    error = _parse_sse(resp.text)[-1]
    assert error["event"] == "error"
    assert error["status"] == 429
    assert error["body"] == "rate limited"


@pytest.mark.asyncio
async def test_stream_requires_caller_identity(async_client: httpx.AsyncClient) -> None:
    resp = await async_client.get(STREAM_URL, params={"document_ids": "doc-1"})

    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["type"] == "unauthorized"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {},
        {"document_ids": "  "},
        {"fileIds": "not-json"},
        {"fileIds": '{"id": "doc-1"}'},
        {"fileIds": "[1, 2]"},
        {"document_ids": [f"doc-{i}" for i in range(21)]},
    ],
)
async def test_stream_rejects_bad_document_ids(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    params: dict[str, Any],
) -> None:
    resp = await async_client.get(STREAM_URL, params=params, headers=CALLER)

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    body = resp.json()
    assert body["error"]["type"] == "invalid_request"
    assert body["error"]["correlation_id"]
    assert fake_service.stream_requests == []


@pytest.mark.asyncio
async def test_stream_without_api_key_is_configuration_error(
    async_client: httpx.AsyncClient, upstream_http: httpx.AsyncClient
) -> None:
    app.dependency_overrides[get_relay] = lambda: build_relay(upstream_http, api_key=None)

    resp = await async_client.get(
        STREAM_URL, params={"document_ids": "doc-1"}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    body = resp.json()
    assert body["error"]["type"] == "configuration_error"
    assert body["message"] == "Service is not configured"


# -----------------------------------------------------------------------------
# Stop endpoint
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("payload", "message"),
    [({}, "Missing task_id"), ({"taskId": "t-404"}, "Unknown task_id 't-404'")],
)
async def test_stop_rejects_missing_or_unknown_task(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    payload: dict[str, str],
    message: str,
) -> None:
    resp = await async_client.post("/api/v1/analysis/stop", json=payload, headers=CALLER)

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert resp.json()["message"] == message
    assert fake_service.stop_requests == []


@pytest.mark.asyncio
async def test_stop_active_generation(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    relay: AnalysisRelay,
) -> None:
    release = fake_service.add_hanging_stream("doc-1", sse(message_frame("x", task_id="t-1")))
    events = relay.stream_document("doc-1", "user-1")
    await anext(events)
    await anext(events)

    resp = await async_client.request(
        "DELETE", STREAM_URL, json={"task_id": "t-1"}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_200_OK
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["task_id"] == "t-1"
    assert fake_service.stop_requests == [{"task_id": "t-1", "user": "user-1"}]
    release.set()
    await events.aclose()


@pytest.mark.asyncio
async def test_stop_forwards_upstream_failure_status(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    relay: AnalysisRelay,
) -> None:
    release = fake_service.add_hanging_stream("doc-1", sse(message_frame("x", task_id="t-1")))
    fake_service.stop_status = 409
    events = relay.stream_document("doc-1", "user-1")
    await anext(events)
    await anext(events)

    resp = await async_client.post(
        "/api/v1/analysis/stop", json={"taskId": "t-1"}, headers=CALLER
    )

    assert resp.status_code == status.HTTP_409_CONFLICT
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Failed to stop generation: 409"
    assert body["error"]["details"] == "stop rejected"
    release.set()
    await events.aclose()


# -----------------------------------------------------------------------------
# Managed tasks
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_task_lifecycle_over_http(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    manager: AnalysisManager,
) -> None:
    fake_service.add_stream(
        "doc-1", sse(message_frame('```json\n{"score": 7}\n```'), "[DONE]")
    )

    resp = await async_client.post(
        TASKS_URL, json={"document_ids": ["doc-1"]}, headers=CALLER
    )
    assert resp.status_code == status.HTTP_202_ACCEPTED
    assert resp.json()["data"][0]["status"] == "connecting"

    await manager.join()

    resp = await async_client.get(f"{TASKS_URL}/doc-1")
    task = resp.json()["data"]
    assert task["status"] == "completed"
    assert task["parsed_result"] == {"score": 7}

    listed = (await async_client.get(TASKS_URL)).json()["data"]
    assert [t["document_id"] for t in listed] == ["doc-1"]

    resp = await async_client.delete(f"{TASKS_URL}/doc-1")
    assert resp.json()["data"]["cancelled"] is False
    assert resp.json()["message"] == "Task already finished"

    resp = await async_client.post(f"{TASKS_URL}/clear")
    assert resp.json()["data"] == {"cleared": 1}

    resp = await async_client.get(f"{TASKS_URL}/doc-1")
    assert resp.status_code == status.HTTP_404_NOT_FOUND
    assert resp.json()["error"]["type"] == "not_found"


@pytest.mark.asyncio
async def test_submit_validates_payload(async_client: httpx.AsyncClient) -> None:
    resp = await async_client.post(TASKS_URL, json={"document_ids": []}, headers=CALLER)
    assert resp.status_code == status.HTTP_400_BAD_REQUEST

    resp = await async_client.post(
        TASKS_URL, json={"document_ids": ["a"], "priority": 1}, headers=CALLER
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "validation_error"


@pytest.mark.asyncio
async def test_cancel_all_over_http(
    async_client: httpx.AsyncClient,
    fake_service: FakeGenerationService,
    manager: AnalysisManager,
) -> None:
    fake_service.add_hanging_stream("doc-1", b": ping\n\n")
    await async_client.post(TASKS_URL, json={"document_ids": ["doc-1"]}, headers=CALLER)

    resp = await async_client.delete(TASKS_URL)

    assert resp.status_code == status.HTTP_200_OK
    (outcome,) = resp.json()["data"]
    assert outcome["document_id"] == "doc-1"
    assert outcome["cancelled"] is True
    assert resp.json()["message"] == "Cancelled 1 task(s)"
    assert manager.has_active_tasks() is False


@pytest.mark.asyncio
async def test_task_events_until_idle_ends_with_terminal_update(
    async_client: httpx.AsyncClient, fake_service: FakeGenerationService
) -> None:
    fake_service.add_stream("doc-1", sse(message_frame("hello"), "[DONE]"))
    await async_client.post(TASKS_URL, json={"document_ids": ["doc-1"]}, headers=CALLER)

    resp = await async_client.get(f"{TASKS_URL}/events", params={"until_idle": "true"})

    assert resp.status_code == status.HTTP_200_OK
    events = _parse_sse(resp.text)
    assert events
    assert {e["event"] for e in events} <= {"task.snapshot", "task.updated"}
    assert events[-1]["document_id"] == "doc-1"
    assert events[-1]["data"]["status"] == "completed"
    for event in events:
        if event["event"] == "task.updated":
            assert "text" not in event["data"]


@pytest.mark.asyncio
async def test_responses_carry_correlation_id(async_client: httpx.AsyncClient) -> None:
    resp = await async_client.get(TASKS_URL, headers={"X-Correlation-ID": "corr-123"})
    assert resp.headers["X-Correlation-ID"] == "corr-123"
