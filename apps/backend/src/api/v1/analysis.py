"""Document analysis endpoints: direct relay streaming and managed tasks."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse, StreamingResponse

from core.exceptions import InvalidRequestError
from dependencies.analysis import AppSettings, CallerId, Manager, Relay
from schemas.analysis import (
    CancelOutcome,
    StopGenerationRequest,
    StopOutcome,
    SubmitAnalysisRequest,
    TaskSnapshot,
    TaskUpdateEvent,
)
from schemas.api import ApiResponse


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analysis", tags=["analysis"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _parse_document_ids(
    document_ids: list[str] | None, file_ids: str | None, max_documents: int
) -> list[str]:
    """Merge repeated ``document_ids`` params and the JSON ``fileIds`` array."""
    collected: list[str] = list(document_ids or [])
    if file_ids is not None:
        try:
            parsed = json.loads(file_ids)
        except json.JSONDecodeError as exc:
            raise InvalidRequestError("fileIds must be a JSON array of strings") from exc
        if not isinstance(parsed, list) or not all(isinstance(i, str) for i in parsed):
            raise InvalidRequestError("fileIds must be a JSON array of strings")
        collected.extend(parsed)

    return _validate_document_ids(collected, max_documents)


def _validate_document_ids(document_ids: list[str], max_documents: int) -> list[str]:
    cleaned = [document_id.strip() for document_id in document_ids]
    if not cleaned:
        raise InvalidRequestError("At least one document id is required")
    if any(not document_id for document_id in cleaned):
        raise InvalidRequestError("Document ids must not be blank")
    unique = list(dict.fromkeys(cleaned))
    if len(unique) > max_documents:
        raise InvalidRequestError(
            f"At most {max_documents} documents can be analyzed per request"
        )
    return unique


# -----------------------------------------------------------------------------
# Relay endpoints
# -----------------------------------------------------------------------------


@router.get(
    "/stream",
    response_class=StreamingResponse,
    summary="Stream analysis of several documents",
    description=(
        "Opens one generation stream per document and forwards normalized "
        "events tagged with the document id as server-sent events."
    ),
)
async def stream_analysis(
    relay: Relay,
    caller_id: CallerId,
    settings: AppSettings,
    document_ids: Annotated[list[str] | None, Query()] = None,
    file_ids: Annotated[str | None, Query(alias="fileIds")] = None,
) -> StreamingResponse:
    ids = _parse_document_ids(document_ids, file_ids, settings.MAX_DOCUMENTS_PER_BATCH)
    relay.ensure_configured()
    logger.info("Streaming analysis of %d document(s) for %s", len(ids), caller_id)

    async def event_stream() -> AsyncGenerator[str, None]:
        async for event in relay.stream_documents(ids, caller_id):
            yield event.to_sse()

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.post(
    "/stop",
    response_model=ApiResponse[StopOutcome],
    summary="Stop an upstream generation",
)
@router.delete(
    "/stream",
    response_model=ApiResponse[StopOutcome],
    summary="Stop an upstream generation",
)
async def stop_analysis(
    payload: StopGenerationRequest,
    relay: Relay,
    caller_id: CallerId,
) -> ApiResponse[StopOutcome] | JSONResponse:
    """Forward a stop request for a generation announced by an open stream.

    The stream itself is not closed here; it ends when the generation
    service finishes it.
    """
    relay.ensure_configured()
    outcome = await relay.stop_generation(payload.task_id, caller_id)
    if not outcome.success:
        body = ApiResponse[StopOutcome](
            success=False,
            data=outcome,
            message=f"Failed to stop generation: {outcome.status_code}",
            error={"details": outcome.detail},
        )
        return JSONResponse(
            status_code=outcome.status_code or status.HTTP_502_BAD_GATEWAY,
            content=body.model_dump(mode="json"),
        )
    return ApiResponse(
        success=True, data=outcome, message="Generation stop requested"
    )


# -----------------------------------------------------------------------------
# Managed task endpoints
# -----------------------------------------------------------------------------


@router.post(
    "/tasks",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ApiResponse[list[TaskSnapshot]],
    summary="Start analysis tasks",
)
async def submit_tasks(
    payload: SubmitAnalysisRequest,
    manager: Manager,
    caller_id: CallerId,
    settings: AppSettings,
) -> ApiResponse[list[TaskSnapshot]]:
    ids = _validate_document_ids(payload.document_ids, settings.MAX_DOCUMENTS_PER_BATCH)
    snapshots = await manager.submit(ids, caller_id)
    return ApiResponse(success=True, data=snapshots, message="Analysis started")


@router.get(
    "/tasks",
    response_model=ApiResponse[list[TaskSnapshot]],
    summary="List analysis tasks",
)
async def list_tasks(manager: Manager) -> ApiResponse[list[TaskSnapshot]]:
    return ApiResponse(
        success=True, data=await manager.snapshot(), message="Tasks retrieved"
    )


@router.delete(
    "/tasks",
    response_model=ApiResponse[list[CancelOutcome]],
    summary="Cancel every running task",
)
async def cancel_all_tasks(manager: Manager) -> ApiResponse[list[CancelOutcome]]:
    outcomes = await manager.cancel()
    return ApiResponse(
        success=True,
        data=outcomes,
        message=f"Cancelled {sum(o.cancelled for o in outcomes)} task(s)",
    )


@router.post(
    "/tasks/clear",
    response_model=ApiResponse[dict[str, int]],
    summary="Remove finished tasks",
)
async def clear_tasks(manager: Manager) -> ApiResponse[dict[str, int]]:
    removed = await manager.clear()
    return ApiResponse(success=True, data={"cleared": removed}, message="Tasks cleared")


@router.get(
    "/tasks/events",
    response_class=StreamingResponse,
    summary="Follow task updates",
    description=(
        "Sends the current snapshot of every task, then one event per task "
        "change. With until_idle=true the stream ends once no task is running."
    ),
)
async def task_events(
    manager: Manager,
    until_idle: bool = False,
) -> StreamingResponse:
    async def event_stream() -> AsyncGenerator[str, None]:
        # Subscribed only once the body is iterated, so the finally always runs
        queue: asyncio.Queue[TaskSnapshot] = asyncio.Queue()
        unsubscribe = manager.subscribe(queue.put_nowait)
        try:
            for snapshot in await manager.snapshot():
                for event in TaskUpdateEvent.from_snapshot(snapshot, initial=True):
                    yield event.to_sse()
            while not (until_idle and queue.empty() and not manager.has_active_tasks()):
                snapshot = await queue.get()
                for event in TaskUpdateEvent.from_snapshot(snapshot):
                    yield event.to_sse()
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.get(
    "/tasks/{document_id}",
    response_model=ApiResponse[TaskSnapshot],
    summary="Get one analysis task",
)
async def get_task(document_id: str, manager: Manager) -> ApiResponse[TaskSnapshot]:
    return ApiResponse(
        success=True, data=manager.get(document_id), message="Task retrieved"
    )


@router.delete(
    "/tasks/{document_id}",
    response_model=ApiResponse[CancelOutcome],
    summary="Cancel one analysis task",
)
async def cancel_task(document_id: str, manager: Manager) -> ApiResponse[CancelOutcome]:
    (outcome,) = await manager.cancel(document_id)
    return ApiResponse(
        success=True,
        data=outcome,
        message="Task cancelled" if outcome.cancelled else "Task already finished",
    )
