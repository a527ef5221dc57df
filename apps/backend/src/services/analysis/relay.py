"""Relay between callers and the generation service.

For every requested document the relay opens its own upstream stream and
normalizes what comes back into :class:`RelayEvent` objects: one ``start``,
any number of ``message`` events and exactly one ``done`` or ``error``.
Documents are independent; one failing stream never touches another.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

import httpx

from core.exceptions import ConfigurationError, UnknownTaskIdError
from schemas.analysis import RelayEvent, StopOutcome

from .exceptions import (
    AnalysisStreamError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .upstream import GenerationServiceClient, parse_sse_line


logger = logging.getLogger(__name__)

MAX_ERROR_BODY_CHARS = 2_000

_PRODUCER_DONE = object()


def _truncate(text: str | None) -> str | None:
    if text is None or len(text) <= MAX_ERROR_BODY_CHARS:
        return text
    return text[:MAX_ERROR_BODY_CHARS] + "..."


def _error_event(
    document_id: str, exc: AnalysisStreamError, task_id: str | None
) -> RelayEvent:
    status = getattr(exc, "status_code", None)
    body = getattr(exc, "body", None)
    return RelayEvent(
        event="error",
        document_id=document_id,
        task_id=task_id,
        message=exc.message,
        code=exc.error_code,
        status=status,
        body=_truncate(body),
    )


class AnalysisRelay:
    """Streams generation output per document and forwards stop requests.

    The relay remembers which upstream task ids belong to streams that are
    still open, so stop requests for unknown ids are rejected locally.
    """

    def __init__(self, client: GenerationServiceClient) -> None:
        self._client = client
        self._active_tasks: dict[str, str] = {}

    @property
    def client(self) -> GenerationServiceClient:
        return self._client

    def ensure_configured(self) -> None:
        self._client.ensure_configured()

    def is_active_task(self, task_id: str) -> bool:
        return task_id in self._active_tasks

    @property
    def active_task_ids(self) -> dict[str, str]:
        """Upstream task id to document id for every open stream."""
        return dict(self._active_tasks)

    async def stream_document(
        self, document_id: str, user: str
    ) -> AsyncIterator[RelayEvent]:
        """Yield the normalized events of one document's generation."""
        yield RelayEvent(event="start", document_id=document_id)

        task_id: str | None = None
        try:
            async with self._client.open_stream(document_id, user) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "Generation service returned %s for document %s",
                        response.status_code,
                        document_id,
                    )
                    raise UpstreamProtocolError(
                        f"Generation service error: {response.status_code}",
                        status_code=response.status_code,
                        body=body,
                    )

                async for line in response.aiter_lines():
                    frame = parse_sse_line(line)
                    if frame is None:
                        continue
                    if frame.kind == "done":
                        break
                    if task_id is None and frame.task_id:
                        task_id = frame.task_id
                        self._active_tasks[task_id] = document_id
                        logger.info(
                            "Document %s is upstream task %s", document_id, task_id
                        )
                    if frame.event == "error":
                        payload = frame.payload
                        status = payload.get("status")
                        raise UpstreamProtocolError(
                            str(payload.get("message") or "Generation failed"),
                            status_code=status if isinstance(status, int) else None,
                            body=json.dumps(payload, ensure_ascii=False),
                        )
                    if not frame.answer and not frame.task_id:
                        continue
                    yield RelayEvent(
                        event="message",
                        document_id=document_id,
                        task_id=task_id,
                        answer=frame.answer,
                        upstream_event=frame.event,
                    )
        except AnalysisStreamError as exc:
            yield _error_event(document_id, exc, task_id)
            return
        except ConfigurationError as exc:
            yield RelayEvent(
                event="error",
                document_id=document_id,
                message=str(exc),
                code="configuration_error",
            )
            return
        except httpx.TimeoutException:
            logger.warning("Generation stream for %s timed out", document_id)
            yield _error_event(document_id, UpstreamTimeoutError(), task_id)
            return
        except httpx.HTTPError as exc:
            logger.warning("Generation stream for %s broke: %s", document_id, exc)
            yield _error_event(document_id, UpstreamTransportError(), task_id)
            return
        except Exception:
            logger.exception("Unexpected failure relaying document %s", document_id)
            yield _error_event(document_id, UpstreamTransportError(), task_id)
            return
        finally:
            if task_id is not None:
                self._active_tasks.pop(task_id, None)

        logger.info("Generation stream finished for %s", document_id)
        yield RelayEvent(event="done", document_id=document_id, task_id=task_id)

    async def stream_documents(
        self, document_ids: Sequence[str], user: str
    ) -> AsyncIterator[RelayEvent]:
        """Interleave the event streams of several documents in arrival order.

        Closing this generator cancels every per-document stream still open.
        """
        queue: asyncio.Queue[object] = asyncio.Queue()

        async def produce(document_id: str) -> None:
            try:
                async with aclosing(self.stream_document(document_id, user)) as events:
                    async for event in events:
                        await queue.put(event)
            finally:
                queue.put_nowait(_PRODUCER_DONE)

        producers = [
            asyncio.create_task(produce(document_id), name=f"relay:{document_id}")
            for document_id in document_ids
        ]
        remaining = len(producers)
        try:
            while remaining:
                item = await queue.get()
                if item is _PRODUCER_DONE:
                    remaining -= 1
                    continue
                if isinstance(item, RelayEvent):
                    yield item
        finally:
            for producer in producers:
                producer.cancel()
            await asyncio.gather(*producers, return_exceptions=True)

    async def stop_generation(
        self, task_id: str | None, user: str, *, require_active: bool = True
    ) -> StopOutcome:
        """Ask the generation service to stop ``task_id``.

        Does not close any stream itself; the upstream ends the stream and
        the relay forwards that as usual.
        """
        if not task_id or not task_id.strip():
            raise UnknownTaskIdError("Missing task_id")
        task_id = task_id.strip()
        if require_active and task_id not in self._active_tasks:
            raise UnknownTaskIdError(f"Unknown task_id '{task_id}'")

        try:
            response = await self._client.stop_generation(task_id, user)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError("Stop request timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"Stop request failed: {exc}") from exc

        if response.is_error:
            logger.error(
                "Stopping task %s failed with %s", task_id, response.status_code
            )
            return StopOutcome(
                task_id=task_id,
                success=False,
                status_code=response.status_code,
                detail=_truncate(response.text),
            )
        return StopOutcome(task_id=task_id, success=True, status_code=response.status_code)
