"""Concurrent analysis of many documents with per-task cancellation.

Each submitted document gets an :class:`AnalysisTask` and its own asyncio
runner consuming the relay stream for that document. The task map is the
only shared structure and every insert, replace or eviction happens under
one lock. A task's fields are written only by its runner or by the cancel
path, and terminal transitions are one-shot, so whichever of the two gets
there first wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine, Sequence
from contextlib import aclosing
from typing import Any, Protocol

from core.exceptions import TaskNotFoundError
from schemas.analysis import CancelOutcome, RelayEvent, StopOutcome, TaskError, TaskSnapshot

from .task import AnalysisTask, TaskStatus


logger = logging.getLogger(__name__)

TaskObserver = Callable[[TaskSnapshot], None]
ResultSink = Callable[[TaskSnapshot], Coroutine[Any, Any, None]]


class DocumentStreamSource(Protocol):
    def stream_document(self, document_id: str, user: str) -> AsyncIterator[RelayEvent]: ...

    async def stop_generation(
        self, task_id: str | None, user: str, *, require_active: bool = True
    ) -> StopOutcome: ...


class AnalysisManager:
    """Owns the task map, the runners and the observers.

    Args:
        source: Where per-document event streams come from (the relay).
        inactivity_timeout: Seconds without any event before a task fails
            with ``network_timeout``.
        result_sink: Optional coroutine called in the background with the
            snapshot of every completed task. Its failures are only logged.
    """

    def __init__(
        self,
        source: DocumentStreamSource,
        *,
        inactivity_timeout: float = 120.0,
        result_sink: ResultSink | None = None,
    ) -> None:
        self._source = source
        self._inactivity_timeout = inactivity_timeout
        self._result_sink = result_sink
        self._tasks: dict[str, AnalysisTask] = {}
        self._lock = asyncio.Lock()
        self._observers: list[TaskObserver] = []
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #
    def subscribe(self, observer: TaskObserver) -> Callable[[], None]:
        """Register ``observer`` for every task change; returns an unsubscribe."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def _publish(self, task: AnalysisTask) -> None:
        snapshot = task.snapshot(include_delta=True)
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Task observer failed for %s", task.document_id)

    # ------------------------------------------------------------------ #
    # Submission and runners
    # ------------------------------------------------------------------ #
    async def submit(self, document_ids: Sequence[str], user: str) -> list[TaskSnapshot]:
        """Start analysis for every document not already in flight.

        Documents with a live task keep it; finished tasks are replaced by
        a fresh run. Returns a snapshot per distinct requested document.
        """
        ordered = list(dict.fromkeys(document_ids))
        started: list[AnalysisTask] = []
        async with self._lock:
            for document_id in ordered:
                existing = self._tasks.get(document_id)
                if existing is not None and not existing.is_terminal:
                    logger.info("Document %s is already being analyzed", document_id)
                    continue
                task = AnalysisTask(document_id=document_id, user=user)
                self._tasks[document_id] = task
                started.append(task)

            for task in started:
                self._publish(task)
                task.mark_connecting()
                self._publish(task)
                task.connection = asyncio.create_task(
                    self._run(task), name=f"analysis:{task.document_id}"
                )
            snapshots = [self._tasks[document_id].snapshot() for document_id in ordered]

        logger.info("Started %d of %d requested analyses", len(started), len(ordered))
        return snapshots

    async def _run(self, task: AnalysisTask) -> None:
        """Consume one document's events until the task is terminal."""
        try:
            async with aclosing(
                self._source.stream_document(task.document_id, task.user)
            ) as events:
                while not task.is_terminal:
                    try:
                        async with asyncio.timeout(self._inactivity_timeout):
                            event = await anext(events)
                    except StopAsyncIteration:
                        break
                    if task.apply_event(event):
                        self._publish(task)
            # The stream closing counts as done
            if task.complete():
                self._publish(task)
        except TimeoutError:
            logger.warning(
                "No events for %s within %ss", task.document_id, self._inactivity_timeout
            )
            error = TaskError(
                code="network_timeout",
                message=f"No data received for {self._inactivity_timeout:g} seconds",
            )
            if task.fail(error):
                self._publish(task)
        except Exception as exc:
            logger.exception("Runner for %s crashed", task.document_id)
            error = TaskError(code="transport_error", message=str(exc) or "Stream failed")
            if task.fail(error):
                self._publish(task)
        finally:
            if task.connection is asyncio.current_task():
                task.connection = None

        if self._result_sink is not None and task.status == TaskStatus.COMPLETED:
            self._spawn_sink(self._result_sink, task.snapshot())

    def _spawn_sink(self, sink: ResultSink, snapshot: TaskSnapshot) -> None:
        background = asyncio.create_task(
            sink(snapshot), name=f"analysis-sink:{snapshot.document_id}"
        )
        self._background.add(background)
        background.add_done_callback(self._on_sink_done)

    def _on_sink_done(self, background: asyncio.Task[None]) -> None:
        self._background.discard(background)
        if background.cancelled():
            return
        exc = background.exception()
        if exc is not None:
            logger.error("Persisting analysis result failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #
    async def cancel(self, document_id: str | None = None) -> list[CancelOutcome]:
        """Cancel one task, or every live task when ``document_id`` is None.

        Cancelling a finished task is a no-op reported in the outcome. One
        task's upstream stop failing does not affect the others.
        """
        async with self._lock:
            if document_id is None:
                targets = [task for task in self._tasks.values() if not task.is_terminal]
            else:
                task = self._tasks.get(document_id)
                if task is None:
                    raise TaskNotFoundError(document_id)
                targets = [task]

            # Marked before any await so no further events are applied
            pending: list[tuple[AnalysisTask, str | None]] = []
            outcomes: dict[str, CancelOutcome] = {}
            for task in targets:
                if not task.cancel():
                    outcomes[task.document_id] = CancelOutcome(
                        document_id=task.document_id,
                        status=task.status,
                        cancelled=False,
                        upstream_task_id=task.upstream_task_id,
                        detail="Task already finished",
                    )
                    continue
                self._publish(task)
                task.release_connection()
                pending.append((task, task.upstream_task_id))

        stopped = await asyncio.gather(
            *(self._stop_upstream(task, upstream_id) for task, upstream_id in pending)
        )
        outcomes.update({outcome.document_id: outcome for outcome in stopped})
        return [outcomes[task.document_id] for task in targets]

    async def _stop_upstream(
        self, task: AnalysisTask, upstream_task_id: str | None
    ) -> CancelOutcome:
        outcome = CancelOutcome(
            document_id=task.document_id,
            status=task.status,
            cancelled=True,
            upstream_task_id=upstream_task_id,
        )
        if upstream_task_id is None:
            return outcome
        try:
            result = await self._source.stop_generation(
                upstream_task_id, task.user, require_active=False
            )
        except Exception as exc:
            logger.warning(
                "Upstream stop for %s (%s) failed: %s",
                task.document_id,
                upstream_task_id,
                exc,
            )
            return outcome.model_copy(update={"upstream_stopped": False, "detail": str(exc)})
        return outcome.model_copy(
            update={"upstream_stopped": result.success, "detail": result.detail}
        )

    # ------------------------------------------------------------------ #
    # Queries and housekeeping
    # ------------------------------------------------------------------ #
    def get(self, document_id: str) -> TaskSnapshot:
        task = self._tasks.get(document_id)
        if task is None:
            raise TaskNotFoundError(document_id)
        return task.snapshot()

    async def snapshot(self) -> list[TaskSnapshot]:
        async with self._lock:
            return [task.snapshot() for task in self._tasks.values()]

    def has_active_tasks(self) -> bool:
        return any(not task.is_terminal for task in self._tasks.values())

    async def clear(self) -> int:
        """Evict every finished task; returns how many were removed."""
        async with self._lock:
            finished = [key for key, task in self._tasks.items() if task.is_terminal]
            for key in finished:
                del self._tasks[key]
        return len(finished)

    async def join(self) -> None:
        """Wait until every runner and pending result sink has finished."""
        runners = [task.connection for task in self._tasks.values() if task.connection]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel everything still running and wait for the runners to exit."""
        runners = [task.connection for task in self._tasks.values() if task.connection]
        outcomes = await self.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        for background in list(self._background):
            background.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Analysis manager stopped; cancelled %d task(s)", len(outcomes))
