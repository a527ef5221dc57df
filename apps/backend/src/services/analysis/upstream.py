"""HTTP client for the external generation service.

The service speaks the Dify ``chat-messages`` API: a streaming POST per
document whose body is a sequence of ``data: {...}`` SSE lines, and a
``stop-generating`` call keyed by the upstream task id.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from core.config import Settings
from core.error_handler import StructuredLogger, get_correlation_id
from core.exceptions import ConfigurationError
from core.middleware import CORRELATION_HEADER


logger = logging.getLogger(__name__)
structured_logger = StructuredLogger(__name__)

DONE_SENTINEL = "[DONE]"
PREVIEW_CHARS = 100


@dataclass(frozen=True, slots=True)
class UpstreamFrame:
    """One decoded ``data:`` line from the generation stream."""

    kind: Literal["data", "done"]
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> str | None:
        value = self.payload.get("task_id")
        return str(value) if value else None

    @property
    def event(self) -> str | None:
        return self.payload.get("event")

    @property
    def answer(self) -> str:
        value = self.payload.get("answer")
        return value if isinstance(value, str) else ""


def _preview(data: str) -> str:
    if len(data) <= PREVIEW_CHARS:
        return data
    return data[:PREVIEW_CHARS] + "..."


def parse_sse_line(line: str) -> UpstreamFrame | None:
    """Decode a single SSE line; returns None for lines that carry nothing.

    Blank lines, comments, non-``data`` fields and payloads that are not
    JSON objects are skipped.
    """
    line = line.strip()
    if not line or not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return UpstreamFrame(kind="done")
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable frame: %s", _preview(data))
        return None
    if not isinstance(payload, dict):
        logger.debug("Skipping non-object frame: %s", _preview(data))
        return None
    return UpstreamFrame(kind="data", payload=payload)


class GenerationServiceClient:
    """Thin wrapper over a shared ``httpx.AsyncClient`` for the generation API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str,
        api_key: str | None,
        query: str,
        output_mode: str = "json",
        connect_timeout: float = 10.0,
        inactivity_timeout: float = 120.0,
        stop_timeout: float = 10.0,
    ) -> None:
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.query = query
        self.output_mode = output_mode
        self._stream_timeout = httpx.Timeout(
            inactivity_timeout, connect=connect_timeout
        )
        self._stop_timeout = httpx.Timeout(stop_timeout)

    @classmethod
    def from_settings(
        cls, http_client: httpx.AsyncClient, settings: Settings
    ) -> GenerationServiceClient:
        return cls(
            http_client,
            base_url=settings.GENERATION_API_URL,
            api_key=settings.GENERATION_API_KEY,
            query=settings.GENERATION_QUERY,
            output_mode=settings.GENERATION_OUTPUT_MODE,
            connect_timeout=settings.STREAM_CONNECT_TIMEOUT_SECONDS,
            inactivity_timeout=settings.STREAM_INACTIVITY_TIMEOUT_SECONDS,
            stop_timeout=settings.STOP_REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def ensure_configured(self) -> None:
        if not self._api_key:
            raise ConfigurationError("GENERATION_API_KEY is not configured")

    def _headers(self) -> dict[str, str]:
        self.ensure_configured()
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            CORRELATION_HEADER: get_correlation_id(),
        }

    def build_request_body(self, document_id: str, user: str) -> dict[str, Any]:
        return {
            "query": self.query,
            "inputs": {"outputMode": self.output_mode},
            "user": user,
            "response_mode": "streaming",
            "conversation_id": "",
            "files": [
                {
                    "type": "document",
                    "transfer_method": "local_file",
                    "upload_file_id": document_id,
                }
            ],
        }

    @asynccontextmanager
    async def open_stream(
        self, document_id: str, user: str
    ) -> AsyncIterator[httpx.Response]:
        """Open the streaming generation request for one document.

        The response is closed when the context exits, whichever way it exits.
        """
        headers = self._headers()
        body = self.build_request_body(document_id, user)
        structured_logger.info(
            "Opening generation stream",
            document_id=document_id,
            url=f"{self.base_url}/chat-messages",
            headers=headers,
            request_body=body,
        )
        async with self._http.stream(
            "POST",
            f"{self.base_url}/chat-messages",
            json=body,
            headers=headers,
            timeout=self._stream_timeout,
        ) as response:
            yield response

    async def stop_generation(self, task_id: str, user: str) -> httpx.Response:
        """Ask the service to stop an in-flight generation."""
        response = await self._http.post(
            f"{self.base_url}/chat-messages/stop-generating",
            json={"task_id": task_id, "user": user},
            headers=self._headers(),
            timeout=self._stop_timeout,
        )
        logger.info("Stop request for task %s returned %s", task_id, response.status_code)
        return response
