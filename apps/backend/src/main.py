import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.v1.api import api_router
from core.config import get_settings
from core.error_handler import (
    ExceptionNormalizationMiddleware,
    global_exception_handler,
    setup_logging,
)
from core.exceptions import DomainError
from core.middleware import CorrelationIdMiddleware
from services.analysis.exceptions import AnalysisStreamError
from services.analysis.manager import AnalysisManager
from services.analysis.relay import AnalysisRelay
from services.analysis.upstream import GenerationServiceClient


logger = logging.getLogger(__name__)


def validate_cors_origins(origins: Iterable[str]) -> list[str]:
    """Keep only well-formed http(s) origins."""

    def is_valid_url(url: str) -> bool:
        parsed = urlparse(url)
        return bool(parsed.scheme in {"http", "https"} and parsed.netloc)

    validated_origins = []
    for origin in (o.strip() for o in origins):
        if not origin:
            continue
        if is_valid_url(origin):
            validated_origins.append(origin)
        else:
            logger.warning("Invalid CORS origin '%s' ignored", origin)
    return validated_origins


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the shared upstream client, relay and manager; tear them down on exit.

    Shutdown cancels every running analysis before the HTTP client closes so
    no upstream connection outlives the process.
    """
    settings = get_settings()
    setup_logging()

    http_client = httpx.AsyncClient()
    relay = AnalysisRelay(GenerationServiceClient.from_settings(http_client, settings))
    manager = AnalysisManager(
        relay, inactivity_timeout=settings.STREAM_INACTIVITY_TIMEOUT_SECONDS
    )
    app.state.http_client = http_client
    app.state.analysis_relay = relay
    app.state.analysis_manager = manager
    if not relay.client.is_configured:
        logger.warning("GENERATION_API_KEY is not set; analysis endpoints will fail")

    try:
        yield
    finally:
        await manager.shutdown()
        await http_client.aclose()
        logger.info("Analysis service shut down")


_settings = get_settings()

app = FastAPI(
    title=f"{_settings.APP_NAME} API",
    description="Streaming multi-document analysis relay",
    version="0.1.0",
    docs_url=None,  # We'll mount docs under /api/v1/docs
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(ExceptionNormalizationMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=validate_cors_origins(_settings.CORS_ORIGINS),
    allow_credentials=_settings.ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)

app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(StarletteHTTPException, global_exception_handler)
app.add_exception_handler(RequestValidationError, global_exception_handler)
app.add_exception_handler(DomainError, global_exception_handler)
app.add_exception_handler(AnalysisStreamError, global_exception_handler)

app.include_router(api_router, prefix="/api/v1")


# Mount OpenAPI docs under /api/v1/docs and /api/v1/redoc
@app.get("/api/v1/docs", include_in_schema=False)
def custom_swagger_ui_html():
    return get_swagger_ui_html(
        openapi_url="/openapi.json", title=f"{_settings.APP_NAME} API Docs"
    )


@app.get("/api/v1/redoc", include_in_schema=False)
def redoc_html():
    return get_redoc_html(
        openapi_url="/openapi.json", title=f"{_settings.APP_NAME} API Redoc"
    )


@app.get("/")
def read_root() -> dict[str, str]:
    return {"message": f"{_settings.APP_NAME} analysis service"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
