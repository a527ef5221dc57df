"""Application settings, CORS configuration and generation service options."""

import json
import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ANALYSIS_QUERY = (
    "Analyze the attached document and extract every key decision item "
    "(major decisions, key personnel appointments, major projects and "
    "large-amount fund usage). Reply in markdown and include the structured "
    "result as a single ```json fenced block."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env"), env_file_encoding="utf-8")

    # App
    APP_NAME: str = "AuditLens"
    ENVIRONMENT: str = "development"  # development | production | test

    # CORS
    # Accept list or CSV/JSON string from env; normalized to list[str] by validators
    CORS_ORIGINS: list[str] | str = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    ALLOW_CREDENTIALS: bool = True

    # External generation service (Dify-compatible chat-messages API).
    # GENERATION_API_KEY is optional at import time so the app can boot for
    # health checks; streaming endpoints refuse to start without it.
    GENERATION_API_URL: str = "http://localhost/v1"
    GENERATION_API_KEY: str | None = None
    GENERATION_QUERY: str = DEFAULT_ANALYSIS_QUERY
    GENERATION_OUTPUT_MODE: str = "json"

    # Streaming limits (seconds)
    STREAM_CONNECT_TIMEOUT_SECONDS: float = 10.0
    STREAM_INACTIVITY_TIMEOUT_SECONDS: float = 120.0
    STOP_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Batch limits
    MAX_DOCUMENTS_PER_BATCH: int = 20

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: object) -> list[str]:
        """Allow list, CSV string, or JSON array string for CORS origins."""
        if isinstance(v, list):
            return [str(i).strip() for i in v]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        "CORS_ORIGINS must be a CSV list or JSON array string"
                    ) from e
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON must be a list")
                return [str(i).strip() for i in parsed]
            # CSV fallback
            return [i.strip() for i in s.split(",") if i.strip()]
        raise ValueError("Invalid CORS_ORIGINS type; expected str or list[str]")

    @field_validator("GENERATION_API_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator(
        "STREAM_CONNECT_TIMEOUT_SECONDS",
        "STREAM_INACTIVITY_TIMEOUT_SECONDS",
        "STOP_REQUEST_TIMEOUT_SECONDS",
    )
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v

    @model_validator(mode="after")
    def _validate_cors_credentials(self) -> "Settings":
        """Ensure wildcard origins are not used when credentials are allowed."""
        # Normalize in case the union allows a stray string at runtime
        if isinstance(self.CORS_ORIGINS, str):
            self.CORS_ORIGINS = self.assemble_cors_origins(self.CORS_ORIGINS)
        if self.ALLOW_CREDENTIALS and any(
            o.strip() == "*" for o in (self.CORS_ORIGINS or [])
        ):
            raise ValueError(
                "CORS configuration error: ALLOW_CREDENTIALS=True but "
                "CORS_ORIGINS contains '*'. Use explicit origins when credentials "
                "are allowed."
            )
        if self.MAX_DOCUMENTS_PER_BATCH < 1:
            raise ValueError("MAX_DOCUMENTS_PER_BATCH must be at least 1")
        return self


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    # The Settings initializer accepts a runtime-only `_env_file` kwarg used by
    # pydantic-settings; mypy's stub doesn't allow this call argument.
    settings = Settings(_env_file=env_file or None)  # type: ignore[call-arg]

    # Production must be able to reach the generation service
    if env == "production" and not settings.GENERATION_API_KEY:
        raise RuntimeError("GENERATION_API_KEY must be set in production")
    return settings
