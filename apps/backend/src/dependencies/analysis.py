"""Request dependencies for the analysis endpoints.

The relay and the manager are created once in the application lifespan and
kept on ``app.state``; these helpers hand them to route handlers so tests
can swap them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from core.config import Settings, get_settings
from services.analysis.manager import AnalysisManager
from services.analysis.relay import AnalysisRelay


def get_relay(request: Request) -> AnalysisRelay:
    return request.app.state.analysis_relay


def get_manager(request: Request) -> AnalysisManager:
    return request.app.state.analysis_manager


def get_caller_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Resolve the caller identifier forwarded to the generation service.

    Raises
    ------
    HTTPException(401)
        If the header is missing or blank.
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return x_user_id.strip()


Relay = Annotated[AnalysisRelay, Depends(get_relay)]
Manager = Annotated[AnalysisManager, Depends(get_manager)]
CallerId = Annotated[str, Depends(get_caller_id)]
AppSettings = Annotated[Settings, Depends(get_settings)]
