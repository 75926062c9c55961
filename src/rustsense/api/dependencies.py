"""Request dependencies: API key authentication and app-state accessors."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from rustsense.config import Settings
    from rustsense.ml.inference import InferencePool
    from rustsense.ml.model_manager import ModelManager
    from rustsense.ml.pipeline import SeverityPipeline, SlotRegistry

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def get_slots(request: Request) -> SlotRegistry:
    slots: SlotRegistry = request.app.state.slots
    return slots


def require_pipeline(request: Request) -> SeverityPipeline:
    """Return the ready pipeline, or 503 if the model failed to load at startup."""
    pipeline: SeverityPipeline | None = request.app.state.pipeline
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model is not loaded",
        )
    return pipeline


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    Without RUSTSENSE_API_KEY every request passes; with it, requests must
    send 'Authorization: Bearer <key>'.
    """
    expected = get_settings(request).api_key
    if expected is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
