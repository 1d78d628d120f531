"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings
from src.jobs.runtime import JobRuntime


@dataclass(frozen=True)
class DispatcherIdentity:
    """Verified caller of a job callback (from the OIDC token)."""

    email: str
    subject: str = ""


def get_runtime(request: Request) -> JobRuntime:
    """The runtime built in the app lifespan (or injected by tests)."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return runtime


def get_app_settings(request: Request) -> Settings:
    return get_runtime(request).settings


async def require_admin(request: Request) -> None:
    """Guard admin routes with the static ``ADMIN_API_KEY`` bearer token."""
    expected = get_app_settings(request).admin_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    header = request.headers.get("Authorization", "")
    supplied = header.removeprefix("Bearer ").strip() if header.startswith("Bearer ") else ""
    if not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


# Annotated shortcuts for route signatures
Runtime = Annotated[JobRuntime, Depends(get_runtime)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
AdminOnly = Depends(require_admin)
