# backend/app/routers/health.py
from __future__ import annotations

from fastapi import APIRouter

from ..config import settings
from ..schemas import HealthOut

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(ok=True, env=settings.app_env, version=settings.app_version)
