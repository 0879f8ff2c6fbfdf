# apps/api_gateway/app_factory.py
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from apps.api_gateway.jobs import create_jobs_router
from apps.api_gateway.review import create_review_router
from services.batch import BatchCoordinator, CoordinatorBusy
from services.segmentation.models import ModelType, OutputMode


class SettingsPatch(BaseModel):
    output_mode: Optional[OutputMode] = None
    include_original: Optional[bool] = None
    manual_review_mode: Optional[bool] = None
    min_confidence: Optional[float] = None
    model_type: Optional[ModelType] = None


def _settings_json(coordinator: BatchCoordinator) -> dict:
    s = coordinator.settings
    return {
        "output_mode": s.output_mode.value,
        "include_original": s.include_original,
        "manual_review_mode": s.manual_review_mode,
        "min_confidence": s.min_confidence,
        "model_type": s.model_type.value,
        "batch_limit": s.batch_limit,
    }


def create_app(*, coordinator: BatchCoordinator) -> FastAPI:
    app = FastAPI(title="Packet Splitter API Gateway")

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/settings")
    def get_settings():
        return _settings_json(coordinator)

    @app.patch("/settings")
    def update_settings(patch: SettingsPatch):
        changes = {k: v for k, v in patch.model_dump().items() if v is not None}
        mc = changes.get("min_confidence")
        if mc is not None and not 0.0 <= mc <= 1.0:
            raise HTTPException(status_code=422, detail="min_confidence must be between 0.0 and 1.0")
        try:
            coordinator.update_settings(**changes)
        except CoordinatorBusy as e:
            raise HTTPException(status_code=409, detail=str(e))
        return _settings_json(coordinator)

    app.include_router(create_jobs_router(coordinator=coordinator))
    app.include_router(create_review_router(coordinator=coordinator))

    return app
