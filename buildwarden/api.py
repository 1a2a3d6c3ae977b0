"""Control-plane HTTP API.

Thin FastAPI layer over :class:`~buildwarden.pipeline.Pipeline`.  Every
endpoint answers with the JSON body from :meth:`BuildOutcome.to_response`
and the outcome's status code (409 when another run holds the target).
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Config
from .lock import get_current_lock, is_stale_lock
from .pipeline import BuildOutcome, Pipeline


class PromptRequest(BaseModel):
    """Request body for the build and generate endpoints."""

    prompt: str | None = None


def _respond(outcome: BuildOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())


def create_app(config: Config, pipeline: Pipeline | None = None) -> FastAPI:
    """Build the control-plane application for *config*."""
    pipeline = pipeline or Pipeline(config)
    app = FastAPI(title="Build Warden", version="0.1.0")

    @app.post("/api/build-app")
    async def build_app(payload: PromptRequest | None = None) -> JSONResponse:
        prompt = payload.prompt if payload else None
        return _respond(await pipeline.run(prompt))

    @app.post("/api/generate-app")
    async def generate_app(payload: PromptRequest | None = None) -> JSONResponse:
        prompt = payload.prompt if payload else None
        return _respond(await pipeline.generate(prompt))

    @app.get("/api/status")
    async def status() -> dict[str, Any]:
        record = get_current_lock(config.target_dir, config.lock_file)
        busy = record is not None and not is_stale_lock(record)
        return {
            "busy": busy,
            "holder": record.model_dump(mode="json") if busy and record else None,
            "target": str(config.target_dir),
            "port": config.ports.app,
        }

    return app
