"""FastAPI application factory for the battle pipeline API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from battle_finalizer.api.routes import create_battle_router
from battle_finalizer.config import PipelineConfig

if TYPE_CHECKING:
    from battle_finalizer.orchestrator import PipelineOrchestrator
    from battle_finalizer.scanner import BattleScanner

log = logging.getLogger("bf.api")


def create_app(
    cfg: PipelineConfig, orchestrator: "PipelineOrchestrator", scanner: "BattleScanner"
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Battle Finalizer API",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url=None,
    )

    if not cfg.api_secret:
        log.warning("CRON_SECRET not set: every pipeline endpoint will answer 401")

    app.state.orchestrator = orchestrator
    app.state.scanner = scanner

    app.include_router(create_battle_router(cfg, orchestrator, scanner), prefix="/api/battles")

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "cluster": cfg.cluster}

    return app
