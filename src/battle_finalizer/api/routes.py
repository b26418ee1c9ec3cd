"""Pipeline endpoints for single assets and scans."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends

from battle_finalizer.api.auth import require_auth
from battle_finalizer.api.schemas import ExecuteRequest, ExecuteResponse, ReleaseResponse, ScanResponse
from battle_finalizer.config import PipelineConfig
from battle_finalizer.errors import ErrorKind

if TYPE_CHECKING:
    from battle_finalizer.orchestrator import PipelineOrchestrator
    from battle_finalizer.scanner import BattleScanner


def create_battle_router(
    cfg: PipelineConfig, orchestrator: "PipelineOrchestrator", scanner: "BattleScanner"
) -> APIRouter:
    router = APIRouter()
    execute_auth = require_auth(cfg)
    scan_auth = require_auth(cfg, allow_scheduler=True)

    # Pipeline calls block on ledger confirmations, so handlers are sync (threadpool)

    @router.post("/execute", response_model=ExecuteResponse, dependencies=[Depends(execute_auth)])
    def execute(body: ExecuteRequest):
        """Run the finalization pipeline for one asset from its current ledger status.

        A manual run that does not fail fatally releases the asset from the
        scanner's hold.
        """
        asset_id = body.asset_id.strip()
        result = orchestrator.execute(asset_id)
        if result.error_kind != ErrorKind.FATAL:
            scanner.release(asset_id)
        return result.to_dict()

    @router.post("/release", response_model=ReleaseResponse, dependencies=[Depends(execute_auth)])
    def release(body: ExecuteRequest):
        asset_id = body.asset_id.strip()
        return {"assetId": asset_id, "released": scanner.release(asset_id)}

    @router.post("/scan", response_model=ScanResponse, dependencies=[Depends(scan_auth)])
    def scan_post():
        return scanner.scan().to_dict()

    @router.get("/scan", response_model=ScanResponse, dependencies=[Depends(scan_auth)])
    def scan_get():
        """Same as POST; schedulers that only issue GET requests use this one."""
        return scanner.scan().to_dict()

    return router
