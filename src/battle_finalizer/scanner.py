"""Periodic discovery of battles that need the pipeline.

Candidates come from the index cache; eligibility is decided from a fresh
ledger read. Assets are processed one at a time because every pipeline run
signs with the same keeper account.

An asset whose run failed fatally is held: later scans skip it until an
operator releases it, either explicitly or by running it by hand.
"""

from __future__ import annotations

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from battle_finalizer.config import PipelineConfig
from battle_finalizer.errors import (
    AccountLayoutError,
    ErrorKind,
    InvalidAssetId,
    LedgerUnavailable,
    PipelineError,
)
from battle_finalizer.models import BattleState, BattleStatus, CachedToken, ScanOutcome, ScanResult
from battle_finalizer.orchestrator import PipelineOrchestrator
from battle_finalizer.persistence.queries import list_tokens_by_status
from battle_finalizer.persistence.writer import IndexOutcome, IndexWriter
from battle_finalizer.reader import LedgerStateReader
from battle_finalizer.thresholds import victory_achieved

log = logging.getLogger("bf.scanner")

SCANNED_STATUSES = (BattleStatus.IN_BATTLE, BattleStatus.VICTORY_PENDING, BattleStatus.LISTED)


class BattleScanner:
    def __init__(
        self,
        cfg: PipelineConfig,
        reader: LedgerStateReader,
        orchestrator: PipelineOrchestrator,
        index: IndexWriter,
    ):
        self._cfg = cfg
        self._reader = reader
        self._orchestrator = orchestrator
        self._index = index
        self._scan_lock = threading.Lock()
        self._held: dict[str, PipelineError] = {}
        self._held_lock = threading.Lock()

    def needs_pipeline(self, state: BattleState) -> bool:
        if state.status == BattleStatus.IN_BATTLE:
            return victory_achieved(state.deposited_value, state.trade_volume, self._cfg.thresholds)
        return state.status in (BattleStatus.VICTORY_PENDING, BattleStatus.LISTED)

    def scan(self) -> ScanResult:
        if not self._scan_lock.acquire(blocking=False):
            log.info("SCAN_BUSY │ previous scan still running")
            return ScanResult(busy=True)
        try:
            return self._scan()
        finally:
            self._scan_lock.release()

    def _scan(self) -> ScanResult:
        result = ScanResult()
        try:
            candidates = list_tokens_by_status(SCANNED_STATUSES, engine=self._index.engine)
        except SQLAlchemyError as e:
            log.error("SCAN_FAIL │ could not list cached tokens: %s", e)
            return result

        result.scanned = len(candidates)
        for token in candidates:
            self._scan_one(token, result)

        log.info(
            "SCAN_DONE │ scanned=%d │ processed=%d │ corrected=%d │ held=%d",
            result.scanned, len(result.processed), len(result.corrected), len(result.held),
        )
        return result

    def _scan_one(self, token: CachedToken, result: ScanResult) -> None:
        with self._held_lock:
            held = self._held.get(token.asset_id)
        if held is not None:
            log.info("SCAN_HELD %s │ %s", token.asset_id[:8], held.message)
            result.held.append(token.asset_id)
            return

        try:
            state = self._reader.read(token.asset_id)
        except LedgerUnavailable as e:
            log.warning("SCAN_READ_FAIL %s │ %s", token.asset_id[:8], e)
            return
        except (AccountLayoutError, InvalidAssetId) as e:
            log.error("SCAN_BAD_ASSET %s │ %s", token.asset_id[:8], e)
            error = PipelineError(ErrorKind.FATAL, str(e))
            self._hold(token.asset_id, error)
            result.processed.append(ScanOutcome(
                token.asset_id, success=False, error=error.message, kind=error.kind,
                last_status=token.status,
            ))
            return
        if state is None:
            log.warning("SCAN_NO_STATE %s │ cached as %s", token.asset_id[:8], token.status.label)
            return

        if state.status < token.status and state.status >= BattleStatus.IN_BATTLE:
            # A battle status never moves backwards while the battle is live
            log.warning(
                "SCAN_STALE_READ %s │ cached=%s │ ledger=%s │ skipped this pass",
                token.asset_id[:8], token.status.label, state.status.label,
            )
            return

        if state.status != token.status:
            self._correct(token, state)
            result.corrected.append(token.asset_id)

        if not self.needs_pipeline(state):
            return

        run = self._orchestrator.execute(token.asset_id)
        if run.error_kind == ErrorKind.FATAL:
            log.error(
                "SCAN_FATAL %s │ step=%s │ status=%s │ %s │ held until released",
                token.asset_id[:8], run.failed_step,
                run.last_status.label if run.last_status is not None else "unknown",
                run.error.message,
            )
            self._hold(token.asset_id, run.error)
        result.processed.append(ScanOutcome(
            asset_id=token.asset_id,
            success=run.success,
            pool_id=run.pool_id,
            error=run.error.message if run.error else None,
            kind=run.error_kind,
            step=run.failed_step,
            last_status=run.last_status,
        ))

    def _correct(self, token: CachedToken, state: BattleState) -> None:
        log.info(
            "CACHE_CORRECT %s │ cached=%s │ ledger=%s",
            token.asset_id[:8], token.status.label, state.status.label,
        )
        # Only a battle that has ended may move the cached status backwards
        self._index.apply(IndexOutcome(
            asset_id=token.asset_id,
            status=state.status,
            authoritative=state.status < BattleStatus.IN_BATTLE,
            deposited_value=state.deposited_value,
            trade_volume=state.trade_volume,
        ))

    # -----------------------------------------------------------------
    # Fatal holds
    # -----------------------------------------------------------------

    def _hold(self, asset_id: str, error: PipelineError) -> None:
        with self._held_lock:
            self._held[asset_id] = error

    def release(self, asset_id: str) -> bool:
        """Let the scanner pick *asset_id* up again. True if it was held."""
        with self._held_lock:
            released = self._held.pop(asset_id, None) is not None
        if released:
            log.info("SCAN_RELEASE %s", asset_id[:8])
        return released

    def run_forever(self, stop_event: threading.Event) -> None:
        """Scan every ``scan_interval_sec`` until *stop_event* is set."""
        log.info("SCANNER_START │ interval=%.0fs", self._cfg.scan_interval_sec)
        while not stop_event.is_set():
            try:
                self.scan()
            except Exception as e:
                log.exception("SCAN_CRASH │ %s", e)
            stop_event.wait(self._cfg.scan_interval_sec)
        log.info("SCANNER_STOP")
