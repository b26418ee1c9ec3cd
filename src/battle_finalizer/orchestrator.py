"""Battle finalization state machine.

    InBattle ──check_victory──▶ VictoryPending ──finalize_duel──▶ Listed
    Listed ──withdraw_for_listing──▶ Listed (funds with keeper) ──create_pool──▶ PoolCreated

Each iteration re-reads the asset on the ledger and derives the next step
from what it sees, never from what the caller or a previous iteration
assumed. That, plus the idempotency guard, makes ``execute`` safe to call
again at any point: a crashed or concurrent run simply resumes.

``execute`` never raises. Every outcome is a PipelineResult carrying the
step log, the failing step and the last status observed on the ledger.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from battle_finalizer.addresses import parse_asset_id
from battle_finalizer.amm import PoolCreationAdapter
from battle_finalizer.config import PipelineConfig
from battle_finalizer.errors import (
    AccountLayoutError,
    AmmServiceError,
    ErrorKind,
    InvalidAssetId,
    LedgerUnavailable,
    MissingKeeperCredential,
    PipelineError,
)
from battle_finalizer.executor import TransactionExecutor
from battle_finalizer.guard import IdempotencyGuard, already_done
from battle_finalizer.locks import AssetLocks
from battle_finalizer.models import (
    BattleState,
    BattleStatus,
    PipelineResult,
    PlunderReport,
    PoolCreation,
    StepName,
    StepResult,
)
from battle_finalizer.persistence.writer import IndexOutcome, IndexWriter, WinnerRecord
from battle_finalizer.reader import LedgerStateReader
from battle_finalizer.thresholds import victory_achieved, victory_progress
from battle_finalizer.verification import ConsistencyVerifier, lamports_to_sol

log = logging.getLogger("bf.orchestrator")


class _Stop(Exception):
    """Internal: carries the error that ends a run."""

    def __init__(self, error: PipelineError):
        super().__init__(error.message)
        self.error = error


@dataclass
class _RunContext:
    asset_id: str
    result: PipelineResult
    deadline: float
    loser_id: Optional[str] = None
    withdrawn: Optional[int] = None
    plunder: Optional[PlunderReport] = None


class PipelineOrchestrator:
    def __init__(
        self,
        cfg: PipelineConfig,
        reader: LedgerStateReader,
        executor: TransactionExecutor,
        guard: IdempotencyGuard,
        pools: PoolCreationAdapter,
        verifier: ConsistencyVerifier,
        index: IndexWriter,
        locks: AssetLocks | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._cfg = cfg
        self._reader = reader
        self._executor = executor
        self._guard = guard
        self._pools = pools
        self._verifier = verifier
        self._index = index
        self._locks = locks or AssetLocks()
        self._clock = clock
        self._sleep = sleep

    def execute(self, asset_id: str) -> PipelineResult:
        """Drive one asset from its current ledger status as far as it can go."""
        result = PipelineResult(asset_id=asset_id, success=False)
        try:
            parse_asset_id(asset_id)
        except InvalidAssetId as e:
            result.error = PipelineError(ErrorKind.FATAL, str(e))
            return result

        with self._locks.hold(asset_id) as acquired:
            if not acquired:
                log.info("PIPELINE_BUSY %s │ another run holds the lock", asset_id[:8])
                result.error = PipelineError(
                    ErrorKind.TRANSIENT, "pipeline already running for this asset"
                )
                return result

            ctx = _RunContext(
                asset_id=asset_id,
                result=result,
                deadline=self._clock() + self._cfg.run_budget_sec,
            )
            started = self._clock()
            try:
                self._run(ctx)
            except _Stop as stop:
                result.success = False
                result.error = stop.error
            except MissingKeeperCredential as e:
                result.success = False
                result.error = PipelineError(ErrorKind.FATAL, str(e), step=self._current_step(result))
            except Exception as e:
                log.exception("PIPELINE_CRASH %s │ %s", asset_id[:8], e)
                result.success = False
                result.error = PipelineError(
                    ErrorKind.FATAL, f"unexpected error: {e}", step=self._current_step(result)
                )

        elapsed = self._clock() - started
        status = result.last_status.label if result.last_status is not None else "unknown"
        if result.success:
            log.info(
                "PIPELINE_OK %s │ status=%s │ pool=%s │ submissions=%d │ %.1fs",
                asset_id[:8], status, result.pool_id, result.submissions, elapsed,
            )
        else:
            log.warning(
                "PIPELINE_STOP %s │ status=%s │ step=%s │ %s │ %s",
                asset_id[:8], status, result.failed_step,
                result.error.kind.value if result.error else "?",
                result.error.message if result.error else "",
            )
        return result

    @staticmethod
    def _current_step(result: PipelineResult) -> str | None:
        return result.steps[-1].step.value if result.steps else None

    # -----------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------

    def _run(self, ctx: _RunContext) -> None:
        while True:
            if self._clock() > ctx.deadline:
                status = ctx.result.last_status.label if ctx.result.last_status is not None else "unknown"
                raise _Stop(PipelineError(
                    ErrorKind.TIMEOUT,
                    f"run budget of {self._cfg.run_budget_sec:.0f}s exhausted at status {status}",
                    step=self._current_step(ctx.result),
                ))

            state = self._observe(ctx)
            status = state.status

            if status == BattleStatus.POOL_CREATED:
                self._finish_terminal(ctx, self._cached_pool_id(ctx.asset_id))
                return
            if status == BattleStatus.IN_BATTLE:
                self._check_victory(ctx, state)
            elif status == BattleStatus.VICTORY_PENDING:
                self._finalize(ctx, state)
            elif status == BattleStatus.LISTED:
                pool_id = self._effective_pool(ctx.asset_id)
                if pool_id is not None:
                    self._finish_terminal(ctx, pool_id)
                    return
                self._complete_listing(ctx, state)
                return
            else:
                raise _Stop(PipelineError(
                    ErrorKind.PRECONDITION,
                    f"asset is not in a battle (status {status.label})",
                ))

    def _observe(self, ctx: _RunContext) -> BattleState:
        try:
            state = self._reader.read(ctx.asset_id)
        except LedgerUnavailable as e:
            raise _Stop(PipelineError(ErrorKind.TRANSIENT, str(e), step=self._current_step(ctx.result)))
        except AccountLayoutError as e:
            raise _Stop(PipelineError(ErrorKind.FATAL, str(e)))
        if state is None:
            raise _Stop(PipelineError(ErrorKind.PRECONDITION, "asset has no battle state on the ledger"))
        ctx.result.last_status = state.status
        return state

    def _await_status(self, ctx: _RunContext, step: StepName, target: BattleStatus) -> BattleState:
        """Poll the read path until the asset reaches *target* or the propagation deadline passes."""
        deadline = self._clock() + self._cfg.propagation_timeout_sec
        last_error: Exception | None = None
        while True:
            try:
                state = self._reader.read(ctx.asset_id)
            except LedgerUnavailable as e:
                state, last_error = None, e
            if state is not None:
                ctx.result.last_status = state.status
                if state.status >= target:
                    return state
            if self._clock() >= deadline:
                seen = state.status.label if state is not None else "unreadable"
                detail = f" ({last_error})" if last_error else ""
                raise _Stop(PipelineError(
                    ErrorKind.TIMEOUT,
                    f"confirmed but status still {seen} after "
                    f"{self._cfg.propagation_timeout_sec:.0f}s, expected {target.label}{detail}",
                    step=step.value,
                ))
            self._sleep(self._cfg.confirm_poll_sec)

    def _record_step(self, ctx: _RunContext, step_result: StepResult) -> None:
        ctx.result.steps.append(step_result)
        if step_result.success:
            log.info(
                "STEP_OK %s │ asset=%s │ tx=%s%s",
                step_result.step.value, ctx.asset_id[:8], step_result.tx_id,
                " │ skipped" if step_result.skipped else "",
            )
        else:
            raise _Stop(step_result.error)

    # -----------------------------------------------------------------
    # InBattle → VictoryPending
    # -----------------------------------------------------------------

    def _check_victory(self, ctx: _RunContext, state: BattleState) -> None:
        thresholds = self._cfg.thresholds
        if not victory_achieved(state.deposited_value, state.trade_volume, thresholds):
            raise _Stop(PipelineError(
                ErrorKind.PRECONDITION,
                "victory thresholds not met: "
                + victory_progress(state.deposited_value, state.trade_volume, thresholds),
                step=StepName.CHECK_VICTORY.value,
            ))

        outcome = self._executor.check_victory(ctx.asset_id)
        step_result = self._guard.interpret(StepName.CHECK_VICTORY, ctx.asset_id, outcome)
        self._record_step(ctx, step_result)

        after = self._await_status(ctx, StepName.CHECK_VICTORY, BattleStatus.VICTORY_PENDING)
        self._index.apply(IndexOutcome(
            asset_id=ctx.asset_id,
            status=after.status,
            victory_tx=step_result.tx_id,
            deposited_value=after.deposited_value,
            trade_volume=after.trade_volume,
        ))

    # -----------------------------------------------------------------
    # VictoryPending → Listed
    # -----------------------------------------------------------------

    def _finalize(self, ctx: _RunContext, state: BattleState) -> None:
        step = StepName.FINALIZE_DUEL
        loser_id = state.opponent_asset_id
        if loser_id is None:
            raise _Stop(PipelineError(
                ErrorKind.PRECONDITION, "opponent unknown: cannot finalize", step=step.value
            ))
        loser_before = self._read_other(loser_id, step)
        if loser_before is None:
            raise _Stop(PipelineError(
                ErrorKind.PRECONDITION, f"opponent {loser_id} has no battle state", step=step.value
            ))

        report = self._verifier.expect(
            lamports_to_sol(state.deposited_value), lamports_to_sol(loser_before.deposited_value)
        )

        outcome = self._executor.finalize_duel(ctx.asset_id, loser_id)
        step_result = self._guard.interpret(step, ctx.asset_id, outcome)
        self._record_step(ctx, step_result)
        ctx.loser_id = loser_id

        after = self._await_status(ctx, step, BattleStatus.LISTED)
        loser_after = self._read_other(loser_id, step)
        if loser_after is not None:
            self._verifier.verify(
                report,
                lamports_to_sol(after.deposited_value),
                lamports_to_sol(loser_after.deposited_value),
            )
            ctx.plunder = report
            ctx.result.plunder_report = report
            step_result.detail["plunderMatches"] = report.matches
            if not report.matches:
                # Recorded on the step only; the run carries on
                step_result.detail["consistency"] = PipelineError(
                    ErrorKind.CONSISTENCY,
                    f"post-finalize balances off by more than {self._cfg.verification_tolerance} SOL",
                    step=step.value,
                ).to_dict()

        self._index.apply(IndexOutcome(
            asset_id=ctx.asset_id,
            status=after.status,
            opponent_asset_id=loser_id,
            finalize_tx=step_result.tx_id,
            deposited_value=after.deposited_value,
            trade_volume=after.trade_volume,
            spoils=report.observed_spoils,
            platform_fee=report.observed_fee,
            listed=True,
        ))
        self._index.reset_loser(
            loser_id, ctx.asset_id,
            loser_after.deposited_value if loser_after is not None else None,
        )

    def _read_other(self, asset_id: str, step: StepName) -> BattleState | None:
        try:
            return self._reader.read(asset_id)
        except LedgerUnavailable as e:
            raise _Stop(PipelineError(ErrorKind.TRANSIENT, str(e), step=step.value))
        except (AccountLayoutError, InvalidAssetId) as e:
            raise _Stop(PipelineError(ErrorKind.FATAL, str(e), step=step.value))

    # -----------------------------------------------------------------
    # Listed → withdraw → pool
    # -----------------------------------------------------------------

    def _complete_listing(self, ctx: _RunContext, state: BattleState) -> None:
        withdraw_result = self._withdraw(ctx, state)
        self._record_step(ctx, withdraw_result)
        if withdraw_result.tx_id and not withdraw_result.skipped:
            self._index.apply(IndexOutcome(asset_id=ctx.asset_id, withdraw_tx=withdraw_result.tx_id))

        if self._clock() > ctx.deadline:
            raise _Stop(PipelineError(
                ErrorKind.TIMEOUT,
                "run budget exhausted after withdrawal; pool creation left for the next run",
                step=StepName.WITHDRAW.value,
            ))

        creation = self._create_pool(ctx, state)
        pool_url = self._pools.pool_url(ctx.asset_id)
        self._record_step(ctx, StepResult(
            step=StepName.CREATE_POOL,
            success=True,
            tx_id=creation.tx_id,
            skipped=creation.discovered,
            detail={"poolId": creation.pool_id, "discovered": creation.discovered},
        ))

        self._index.apply(IndexOutcome(
            asset_id=ctx.asset_id,
            status=BattleStatus.POOL_CREATED,
            pool_id=creation.pool_id,
            pool_url=pool_url,
            pool_tx=creation.tx_id,
            completed=True,
        ))
        self._record_winner(ctx, state, creation, pool_url)

        ctx.result.success = True
        ctx.result.pool_id = creation.pool_id
        ctx.result.pool_url = pool_url

    def _withdraw(self, ctx: _RunContext, state: BattleState) -> StepResult:
        step = StepName.WITHDRAW
        try:
            withdrawable = self._reader.withdrawable_lamports(state)
        except LedgerUnavailable as e:
            raise _Stop(PipelineError(ErrorKind.TRANSIENT, str(e), step=step.value))
        if withdrawable <= 0:
            log.info("WITHDRAW_SKIP %s │ nothing above rent, already withdrawn", ctx.asset_id[:8])
            return already_done(step, "no withdrawable balance")

        outcome = self._executor.withdraw_for_listing(ctx.asset_id)
        step_result = self._guard.interpret(step, ctx.asset_id, outcome)
        if step_result.success and not step_result.skipped:
            ctx.withdrawn = withdrawable
            step_result.detail["withdrawnLamports"] = withdrawable
        return step_result

    def _create_pool(self, ctx: _RunContext, state: BattleState) -> PoolCreation:
        existing = self._lookup_pool(ctx.asset_id)
        if existing is not None:
            return PoolCreation(pool_id=existing, discovered=True)

        funding = ctx.withdrawn if ctx.withdrawn else state.deposited_value
        created = self._pools.create(ctx.asset_id, withdrawn=funding)
        if isinstance(created, PoolCreation):
            return created

        # The AMM may have built the pool even though we saw an error
        try:
            recovered = self._guard.find_existing_pool(ctx.asset_id)
        except AmmServiceError as e:
            self._index.apply(IndexOutcome(asset_id=ctx.asset_id, pool_error=created.message))
            error = PipelineError(
                ErrorKind.TRANSIENT,
                f"{created.message}; pool state unknown, lookup failed: {e}",
                step=StepName.CREATE_POOL.value,
            )
            ctx.result.steps.append(StepResult(step=StepName.CREATE_POOL, success=False, error=error))
            raise _Stop(error)
        if recovered is not None:
            log.info("POOL_RECOVERED %s │ pool=%s │ after: %s", ctx.asset_id[:8], recovered, created.message)
            return PoolCreation(pool_id=recovered, discovered=True)

        self._index.apply(IndexOutcome(asset_id=ctx.asset_id, pool_error=created.message))
        ctx.result.steps.append(StepResult(step=StepName.CREATE_POOL, success=False, error=created))
        raise _Stop(created)

    def _record_winner(
        self, ctx: _RunContext, state: BattleState, creation: PoolCreation, pool_url: str
    ) -> None:
        row = self._index.token_row(ctx.asset_id) or {}
        loser_id = ctx.loser_id or state.opponent_asset_id or row.get("opponent_asset_id")

        if ctx.plunder is not None:
            spoils, fee = ctx.plunder.observed_spoils, ctx.plunder.observed_fee
        else:
            spoils = _decimal_or_none(row.get("spoils_sol"))
            fee = _decimal_or_none(row.get("platform_fee_sol"))

        tx_ids = {
            _TX_COLUMN[s.step]: s.tx_id
            for s in ctx.result.steps
            if s.tx_id and s.success and not s.skipped
        }

        self._index.record_completion(WinnerRecord(
            winner_asset_id=ctx.asset_id,
            loser_asset_id=loser_id,
            final_deposited=state.deposited_value,
            final_volume=state.trade_volume,
            pool_id=creation.pool_id,
            pool_url=pool_url,
            spoils=spoils,
            platform_fee=fee,
            tx_ids=tx_ids,
        ))

    # -----------------------------------------------------------------
    # Terminal
    # -----------------------------------------------------------------

    def _cached_pool_id(self, asset_id: str) -> str | None:
        row = self._index.token_row(asset_id)
        return row.get("pool_id") if row else None

    def _effective_pool(self, asset_id: str) -> str | None:
        """Listed on the ledger but already pooled.

        A cached PoolCreated row with a pool id is final and needs no AMM call.
        A pool id without the terminal status is trusted only once the AMM
        confirms a pool for the pair.
        """
        row = self._index.token_row(asset_id)
        cached = row.get("pool_id") if row else None
        if not cached:
            return None
        if row.get("status") == int(BattleStatus.POOL_CREATED):
            return cached
        if self._lookup_pool(asset_id) is None:
            return None
        return cached

    def _lookup_pool(self, asset_id: str) -> str | None:
        try:
            return self._guard.find_existing_pool(asset_id)
        except AmmServiceError as e:
            raise _Stop(PipelineError(
                ErrorKind.TRANSIENT,
                f"pool lookup failed: {e}",
                step=StepName.CREATE_POOL.value,
            ))

    def _finish_terminal(self, ctx: _RunContext, pool_id: str | None) -> None:
        ctx.result.success = True
        ctx.result.pool_id = pool_id
        ctx.result.pool_url = self._pools.pool_url(ctx.asset_id) if pool_id else None


_TX_COLUMN = {
    StepName.CHECK_VICTORY: "victory",
    StepName.FINALIZE_DUEL: "finalize",
    StepName.WITHDRAW: "withdraw",
    StepName.CREATE_POOL: "pool",
}


def _decimal_or_none(v) -> Optional[Decimal]:
    if v is None:
        return None
    return Decimal(str(v))

