"""Recognise steps whose effect already exists and turn them into successes.

Three signals are consulted, cheapest first:

1. Program error codes that mean "already done" for a given step
   (withdrawing twice fails with NoLiquidityToWithdraw).
2. A fresh read of the ledger status: if the asset already sits at or past
   the step's target status, a concurrent or earlier run did the work.
3. For pool creation, the AMM service itself: an existing pool for the pair
   means creation already happened, even if our last attempt reported failure.

Whatever is left is classified into the error taxonomy.
"""

from __future__ import annotations

import logging

from battle_finalizer.addresses import WRAPPED_SOL_MINT
from battle_finalizer.amm import AmmServiceClient
from battle_finalizer.errors import (
    AccountLayoutError,
    AmmServiceError,
    ErrorKind,
    LedgerUnavailable,
    PipelineError,
    ProgramError,
    classify_failure,
)
from battle_finalizer.models import BattleStatus, StepName, StepResult, TxOutcome
from battle_finalizer.reader import LedgerStateReader

log = logging.getLogger("bf.guard")

ALREADY_DONE_CODES: dict[StepName, frozenset[ProgramError]] = {
    StepName.WITHDRAW: frozenset({ProgramError.NO_LIQUIDITY_TO_WITHDRAW}),
}

# Status an asset reaches once the step's effect is on the ledger
STEP_TARGET_STATUS: dict[StepName, BattleStatus] = {
    StepName.CHECK_VICTORY: BattleStatus.VICTORY_PENDING,
    StepName.FINALIZE_DUEL: BattleStatus.LISTED,
}


def already_done(step: StepName, reason: str) -> StepResult:
    """A step whose effect is already in place: a success with nothing submitted."""
    return StepResult(
        step=step, success=True, skipped=True,
        detail={"alreadyDone": reason, "kind": ErrorKind.ALREADY_DONE.value},
    )


class IdempotencyGuard:
    def __init__(self, reader: LedgerStateReader, amm: AmmServiceClient):
        self._reader = reader
        self._amm = amm

    def interpret(self, step: StepName, asset_id: str, outcome: TxOutcome) -> StepResult:
        """Turn a raw submission outcome into a step result."""
        if outcome.success:
            return StepResult(step=step, success=True, tx_id=outcome.tx_id)

        program_error = ProgramError.from_code(outcome.code)
        if program_error is not None and program_error in ALREADY_DONE_CODES.get(step, ()):
            log.info("ALREADY_DONE %s │ asset=%s │ %s", step.value, asset_id[:8], program_error.name)
            return already_done(step, program_error.name)

        observed = self._status_reached(step, asset_id)
        if observed is not None:
            log.info(
                "ALREADY_DONE %s │ asset=%s │ status=%s", step.value, asset_id[:8], observed.label
            )
            return already_done(step, f"status {observed.label}")

        if step == StepName.CHECK_VICTORY and program_error == ProgramError.NO_VICTORY_ACHIEVED:
            log.error(
                "THRESHOLD_DRIFT %s │ ledger refused victory although local gate passed",
                asset_id[:8],
            )

        message = outcome.message or "submission failed"
        if outcome.transport_error:
            error = PipelineError(ErrorKind.TRANSIENT, message, step=step.value)
        else:
            error = classify_failure(outcome.code, message, step=step.value)
        return StepResult(step=step, success=False, tx_id=outcome.tx_id, error=error)

    def _status_reached(self, step: StepName, asset_id: str) -> BattleStatus | None:
        target = STEP_TARGET_STATUS.get(step)
        if target is None:
            return None
        try:
            state = self._reader.read(asset_id)
        except (LedgerUnavailable, AccountLayoutError) as e:
            log.warning("RECHECK_FAIL %s │ asset=%s │ %s", step.value, asset_id[:8], e)
            return None
        if state is not None and state.status >= target:
            return state.status
        return None

    def find_existing_pool(self, asset_id: str) -> str | None:
        """Pool id already on the AMM for (asset, wrapped SOL), or None.

        A failed lookup raises AmmServiceError rather than reading as "no pool":
        callers must not go on to withdraw or create on an unknown answer.
        """
        try:
            pools = self._amm.find_pools(asset_id, str(WRAPPED_SOL_MINT))
        except AmmServiceError as e:
            log.warning("POOL_LOOKUP_FAIL %s │ %s", asset_id[:8], e)
            raise
        if pools:
            log.info("POOL_FOUND %s │ pool=%s", asset_id[:8], pools[0])
            return pools[0]
        return None
