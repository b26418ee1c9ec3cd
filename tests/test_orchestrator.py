"""End-to-end pipeline tests: real components on the in-memory ledger and AMM."""

from decimal import Decimal
from itertools import count

from solders.pubkey import Pubkey

from battle_finalizer.config import VictoryThresholds
from battle_finalizer.errors import ErrorKind, LedgerUnavailable, ProgramError
from battle_finalizer.executor import TransactionExecutor
from battle_finalizer.models import BattleStatus, StepName
from battle_finalizer.orchestrator import PipelineOrchestrator
from battle_finalizer.persistence.queries import get_token_row
from battle_finalizer.verification import ConsistencyVerifier
from fakes import SOL, FakeBattle, amm_error, program_failure
from index_reads import count_reward_entries, count_winners, get_open_battle, get_token, get_winner

D = Decimal


def _orchestrator(harness, **kwargs):
    return PipelineOrchestrator(
        kwargs.pop("cfg", harness.cfg),
        harness.reader,
        kwargs.pop("executor", harness.executor),
        harness.guard,
        harness.pools,
        ConsistencyVerifier(harness.cfg),
        harness.index,
        sleep=lambda _s: None,
        **kwargs,
    )


class TestFullRun:
    def test_in_battle_to_pool_created(self, harness):
        w, l = harness.add_pair()
        result = harness.orchestrator.execute(w)

        assert result.success, result.error
        assert [s.step for s in result.steps] == [
            StepName.CHECK_VICTORY, StepName.FINALIZE_DUEL, StepName.WITHDRAW, StepName.CREATE_POOL,
        ]
        assert harness.ledger.submissions == [
            "check_victory", "finalize_duel", "withdraw_for_listing", "create_pool",
        ]
        assert result.submissions == 4
        assert result.pool_id == f"pool-{w[:10]}"
        assert "inputMint=" + w in result.pool_url
        assert result.last_status == BattleStatus.LISTED

    def test_plunder_matches_ledger(self, harness):
        w, l = harness.add_pair()
        report = harness.orchestrator.execute(w).plunder_report

        assert report.spoils == D("10")
        assert report.platform_fee == D("2.39")
        assert report.winner_actual == D("45.41")
        assert report.loser_actual == D("10")
        assert report.matches is True

    def test_conservation(self, harness):
        w, l = harness.add_pair()
        report = harness.orchestrator.execute(w).plunder_report
        before = report.winner_before + report.loser_before
        after = report.winner_actual + report.loser_actual
        assert after == before - report.observed_fee
        assert harness.ledger.balances[harness.ledger.treasury] == 2_390_000_000

    def test_pool_contribution_capped(self, harness):
        w, _ = harness.add_pair()
        harness.orchestrator.execute(w)
        _, mint_a, mint_b, amount_a, amount_b = harness.amm.build_calls[0]
        sol_side = amount_a if mint_b == w else amount_b
        assert sol_side == 7 * SOL

    def test_plunder_mismatch_recorded_not_blocking(self, harness):
        w, _ = harness.add_pair()
        harness.ledger.spoils_bps = 4_000

        result = harness.orchestrator.execute(w)

        assert result.success, result.error
        assert result.plunder_report.matches is False
        finalize = result.steps[1]
        assert finalize.step == StepName.FINALIZE_DUEL
        assert finalize.detail["consistency"]["kind"] == "consistency"
        assert finalize.detail["consistency"]["step"] == "finalize_duel"

    def test_resume_from_victory_pending(self, harness):
        w, _ = harness.add_pair(winner_status=BattleStatus.VICTORY_PENDING)
        result = harness.orchestrator.execute(w)
        assert result.success
        assert "check_victory" not in harness.ledger.submissions
        assert result.submissions == 3


class TestIdempotence:
    def test_second_run_submits_nothing(self, harness):
        w, _ = harness.add_pair()
        first = harness.orchestrator.execute(w)
        before = harness.ledger.mutations()

        second = harness.orchestrator.execute(w)

        assert second.success
        assert second.pool_id == first.pool_id
        assert harness.ledger.mutations() == before
        assert second.submissions == 0

    def test_single_winner_record_and_reward(self, harness):
        w, _ = harness.add_pair()
        harness.orchestrator.execute(w)
        harness.orchestrator.execute(w)

        assert count_winners(w, engine=harness.db) == 1
        assert count_reward_entries("CreatorWinner111", engine=harness.db) == 1

    def test_already_withdrawn_is_skipped(self, harness):
        """Funds already with the keeper: the program answers NoLiquidityToWithdraw."""
        w, _ = harness.add_pair(winner_status=BattleStatus.LISTED)
        harness.ledger.balances[harness.keeper.pubkey()] = 10 * SOL
        harness.ledger.token_accounts[harness.executor.keeper_token_account(w)] = 500
        harness.ledger.fail_next(
            "withdraw_for_listing", program_failure(ProgramError.NO_LIQUIDITY_TO_WITHDRAW)
        )

        result = harness.orchestrator.execute(w)

        assert result.success, result.error
        withdraw = result.steps[0]
        assert withdraw.step == StepName.WITHDRAW
        assert withdraw.skipped is True
        assert withdraw.detail["alreadyDone"] == "NO_LIQUIDITY_TO_WITHDRAW"
        assert harness.ledger.mutations("withdraw_for_listing") == 0

    def test_pool_failure_then_retry(self, harness):
        w, _ = harness.add_pair()
        harness.amm.build_error = amm_error()

        first = harness.orchestrator.execute(w)
        assert not first.success
        assert first.error_kind == ErrorKind.TRANSIENT
        assert first.failed_step == "create_pool"
        assert get_token_row(w, engine=harness.db)["pool_error"] == "upstream 502"

        harness.amm.build_error = None
        second = harness.orchestrator.execute(w)

        assert second.success
        # Withdrawal was not repeated: nothing above rent is left
        assert harness.ledger.mutations("withdraw_for_listing") == 1
        assert second.steps[0].skipped is True
        row = get_token_row(w, engine=harness.db)
        assert row["pool_id"] == second.pool_id
        assert row["pool_error"] is None

    def test_pool_created_despite_reported_error(self, harness):
        w, _ = harness.add_pair()
        harness.amm.build_error = amm_error("gateway timeout")
        harness.amm.create_despite_error = True

        result = harness.orchestrator.execute(w)

        assert result.success
        pool_step = result.steps[-1]
        assert pool_step.step == StepName.CREATE_POOL
        assert pool_step.detail["discovered"] is True
        assert harness.ledger.mutations("create_pool") == 0
        assert get_winner(w, engine=harness.db)["pool_id"] == result.pool_id

    def test_finished_asset_skips_amm(self, harness):
        w, _ = harness.add_pair()
        first = harness.orchestrator.execute(w)
        harness.amm.find_error = amm_error("pool lookup 503")
        finds = harness.amm.find_calls

        second = harness.orchestrator.execute(w)

        assert second.success, second.error
        assert second.pool_id == first.pool_id
        assert second.submissions == 0
        assert harness.ledger.mutations("create_pool") == 1
        assert len(harness.amm.build_calls) == 1
        assert harness.amm.find_calls == finds

    def test_pool_lookup_failure_stops_before_create(self, harness):
        w, _ = harness.add_pair()
        harness.amm.find_error = amm_error("pool lookup 503")

        first = harness.orchestrator.execute(w)

        assert not first.success
        assert first.error_kind == ErrorKind.TRANSIENT
        assert first.failed_step == "create_pool"
        assert harness.amm.build_calls == []
        assert harness.ledger.mutations("create_pool") == 0

        harness.amm.find_error = None
        second = harness.orchestrator.execute(w)
        assert second.success, second.error
        assert harness.ledger.mutations("withdraw_for_listing") == 1
        assert harness.ledger.mutations("create_pool") == 1

    def test_cached_pool_unconfirmed_when_lookup_fails(self, harness):
        w, _ = harness.add_pair(winner_status=BattleStatus.LISTED, cache=False)
        harness.cache_token(w, BattleStatus.LISTED, pool_id="pool-stale")
        harness.amm.find_error = amm_error("pool lookup 503")

        result = harness.orchestrator.execute(w)

        assert not result.success
        assert result.error_kind == ErrorKind.TRANSIENT
        assert harness.ledger.mutations() == 0

    def test_status_never_decreases_across_runs(self, harness):
        w, _ = harness.add_pair()
        harness.ledger.fail_next("finalize_duel", LedgerUnavailable("node behind"))
        observed, cached = [], []

        def run():
            result = harness.orchestrator.execute(w)
            observed.append(result.last_status)
            cached.append(get_token(w, engine=harness.db).status)
            return result

        assert not run().success
        harness.amm.build_error = amm_error()
        assert not run().success
        harness.amm.build_error = None
        assert run().success
        assert run().success

        assert observed == sorted(observed)
        assert cached == sorted(cached)
        assert observed[0] == BattleStatus.VICTORY_PENDING
        assert cached[-1] == BattleStatus.POOL_CREATED


class TestIndex:
    def test_winner_and_loser_rows(self, harness):
        w, l = harness.add_pair()
        harness.orchestrator.execute(w)

        winner = get_token(w, engine=harness.db)
        loser = get_token(l, engine=harness.db)
        assert winner.status == BattleStatus.POOL_CREATED
        assert winner.pool_id is not None
        assert loser.status == BattleStatus.QUALIFIED
        assert loser.opponent_asset_id is None
        assert get_open_battle(w, engine=harness.db) is None

    def test_winner_record_fields(self, harness):
        w, l = harness.add_pair()
        result = harness.orchestrator.execute(w)
        row = get_winner(w, engine=harness.db)

        assert row["loser_asset_id"] == l
        assert row["symbol"] == "WIN"
        assert row["loser_symbol"] == "LOSE"
        assert row["spoils_sol"] == 10.0
        assert row["platform_fee_sol"] == 2.39
        assert row["victory_tx"] == result.steps[0].tx_id
        assert row["pool_tx"] == result.steps[-1].tx_id

    def test_uncached_asset_still_completes(self, harness):
        w, _ = harness.add_pair(cache=False)
        result = harness.orchestrator.execute(w)
        assert result.success
        assert get_token(w, engine=harness.db).status == BattleStatus.POOL_CREATED
        assert count_winners(w, engine=harness.db) == 1


class TestStops:
    def test_thresholds_not_met_submits_nothing(self, harness):
        w, _ = harness.add_pair(winner_deposit=18 * SOL, winner_volume=20 * SOL)
        result = harness.orchestrator.execute(w)

        assert not result.success
        assert result.error_kind == ErrorKind.PRECONDITION
        assert result.failed_step == "check_victory"
        assert "victory thresholds not met" in result.error.message
        assert harness.ledger.mutations() == 0

    def test_threshold_drift(self, harness, caplog):
        w, _ = harness.add_pair()
        harness.ledger.thresholds = VictoryThresholds(target_deposit=100 * SOL, min_volume=100 * SOL)

        result = harness.orchestrator.execute(w)

        assert result.error_kind == ErrorKind.PRECONDITION
        assert result.error.code == int(ProgramError.NO_VICTORY_ACHIEVED)
        assert "THRESHOLD_DRIFT" in caplog.text

    def test_not_in_battle(self, harness):
        mint = Pubkey.new_unique()
        harness.ledger.add_battle(FakeBattle(mint, BattleStatus.QUALIFIED, SOL, SOL))
        result = harness.orchestrator.execute(str(mint))
        assert result.error_kind == ErrorKind.PRECONDITION
        assert "Qualified" in result.error.message
        assert result.last_status == BattleStatus.QUALIFIED

    def test_no_state(self, harness):
        result = harness.orchestrator.execute(str(Pubkey.new_unique()))
        assert result.error_kind == ErrorKind.PRECONDITION

    def test_invalid_asset_id(self, harness):
        result = harness.orchestrator.execute("definitely not base58 !!")
        assert result.error_kind == ErrorKind.FATAL
        assert harness.ledger.mutations() == 0

    def test_ledger_unreachable(self, harness):
        w, _ = harness.add_pair()
        harness.ledger.read_errors.append(LedgerUnavailable("rpc down"))
        result = harness.orchestrator.execute(w)
        assert result.error_kind == ErrorKind.TRANSIENT
        assert "rpc down" in result.error.message

    def test_missing_keeper(self, harness):
        executor = TransactionExecutor(harness.ledger, harness.cfg)  # no keeper secret configured
        w, _ = harness.add_pair()
        result = _orchestrator(harness, executor=executor).execute(w)
        assert result.error_kind == ErrorKind.FATAL
        assert "KEEPER_PRIVATE_KEY" in result.error.message
        assert harness.ledger.mutations() == 0

    def test_unauthorized_keeper_is_fatal(self, harness):
        w, _ = harness.add_pair(winner_status=BattleStatus.VICTORY_PENDING)
        harness.ledger.fail_next("finalize_duel", program_failure(ProgramError.UNAUTHORIZED))
        result = harness.orchestrator.execute(w)
        assert result.error_kind == ErrorKind.FATAL
        assert result.failed_step == "finalize_duel"

    def test_lock_held(self, harness):
        w, _ = harness.add_pair()
        with harness.locks.hold(w):
            result = harness.orchestrator.execute(w)
        assert result.error_kind == ErrorKind.TRANSIENT
        assert "already running" in result.error.message
        assert harness.ledger.mutations() == 0

    def test_lock_released_after_run(self, harness):
        w, _ = harness.add_pair()
        harness.orchestrator.execute(w)
        assert not harness.locks.is_held(w)


class TestTimeouts:
    def test_status_never_propagates(self, harness):
        w, _ = harness.add_pair()
        # Confirmed, but the read path never sees the new status
        harness.ledger.send_and_confirm = lambda instructions, signer: "sigStale"

        result = harness.orchestrator.execute(w)

        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.failed_step == "check_victory"
        assert result.steps[0].tx_id == "sigStale"

    def test_run_budget_exhausted(self, harness):
        ticks = count(0, 100)
        orchestrator = _orchestrator(harness, clock=lambda: next(ticks))
        w, _ = harness.add_pair()

        result = orchestrator.execute(w)

        assert result.error_kind == ErrorKind.TIMEOUT
        assert "run budget" in result.error.message
        assert harness.ledger.mutations() == 0
