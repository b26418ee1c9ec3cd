"""Tests for scanner.py: discovery, cache correction, busy detection."""

import threading

from solders.pubkey import Pubkey

from battle_finalizer.errors import ErrorKind, LedgerUnavailable
from battle_finalizer.models import BattleStatus
from fakes import RENT, SOL, FakeBattle
from index_reads import get_token


class TestNeedsPipeline:
    def test_in_battle_below_thresholds(self, harness):
        w, _ = harness.add_pair(winner_deposit=5 * SOL)
        assert not harness.scanner.needs_pipeline(harness.reader.read(w))

    def test_in_battle_over_thresholds(self, harness):
        w, _ = harness.add_pair()
        assert harness.scanner.needs_pipeline(harness.reader.read(w))

    def test_victory_pending_and_listed_always(self, harness):
        for status in (BattleStatus.VICTORY_PENDING, BattleStatus.LISTED):
            mint = Pubkey.new_unique()
            harness.ledger.add_battle(FakeBattle(mint, status, 0, 0))
            assert harness.scanner.needs_pipeline(harness.reader.read(str(mint)))


class TestScan:
    def test_processes_eligible_winner(self, harness):
        w, l = harness.add_pair()
        result = harness.scanner.scan()

        assert result.busy is False
        assert result.scanned == 2
        winners = [p for p in result.processed if p.asset_id == w]
        assert len(winners) == 1
        assert winners[0].success is True
        assert winners[0].pool_id is not None
        assert harness.ledger.mutations("create_pool") == 1

    def test_loser_not_processed(self, harness):
        w, l = harness.add_pair()
        result = harness.scanner.scan()
        assert l not in [p.asset_id for p in result.processed]

    def test_nothing_eligible(self, harness):
        harness.add_pair(winner_deposit=5 * SOL, winner_volume=5 * SOL)
        result = harness.scanner.scan()
        assert result.scanned == 2
        assert result.processed == []
        assert harness.ledger.mutations() == 0

    def test_stale_cache_corrected(self, harness):
        """Cached InBattle, ledger already Qualified: cache follows the ledger."""
        mint = Pubkey.new_unique()
        harness.ledger.add_battle(FakeBattle(mint, BattleStatus.QUALIFIED, SOL, SOL))
        harness.cache_token(str(mint), BattleStatus.IN_BATTLE)

        result = harness.scanner.scan()

        assert result.corrected == [str(mint)]
        assert result.processed == []
        assert get_token(str(mint), engine=harness.db).status == BattleStatus.QUALIFIED

    def test_regression_while_live_not_written(self, harness):
        """Cached Listed, lagging node still reports InBattle: the cache keeps Listed."""
        w, _ = harness.add_pair(winner_deposit=5 * SOL, cache=False)
        harness.cache_token(w, BattleStatus.LISTED)

        result = harness.scanner.scan()

        assert w not in result.corrected
        assert result.processed == []
        assert get_token(w, engine=harness.db).status == BattleStatus.LISTED
        assert harness.ledger.mutations() == 0

    def test_cache_behind_ledger_corrected_and_processed(self, harness):
        w, _ = harness.add_pair(winner_status=BattleStatus.VICTORY_PENDING, cache=False)
        harness.cache_token(w, BattleStatus.IN_BATTLE)

        result = harness.scanner.scan()

        assert w in result.corrected
        assert [p.asset_id for p in result.processed] == [w]

    def test_read_failure_skips_asset(self, harness):
        w, _ = harness.add_pair()
        harness.ledger.read_errors.append(LedgerUnavailable("timeout"))
        result = harness.scanner.scan()
        # First candidate read failed; the other one was still examined
        assert result.scanned == 2

    def test_missing_state_skipped(self, harness):
        harness.cache_token(str(Pubkey.new_unique()), BattleStatus.LISTED)
        result = harness.scanner.scan()
        assert result.processed == []
        assert result.corrected == []

    def test_malformed_cached_id_reported(self, harness):
        harness.cache_token("bogus-id", BattleStatus.LISTED)
        result = harness.scanner.scan()
        assert len(result.processed) == 1
        assert result.processed[0].success is False
        assert result.processed[0].kind == ErrorKind.FATAL
        assert harness.scanner.scan().held == ["bogus-id"]

    def test_concurrent_scan_reports_busy(self, harness):
        harness.scanner._scan_lock.acquire()
        try:
            result = harness.scanner.scan()
        finally:
            harness.scanner._scan_lock.release()
        assert result.busy is True
        assert result.scanned == 0

    def test_run_forever_stops(self, harness):
        stop = threading.Event()
        calls = []

        def scan():
            calls.append(1)
            stop.set()

        harness.scanner.scan = scan
        harness.scanner.run_forever(stop)
        assert calls == [1]


class TestFatalHold:
    def _unfunded_listed(self, harness):
        w, _ = harness.add_pair(winner_status=BattleStatus.LISTED)
        harness.ledger.battles[Pubkey.from_string(w)].lamports = RENT
        harness.ledger.balances[harness.keeper.pubkey()] = 0
        harness.ledger.token_accounts[harness.executor.keeper_token_account(w)] = 500
        return w

    def test_fatal_outcome_carries_kind_step_and_status(self, harness, caplog):
        w = self._unfunded_listed(harness)

        outcome = harness.scanner.scan().processed[0]

        assert outcome.asset_id == w
        assert outcome.success is False
        assert outcome.kind == ErrorKind.FATAL
        assert outcome.step == "create_pool"
        assert outcome.last_status == BattleStatus.LISTED
        assert "insufficient keeper funding" in outcome.error
        assert outcome.to_dict()["lastStatus"] == "Listed"
        assert "SCAN_FATAL" in caplog.text

    def test_held_until_released(self, harness):
        w = self._unfunded_listed(harness)
        harness.scanner.scan()
        finds = harness.amm.find_calls

        again = harness.scanner.scan()
        assert again.processed == []
        assert again.held == [w]
        assert harness.amm.find_calls == finds

        assert harness.scanner.release(w) is True
        assert harness.scanner.release(w) is False
        harness.ledger.balances[harness.keeper.pubkey()] = 10 * SOL
        result = harness.scanner.scan()
        assert result.held == []
        assert result.processed[0].success is True

    def test_transient_failure_not_held(self, harness):
        w, _ = harness.add_pair()
        harness.ledger.fail_next("check_victory", LedgerUnavailable("503"))

        first = harness.scanner.scan()
        assert first.processed[0].kind == ErrorKind.TRANSIENT
        assert first.processed[0].step == "check_victory"

        second = harness.scanner.scan()
        assert second.held == []
        assert second.processed[0].success is True
