"""Shared fixtures for battle pipeline tests."""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy import create_engine

from battle_finalizer.amm import PoolCreationAdapter
from battle_finalizer.config import PipelineConfig, VictoryThresholds
from battle_finalizer.executor import TransactionExecutor
from battle_finalizer.guard import IdempotencyGuard
from battle_finalizer.locks import AssetLocks
from battle_finalizer.models import BattleStatus
from battle_finalizer.orchestrator import PipelineOrchestrator
from battle_finalizer.persistence.schema import battles, metadata, tokens
from battle_finalizer.persistence.writer import IndexWriter
from battle_finalizer.reader import LedgerStateReader
from battle_finalizer.scanner import BattleScanner
from battle_finalizer.verification import ConsistencyVerifier
from fakes import SOL, FakeAmm, FakeBattle, FakeLedger

PROGRAM_ID = "6LdnckDuYxXn4UkyyD5YB7w9j2k49AsuZCNmQ3GhR2Eq"
TREASURY = "5t46DVegMLyVQ2nstgPPUNDn5WCEFwgQCXfbSx1nHrdf"

WINNER_DEPOSIT = 37_800_000_000
WINNER_VOLUME = 42_000_000_000
LOSER_DEPOSIT = 20 * SOL


@pytest.fixture
def thresholds() -> VictoryThresholds:
    # min deposit = 37.7e9 * 0.995 ≈ 37.51e9, min volume 41.5e9
    return VictoryThresholds(
        target_deposit=37_700_000_000,
        tolerance_bps=9_950,
        min_volume=41_500_000_000,
    )


@pytest.fixture
def cfg(thresholds) -> PipelineConfig:
    return PipelineConfig(
        program_id=PROGRAM_ID,
        treasury_wallet=TREASURY,
        thresholds=thresholds,
        verification_tolerance=Decimal("0.01"),
        confirm_poll_sec=0.001,
        propagation_timeout_sec=0.05,
        run_budget_sec=30.0,
        api_secret="s3cret",
    )


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'index.db'}")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@dataclass
class Harness:
    cfg: PipelineConfig
    ledger: FakeLedger
    amm: FakeAmm
    keeper: Keypair
    reader: LedgerStateReader
    executor: TransactionExecutor
    guard: IdempotencyGuard
    pools: PoolCreationAdapter
    index: IndexWriter
    locks: AssetLocks
    orchestrator: PipelineOrchestrator
    scanner: BattleScanner
    db: object

    def add_pair(
        self,
        winner_status: BattleStatus = BattleStatus.IN_BATTLE,
        winner_deposit: int = WINNER_DEPOSIT,
        winner_volume: int = WINNER_VOLUME,
        loser_deposit: int = LOSER_DEPOSIT,
        loser_volume: int = 5 * SOL,
        cache: bool = True,
    ) -> tuple[str, str]:
        winner, loser = Pubkey.new_unique(), Pubkey.new_unique()
        self.ledger.add_battle(FakeBattle(winner, winner_status, winner_deposit, winner_volume, opponent=loser))
        self.ledger.add_battle(FakeBattle(loser, BattleStatus.IN_BATTLE, loser_deposit, loser_volume, opponent=winner))
        if cache:
            self.cache_token(str(winner), winner_status, opponent=str(loser), symbol="WIN", creator="CreatorWinner111")
            self.cache_token(str(loser), BattleStatus.IN_BATTLE, opponent=str(winner), symbol="LOSE", creator="CreatorLoser2222")
            with self.db.begin() as conn:
                conn.execute(battles.insert().values(
                    token_a_asset_id=str(winner), token_b_asset_id=str(loser),
                    status="active", started_ts=time.time(),
                ))
        return str(winner), str(loser)

    def cache_token(self, asset_id, status, opponent=None, symbol="TKN", creator=None, pool_id=None):
        with self.db.begin() as conn:
            conn.execute(tokens.insert().values(
                asset_id=asset_id,
                name=f"{symbol} token",
                symbol=symbol,
                creator_wallet=creator,
                status=int(status),
                opponent_asset_id=opponent,
                pool_id=pool_id,
                updated_ts=time.time(),
            ))


@pytest.fixture
def harness(cfg, db_engine) -> Harness:
    ledger = FakeLedger(Pubkey.from_string(PROGRAM_ID), Pubkey.from_string(TREASURY), cfg.thresholds)
    amm = FakeAmm()
    ledger.on_prebuilt = amm.confirm
    keeper = Keypair()
    ledger.balances[keeper.pubkey()] = SOL // 2

    reader = LedgerStateReader(ledger, cfg.program_id)
    executor = TransactionExecutor(ledger, cfg, keeper=keeper)
    guard = IdempotencyGuard(reader, amm)
    pools = PoolCreationAdapter(amm, ledger, executor, cfg)
    index = IndexWriter(db_engine, battle_win_points=cfg.battle_win_points)
    locks = AssetLocks()
    orchestrator = PipelineOrchestrator(
        cfg, reader, executor, guard, pools, ConsistencyVerifier(cfg), index,
        locks=locks, sleep=lambda _s: None,
    )
    scanner = BattleScanner(cfg, reader, orchestrator, index)
    return Harness(
        cfg=cfg, ledger=ledger, amm=amm, keeper=keeper, reader=reader, executor=executor,
        guard=guard, pools=pools, index=index, locks=locks, orchestrator=orchestrator,
        scanner=scanner, db=db_engine,
    )
