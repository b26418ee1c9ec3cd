"""Data structures for the battle finalization pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Optional

from battle_finalizer.errors import ErrorKind, PipelineError


class BattleStatus(IntEnum):
    """On-ledger status byte. Ordering is the lifecycle ordering."""

    CREATED = 0
    QUALIFIED = 1
    IN_BATTLE = 2
    VICTORY_PENDING = 3
    LISTED = 4
    POOL_CREATED = 5

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    BattleStatus.CREATED: "Created",
    BattleStatus.QUALIFIED: "Qualified",
    BattleStatus.IN_BATTLE: "InBattle",
    BattleStatus.VICTORY_PENDING: "VictoryPending",
    BattleStatus.LISTED: "Listed",
    BattleStatus.POOL_CREATED: "PoolCreated",
}


class StepName(str, Enum):
    CHECK_VICTORY = "check_victory"
    FINALIZE_DUEL = "finalize_duel"
    WITHDRAW = "withdraw_for_listing"
    CREATE_POOL = "create_pool"


@dataclass(frozen=True)
class BattleState:
    asset_id: str
    status: BattleStatus
    deposited_value: int  # lamports
    trade_volume: int  # lamports
    opponent_asset_id: Optional[str]
    is_active: bool = True
    tokens_sold: int = 0
    creation_ts: int = 0
    last_trade_ts: int = 0
    battle_start_ts: int = 0
    victory_ts: int = 0
    listing_ts: int = 0
    qualification_ts: int = 0
    lamports: int = 0  # account balance, includes rent
    data_len: int = 0


@dataclass(frozen=True)
class TxOutcome:
    """Raw result of one ledger submission. Not yet classified."""

    success: bool
    tx_id: Optional[str] = None
    code: Optional[int] = None
    message: Optional[str] = None
    transport_error: bool = False


@dataclass
class StepResult:
    step: StepName
    success: bool
    tx_id: Optional[str] = None
    error: Optional[PipelineError] = None
    skipped: bool = False  # effect already present, nothing submitted or submission was a no-op
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "success": self.success,
            "txId": self.tx_id,
            "skipped": self.skipped,
            "error": self.error.to_dict() if self.error else None,
            "detail": self.detail,
        }


@dataclass
class PlunderReport:
    winner_before: Decimal
    loser_before: Decimal
    spoils: Decimal
    platform_fee: Decimal
    winner_expected: Decimal
    loser_expected: Decimal
    winner_actual: Optional[Decimal] = None
    loser_actual: Optional[Decimal] = None
    observed_spoils: Optional[Decimal] = None
    observed_fee: Optional[Decimal] = None
    matches: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        def _f(v: Optional[Decimal]) -> Optional[float]:
            return float(v) if v is not None else None

        return {
            "winnerBefore": _f(self.winner_before),
            "loserBefore": _f(self.loser_before),
            "spoils": _f(self.spoils),
            "platformFee": _f(self.platform_fee),
            "winnerExpected": _f(self.winner_expected),
            "loserExpected": _f(self.loser_expected),
            "winnerActual": _f(self.winner_actual),
            "loserActual": _f(self.loser_actual),
            "observedSpoils": _f(self.observed_spoils),
            "observedFee": _f(self.observed_fee),
            "matches": self.matches,
        }


@dataclass(frozen=True)
class PoolCreation:
    pool_id: str
    tx_id: Optional[str] = None
    discovered: bool = False  # found on the AMM rather than created by this run


@dataclass
class PipelineResult:
    asset_id: str
    success: bool
    steps: list[StepResult] = field(default_factory=list)
    pool_id: Optional[str] = None
    pool_url: Optional[str] = None
    error: Optional[PipelineError] = None
    last_status: Optional[BattleStatus] = None
    plunder_report: Optional[PlunderReport] = None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @property
    def failed_step(self) -> Optional[str]:
        return self.error.step if self.error else None

    @property
    def submissions(self) -> int:
        """Ledger-mutating submissions performed by this run."""
        return sum(1 for s in self.steps if s.tx_id and not s.skipped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
            "poolId": self.pool_id,
            "poolUrl": self.pool_url,
            "error": self.error.to_dict() if self.error else None,
            "lastStatus": self.last_status.label if self.last_status is not None else None,
            "plunderReport": self.plunder_report.to_dict() if self.plunder_report else None,
        }


@dataclass(frozen=True)
class CachedToken:
    """Row of the index store's token mirror, as the scanner sees it."""

    asset_id: str
    status: BattleStatus
    symbol: str = ""
    opponent_asset_id: Optional[str] = None
    pool_id: Optional[str] = None
    creator_wallet: Optional[str] = None


@dataclass(frozen=True)
class ScanOutcome:
    asset_id: str
    success: bool
    pool_id: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    step: Optional[str] = None
    last_status: Optional[BattleStatus] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "success": self.success,
            "poolId": self.pool_id,
            "error": self.error,
            "kind": self.kind.value if self.kind is not None else None,
            "step": self.step,
            "lastStatus": self.last_status.label if self.last_status is not None else None,
        }


@dataclass
class ScanResult:
    scanned: int = 0
    processed: list[ScanOutcome] = field(default_factory=list)
    corrected: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    busy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "processed": [p.to_dict() for p in self.processed],
            "corrected": list(self.corrected),
            "held": list(self.held),
            "busy": self.busy,
        }
