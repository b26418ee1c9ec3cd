"""Index writer: every pipeline write to the index store goes through here.

The ledger is the source of truth and the index trails it. Writes are
best-effort: a failure is logged as INDEX_WRITE_FAIL and reported as False,
never raised into the pipeline.

Status writes are monotonic. A lower status than the one cached is treated
as a stale read and dropped, unless the outcome is marked authoritative
(a fresh ledger observation, such as the loser returning to Qualified).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.engine import Engine as SAEngine
from sqlalchemy.exc import SQLAlchemyError

from battle_finalizer.config import LAMPORTS_PER_SOL
from battle_finalizer.models import BattleStatus
from battle_finalizer.persistence.db import get_engine
from battle_finalizer.persistence.queries import get_token_row
from battle_finalizer.persistence.schema import (
    activity_feed,
    battles,
    notifications,
    reward_entries,
    reward_totals,
    tokens,
    winners,
)

log = logging.getLogger("bf.persistence.writer")

BATTLE_WIN_ACTION = "battle_win"


@dataclass
class IndexOutcome:
    """What one pipeline step changed, in index terms. None fields are left untouched."""

    asset_id: str
    status: Optional[BattleStatus] = None
    authoritative: bool = False
    opponent_asset_id: Optional[str] = None
    deposited_value: Optional[int] = None  # lamports
    trade_volume: Optional[int] = None  # lamports
    victory_tx: Optional[str] = None
    finalize_tx: Optional[str] = None
    withdraw_tx: Optional[str] = None
    pool_tx: Optional[str] = None
    pool_id: Optional[str] = None
    pool_url: Optional[str] = None
    pool_error: Optional[str] = None
    spoils: Optional[Decimal] = None  # SOL
    platform_fee: Optional[Decimal] = None  # SOL
    listed: bool = False
    completed: bool = False


@dataclass
class WinnerRecord:
    winner_asset_id: str
    loser_asset_id: Optional[str]
    final_deposited: int  # lamports
    final_volume: int  # lamports
    pool_id: str
    pool_url: str
    spoils: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    tx_ids: dict[str, str] = field(default_factory=dict)


def _sol(lamports: int | None) -> float | None:
    return lamports / LAMPORTS_PER_SOL if lamports is not None else None


def _float(v: Decimal | None) -> float | None:
    return float(v) if v is not None else None


class IndexWriter:
    def __init__(
        self,
        engine: SAEngine | None = None,
        battle_win_points: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._points = battle_win_points
        self._clock = clock

    @property
    def engine(self) -> SAEngine:
        return self._engine or get_engine()

    def token_row(self, asset_id: str) -> dict | None:
        """Cached row for *asset_id*; None when missing or the store is unreachable."""
        try:
            return get_token_row(asset_id, engine=self.engine)
        except SQLAlchemyError as e:
            log.error("INDEX_READ_FAIL %s │ %s", asset_id[:8], e)
            return None

    # -----------------------------------------------------------------
    # Per-step outcome
    # -----------------------------------------------------------------

    def apply(self, outcome: IndexOutcome) -> bool:
        try:
            with self.engine.begin() as conn:
                self._apply(conn, outcome)
            return True
        except SQLAlchemyError as e:
            log.error("INDEX_WRITE_FAIL %s │ outcome │ %s", outcome.asset_id[:8], e)
            return False

    def _apply(self, conn: Connection, outcome: IndexOutcome) -> None:
        now = self._clock()
        values: dict[str, Any] = {"updated_ts": now}

        current = conn.execute(
            select(tokens.c.status).where(tokens.c.asset_id == outcome.asset_id)
        ).first()

        if outcome.status is not None:
            cached = BattleStatus(current.status) if current is not None else None
            if cached is not None and outcome.status < cached and not outcome.authoritative:
                log.warning(
                    "STALE_STATUS %s │ cached=%s │ observed=%s │ not written",
                    outcome.asset_id[:8], cached.label, outcome.status.label,
                )
            else:
                values["status"] = int(outcome.status)

        for name in ("opponent_asset_id", "victory_tx", "finalize_tx", "withdraw_tx", "pool_tx", "pool_url"):
            v = getattr(outcome, name)
            if v is not None:
                values[name] = v
        if outcome.pool_id is not None:
            values["pool_id"] = outcome.pool_id
            values["pool_error"] = None
        elif outcome.pool_error is not None:
            values["pool_error"] = outcome.pool_error
        if outcome.deposited_value is not None:
            values["deposited_sol"] = _sol(outcome.deposited_value)
        if outcome.trade_volume is not None:
            values["volume_sol"] = _sol(outcome.trade_volume)
        if outcome.spoils is not None:
            values["spoils_sol"] = _float(outcome.spoils)
        if outcome.platform_fee is not None:
            values["platform_fee_sol"] = _float(outcome.platform_fee)
        if outcome.listed:
            values["listing_ts"] = now
        if outcome.completed:
            values["completed_ts"] = now

        if current is None:
            values.setdefault("status", int(outcome.status or BattleStatus.CREATED))
            conn.execute(tokens.insert().values(asset_id=outcome.asset_id, **values))
        else:
            conn.execute(
                tokens.update().where(tokens.c.asset_id == outcome.asset_id).values(**values)
            )

    # -----------------------------------------------------------------
    # Loser reset after finalize
    # -----------------------------------------------------------------

    def reset_loser(self, loser_asset_id: str, winner_asset_id: str, loser_deposited: int | None = None) -> bool:
        """Loser returns to Qualified with no opponent; the battle row is closed."""
        now = self._clock()
        try:
            with self.engine.begin() as conn:
                self._apply(conn, IndexOutcome(
                    asset_id=loser_asset_id,
                    status=BattleStatus.QUALIFIED,
                    authoritative=True,
                    deposited_value=loser_deposited,
                ))
                conn.execute(
                    tokens.update()
                    .where(tokens.c.asset_id == loser_asset_id)
                    .values(opponent_asset_id=None, battle_end_ts=now)
                )
                pair = (loser_asset_id, winner_asset_id)
                conn.execute(
                    battles.update()
                    .where(battles.c.token_a_asset_id.in_(pair))
                    .where(battles.c.token_b_asset_id.in_(pair))
                    .where(battles.c.status != "completed")
                    .values(status="completed", winner_asset_id=winner_asset_id, ended_ts=now)
                )
            log.info("LOSER_RESET %s │ winner=%s", loser_asset_id[:8], winner_asset_id[:8])
            return True
        except SQLAlchemyError as e:
            log.error("INDEX_WRITE_FAIL %s │ loser reset │ %s", loser_asset_id[:8], e)
            return False

    # -----------------------------------------------------------------
    # Completion: winner record, rewards, notification, activity
    # -----------------------------------------------------------------

    def record_completion(self, record: WinnerRecord) -> bool:
        """Upsert the winner row. Side records are appended on first insert only."""
        try:
            with self.engine.begin() as conn:
                created = self._upsert_winner(conn, record)
                if created:
                    self._append_side_records(conn, record)
            if created:
                log.info("WINNER_RECORDED %s │ pool=%s", record.winner_asset_id[:8], record.pool_id)
            else:
                log.info("WINNER_UPDATED %s │ pool=%s", record.winner_asset_id[:8], record.pool_id)
            return True
        except SQLAlchemyError as e:
            log.error("INDEX_WRITE_FAIL %s │ winner record │ %s", record.winner_asset_id[:8], e)
            return False

    def _token_meta(self, conn: Connection, asset_id: str | None) -> dict:
        if asset_id is None:
            return {}
        row = conn.execute(
            select(tokens.c.name, tokens.c.symbol, tokens.c.image_url, tokens.c.creator_wallet)
            .where(tokens.c.asset_id == asset_id)
        ).first()
        return dict(row._mapping) if row is not None else {}

    def _upsert_winner(self, conn: Connection, record: WinnerRecord) -> bool:
        winner = self._token_meta(conn, record.winner_asset_id)
        loser = self._token_meta(conn, record.loser_asset_id)
        values = {
            "name": winner.get("name") or "Unknown",
            "symbol": winner.get("symbol") or "???",
            "image": winner.get("image_url"),
            "loser_asset_id": record.loser_asset_id,
            "loser_name": loser.get("name") or "Unknown",
            "loser_symbol": loser.get("symbol") or "???",
            "loser_image": loser.get("image_url"),
            "final_deposited_sol": _sol(record.final_deposited),
            "final_volume_sol": _sol(record.final_volume),
            "spoils_sol": _float(record.spoils),
            "platform_fee_sol": _float(record.platform_fee),
            "pool_id": record.pool_id,
            "pool_url": record.pool_url,
            "status": "pool_created",
        }
        for step, tx in record.tx_ids.items():
            values[f"{step}_tx"] = tx

        existing = conn.execute(
            select(winners.c.id).where(winners.c.asset_id == record.winner_asset_id)
        ).first()
        if existing is not None:
            # Keep first-seen values for fields a resumed run may not know
            values = {k: v for k, v in values.items() if v is not None}
            conn.execute(
                winners.update().where(winners.c.asset_id == record.winner_asset_id).values(**values)
            )
            return False
        conn.execute(
            winners.insert().values(
                asset_id=record.winner_asset_id, completed_ts=self._clock(), **values
            )
        )
        return True

    def _append_side_records(self, conn: Connection, record: WinnerRecord) -> None:
        now = self._clock()
        winner = self._token_meta(conn, record.winner_asset_id)
        wallet = winner.get("creator_wallet")
        symbol = winner.get("symbol") or ""

        if wallet:
            already = conn.execute(
                select(reward_entries.c.id)
                .where(reward_entries.c.wallet == wallet)
                .where(reward_entries.c.action == BATTLE_WIN_ACTION)
                .where(reward_entries.c.asset_id == record.winner_asset_id)
            ).first()
            if already is None:
                conn.execute(reward_entries.insert().values(
                    wallet=wallet,
                    action=BATTLE_WIN_ACTION,
                    asset_id=record.winner_asset_id,
                    points=self._points,
                    ts=now,
                ))
                total = conn.execute(
                    select(reward_totals.c.total_points).where(reward_totals.c.wallet == wallet)
                ).scalar()
                if total is None:
                    conn.execute(reward_totals.insert().values(
                        wallet=wallet, total_points=self._points, updated_ts=now,
                    ))
                else:
                    conn.execute(
                        reward_totals.update()
                        .where(reward_totals.c.wallet == wallet)
                        .values(total_points=total + self._points, updated_ts=now)
                    )
                log.info("REWARD %s │ +%d points │ asset=%s", wallet[:8], self._points, record.winner_asset_id[:8])

            conn.execute(notifications.insert().values(
                wallet=wallet,
                kind="battle_won",
                title=f"${symbol} won its battle" if symbol else "Your token won its battle",
                message=f"Liquidity pool created. +{self._points:,} points.",
                asset_id=record.winner_asset_id,
                is_read=0,
                ts=now,
            ))

        conn.execute(activity_feed.insert().values(
            wallet="system",
            action_type="pool_created",
            asset_id=record.winner_asset_id,
            symbol=symbol,
            metadata=json.dumps({
                "pool_id": record.pool_id,
                "pool_url": record.pool_url,
                "loser": record.loser_asset_id,
            }),
            ts=now,
        ))
