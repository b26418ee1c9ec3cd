"""Index store reads used to assert on what the pipeline wrote."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.engine import Engine as SAEngine

from battle_finalizer.models import CachedToken
from battle_finalizer.persistence.queries import row_to_token
from battle_finalizer.persistence.schema import (
    activity_feed,
    battles,
    reward_entries,
    reward_totals,
    tokens,
    winners,
)


def get_token(asset_id: str, engine: SAEngine) -> CachedToken | None:
    with engine.connect() as conn:
        row = conn.execute(select(tokens).where(tokens.c.asset_id == asset_id)).first()
    return row_to_token(row) if row is not None else None


def get_winner(asset_id: str, engine: SAEngine) -> dict | None:
    with engine.connect() as conn:
        row = conn.execute(select(winners).where(winners.c.asset_id == asset_id)).first()
    return dict(row._mapping) if row is not None else None


def count_winners(asset_id: str, engine: SAEngine) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(winners).where(winners.c.asset_id == asset_id)
        ).scalar_one()


def get_reward_total(wallet: str, engine: SAEngine) -> int:
    with engine.connect() as conn:
        total = conn.execute(
            select(reward_totals.c.total_points).where(reward_totals.c.wallet == wallet)
        ).scalar()
    return total or 0


def count_reward_entries(wallet: str, engine: SAEngine) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(reward_entries).where(reward_entries.c.wallet == wallet)
        ).scalar_one()


def get_open_battle(asset_id: str, engine: SAEngine) -> dict | None:
    """Most recent battles row involving *asset_id* that is not completed."""
    q = (
        select(battles)
        .where(
            (battles.c.token_a_asset_id == asset_id) | (battles.c.token_b_asset_id == asset_id)
        )
        .where(battles.c.status != "completed")
        .order_by(battles.c.id.desc())
    )
    with engine.connect() as conn:
        row = conn.execute(q).first()
    return dict(row._mapping) if row is not None else None


def get_activity(engine: SAEngine, limit: int = 50) -> list[dict]:
    q = select(activity_feed).order_by(activity_feed.c.ts.desc()).limit(limit)
    with engine.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(q)]
