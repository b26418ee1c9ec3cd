"""Read queries against the index store."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.engine import Engine as SAEngine

from battle_finalizer.models import BattleStatus, CachedToken
from battle_finalizer.persistence.db import get_engine
from battle_finalizer.persistence.schema import tokens


def row_to_token(row) -> CachedToken:
    m = row._mapping
    return CachedToken(
        asset_id=m["asset_id"],
        status=BattleStatus(m["status"]),
        symbol=m["symbol"] or "",
        opponent_asset_id=m["opponent_asset_id"],
        pool_id=m["pool_id"],
        creator_wallet=m["creator_wallet"],
    )


def list_tokens_by_status(
    statuses: Iterable[BattleStatus], engine: SAEngine | None = None
) -> list[CachedToken]:
    """Cached tokens whose status is in *statuses*, oldest update first."""
    engine = engine or get_engine()
    q = (
        select(tokens)
        .where(tokens.c.status.in_([int(s) for s in statuses]))
        .order_by(tokens.c.updated_ts.asc(), tokens.c.id.asc())
    )
    with engine.connect() as conn:
        return [row_to_token(r) for r in conn.execute(q)]


def get_token_row(asset_id: str, engine: SAEngine | None = None) -> dict | None:
    """Full index row for a token, including pipeline fields."""
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = conn.execute(select(tokens).where(tokens.c.asset_id == asset_id)).first()
    return dict(row._mapping) if row is not None else None

