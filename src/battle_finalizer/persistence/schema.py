"""SQLAlchemy Core table definitions for the battle index store.

The index is a cached mirror of ledger state plus records derived from
completed battles. All timestamps are Unix epoch floats; SOL amounts are
stored as floats in SOL, lamport-exact values live on the ledger.
"""

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

tokens = Table(
    "tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", String(64), unique=True, nullable=False),
    Column("name", String(80)),
    Column("symbol", String(20)),
    Column("image_url", Text),
    Column("creator_wallet", String(64)),
    Column("status", Integer, nullable=False, default=0),
    Column("opponent_asset_id", String(64)),
    Column("deposited_sol", Float),
    Column("volume_sol", Float),
    Column("pool_id", String(64)),
    Column("pool_url", Text),
    Column("pool_error", Text),
    Column("victory_tx", String(100)),
    Column("finalize_tx", String(100)),
    Column("withdraw_tx", String(100)),
    Column("pool_tx", String(100)),
    Column("spoils_sol", Float),
    Column("platform_fee_sol", Float),
    Column("battle_end_ts", Float),
    Column("listing_ts", Float),
    Column("completed_ts", Float),
    Column("updated_ts", Float),
    Index("ix_tokens_status", "status"),
)

battles = Table(
    "battles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_a_asset_id", String(64), nullable=False),
    Column("token_b_asset_id", String(64), nullable=False),
    Column("status", String(20), nullable=False, default="active"),
    Column("winner_asset_id", String(64)),
    Column("started_ts", Float),
    Column("ended_ts", Float),
    Index("ix_battles_a", "token_a_asset_id"),
    Index("ix_battles_b", "token_b_asset_id"),
)

winners = Table(
    "winners",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", String(64), unique=True, nullable=False),
    Column("name", String(80)),
    Column("symbol", String(20)),
    Column("image", Text),
    Column("loser_asset_id", String(64)),
    Column("loser_name", String(80)),
    Column("loser_symbol", String(20)),
    Column("loser_image", Text),
    Column("final_deposited_sol", Float),
    Column("final_volume_sol", Float),
    Column("spoils_sol", Float),
    Column("platform_fee_sol", Float),
    Column("pool_id", String(64)),
    Column("pool_url", Text),
    Column("victory_tx", String(100)),
    Column("finalize_tx", String(100)),
    Column("withdraw_tx", String(100)),
    Column("pool_tx", String(100)),
    Column("status", String(20)),
    Column("completed_ts", Float),
)

reward_entries = Table(
    "reward_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("wallet", String(64), nullable=False),
    Column("action", String(40), nullable=False),
    Column("asset_id", String(64), nullable=False),
    Column("points", Integer, nullable=False),
    Column("ts", Float, nullable=False),
    UniqueConstraint("wallet", "action", "asset_id", name="uq_reward_once"),
)

reward_totals = Table(
    "reward_totals",
    metadata,
    Column("wallet", String(64), primary_key=True),
    Column("total_points", Integer, nullable=False, default=0),
    Column("updated_ts", Float),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("wallet", String(64), nullable=False),
    Column("kind", String(40), nullable=False),
    Column("title", String(120)),
    Column("message", Text),
    Column("asset_id", String(64)),
    Column("is_read", Integer, nullable=False, default=0),
    Column("ts", Float, nullable=False),
    Index("ix_notifications_wallet", "wallet"),
)

activity_feed = Table(
    "activity_feed",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("wallet", String(64), nullable=False),
    Column("action_type", String(40), nullable=False),
    Column("asset_id", String(64)),
    Column("symbol", String(20)),
    Column("metadata", Text),  # JSON
    Column("ts", Float, nullable=False),
    Index("ix_activity_ts", "ts"),
)
