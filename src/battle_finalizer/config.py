"""Configuration for the battle finalization pipeline.

Merge order: dataclass defaults → YAML file → environment variables → CLI arguments.
Credentials (keeper secret, API bearer secret) come from the environment only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# Deployed program + wallets (devnet)
DEFAULT_PROGRAM_ID = "6LdnckDuYxXn4UkyyD5YB7w9j2k49AsuZCNmQ3GhR2Eq"
DEFAULT_TREASURY_WALLET = "5t46DVegMLyVQ2nstgPPUNDn5WCEFwgQCXfbSx1nHrdf"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_AMM_BASE_URL = "https://api-v3-devnet.raydium.io"
DEFAULT_POOL_URL_TEMPLATE = "https://raydium.io/swap/?inputMint={mint}&outputMint=sol&cluster={cluster}"

LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class VictoryThresholds:
    """Victory gate. Must match the constants compiled into the ledger program."""

    target_deposit: int = 6_000_000_000  # 6 SOL in lamports
    tolerance_bps: int = 9_950  # 99.5% of target counts as reached
    min_volume: int = 6_600_000_000  # 6.6 SOL in lamports

    @property
    def min_deposit(self) -> int:
        return self.target_deposit * self.tolerance_bps // BPS_DENOMINATOR


@dataclass(frozen=True)
class PipelineConfig:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = DEFAULT_PROGRAM_ID
    treasury_wallet: str = DEFAULT_TREASURY_WALLET
    cluster: str = "devnet"

    thresholds: VictoryThresholds = field(default_factory=VictoryThresholds)

    # Plunder
    spoils_bps: int = 5_000
    platform_fee_bps: int = 500
    verification_tolerance: Decimal = Decimal("0.01")  # SOL

    # Pool creation
    amm_base_url: str = DEFAULT_AMM_BASE_URL
    amm_timeout_sec: float = 15.0
    pool_url_template: str = DEFAULT_POOL_URL_TEMPLATE
    keeper_fee_reserve_lamports: int = 100_000_000  # 0.1 SOL kept for tx fees
    min_pool_lamports: int = 1_000_000_000
    max_pool_lamports: int = 7_000_000_000

    # Timing
    scan_interval_sec: float = 60.0
    confirm_timeout_sec: float = 90.0
    confirm_poll_sec: float = 0.5
    propagation_timeout_sec: float = 15.0
    run_budget_sec: float = 240.0

    # Index store
    db_url: str | None = None
    battle_win_points: int = 10_000

    # API
    scheduler_header: str = "x-scheduler-cron"
    scheduler_header_value: str = "1"

    # Credentials (from env only, never from YAML)
    keeper_secret: str | None = field(default=None, repr=False)
    api_secret: str | None = field(default=None, repr=False)


def validate_config(cfg: PipelineConfig) -> None:
    """Validate config values. Raises ValueError with all issues found."""
    errors: list[str] = []

    t = cfg.thresholds
    if t.target_deposit <= 0:
        errors.append(f"thresholds.target_deposit must be > 0, got {t.target_deposit}")
    if not (0 < t.tolerance_bps <= BPS_DENOMINATOR):
        errors.append(f"thresholds.tolerance_bps must be in (0, 10000], got {t.tolerance_bps}")
    if t.min_volume < 0:
        errors.append(f"thresholds.min_volume must be >= 0, got {t.min_volume}")
    if not (0 <= cfg.spoils_bps <= BPS_DENOMINATOR):
        errors.append(f"spoils_bps must be in [0, 10000], got {cfg.spoils_bps}")
    if not (0 <= cfg.platform_fee_bps <= BPS_DENOMINATOR):
        errors.append(f"platform_fee_bps must be in [0, 10000], got {cfg.platform_fee_bps}")
    if cfg.verification_tolerance < 0:
        errors.append(f"verification_tolerance must be >= 0, got {cfg.verification_tolerance}")
    if cfg.keeper_fee_reserve_lamports < 0:
        errors.append(
            f"keeper_fee_reserve_lamports must be >= 0, got {cfg.keeper_fee_reserve_lamports}"
        )
    if cfg.max_pool_lamports < cfg.min_pool_lamports:
        errors.append(
            f"max_pool_lamports ({cfg.max_pool_lamports}) must be >= "
            f"min_pool_lamports ({cfg.min_pool_lamports})"
        )
    if cfg.scan_interval_sec <= 0:
        errors.append(f"scan_interval_sec must be > 0, got {cfg.scan_interval_sec}")
    if cfg.confirm_poll_sec <= 0:
        errors.append(f"confirm_poll_sec must be > 0, got {cfg.confirm_poll_sec}")
    if cfg.run_budget_sec <= 0:
        errors.append(f"run_budget_sec must be > 0, got {cfg.run_budget_sec}")
    if not cfg.rpc_url:
        errors.append("rpc_url must be set")
    if not cfg.amm_base_url:
        errors.append("amm_base_url must be set")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))


def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file"""
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def load_pipeline_config(raw: dict[str, Any]) -> PipelineConfig:
    """Load PipelineConfig from the YAML ``pipeline`` section (defaults when absent)."""
    p = raw.get("pipeline", {}) or {}
    defaults = PipelineConfig()

    th = p.get("thresholds", {}) or {}
    thresholds = VictoryThresholds(
        target_deposit=int(th.get("target_deposit", defaults.thresholds.target_deposit)),
        tolerance_bps=int(th.get("tolerance_bps", defaults.thresholds.tolerance_bps)),
        min_volume=int(th.get("min_volume", defaults.thresholds.min_volume)),
    )

    cfg = PipelineConfig(
        rpc_url=p.get("rpc_url", defaults.rpc_url),
        program_id=p.get("program_id", defaults.program_id),
        treasury_wallet=p.get("treasury_wallet", defaults.treasury_wallet),
        cluster=p.get("cluster", defaults.cluster),
        thresholds=thresholds,
        spoils_bps=int(p.get("spoils_bps", defaults.spoils_bps)),
        platform_fee_bps=int(p.get("platform_fee_bps", defaults.platform_fee_bps)),
        verification_tolerance=Decimal(
            str(p.get("verification_tolerance", defaults.verification_tolerance))
        ),
        amm_base_url=p.get("amm_base_url", defaults.amm_base_url),
        amm_timeout_sec=float(p.get("amm_timeout_sec", defaults.amm_timeout_sec)),
        pool_url_template=p.get("pool_url_template", defaults.pool_url_template),
        keeper_fee_reserve_lamports=int(
            p.get("keeper_fee_reserve_lamports", defaults.keeper_fee_reserve_lamports)
        ),
        min_pool_lamports=int(p.get("min_pool_lamports", defaults.min_pool_lamports)),
        max_pool_lamports=int(p.get("max_pool_lamports", defaults.max_pool_lamports)),
        scan_interval_sec=float(p.get("scan_interval_sec", defaults.scan_interval_sec)),
        confirm_timeout_sec=float(p.get("confirm_timeout_sec", defaults.confirm_timeout_sec)),
        confirm_poll_sec=float(p.get("confirm_poll_sec", defaults.confirm_poll_sec)),
        propagation_timeout_sec=float(
            p.get("propagation_timeout_sec", defaults.propagation_timeout_sec)
        ),
        run_budget_sec=float(p.get("run_budget_sec", defaults.run_budget_sec)),
        db_url=p.get("db_url", defaults.db_url),
        battle_win_points=int(p.get("battle_win_points", defaults.battle_win_points)),
        scheduler_header=p.get("scheduler_header", defaults.scheduler_header),
        scheduler_header_value=str(
            p.get("scheduler_header_value", defaults.scheduler_header_value)
        ),
    )
    validate_config(cfg)
    return cfg


def apply_env(cfg: PipelineConfig) -> PipelineConfig:
    """Overlay environment variables. Credentials are only ever read here."""
    overrides: dict[str, Any] = {}
    if os.getenv("SOLANA_RPC_URL"):
        overrides["rpc_url"] = os.environ["SOLANA_RPC_URL"]
    if os.getenv("AMM_BASE_URL"):
        overrides["amm_base_url"] = os.environ["AMM_BASE_URL"]
    if os.getenv("INDEX_DB_URL"):
        overrides["db_url"] = os.environ["INDEX_DB_URL"]
    if os.getenv("SCAN_INTERVAL_SEC"):
        overrides["scan_interval_sec"] = float(os.environ["SCAN_INTERVAL_SEC"])

    overrides["keeper_secret"] = os.getenv("KEEPER_PRIVATE_KEY") or None
    overrides["api_secret"] = os.getenv("CRON_SECRET") or None

    cfg = replace(cfg, **overrides)
    validate_config(cfg)
    return cfg


def build_config(config_path: Path = Path("config/default.yaml")) -> PipelineConfig:
    """Build configuration: defaults → YAML → environment (.env honoured)."""
    load_dotenv()
    raw = load_yaml_config(config_path)
    return apply_env(load_pipeline_config(raw))
