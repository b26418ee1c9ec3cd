"""Entry point for the battle finalizer keeper."""

import argparse
import json
import logging
import re
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path

from battle_finalizer.amm import AmmServiceClient, PoolCreationAdapter
from battle_finalizer.config import PipelineConfig, build_config, validate_config
from battle_finalizer.executor import TransactionExecutor
from battle_finalizer.guard import IdempotencyGuard
from battle_finalizer.ledger import LedgerClient
from battle_finalizer.locks import AssetLocks
from battle_finalizer.orchestrator import PipelineOrchestrator
from battle_finalizer.persistence.db import close_db, init_db
from battle_finalizer.persistence.writer import IndexWriter
from battle_finalizer.reader import LedgerStateReader
from battle_finalizer.scanner import BattleScanner
from battle_finalizer.verification import ConsistencyVerifier

LOG_FORMAT = "%(asctime)s │ %(name)-16s │ %(message)s"


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Battle finalization keeper")
    parser.add_argument(
        "--config", type=Path, default=Path("config/default.yaml"),
        help="YAML config file (default: config/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Root log level (default: INFO)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run one scan, print JSON, exit")
    mode.add_argument("--execute", metavar="ASSET_ID", help="Run the pipeline for one asset, print JSON, exit")
    parser.add_argument("--host", default="0.0.0.0", help="API bind host (serve mode)")
    parser.add_argument("--port", type=int, default=8000, help="API port (serve mode)")
    parser.add_argument("--rpc-url", help="Override the Solana RPC URL")
    parser.add_argument("--db-url", help="Override the index store URL")
    parser.add_argument("--scan-interval", type=float, help="Override scan interval in seconds")
    return parser.parse_args(argv)


class _StripAnsiFormatter(logging.Formatter):
    """Strip ANSI escape codes for clean log files."""
    _ansi_re = re.compile(r'\033\[[0-9;]*m')

    def format(self, record):
        return self._ansi_re.sub('', super().format(record))


class _LevelColorFormatter(logging.Formatter):
    """Dim DEBUG, yellow WARNING, red ERROR on the console."""
    _COLORS = {logging.DEBUG: "\033[2m", logging.WARNING: "\033[33m", logging.ERROR: "\033[31m"}
    _RESET = "\033[0m"

    def format(self, record):
        result = super().format(record)
        color = self._COLORS.get(min(record.levelno, logging.ERROR))
        return f"{color}{result}{self._RESET}" if color else result


def _setup_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    for h in logging.getLogger().handlers:
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
            h.setFormatter(_LevelColorFormatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S"))

    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / f"battle_finalizer_{datetime.now():%Y-%m-%d_%H%M%S}.log")
    fh.setLevel(level)
    fh.setFormatter(_StripAnsiFormatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(fh)

    for noisy in ("httpx", "httpcore", "urllib3", "solana", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


log = logging.getLogger("bf.bot")


@dataclass
class Keeper:
    """Wired pipeline components sharing one config, ledger client and lock table."""

    cfg: PipelineConfig
    orchestrator: PipelineOrchestrator
    scanner: BattleScanner
    index: IndexWriter


def build_keeper(cfg: PipelineConfig) -> Keeper:
    db_engine = init_db(cfg.db_url)
    ledger = LedgerClient.from_url(
        cfg.rpc_url,
        confirm_poll_sec=cfg.confirm_poll_sec,
        confirm_timeout_sec=cfg.confirm_timeout_sec,
    )
    reader = LedgerStateReader(ledger, cfg.program_id)
    executor = TransactionExecutor(ledger, cfg)
    amm = AmmServiceClient(cfg.amm_base_url, timeout=cfg.amm_timeout_sec)
    index = IndexWriter(db_engine, battle_win_points=cfg.battle_win_points)
    orchestrator = PipelineOrchestrator(
        cfg,
        reader=reader,
        executor=executor,
        guard=IdempotencyGuard(reader, amm),
        pools=PoolCreationAdapter(amm, ledger, executor, cfg),
        verifier=ConsistencyVerifier(cfg),
        index=index,
        locks=AssetLocks(),
    )
    scanner = BattleScanner(cfg, reader, orchestrator, index)
    return Keeper(cfg=cfg, orchestrator=orchestrator, scanner=scanner, index=index)


def _apply_cli(cfg: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    overrides = {}
    if args.rpc_url:
        overrides["rpc_url"] = args.rpc_url
    if args.db_url:
        overrides["db_url"] = args.db_url
    if args.scan_interval is not None:
        overrides["scan_interval_sec"] = args.scan_interval
    if not overrides:
        return cfg
    cfg = replace(cfg, **overrides)
    validate_config(cfg)
    return cfg


def _serve(keeper: Keeper, host: str, port: int) -> None:
    import uvicorn

    from battle_finalizer.api import create_app

    stop = threading.Event()
    scan_thread = threading.Thread(
        target=keeper.scanner.run_forever, args=(stop,), name="battle-scanner", daemon=True
    )
    scan_thread.start()

    app = create_app(keeper.cfg, keeper.orchestrator, keeper.scanner)
    log.info("API │ serving on %s:%d", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    finally:
        stop.set()
        scan_thread.join(timeout=keeper.cfg.run_budget_sec)


def main(argv=None) -> int:
    args = _parse_args(argv)
    _setup_logging(args.log_level)

    try:
        cfg = _apply_cli(build_config(args.config), args)
    except ValueError as e:
        log.error("CONFIG │ %s", e)
        return 2

    log.info(
        "INIT │ cluster=%s │ rpc=%s │ program=%s │ keeper=%s",
        cfg.cluster, cfg.rpc_url, cfg.program_id, "set" if cfg.keeper_secret else "MISSING",
    )
    keeper = build_keeper(cfg)

    try:
        if args.execute:
            result = keeper.orchestrator.execute(args.execute)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.success else 1
        if args.once:
            print(json.dumps(keeper.scanner.scan().to_dict(), indent=2))
            return 0
        _serve(keeper, args.host, args.port)
        return 0
    except KeyboardInterrupt:
        log.info("SHUTDOWN │ user interrupt")
        return 0
    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())
