"""AMM service client and the pool-creation step.

The AMM service owns pool construction. We look pools up by mint pair, ask
the service for an unsigned pool-creation transaction, sign it with the
keeper and submit it ourselves so confirmation follows the same path as
every other pipeline transaction.
"""

from __future__ import annotations

import base64
import logging

import requests

from battle_finalizer.addresses import WRAPPED_SOL_MINT
from battle_finalizer.config import LAMPORTS_PER_SOL, PipelineConfig
from battle_finalizer.errors import (
    AmmServiceError,
    ErrorKind,
    LedgerUnavailable,
    PipelineError,
    TransactionDropped,
    TransactionFailed,
    classify_failure,
)
from battle_finalizer.executor import TransactionExecutor
from battle_finalizer.ledger import LedgerClient
from battle_finalizer.models import PoolCreation, StepName

log = logging.getLogger("bf.amm")

POOL_INFO_PATH = "/pools/info/mint"
CREATE_POOL_PATH = "/pools/create/cpmm"


class AmmServiceClient:
    def __init__(self, base_url: str, timeout: float = 15.0, session: requests.Session | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def find_pools(self, mint_a: str, mint_b: str) -> list[str]:
        """Ids of existing pools for the pair, newest first."""
        data = self._request(
            "GET",
            POOL_INFO_PATH,
            params={
                "mint1": mint_a,
                "mint2": mint_b,
                "poolType": "all",
                "poolSortField": "default",
                "sortType": "desc",
                "pageSize": 10,
                "page": 1,
            },
        )
        pools = (data.get("data") or {}).get("data") or []
        return [p["id"] for p in pools if p.get("id")]

    def build_create_pool(
        self, owner: str, mint_a: str, mint_b: str, amount_a: int, amount_b: int
    ) -> tuple[bytes, str]:
        """Ask the service for an unsigned pool-creation transaction.

        Returns (serialized versioned transaction, future pool id).
        """
        data = self._request(
            "POST",
            CREATE_POOL_PATH,
            json={
                "owner": owner,
                "mintA": mint_a,
                "mintB": mint_b,
                "amountA": str(amount_a),
                "amountB": str(amount_b),
            },
        )
        payload = data.get("data") or {}
        tx_b64 = payload.get("transaction")
        pool_id = payload.get("poolId")
        if not tx_b64 or not pool_id:
            raise AmmServiceError(f"Pool creation response missing transaction or poolId: {data}")
        return base64.b64decode(tx_b64), pool_id

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise AmmServiceError(f"{method} {path} failed: {e}", status_code=status) from e
        except (requests.RequestException, ValueError) as e:
            raise AmmServiceError(f"{method} {path} failed: {e}") from e
        if not data.get("success", True):
            raise AmmServiceError(f"{method} {path} rejected: {data.get('msg') or data}")
        return data


def canonical_pair(asset_id: str, asset_amount: int, quote_amount: int) -> tuple[tuple[str, int], tuple[str, int]]:
    """Order the pool sides by mint id so every caller derives the same pool.

    Returns ((mint_a, amount_a), (mint_b, amount_b)).
    """
    quote = str(WRAPPED_SOL_MINT)
    if quote < asset_id:
        return (quote, quote_amount), (asset_id, asset_amount)
    return (asset_id, asset_amount), (quote, quote_amount)


class PoolCreationAdapter:
    def __init__(
        self,
        amm: AmmServiceClient,
        ledger: LedgerClient,
        executor: TransactionExecutor,
        cfg: PipelineConfig,
    ):
        self._amm = amm
        self._ledger = ledger
        self._executor = executor
        self._cfg = cfg

    def pool_url(self, asset_id: str) -> str:
        return self._cfg.pool_url_template.format(mint=asset_id, cluster=self._cfg.cluster)

    def contribution_lamports(self, keeper_balance: int, withdrawn: int | None = None) -> int:
        """Quote-side contribution: never above the keeper balance minus the fee reserve."""
        available = keeper_balance - self._cfg.keeper_fee_reserve_lamports
        amount = withdrawn if withdrawn else available
        return max(0, min(amount, available, self._cfg.max_pool_lamports))

    def create(self, asset_id: str, withdrawn: int | None = None) -> PoolCreation | PipelineError:
        step = StepName.CREATE_POOL.value
        try:
            keeper = self._executor.keeper
            token_account = self._executor.keeper_token_account(asset_id)
            token_balance = self._ledger.get_token_balance(token_account)
            keeper_balance = self._ledger.get_balance(keeper.pubkey())
        except LedgerUnavailable as e:
            return PipelineError(ErrorKind.TRANSIENT, str(e), step=step)

        if token_balance is None:
            return PipelineError(
                ErrorKind.PRECONDITION,
                "withdrawal incomplete: keeper has no token account for this asset",
                step=step,
            )
        if token_balance == 0:
            return PipelineError(
                ErrorKind.PRECONDITION, "withdrawal incomplete: keeper holds 0 tokens", step=step
            )

        amount = self.contribution_lamports(keeper_balance, withdrawn)
        if amount < self._cfg.min_pool_lamports:
            return PipelineError(
                ErrorKind.FATAL,
                f"insufficient keeper funding: {keeper_balance / LAMPORTS_PER_SOL:.3f} SOL "
                f"available, need {self._cfg.min_pool_lamports / LAMPORTS_PER_SOL:.3f} SOL "
                f"plus fee reserve",
                step=step,
            )

        (mint_a, amount_a), (mint_b, amount_b) = canonical_pair(asset_id, token_balance, amount)
        log.info(
            "POOL_CREATE %s │ tokens=%d │ sol=%.3f │ keeper=%.3f SOL",
            asset_id[:8], token_balance, amount / LAMPORTS_PER_SOL, keeper_balance / LAMPORTS_PER_SOL,
        )

        try:
            raw_tx, pool_id = self._amm.build_create_pool(
                str(keeper.pubkey()), mint_a, mint_b, amount_a, amount_b
            )
        except AmmServiceError as e:
            return PipelineError(ErrorKind.TRANSIENT, str(e), step=step)

        try:
            tx_id = self._ledger.send_prebuilt_and_confirm(raw_tx, keeper)
        except TransactionDropped as e:
            return PipelineError(ErrorKind.TRANSIENT, str(e), step=step)
        except TransactionFailed as e:
            return classify_failure(e.code, str(e), step=step)
        except LedgerUnavailable as e:
            return PipelineError(ErrorKind.TRANSIENT, str(e), step=step)

        log.info("POOL_CREATED %s │ pool=%s │ tx=%s", asset_id[:8], pool_id, tx_id)
        return PoolCreation(pool_id=pool_id, tx_id=tx_id)
