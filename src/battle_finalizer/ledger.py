"""Solana RPC access for the keeper: account reads and send-and-confirm.

Every submission is waited out to a definite outcome: confirmed, failed on
chain, or dropped because its blockhash expired before it landed. A submitted
transaction is never reported as success before confirmation and never
abandoned while it could still land.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from battle_finalizer.errors import (
    LedgerUnavailable,
    TransactionDropped,
    TransactionFailed,
    extract_program_code,
)

log = logging.getLogger("bf.ledger")

# Blocks a blockhash stays valid for; used when the message came prebuilt
MAX_PROCESSING_AGE = 150

_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)
_TRANSPORT_ERRORS = (SolanaRpcException, httpx.HTTPError)


@dataclass(frozen=True)
class AccountSnapshot:
    data: bytes
    lamports: int
    owner: Pubkey


class LedgerClient:
    def __init__(
        self,
        client: Client,
        confirm_poll_sec: float = 0.5,
        confirm_timeout_sec: float = 90.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._poll = confirm_poll_sec
        self._slow_after = confirm_timeout_sec
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_url(cls, rpc_url: str, confirm_poll_sec: float = 0.5,
                 confirm_timeout_sec: float = 90.0) -> "LedgerClient":
        return cls(
            Client(rpc_url, commitment=Confirmed),
            confirm_poll_sec=confirm_poll_sec,
            confirm_timeout_sec=confirm_timeout_sec,
        )

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def get_account(self, address: Pubkey) -> AccountSnapshot | None:
        try:
            resp = self._client.get_account_info(address, commitment=Confirmed)
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getAccountInfo {address}: {e}") from e
        account = resp.value
        if account is None:
            return None
        return AccountSnapshot(data=bytes(account.data), lamports=account.lamports, owner=account.owner)

    def get_balance(self, address: Pubkey) -> int:
        try:
            return self._client.get_balance(address, commitment=Confirmed).value
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getBalance {address}: {e}") from e

    def get_rent_exempt_minimum(self, size: int) -> int:
        try:
            return self._client.get_minimum_balance_for_rent_exemption(size).value
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getMinimumBalanceForRentExemption: {e}") from e

    def get_token_balance(self, token_account: Pubkey) -> int | None:
        """Raw token amount held by *token_account*, or None if the account does not exist."""
        if self.get_account(token_account) is None:
            return None
        try:
            resp = self._client.get_token_account_balance(token_account, commitment=Confirmed)
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getTokenAccountBalance {token_account}: {e}") from e
        # Keep as int from string: amounts exceed float precision
        return int(resp.value.amount)

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def send_and_confirm(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        """Sign, submit and wait for a definite outcome. Returns the signature string."""
        try:
            latest = self._client.get_latest_blockhash(commitment=Confirmed).value
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getLatestBlockhash: {e}") from e

        message = Message.new_with_blockhash(list(instructions), signer.pubkey(), latest.blockhash)
        tx = Transaction([signer], message, latest.blockhash)
        signature = self._submit(bytes(tx))
        return self._await_outcome(signature, latest.last_valid_block_height)

    def send_prebuilt_and_confirm(self, raw_tx: bytes, signer: Keypair) -> str:
        """Sign a versioned transaction built by an external service and submit it."""
        try:
            unsigned = VersionedTransaction.from_bytes(raw_tx)
        except ValueError as e:
            raise TransactionFailed(f"Malformed prebuilt transaction: {e}") from e
        signed = VersionedTransaction(unsigned.message, [signer])
        last_valid = self._block_height() + MAX_PROCESSING_AGE
        signature = self._submit(bytes(signed))
        return self._await_outcome(signature, last_valid)

    def _submit(self, raw: bytes) -> Signature:
        try:
            resp = self._client.send_raw_transaction(
                raw, opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
            )
        except RPCException as e:
            # Preflight simulation failed: nothing landed
            raise TransactionFailed(str(e), code=extract_program_code(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"sendTransaction: {e}") from e
        signature = resp.value
        log.info("TX_SENT %s │ waiting for confirmation", signature)
        return signature

    def _block_height(self) -> int:
        try:
            return self._client.get_block_height(commitment=Confirmed).value
        except (RPCException, *_TRANSPORT_ERRORS) as e:
            raise LedgerUnavailable(f"getBlockHeight: {e}") from e

    def _await_outcome(self, signature: Signature, last_valid_block_height: int) -> str:
        started = self._clock()
        warned = False
        transport_failures = 0
        while True:
            try:
                status = self._client.get_signature_statuses([signature]).value[0]
                height = None if status is not None else self._block_height()
                transport_failures = 0
            except (RPCException, LedgerUnavailable, *_TRANSPORT_ERRORS) as e:
                transport_failures += 1
                if self._clock() - started > 3 * self._slow_after:
                    raise LedgerUnavailable(
                        f"Lost contact while confirming {signature}: {e}"
                    ) from e
                log.warning("TX_POLL_ERROR %s │ attempt=%d │ %s", signature, transport_failures, e)
                self._sleep(self._poll)
                continue

            if status is not None:
                if status.err is not None:
                    code = getattr(getattr(status.err, "err", None), "code", None)
                    raise TransactionFailed(
                        f"Transaction {signature} failed: {status.err}",
                        code=code if isinstance(code, int) else None,
                        signature=str(signature),
                    )
                if status.confirmation_status in _LANDED:
                    log.info("TX_CONFIRMED %s │ slot=%s", signature, status.slot)
                    return str(signature)
            elif height is not None and height > last_valid_block_height:
                raise TransactionDropped(
                    f"Transaction {signature} expired before landing", signature=str(signature)
                )

            if not warned and self._clock() - started > self._slow_after:
                log.warning("TX_SLOW %s │ still unconfirmed after %.0fs", signature, self._slow_after)
                warned = True
            self._sleep(self._poll)
