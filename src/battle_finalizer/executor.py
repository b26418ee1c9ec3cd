"""Submit one battle-program instruction per pipeline step under the keeper key.

The executor builds, signs, submits and waits for confirmation. It reports
what happened (TxOutcome) without deciding whether a failure is retryable;
that is the IdempotencyGuard's job.
"""

from __future__ import annotations

import json
import logging

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from battle_finalizer.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    associated_token_address,
    battle_state_address,
    parse_asset_id,
    price_oracle_address,
)
from battle_finalizer.config import PipelineConfig
from battle_finalizer.errors import (
    LedgerUnavailable,
    MissingKeeperCredential,
    TransactionDropped,
    TransactionFailed,
)
from battle_finalizer.ledger import LedgerClient
from battle_finalizer.models import StepName, TxOutcome

log = logging.getLogger("bf.executor")

# Anchor instruction discriminators: sha256("global:<name>")[:8]
CHECK_VICTORY_DISCRIMINATOR = bytes([176, 199, 31, 103, 154, 28, 170, 98])
FINALIZE_DUEL_DISCRIMINATOR = bytes([57, 165, 69, 195, 50, 206, 212, 134])
WITHDRAW_FOR_LISTING_DISCRIMINATOR = bytes([127, 237, 151, 214, 106, 20, 93, 33])

# Associated-token program: CreateIdempotent
_CREATE_ATA_IDEMPOTENT = bytes([1])


def load_keypair(secret: str) -> Keypair:
    """Parse a keeper secret: JSON byte array (solana-keygen file format) or base58."""
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_base58_string(secret)
    except ValueError as e:
        raise MissingKeeperCredential(f"Keeper secret could not be parsed: {e}") from e


# ---------------------------------------------------------------------------
# Instruction builders
# ---------------------------------------------------------------------------


def check_victory_ix(program_id: Pubkey, mint: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(battle_state_address(mint, program_id), is_signer=False, is_writable=True),
        AccountMeta(price_oracle_address(program_id), is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, CHECK_VICTORY_DISCRIMINATOR, accounts)


def finalize_duel_ix(
    program_id: Pubkey, winner: Pubkey, loser: Pubkey, treasury: Pubkey, keeper: Pubkey
) -> Instruction:
    accounts = [
        AccountMeta(battle_state_address(winner, program_id), is_signer=False, is_writable=True),
        AccountMeta(battle_state_address(loser, program_id), is_signer=False, is_writable=True),
        AccountMeta(treasury, is_signer=False, is_writable=True),
        AccountMeta(keeper, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, FINALIZE_DUEL_DISCRIMINATOR, accounts)


def withdraw_for_listing_ix(
    program_id: Pubkey, mint: Pubkey, keeper: Pubkey, token_program: Pubkey
) -> Instruction:
    state = battle_state_address(mint, program_id)
    accounts = [
        AccountMeta(state, is_signer=False, is_writable=True),
        AccountMeta(mint, is_signer=False, is_writable=True),
        AccountMeta(associated_token_address(state, mint, token_program), is_signer=False, is_writable=True),
        AccountMeta(associated_token_address(keeper, mint, token_program), is_signer=False, is_writable=True),
        AccountMeta(keeper, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(token_program, is_signer=False, is_writable=False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, WITHDRAW_FOR_LISTING_DISCRIMINATOR, accounts)


def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(associated_token_address(owner, mint, token_program), is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, _CREATE_ATA_IDEMPOTENT, accounts)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class TransactionExecutor:
    def __init__(self, ledger: LedgerClient, cfg: PipelineConfig, keeper: Keypair | None = None):
        self._ledger = ledger
        self._program_id = Pubkey.from_string(cfg.program_id)
        self._treasury = Pubkey.from_string(cfg.treasury_wallet)
        self._keeper = keeper
        self._keeper_secret = cfg.keeper_secret

    @property
    def keeper(self) -> Keypair:
        """Keeper keypair, loaded lazily. Raises MissingKeeperCredential when unset."""
        if self._keeper is None:
            if not self._keeper_secret:
                raise MissingKeeperCredential("KEEPER_PRIVATE_KEY not configured")
            self._keeper = load_keypair(self._keeper_secret)
        return self._keeper

    def token_program_for(self, mint: Pubkey) -> Pubkey:
        """Classic SPL or Token-2022, decided by the mint account's owner."""
        account = self._ledger.get_account(mint)
        if account is not None and account.owner == TOKEN_2022_PROGRAM_ID:
            return TOKEN_2022_PROGRAM_ID
        return TOKEN_PROGRAM_ID

    def keeper_token_account(self, asset_id: str) -> Pubkey:
        mint = parse_asset_id(asset_id)
        return associated_token_address(self.keeper.pubkey(), mint, self.token_program_for(mint))

    def check_victory(self, asset_id: str) -> TxOutcome:
        mint = parse_asset_id(asset_id)
        return self._submit(StepName.CHECK_VICTORY, asset_id, [check_victory_ix(self._program_id, mint)])

    def finalize_duel(self, winner_id: str, loser_id: str) -> TxOutcome:
        ix = finalize_duel_ix(
            self._program_id,
            parse_asset_id(winner_id),
            parse_asset_id(loser_id),
            self._treasury,
            self.keeper.pubkey(),
        )
        return self._submit(StepName.FINALIZE_DUEL, winner_id, [ix])

    def withdraw_for_listing(self, asset_id: str) -> TxOutcome:
        mint = parse_asset_id(asset_id)
        keeper = self.keeper.pubkey()
        try:
            token_program = self.token_program_for(mint)
        except LedgerUnavailable as e:
            return TxOutcome(success=False, message=str(e), transport_error=True)
        instructions = [
            create_ata_idempotent_ix(keeper, keeper, mint, token_program),
            withdraw_for_listing_ix(self._program_id, mint, keeper, token_program),
        ]
        return self._submit(StepName.WITHDRAW, asset_id, instructions)

    def _submit(self, step: StepName, asset_id: str, instructions: list[Instruction]) -> TxOutcome:
        keeper = self.keeper
        log.info("STEP_SUBMIT %s │ asset=%s", step.value, asset_id[:8])
        try:
            signature = self._ledger.send_and_confirm(instructions, keeper)
        except TransactionDropped as e:
            log.warning("STEP_DROPPED %s │ asset=%s │ %s", step.value, asset_id[:8], e)
            return TxOutcome(success=False, tx_id=e.signature, message=str(e), transport_error=True)
        except TransactionFailed as e:
            log.warning(
                "STEP_REJECTED %s │ asset=%s │ code=%s │ %s", step.value, asset_id[:8], e.code, e
            )
            return TxOutcome(success=False, tx_id=e.signature, code=e.code, message=str(e))
        except LedgerUnavailable as e:
            log.warning("STEP_RPC_ERROR %s │ asset=%s │ %s", step.value, asset_id[:8], e)
            return TxOutcome(success=False, message=str(e), transport_error=True)
        return TxOutcome(success=True, tx_id=signature)
