"""Program-derived addresses and well-known program ids."""

from __future__ import annotations

import re

from solders.pubkey import Pubkey

from battle_finalizer.errors import InvalidAssetId

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
WRAPPED_SOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

BATTLE_STATE_SEED = b"battle_state"
PRICE_ORACLE_SEED = b"price_oracle"

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def parse_asset_id(asset_id: str) -> Pubkey:
    """Parse a base58 mint address. Raises InvalidAssetId on malformed input."""
    if not isinstance(asset_id, str) or not _BASE58_RE.match(asset_id.strip()):
        raise InvalidAssetId(f"Invalid asset id {asset_id!r}")
    try:
        return Pubkey.from_string(asset_id.strip())
    except ValueError as e:
        raise InvalidAssetId(f"Invalid asset id {asset_id!r}: {e}") from e


def battle_state_address(mint: Pubkey, program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([BATTLE_STATE_SEED, bytes(mint)], program_id)
    return address


def price_oracle_address(program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([PRICE_ORACLE_SEED], program_id)
    return address


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
