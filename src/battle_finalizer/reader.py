"""Decode the on-ledger TokenBattleState account for one asset.

Layout (little-endian, after the 8-byte account discriminator):

    offset  size  field
    8       32    mint
    40      8     sol_collected        (deposited value, lamports)
    48      8     tokens_sold
    56      8     total_trade_volume   (lamports)
    64      1     is_active
    65      1     battle_status
    66      32    opponent_mint        (all zeros = none)
    98      8     creation_timestamp
    106     8     last_trade_timestamp
    114     8     battle_start_timestamp
    122     8     victory_timestamp
    130     8     listing_timestamp
    138     8     qualification_timestamp
    146     1     bump

Anything that does not match (wrong discriminator, short data, unknown
status byte) raises AccountLayoutError instead of being guessed at.
"""

from __future__ import annotations

import hashlib
import logging
import struct

from solders.pubkey import Pubkey

from battle_finalizer.addresses import battle_state_address, parse_asset_id
from battle_finalizer.errors import AccountLayoutError
from battle_finalizer.ledger import AccountSnapshot, LedgerClient
from battle_finalizer.models import BattleState, BattleStatus

log = logging.getLogger("bf.reader")

ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:TokenBattleState").digest()[:8]

OFF_MINT = 8
OFF_DEPOSITED = 40
OFF_TOKENS_SOLD = 48
OFF_VOLUME = 56
OFF_ACTIVE = 64
OFF_STATUS = 65
OFF_OPPONENT = 66
OFF_CREATION_TS = 98
OFF_LAST_TRADE_TS = 106
OFF_BATTLE_START_TS = 114
OFF_VICTORY_TS = 122
OFF_LISTING_TS = 130
OFF_QUALIFICATION_TS = 138
OFF_BUMP = 146
MIN_ACCOUNT_LEN = OFF_BUMP + 1

_ZERO_KEY = bytes(32)


def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _i64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<q", data, offset)[0]


def decode_battle_state(data: bytes, lamports: int = 0) -> BattleState:
    """Decode raw account bytes. Raises AccountLayoutError on an unknown layout."""
    if len(data) < MIN_ACCOUNT_LEN:
        raise AccountLayoutError(
            f"Battle state account too short: {len(data)} bytes, need {MIN_ACCOUNT_LEN}"
        )
    if data[:8] != ACCOUNT_DISCRIMINATOR:
        raise AccountLayoutError(f"Unknown account discriminator {data[:8].hex()}")

    raw_status = data[OFF_STATUS]
    try:
        status = BattleStatus(raw_status)
    except ValueError as e:
        raise AccountLayoutError(f"Unknown battle status byte {raw_status}") from e

    opponent_raw = data[OFF_OPPONENT:OFF_OPPONENT + 32]
    opponent = None if opponent_raw == _ZERO_KEY else str(Pubkey.from_bytes(opponent_raw))

    return BattleState(
        asset_id=str(Pubkey.from_bytes(data[OFF_MINT:OFF_MINT + 32])),
        status=status,
        deposited_value=_u64(data, OFF_DEPOSITED),
        trade_volume=_u64(data, OFF_VOLUME),
        opponent_asset_id=opponent,
        is_active=data[OFF_ACTIVE] != 0,
        tokens_sold=_u64(data, OFF_TOKENS_SOLD),
        creation_ts=_i64(data, OFF_CREATION_TS),
        last_trade_ts=_i64(data, OFF_LAST_TRADE_TS),
        battle_start_ts=_i64(data, OFF_BATTLE_START_TS),
        victory_ts=_i64(data, OFF_VICTORY_TS),
        listing_ts=_i64(data, OFF_LISTING_TS),
        qualification_ts=_i64(data, OFF_QUALIFICATION_TS),
        lamports=lamports,
        data_len=len(data),
    )


class LedgerStateReader:
    def __init__(self, ledger: LedgerClient, program_id: str):
        self._ledger = ledger
        self._program_id = Pubkey.from_string(program_id)

    @property
    def program_id(self) -> Pubkey:
        return self._program_id

    def state_address(self, asset_id: str) -> Pubkey:
        return battle_state_address(parse_asset_id(asset_id), self._program_id)

    def read(self, asset_id: str) -> BattleState | None:
        """Current battle state, or None when the account does not exist yet.

        Raises LedgerUnavailable on RPC failure, InvalidAssetId on a malformed
        id and AccountLayoutError on unknown account bytes.
        """
        address = self.state_address(asset_id)
        snapshot = self._ledger.get_account(address)
        if snapshot is None:
            log.debug("STATE_MISSING %s │ pda=%s", asset_id[:8], address)
            return None
        state = self._decode(snapshot)
        if state.asset_id != str(parse_asset_id(asset_id)):
            raise AccountLayoutError(
                f"Battle state at {address} belongs to {state.asset_id}, not {asset_id}"
            )
        return state

    def withdrawable_lamports(self, state: BattleState) -> int:
        """Lamports above the rent-exempt minimum, i.e. what withdrawal would move."""
        rent = self._ledger.get_rent_exempt_minimum(state.data_len)
        return max(0, state.lamports - rent)

    @staticmethod
    def _decode(snapshot: AccountSnapshot) -> BattleState:
        return decode_battle_state(snapshot.data, lamports=snapshot.lamports)
