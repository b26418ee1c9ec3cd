"""Error taxonomy shared by every pipeline component."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    ALREADY_DONE = "already_done"
    PRECONDITION = "precondition"
    FATAL = "fatal"
    CONSISTENCY = "consistency"
    TIMEOUT = "timeout"


class ProgramError(IntEnum):
    """Custom error codes raised by the battle ledger program (Anchor offsets from 6000)."""

    INVALID_TOKEN_NAME = 6000
    INVALID_TOKEN_SYMBOL = 6001
    INVALID_TOKEN_URI = 6002
    AMOUNT_TOO_SMALL = 6003
    AMOUNT_TOO_LARGE = 6004
    TRADING_INACTIVE = 6005
    INSUFFICIENT_OUTPUT = 6006
    EXCEEDS_SUPPLY = 6007
    INSUFFICIENT_LIQUIDITY = 6008
    INSUFFICIENT_BALANCE = 6009
    NOT_QUALIFIED = 6010
    SELF_BATTLE = 6011
    UNFAIR_MATCH = 6012
    NOT_IN_BATTLE = 6013
    NO_VICTORY_ACHIEVED = 6014
    INVALID_BATTLE_STATE = 6015
    NOT_OPPONENTS = 6016
    INVALID_TREASURY = 6017
    UNAUTHORIZED = 6018
    MATH_OVERFLOW = 6019
    INVALID_CURVE_STATE = 6020
    PRICE_UPDATE_TOO_SOON = 6021
    WOULD_EXCEED_GRADUATION = 6022
    NOT_READY_FOR_LISTING = 6023
    NO_LIQUIDITY_TO_WITHDRAW = 6024

    @property
    def is_precondition(self) -> bool:
        return self in _PRECONDITION_CODES

    @property
    def is_fatal(self) -> bool:
        return not self.is_precondition

    @classmethod
    def from_code(cls, code: int | None) -> Optional["ProgramError"]:
        if code is None:
            return None
        try:
            return cls(code)
        except ValueError:
            return None


_PRECONDITION_CODES = frozenset({
    ProgramError.TRADING_INACTIVE,
    ProgramError.NOT_IN_BATTLE,
    ProgramError.NO_VICTORY_ACHIEVED,
    ProgramError.INVALID_BATTLE_STATE,
    ProgramError.NOT_OPPONENTS,
    ProgramError.NOT_READY_FOR_LISTING,
    ProgramError.NO_LIQUIDITY_TO_WITHDRAW,
})


@dataclass(frozen=True)
class PipelineError:
    kind: ErrorKind
    message: str
    step: str | None = None
    code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "step": self.step,
            "code": self.code,
        }


class LedgerUnavailable(RuntimeError):
    """Network / RPC failure talking to the ledger. Safe to retry."""


class TransactionFailed(RuntimeError):
    """The ledger rejected or reverted a transaction."""

    def __init__(self, message: str, code: int | None = None, signature: str | None = None):
        super().__init__(message)
        self.code = code
        self.signature = signature


class TransactionDropped(TransactionFailed):
    """Blockhash expired before the signature landed. Never executed; resubmission is safe."""


class AccountLayoutError(ValueError):
    """Account bytes do not match the known layout. Never guess offsets."""


class InvalidAssetId(ValueError):
    pass


class MissingKeeperCredential(RuntimeError):
    pass


class AmmServiceError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def classify_failure(code: int | None, message: str, step: str | None = None) -> PipelineError:
    """Map a failed submission to the taxonomy.

    No program code means the failure came from transport or the runtime, so
    retrying is safe. Known precondition codes stop cleanly; every other code
    is fatal and left for an operator.
    """
    if code is None:
        return PipelineError(ErrorKind.TRANSIENT, message, step=step)
    program_error = ProgramError.from_code(code)
    if program_error is not None and program_error.is_precondition:
        return PipelineError(
            ErrorKind.PRECONDITION, f"{program_error.name}: {message}", step=step, code=code
        )
    label = program_error.name if program_error is not None else f"code {code}"
    return PipelineError(ErrorKind.FATAL, f"{label}: {message}", step=step, code=code)


_CUSTOM_HEX_RE = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")


def extract_program_code(exc: BaseException) -> int | None:
    """Pull the custom program error code out of an RPC error.

    Looks at the structured preflight payload first
    (``data.err -> InstructionError -> Custom(code)``) and falls back to the
    hex form the RPC node prints in its message.
    """
    payload = exc.args[0] if exc.args else None
    data = getattr(payload, "data", None)
    tx_err = getattr(data, "err", None)
    inner = getattr(tx_err, "err", None)
    code = getattr(inner, "code", None)
    if isinstance(code, int):
        return code

    match = _CUSTOM_HEX_RE.search(str(exc))
    if match:
        return int(match.group(1), 16)
    return None
