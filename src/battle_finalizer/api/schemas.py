"""Pydantic models for the battle pipeline API."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecuteRequest(BaseModel):
    """Request body for running the pipeline on one asset."""

    model_config = ConfigDict(populate_by_name=True)

    asset_id: str = Field(alias="assetId", min_length=1, description="Base58 mint address of the asset")


class ErrorInfo(BaseModel):
    kind: str = Field(description="transient, already_done, precondition, fatal, consistency or timeout")
    message: str
    step: Optional[str] = Field(default=None, description="Step that failed, if any")
    code: Optional[int] = Field(default=None, description="Ledger program error code, if any")


class StepInfo(BaseModel):
    step: str
    success: bool
    txId: Optional[str] = None
    skipped: bool = Field(default=False, description="Effect already present; nothing new submitted")
    error: Optional[ErrorInfo] = None
    detail: dict[str, Any] = Field(default_factory=dict)


class ExecuteResponse(BaseModel):
    """Outcome of one pipeline run."""

    assetId: str
    success: bool
    steps: list[StepInfo] = Field(default_factory=list)
    poolId: Optional[str] = None
    poolUrl: Optional[str] = None
    error: Optional[ErrorInfo] = None
    lastStatus: Optional[str] = Field(default=None, description="Last battle status observed on the ledger")
    plunderReport: Optional[dict[str, Any]] = Field(
        default=None, description="Expected vs observed balances around finalize"
    )


class ScanOutcomeInfo(BaseModel):
    assetId: str
    success: bool
    poolId: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[str] = Field(default=None, description="Error kind of a failed run")
    step: Optional[str] = Field(default=None, description="Step that failed, if any")
    lastStatus: Optional[str] = Field(default=None, description="Last battle status observed on the ledger")


class ScanResponse(BaseModel):
    """Summary of one scan pass."""

    scanned: int = Field(description="Cached tokens examined")
    processed: list[ScanOutcomeInfo] = Field(default_factory=list)
    corrected: list[str] = Field(default_factory=list, description="Assets whose cached status was fixed")
    held: list[str] = Field(
        default_factory=list, description="Assets skipped after a fatal failure, awaiting an operator"
    )
    busy: bool = Field(default=False, description="True when another scan was already running")


class ReleaseResponse(BaseModel):
    assetId: str
    released: bool = Field(description="False when the scanner was not holding the asset")
