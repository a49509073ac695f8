"""
Wire schemas for the device-facing rewards API.

Field names follow the mobile client's JSON contract (camelCase) through
aliases, while the Python side keeps snake_case attributes.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubmittedItem(BaseModel):
    """One collected item as sent by the device."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=64)
    type: str = Field(..., min_length=1, max_length=32)
    content: Any = None
    timestamp: Optional[int] = Field(None, description="Collection time, epoch milliseconds")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Union[str, int]) -> str:
        # Older clients send their local integer row id
        if isinstance(v, bool):
            raise ValueError("id must be a string or integer")
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().lower()

    def content_text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, sort_keys=True, separators=(",", ":"))


class SubmitDataRequest(BaseModel):
    # Items are validated one by one when credited, so one bad item never
    # rejects the rest of the batch
    items: List[Any]


class SyncedItem(BaseModel):
    id: str
    reward: float


class SubmitDataResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    synced_data: List[SyncedItem] = Field(default_factory=list, alias="syncedData")


class UserStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    total_rewards: float = Field(..., alias="totalRewards")
    data_collected: int = Field(..., alias="dataCollected")
    settled_rewards: float = Field(..., alias="settledRewards")
    pending_rewards: float = Field(..., alias="pendingRewards")
    wallet_address: Optional[str] = Field(None, alias="walletAddress")


class TokenRewardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    wallet_address: str = Field("", alias="walletAddress")


class TransactionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    tx_id: str = Field(..., alias="txId")
    amount: float
    from_address: Optional[str] = Field(None, alias="fromAddress")
    timestamp: datetime


class TokenRewardResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    success: bool
    transaction_info: Optional[TransactionInfo] = Field(None, alias="transactionInfo")
    message: Optional[str] = None


class ReconcileSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: int = Field(..., alias="userId")
    balance: Decimal
    balance_source: str = Field(..., alias="balanceSource")
    total_credited: Decimal = Field(..., alias="totalCredited")
    settled_amount: Decimal = Field(..., alias="settledAmount")
    in_flight_amount: Decimal = Field(..., alias="inFlightAmount")
    unsettled_amount: Decimal = Field(..., alias="unsettledAmount")
    healed_transactions: List[str] = Field(default_factory=list, alias="healedTransactions")
    released_batches: List[int] = Field(default_factory=list, alias="releasedBatches")
