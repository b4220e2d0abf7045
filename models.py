from pydantic import BaseModel, ConfigDict, Field, model_validator
from enum import Enum
from typing import Union
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"


class UserPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="User identifier")
    point: int = Field(..., ge=0, description="Current point balance")
    updated_at: datetime = Field(..., description="Time of the last balance write")

    @classmethod
    def empty(cls, user_id: int) -> "UserPoint":
        return cls(id=user_id, point=0, updated_at=utc_now())


class PointHistory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Store-assigned history identifier")
    user_id: int = Field(..., description="User identifier")
    type: TransactionType = Field(..., description="Transaction type")
    amount: int = Field(..., gt=0, description="Requested amount, not the resulting balance")
    timestamp: datetime = Field(..., description="Time the transaction was recorded")


class PointPolicy(BaseModel):
    """Amount bands, balance ceiling and lock wait applied to charge/use."""

    model_config = ConfigDict(frozen=True)

    min_charge_amount: int = Field(1000, gt=0)
    max_charge_amount: int = Field(100000, gt=0)
    min_use_amount: int = Field(1000, gt=0)
    max_use_amount: int = Field(500000, gt=0)
    max_balance: int = Field(1000000, gt=0)
    lock_timeout_seconds: float = Field(3.0, gt=0)

    @model_validator(mode="after")
    def check_bands(self) -> "PointPolicy":
        if self.min_charge_amount > self.max_charge_amount:
            raise ValueError("min_charge_amount must not exceed max_charge_amount")
        if self.min_use_amount > self.max_use_amount:
            raise ValueError("min_use_amount must not exceed max_use_amount")
        return self


class PointErrorKind(str, Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    BALANCE_CEILING_EXCEEDED = "BALANCE_CEILING_EXCEEDED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    STORE_FAILURE = "STORE_FAILURE"


class PointSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    point: UserPoint


class PointError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: PointErrorKind
    detail: str
    user_id: int
    # Only meaningful for STORE_FAILURE: the balance write went through but
    # the history append did not.
    balance_committed: bool = False

    @property
    def retryable(self) -> bool:
        return self.kind == PointErrorKind.LOCK_TIMEOUT


PointResult = Union[PointSuccess, PointError]


class PointRequest(BaseModel):
    amount: int = Field(..., description="Points to charge or use")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=utc_now)
    users_count: int = Field(..., description="Number of users with a stored balance")
    histories_count: int = Field(..., description="Total history records")
    active_locks: int = Field(..., description="Number of per-user locks created")
