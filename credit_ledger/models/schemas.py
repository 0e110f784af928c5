from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .db import LedgerEntryType, ReservationStatus


class AccountRef(BaseModel):
    """Identity a balance belongs to: a user id, or a device/IP pair."""

    user_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    def describe(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        if self.device_id is not None:
            return f"device:{self.device_id}"
        return f"ip:{self.ip_address}"


class BalanceResponse(BaseModel):
    balance: int = Field(..., ge=0, description="Paid credits (registered accounts)")
    free_balance: int = Field(..., ge=0, description="Free credits (anonymous accounts)")
    total_charged: int = Field(..., ge=0)


class CreditEstimateRequest(BaseModel):
    duration_seconds: float = Field(..., ge=0)
    translation_language_count: int = Field(default=0, ge=0)


class CreditEstimate(BaseModel):
    duration_seconds: float
    duration_minutes: int
    translation_language_count: int
    base_credits: int
    translation_credits: int
    total_credits: int


class ReserveRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    amount: Optional[int] = Field(default=None, ge=1, description="Credits to hold")
    duration_seconds: Optional[float] = Field(
        default=None, ge=0, description="Used to price the job when amount is omitted"
    )
    translation_language_count: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _amount_or_duration(self) -> "ReserveRequest":
        if self.amount is None and self.duration_seconds is None:
            raise ValueError("Either amount or duration_seconds is required")
        return self


class ReservationResponse(BaseModel):
    reservation_id: str
    account_id: UUID
    job_id: str
    amount: int
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class ReservationResult(BaseModel):
    success: bool
    error: Optional[Literal["DUPLICATE_REQUEST", "INSUFFICIENT_CREDITS"]] = None
    reservation: Optional[ReservationResponse] = None
    balance: Optional[int] = Field(
        default=None, description="Spendable balance after the hold, or the shortfall balance"
    )
    required: Optional[int] = None


class ConfirmRequest(BaseModel):
    job_id: str = Field(..., min_length=1)


class ConfirmResponse(BaseModel):
    reservation_id: str
    confirmed: bool


class RefundRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    reason: str = Field(default="job failed", min_length=1)
    partial_amount: Optional[int] = Field(default=None, description="Refund less than the hold")


class RefundResult(BaseModel):
    reservation_id: str
    refund_amount: int
    balance: int


class ChargeRequest(BaseModel):
    amount: int = Field(..., ge=1)
    payment_id: str = Field(..., min_length=1, description="Settled payment reference")
    description: Optional[str] = None


class ChargeResult(BaseModel):
    payment_id: str
    amount: int
    balance: int
    total_charged: int
    package_id: Optional[str] = None
    replayed: bool = False


class CreditPackageSpec(BaseModel):
    """A catalogue entry as configured; synced into the packages table at startup."""

    package_id: str = Field(..., min_length=1)
    name: str
    credits: int = Field(..., ge=1)
    bonus: int = Field(default=0, ge=0)
    price: int = Field(..., ge=0, description="Minor units of currency")
    currency: str = Field(default="KRW", min_length=3, max_length=3)
    is_active: bool = True
    display_order: int = 0


class CreditPackageResponse(BaseModel):
    package_id: str
    name: str
    credits: int
    bonus: int
    total_credits: int
    price: int
    currency: str


class PaymentRequest(BaseModel):
    package_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1, description="Settled payment reference")


class LedgerEntryResponse(BaseModel):
    id: int
    ts: datetime
    account_id: UUID
    type: LedgerEntryType
    amount: int
    balance_after: int
    description: Optional[str] = None
    job_id: Optional[str] = None
    reservation_id: Optional[str] = None
    payment_id: Optional[str] = None


class HistoryFilters(BaseModel):
    type: Optional[LedgerEntryType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Bounds without an offset are read as UTC, like every stored timestamp.
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class HistoryResponse(BaseModel):
    items: list[LedgerEntryResponse]
    page: int
    limit: int
    total: int
    total_pages: int
