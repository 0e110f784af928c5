from __future__ import annotations
from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from sqlalchemy import CheckConstraint, Index, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_reservation_id() -> str:
    return f"rsv_{uuid4().hex}"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class LedgerEntryType(str, Enum):
    RESERVATION = "reservation"
    USE = "use"
    REFUND = "refund"
    CHARGE = "charge"


class Account(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("free_balance >= 0", name="ck_accounts_free_balance_non_negative"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    user_id: Optional[str] = Field(default=None, unique=True, index=True)
    device_id: Optional[str] = Field(default=None, index=True)
    ip_address: Optional[str] = Field(default=None, index=True)
    balance: int = Field(default=0, ge=0)
    free_balance: int = Field(default=0, ge=0)
    total_charged: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def spendable_field(self) -> str:
        # Registered accounts spend paid credits, anonymous ones free credits.
        return "free_balance" if self.is_anonymous else "balance"


class Reservation(SQLModel, table=True):
    __tablename__ = "credit_reservations"
    # Enum columns persist member names, hence the upper-case literal.
    __table_args__ = (
        Index(
            "ux_credit_reservations_live_job",
            "job_id",
            unique=True,
            sqlite_where=text("status = 'RESERVED'"),
            postgresql_where=text("status = 'RESERVED'"),
        ),
    )

    reservation_id: str = Field(default_factory=new_reservation_id, primary_key=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    job_id: str = Field(index=True)
    amount: int = Field(gt=0)
    status: ReservationStatus = Field(default=ReservationStatus.RESERVED, index=True)
    reserved_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
    confirmed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "credit_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    ts: datetime = Field(default_factory=utcnow, index=True)
    account_id: UUID = Field(foreign_key="accounts.id", index=True)
    type: LedgerEntryType = Field(index=True)
    amount: int
    balance_after: int
    description: Optional[str] = None
    job_id: Optional[str] = Field(default=None, index=True)
    reservation_id: Optional[str] = Field(
        default=None, foreign_key="credit_reservations.reservation_id", index=True
    )
    payment_id: Optional[str] = Field(default=None, unique=True)


class CreditPackage(SQLModel, table=True):
    __tablename__ = "credit_packages"
    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_credit_packages_credits_positive"),
        CheckConstraint("bonus >= 0", name="ck_credit_packages_bonus_non_negative"),
    )

    package_id: str = Field(primary_key=True)
    name: str
    credits: int = Field(gt=0)
    bonus: int = Field(default=0, ge=0)
    # Minor units of ``currency``.
    price: int = Field(ge=0)
    currency: str = Field(default="KRW", max_length=3)
    is_active: bool = Field(default=True, index=True)
    display_order: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus
