from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ..core.errors import InsufficientCreditsError, InvalidInputError
from ..models import (
    AccountModel,
    AccountRef,
    CreditPackageModel,
    CreditPackageSpec,
    LedgerEntryModel,
    LedgerEntryType,
    ReservationModel,
    ReservationStatus,
)
from ..models.db import utcnow

_BALANCE_FIELDS = ("balance", "free_balance")


class LedgerRepository:
    """Thin data access layer around the SQLModel session.

    Every balance mutation is a single conditional or unconditional UPDATE so
    the database row lock, not Python state, arbitrates concurrent writers.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def find_account(self, ref: AccountRef) -> Optional[AccountModel]:
        stmt = select(AccountModel)
        if ref.user_id is not None:
            stmt = stmt.where(AccountModel.user_id == ref.user_id)
        elif ref.device_id is not None:
            stmt = stmt.where(AccountModel.device_id == ref.device_id).where(
                col(AccountModel.user_id).is_(None)
            )
        elif ref.ip_address is not None:
            stmt = stmt.where(AccountModel.ip_address == ref.ip_address).where(
                col(AccountModel.user_id).is_(None)
            )
        else:
            raise InvalidInputError("Anonymous accounts need a device id or an IP address")
        return self.session.exec(stmt.order_by(col(AccountModel.created_at))).first()

    def add_account(self, ref: AccountRef, *, free_balance: int = 0) -> AccountModel:
        account = AccountModel(
            user_id=ref.user_id,
            device_id=None if ref.user_id is not None else ref.device_id,
            ip_address=None if ref.user_id is not None else ref.ip_address,
            free_balance=free_balance if ref.is_anonymous else 0,
        )
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_or_create_account(
        self, ref: AccountRef, *, free_balance: int = 0
    ) -> tuple[AccountModel, bool]:
        account = self.find_account(ref)
        if account is not None:
            return account, False
        try:
            with self.session.begin_nested():
                account = self.add_account(ref, free_balance=free_balance)
        except IntegrityError:
            # Another request created the same user concurrently.
            account = self.find_account(ref)
            if account is None:
                raise
            return account, False
        return account, True

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def debit(self, account: AccountModel, field: str, amount: int) -> int:
        """Subtract ``amount`` from ``field`` only if it stays non-negative."""
        column = self._balance_column(field)
        stmt = (
            update(AccountModel)
            .where(col(AccountModel.id) == account.id)
            .where(column >= amount)
            .values({field: column - amount, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        self.session.refresh(account)
        if result.rowcount == 0:
            raise InsufficientCreditsError(
                "Insufficient credits",
                balance=getattr(account, field),
                required=amount,
            )
        return getattr(account, field)

    def credit(
        self,
        account: AccountModel,
        field: str,
        amount: int,
        *,
        charged: int = 0,
    ) -> int:
        column = self._balance_column(field)
        values = {field: column + amount, "updated_at": utcnow()}
        if charged:
            values["total_charged"] = col(AccountModel.total_charged) + charged
        stmt = (
            update(AccountModel)
            .where(col(AccountModel.id) == account.id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        self.session.exec(stmt)
        self.session.refresh(account)
        return getattr(account, field)

    def _balance_column(self, field: str):
        if field not in _BALANCE_FIELDS:
            raise ValueError(f"Unknown balance field {field!r}")
        return col(getattr(AccountModel, field))

    # Reservations -------------------------------------------------------
    def add_reservation(
        self,
        *,
        account_id: UUID,
        job_id: str,
        amount: int,
        reserved_at: datetime,
        expires_at: datetime,
    ) -> ReservationModel:
        reservation = ReservationModel(
            account_id=account_id,
            job_id=job_id,
            amount=amount,
            status=ReservationStatus.RESERVED,
            reserved_at=reserved_at,
            expires_at=expires_at,
        )
        self.session.add(reservation)
        self.session.flush()
        self.session.refresh(reservation)
        return reservation

    def get_reservation(
        self, reservation_id: str, job_id: Optional[str] = None
    ) -> Optional[ReservationModel]:
        reservation = self.session.get(ReservationModel, reservation_id)
        if reservation is None:
            return None
        if job_id is not None and reservation.job_id != job_id:
            return None
        return reservation

    def transition_reservation(
        self,
        reservation: ReservationModel,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        **values,
    ) -> bool:
        """Move ``reservation`` to ``to_status`` only if it is still ``from_status``.

        The row is reloaded either way, so on ``False`` the caller sees the
        status the competing writer left behind.
        """
        stmt = (
            update(ReservationModel)
            .where(col(ReservationModel.reservation_id) == reservation.reservation_id)
            .where(col(ReservationModel.status) == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        self.session.refresh(reservation)
        return result.rowcount == 1

    def find_active_reservation(self, job_id: str) -> Optional[ReservationModel]:
        stmt = (
            select(ReservationModel)
            .where(ReservationModel.job_id == job_id)
            .where(
                col(ReservationModel.status).in_(
                    [ReservationStatus.RESERVED, ReservationStatus.CONFIRMED]
                )
            )
            .order_by(col(ReservationModel.reserved_at).desc())
        )
        return self.session.exec(stmt).first()

    def list_expired_reservations(self, now: datetime, limit: int) -> list[ReservationModel]:
        stmt = (
            select(ReservationModel)
            .where(ReservationModel.status == ReservationStatus.RESERVED)
            .where(col(ReservationModel.expires_at) < now)
            .order_by(col(ReservationModel.expires_at))
            .limit(limit)
        )
        return list(self.session.exec(stmt))

    # Ledger entries -----------------------------------------------------
    def add_entry(
        self,
        *,
        account_id: UUID,
        entry_type: LedgerEntryType,
        amount: int,
        balance_after: int,
        description: Optional[str],
        job_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            account_id=account_id,
            type=entry_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            job_id=job_id,
            reservation_id=reservation_id,
            payment_id=payment_id,
        )
        self.session.add(entry)
        self.session.flush()
        self.session.refresh(entry)
        return entry

    def relabel_reservation_entry(
        self,
        reservation_id: str,
        *,
        entry_type: LedgerEntryType,
        description: str,
    ) -> int:
        stmt = (
            update(LedgerEntryModel)
            .where(col(LedgerEntryModel.reservation_id) == reservation_id)
            .where(col(LedgerEntryModel.type) == LedgerEntryType.RESERVATION)
            .values(type=entry_type, description=description)
            .execution_options(synchronize_session=False)
        )
        return self.session.exec(stmt).rowcount

    def find_charge(self, payment_id: str) -> Optional[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.payment_id == payment_id)
            .where(LedgerEntryModel.type == LedgerEntryType.CHARGE)
        )
        return self.session.exec(stmt).first()

    def _filtered_entries(
        self,
        stmt,
        account_id: UUID,
        entry_type: Optional[LedgerEntryType],
        start: Optional[datetime],
        end: Optional[datetime],
    ):
        stmt = stmt.where(LedgerEntryModel.account_id == account_id)
        if entry_type is not None:
            stmt = stmt.where(LedgerEntryModel.type == entry_type)
        if start is not None:
            stmt = stmt.where(col(LedgerEntryModel.ts) >= start)
        if end is not None:
            stmt = stmt.where(col(LedgerEntryModel.ts) <= end)
        return stmt

    def list_entries(
        self,
        account_id: UUID,
        *,
        entry_type: Optional[LedgerEntryType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[LedgerEntryModel]:
        stmt = self._filtered_entries(
            select(LedgerEntryModel), account_id, entry_type, start, end
        )
        order = col(LedgerEntryModel.id)
        stmt = stmt.order_by(order.desc() if newest_first else order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt))

    def count_entries(
        self,
        account_id: UUID,
        *,
        entry_type: Optional[LedgerEntryType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        stmt = self._filtered_entries(
            select(func.count()).select_from(LedgerEntryModel),
            account_id,
            entry_type,
            start,
            end,
        )
        return int(self.session.exec(stmt).one())

    # Package catalogue --------------------------------------------------
    def list_packages(self, *, active_only: bool = True) -> list[CreditPackageModel]:
        stmt = select(CreditPackageModel)
        if active_only:
            stmt = stmt.where(col(CreditPackageModel.is_active).is_(True))
        stmt = stmt.order_by(
            col(CreditPackageModel.display_order), col(CreditPackageModel.price)
        )
        return list(self.session.exec(stmt))

    def get_package(self, package_id: str) -> Optional[CreditPackageModel]:
        return self.session.get(CreditPackageModel, package_id)

    def save_package(self, spec: CreditPackageSpec) -> CreditPackageModel:
        package = self.get_package(spec.package_id)
        if package is None:
            package = CreditPackageModel(**spec.model_dump())
        else:
            for field, value in spec.model_dump(exclude={"package_id"}).items():
                setattr(package, field, value)
            package.updated_at = utcnow()
        self.session.add(package)
        self.session.flush()
        return package
