from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..core.errors import (
    AlreadyFinalizedError,
    AlreadyRefundedError,
    InsufficientCreditsError,
    InvalidInputError,
    InvalidRefundAmountError,
    PackageNotFoundError,
    ReservationNotFoundError,
    StoreUnavailableError,
)
from ..models import (
    AccountModel,
    AccountRef,
    BalanceResponse,
    ChargeResult,
    CreditEstimate,
    CreditPackageModel,
    CreditPackageResponse,
    CreditPackageSpec,
    HistoryFilters,
    HistoryResponse,
    LedgerEntryModel,
    LedgerEntryResponse,
    LedgerEntryType,
    RefundResult,
    ReservationModel,
    ReservationResponse,
    ReservationResult,
    ReservationStatus,
)
from ..models.db import utcnow
from . import pricing
from .idempotency import IdempotencyGuard
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

EXPIRED_REFUND_REASON = "reservation expired"


class LedgerService:
    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
        guard: Optional[IdempotencyGuard] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        self.guard = guard if guard is not None else IdempotencyGuard()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Commit on success, roll back everything on any failure.

        Only driver-level errors become ``StoreUnavailableError``; a statement
        that fails before reaching the database is a bug and propagates.
        """
        try:
            yield
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise
        except DBAPIError as exc:
            self.session.rollback()
            logger.warning("store.unavailable", extra={"error": str(exc)})
            raise StoreUnavailableError("Credit store is unavailable, retry later") from exc
        except BaseException:
            self.session.rollback()
            raise

    def _resolve_account(self, ref: AccountRef) -> AccountModel:
        account, created = self.repository.get_or_create_account(
            ref, free_balance=self.settings.anonymous_free_credits
        )
        if created:
            logger.info(
                "account.created",
                extra={"account_id": str(account.id), "identity": ref.describe()},
            )
        return account

    def _get_reservation(self, reservation_id: str, job_id: str) -> ReservationModel:
        reservation = self.repository.get_reservation(reservation_id, job_id)
        if reservation is None:
            raise ReservationNotFoundError(
                f"Reservation {reservation_id} for job {job_id} not found"
            )
        return reservation

    def _reservation_to_response(self, reservation: ReservationModel) -> ReservationResponse:
        return ReservationResponse(
            reservation_id=reservation.reservation_id,
            account_id=reservation.account_id,
            job_id=reservation.job_id,
            amount=reservation.amount,
            status=reservation.status,
            reserved_at=reservation.reserved_at,
            expires_at=reservation.expires_at,
            confirmed_at=reservation.confirmed_at,
            refunded_at=reservation.refunded_at,
        )

    def _account_to_balance(self, account: AccountModel) -> BalanceResponse:
        return BalanceResponse(
            balance=account.balance,
            free_balance=account.free_balance,
            total_charged=account.total_charged,
        )

    def _entries_to_response(self, entries: list[LedgerEntryModel]) -> list[LedgerEntryResponse]:
        return [
            LedgerEntryResponse(
                id=entry.id,
                ts=entry.ts,
                account_id=entry.account_id,
                type=entry.type,
                amount=entry.amount,
                balance_after=entry.balance_after,
                description=entry.description,
                job_id=entry.job_id,
                reservation_id=entry.reservation_id,
                payment_id=entry.payment_id,
            )
            for entry in entries
        ]

    def _duplicate(self, reservation: ReservationModel) -> ReservationResult:
        logger.info(
            "credits.reserve.duplicate",
            extra={
                "job_id": reservation.job_id,
                "reservation_id": reservation.reservation_id,
            },
        )
        return ReservationResult(
            success=False,
            error="DUPLICATE_REQUEST",
            reservation=self._reservation_to_response(reservation),
        )

    def _find_live_reservation(self, job_id: str) -> Optional[ReservationModel]:
        reservation_id = self.guard.lookup(job_id)
        if reservation_id is not None:
            cached = self.repository.get_reservation(reservation_id, job_id)
            if cached is not None and cached.status in (
                ReservationStatus.RESERVED,
                ReservationStatus.CONFIRMED,
            ):
                return cached
            self.guard.forget(job_id, reservation_id)
        return self.repository.find_active_reservation(job_id)

    def _ensure_refundable(self, reservation: ReservationModel) -> None:
        if reservation.status == ReservationStatus.REFUNDED:
            raise AlreadyRefundedError(
                f"Reservation {reservation.reservation_id} was already refunded"
            )
        if reservation.status != ReservationStatus.RESERVED:
            raise AlreadyFinalizedError(
                f"Reservation {reservation.reservation_id} is already {reservation.status.value}"
            )

    def _apply_refund(self, reservation: ReservationModel, refund_amount: int, reason: str) -> int:
        # Callers move the reservation to REFUNDED first; the credit follows only on success.
        account = self.repository.get_account(reservation.account_id)
        if account is None:
            raise ReservationNotFoundError(
                f"Account for reservation {reservation.reservation_id} not found"
            )
        new_balance = self.repository.credit(account, account.spendable_field, refund_amount)
        self.repository.add_entry(
            account_id=account.id,
            entry_type=LedgerEntryType.REFUND,
            amount=refund_amount,
            balance_after=new_balance,
            description=reason,
            job_id=reservation.job_id,
            reservation_id=reservation.reservation_id,
        )
        return new_balance

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_balance(self, ref: AccountRef) -> BalanceResponse:
        with self._transaction():
            account = self._resolve_account(ref)
            response = self._account_to_balance(account)
        return response

    def calculate_required_credits(
        self, duration_seconds: float, translation_language_count: int = 0
    ) -> int:
        return pricing.calculate_required_credits(
            duration_seconds,
            translation_language_count,
            base_rate=self.settings.credit_per_minute,
            translation_rate=self.settings.translation_credit_per_minute,
        )

    def estimate_credits(
        self, duration_seconds: float, translation_language_count: int = 0
    ) -> CreditEstimate:
        return pricing.estimate_credits(
            duration_seconds,
            translation_language_count,
            base_rate=self.settings.credit_per_minute,
            translation_rate=self.settings.translation_credit_per_minute,
        )

    def reserve_credits(self, ref: AccountRef, job_id: str, amount: int) -> ReservationResult:
        if not job_id:
            raise InvalidInputError("job_id is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidInputError("amount must be a positive integer")

        try:
            with self._transaction():
                result = self._reserve(ref, job_id, amount)
        except IntegrityError as exc:
            # The partial unique index on live job reservations fired: another
            # reserve for this job committed between our lookup and insert.
            with self._transaction():
                existing = self.repository.find_active_reservation(job_id)
                if existing is None:
                    raise StoreUnavailableError(
                        "Reservation could not be stored, retry later"
                    ) from exc
                return self._duplicate(existing)

        if result.success and result.reservation is not None:
            self.guard.remember(job_id, result.reservation.reservation_id)
        return result

    def _reserve(self, ref: AccountRef, job_id: str, amount: int) -> ReservationResult:
        existing = self._find_live_reservation(job_id)
        if existing is not None:
            return self._duplicate(existing)

        account = self._resolve_account(ref)
        field = account.spendable_field
        try:
            new_balance = self.repository.debit(account, field, amount)
        except InsufficientCreditsError as exc:
            logger.info(
                "credits.reserve.insufficient",
                extra={
                    "account_id": str(account.id),
                    "job_id": job_id,
                    "required": amount,
                    "balance": exc.balance,
                },
            )
            return ReservationResult(
                success=False,
                error="INSUFFICIENT_CREDITS",
                balance=exc.balance,
                required=amount,
            )

        now = utcnow()
        reservation = self.repository.add_reservation(
            account_id=account.id,
            job_id=job_id,
            amount=amount,
            reserved_at=now,
            expires_at=now + timedelta(minutes=self.settings.reservation_ttl_minutes),
        )
        self.repository.add_entry(
            account_id=account.id,
            entry_type=LedgerEntryType.RESERVATION,
            amount=-amount,
            balance_after=new_balance,
            description=f"Reserved for job {job_id}",
            job_id=job_id,
            reservation_id=reservation.reservation_id,
        )
        logger.info(
            "credits.reserved",
            extra={
                "account_id": str(account.id),
                "job_id": job_id,
                "reservation_id": reservation.reservation_id,
                "amount": amount,
                "balance": new_balance,
            },
        )
        return ReservationResult(
            success=True,
            reservation=self._reservation_to_response(reservation),
            balance=new_balance,
            required=amount,
        )

    def confirm_deduction(self, reservation_id: str, job_id: str) -> bool:
        with self._transaction():
            reservation = self._get_reservation(reservation_id, job_id)
            confirmed = self.repository.transition_reservation(
                reservation,
                ReservationStatus.RESERVED,
                ReservationStatus.CONFIRMED,
                confirmed_at=utcnow(),
            )
            if not confirmed:
                if reservation.status == ReservationStatus.CONFIRMED:
                    return True
                raise AlreadyFinalizedError(
                    f"Reservation {reservation_id} is already {reservation.status.value}"
                )
            # The credits left the balance at reserve time; only the narrative changes.
            self.repository.relabel_reservation_entry(
                reservation_id,
                entry_type=LedgerEntryType.USE,
                description=f"Used by job {job_id}",
            )

        self.guard.forget(job_id, reservation_id)
        logger.info(
            "credits.confirmed",
            extra={"job_id": job_id, "reservation_id": reservation_id},
        )
        return True

    def refund_credits(
        self,
        reservation_id: str,
        job_id: str,
        reason: str,
        partial_amount: Optional[int] = None,
    ) -> RefundResult:
        with self._transaction():
            reservation = self._get_reservation(reservation_id, job_id)
            self._ensure_refundable(reservation)

            refund_amount = reservation.amount if partial_amount is None else partial_amount
            if refund_amount < 1 or refund_amount > reservation.amount:
                raise InvalidRefundAmountError(
                    f"Refund amount must be between 1 and {reservation.amount}"
                )
            refunded = self.repository.transition_reservation(
                reservation,
                ReservationStatus.RESERVED,
                ReservationStatus.REFUNDED,
                refunded_at=utcnow(),
            )
            if not refunded:
                # Lost to a concurrent refund, confirm or expiry.
                self._ensure_refundable(reservation)
            new_balance = self._apply_refund(reservation, refund_amount, reason)

        self.guard.forget(job_id, reservation_id)
        logger.info(
            "credits.refunded",
            extra={
                "job_id": job_id,
                "reservation_id": reservation_id,
                "amount": refund_amount,
                "balance": new_balance,
                "reason": reason,
            },
        )
        return RefundResult(
            reservation_id=reservation_id,
            refund_amount=refund_amount,
            balance=new_balance,
        )

    def expire_reservation(self, reservation_id: str) -> bool:
        """Move one timed-out hold through EXPIRED to REFUNDED.

        Returns False when the reservation left RESERVED since it was listed,
        e.g. a confirm won the race against the sweeper.
        """
        with self._transaction():
            reservation = self.repository.get_reservation(reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            if not self.repository.transition_reservation(
                reservation, ReservationStatus.RESERVED, ReservationStatus.EXPIRED
            ):
                return False
            self.repository.transition_reservation(
                reservation,
                ReservationStatus.EXPIRED,
                ReservationStatus.REFUNDED,
                refunded_at=utcnow(),
            )
            new_balance = self._apply_refund(
                reservation, reservation.amount, EXPIRED_REFUND_REASON
            )
            job_id = reservation.job_id
            amount = reservation.amount

        self.guard.forget(job_id, reservation_id)
        logger.info(
            "reservation.expired",
            extra={
                "job_id": job_id,
                "reservation_id": reservation_id,
                "amount": amount,
                "balance": new_balance,
            },
        )
        return True

    def get_reservation(
        self, reservation_id: str, ref: Optional[AccountRef] = None
    ) -> ReservationResponse:
        """Load one reservation, scoped to ``ref``'s account when given.

        Another account's reservation reads as not found.
        """
        with self._transaction():
            reservation = self.repository.get_reservation(reservation_id)
            if reservation is not None and ref is not None:
                account = self.repository.find_account(ref)
                if account is None or account.id != reservation.account_id:
                    reservation = None
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            response = self._reservation_to_response(reservation)
        return response

    def _replayed_charge(self, account, existing, payment_id: str, amount: int) -> ChargeResult:
        if existing.account_id != account.id or existing.amount != amount:
            raise InvalidInputError(
                f"Payment {payment_id} was already charged with different parameters"
            )
        logger.info(
            "idempotent.charge.hit",
            extra={"account_id": str(account.id), "payment_id": payment_id},
        )
        return ChargeResult(
            payment_id=payment_id,
            amount=existing.amount,
            balance=account.balance,
            total_charged=account.total_charged,
            replayed=True,
        )

    def charge_credits(
        self,
        ref: AccountRef,
        amount: int,
        payment_id: str,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """Credit a settled payment to a registered account.

        ``payment_id`` doubles as the idempotency key: a replayed payment
        notification returns the original charge without crediting again.
        """
        if ref.is_anonymous:
            raise InvalidInputError("Charges require a registered account")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidInputError("amount must be a positive integer")

        try:
            with self._transaction():
                account = self._resolve_account(ref)
                existing = self.repository.find_charge(payment_id)
                if existing is not None:
                    return self._replayed_charge(account, existing, payment_id, amount)

                new_balance = self.repository.credit(account, "balance", amount, charged=amount)
                self.repository.add_entry(
                    account_id=account.id,
                    entry_type=LedgerEntryType.CHARGE,
                    amount=amount,
                    balance_after=new_balance,
                    description=description or "Credit top-up",
                    payment_id=payment_id,
                )
                result = ChargeResult(
                    payment_id=payment_id,
                    amount=amount,
                    balance=new_balance,
                    total_charged=account.total_charged,
                )
        except IntegrityError as exc:
            # Another delivery of the same payment committed first.
            with self._transaction():
                account = self._resolve_account(ref)
                existing = self.repository.find_charge(payment_id)
                if existing is None:
                    raise StoreUnavailableError("Charge could not be recorded") from exc
                return self._replayed_charge(account, existing, payment_id, amount)

        logger.info(
            "credits.charged",
            extra={
                "account_id": str(account.id),
                "payment_id": payment_id,
                "amount": amount,
                "balance": new_balance,
            },
        )
        return result

    def _package_to_response(self, package: CreditPackageModel) -> CreditPackageResponse:
        return CreditPackageResponse(
            package_id=package.package_id,
            name=package.name,
            credits=package.credits,
            bonus=package.bonus,
            total_credits=package.total_credits,
            price=package.price,
            currency=package.currency,
        )

    def list_packages(self) -> list[CreditPackageResponse]:
        with self._transaction():
            packages = [
                self._package_to_response(package)
                for package in self.repository.list_packages()
            ]
        return packages

    def sync_packages(self, specs: list[CreditPackageSpec]) -> int:
        """Upsert the configured catalogue; packages not listed are left alone."""
        with self._transaction():
            for spec in specs:
                self.repository.save_package(spec)
        if specs:
            logger.info("packages.synced", extra={"count": len(specs)})
        return len(specs)

    def purchase_package(self, ref: AccountRef, package_id: str, payment_id: str) -> ChargeResult:
        """Credit ``credits + bonus`` of an active package for a settled payment."""
        with self._transaction():
            package = self.repository.get_package(package_id)
            if package is None or not package.is_active:
                raise PackageNotFoundError(f"Package {package_id} not found")
            amount = package.total_credits
            description = f"{package.name} package"

        result = self.charge_credits(ref, amount, payment_id, description)
        logger.info(
            "credits.package.purchased",
            extra={"package_id": package_id, "payment_id": payment_id, "amount": amount},
        )
        return result.model_copy(update={"package_id": package_id})

    def list_history(
        self,
        ref: AccountRef,
        filters: Optional[HistoryFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> HistoryResponse:
        filters = filters or HistoryFilters()
        limit = limit or self.settings.history_page_size
        if page < 1:
            raise InvalidInputError("page must be >= 1")
        if limit < 1 or limit > self.settings.history_max_page_size:
            raise InvalidInputError(
                f"limit must be between 1 and {self.settings.history_max_page_size}"
            )
        if filters.start and filters.end and filters.start > filters.end:
            raise InvalidInputError("start must not be after end")

        with self._transaction():
            account = self.repository.find_account(ref)
            if account is None:
                return HistoryResponse(items=[], page=page, limit=limit, total=0, total_pages=0)

            total = self.repository.count_entries(
                account.id,
                entry_type=filters.type,
                start=filters.start,
                end=filters.end,
            )
            entries = self.repository.list_entries(
                account.id,
                entry_type=filters.type,
                start=filters.start,
                end=filters.end,
                offset=(page - 1) * limit,
                limit=limit,
            )
            items = self._entries_to_response(entries)
        return HistoryResponse(
            items=items,
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        )
