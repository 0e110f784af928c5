from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from ..core.dependencies import get_account_ref, get_ledger_service
from ..models import (
    AccountRef,
    BalanceResponse,
    ChargeRequest,
    ChargeResult,
    ConfirmRequest,
    ConfirmResponse,
    CreditEstimate,
    CreditEstimateRequest,
    CreditPackageResponse,
    HistoryFilters,
    HistoryResponse,
    LedgerEntryType,
    PaymentRequest,
    RefundRequest,
    RefundResult,
    ReservationResponse,
    ReservationResult,
    ReserveRequest,
)
from ..services import LedgerService


router = APIRouter(prefix="/credits", tags=["credits"])

@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return service.get_balance(account)

@router.post("/calculate", response_model=CreditEstimate)
def calculate_credits(
    payload: CreditEstimateRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> CreditEstimate:
    return service.estimate_credits(payload.duration_seconds, payload.translation_language_count)

@router.post("/charge", response_model=ChargeResult)
def charge_credits(
    payload: ChargeRequest,
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> ChargeResult:
    return service.charge_credits(
        account, payload.amount, payload.payment_id, payload.description
    )

@router.get("/packages", response_model=list[CreditPackageResponse])
def list_packages(
    service: LedgerService = Depends(get_ledger_service),
) -> list[CreditPackageResponse]:
    return service.list_packages()

@router.post("/payment", response_model=ChargeResult)
def purchase_package(
    payload: PaymentRequest,
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> ChargeResult:
    return service.purchase_package(account, payload.package_id, payload.payment_id)

@router.get("/history", response_model=HistoryResponse)
def list_history(
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    type: Optional[LedgerEntryType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> HistoryResponse:
    filters = HistoryFilters(type=type, start=start, end=end)
    return service.list_history(account, filters, page=page, limit=limit)

reservation_router = APIRouter(prefix="/reservations", tags=["reservations"])

@reservation_router.post(
    "",
    response_model=ReservationResult,
    status_code=status.HTTP_201_CREATED,
)
def reserve_credits(
    payload: ReserveRequest,
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> Union[ReservationResult, JSONResponse]:
    amount = payload.amount
    if amount is None:
        amount = service.calculate_required_credits(
            payload.duration_seconds, payload.translation_language_count
        )
    result = service.reserve_credits(account, payload.job_id, amount)
    if result.error == "INSUFFICIENT_CREDITS":
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=result.model_dump(mode="json"),
        )
    if result.error == "DUPLICATE_REQUEST":
        # Already in flight: a normal outcome for a retried request.
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.model_dump(mode="json"))
    return result

@reservation_router.get("/{reservation_id}", response_model=ReservationResponse)
def get_reservation(
    reservation_id: str,
    account: AccountRef = Depends(get_account_ref),
    service: LedgerService = Depends(get_ledger_service),
) -> ReservationResponse:
    return service.get_reservation(reservation_id, account)

@reservation_router.post("/{reservation_id}/confirm", response_model=ConfirmResponse)
def confirm_deduction(
    reservation_id: str,
    payload: ConfirmRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> ConfirmResponse:
    confirmed = service.confirm_deduction(reservation_id, payload.job_id)
    return ConfirmResponse(reservation_id=reservation_id, confirmed=confirmed)

@reservation_router.post("/{reservation_id}/refund", response_model=RefundResult)
def refund_credits(
    reservation_id: str,
    payload: RefundRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> RefundResult:
    return service.refund_credits(
        reservation_id, payload.job_id, payload.reason, payload.partial_amount
    )

__all__ = ["router", "reservation_router"]
