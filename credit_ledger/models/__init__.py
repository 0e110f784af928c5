from .db import Account as AccountModel
from .db import CreditPackage as CreditPackageModel
from .db import LedgerEntry as LedgerEntryModel
from .db import LedgerEntryType, ReservationStatus
from .db import Reservation as ReservationModel
from .schemas import (
    AccountRef,
    BalanceResponse,
    ChargeRequest,
    ChargeResult,
    ConfirmRequest,
    ConfirmResponse,
    CreditEstimate,
    CreditEstimateRequest,
    CreditPackageResponse,
    CreditPackageSpec,
    HistoryFilters,
    HistoryResponse,
    LedgerEntryResponse,
    PaymentRequest,
    RefundRequest,
    RefundResult,
    ReservationResponse,
    ReservationResult,
    ReserveRequest,
)

__all__ = [
    "AccountRef",
    "BalanceResponse",
    "ChargeRequest",
    "ChargeResult",
    "ConfirmRequest",
    "ConfirmResponse",
    "CreditEstimate",
    "CreditEstimateRequest",
    "CreditPackageResponse",
    "CreditPackageSpec",
    "HistoryFilters",
    "HistoryResponse",
    "LedgerEntryResponse",
    "PaymentRequest",
    "RefundRequest",
    "RefundResult",
    "ReservationResponse",
    "ReservationResult",
    "ReserveRequest",
    "AccountModel",
    "CreditPackageModel",
    "LedgerEntryModel",
    "ReservationModel",
    "LedgerEntryType",
    "ReservationStatus",
]
