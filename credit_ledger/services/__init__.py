from .idempotency import IdempotencyGuard
from .ledger import LedgerService
from .repository import LedgerRepository
from .sweeper import ExpirySweeper, SweepReport

__all__ = [
    "ExpirySweeper",
    "IdempotencyGuard",
    "LedgerRepository",
    "LedgerService",
    "SweepReport",
]
