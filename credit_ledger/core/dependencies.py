from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, Request
from sqlmodel import Session

from ..models import AccountRef
from ..services import IdempotencyGuard, LedgerRepository, LedgerService
from .config import get_settings
from .db import get_session


@lru_cache()
def get_idempotency_guard() -> IdempotencyGuard:
    return IdempotencyGuard()


def get_ledger_service(
    session: Session = Depends(get_session),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository, guard=guard, settings=get_settings())


def get_account_ref(
    request: Request,
    user_id: Optional[str] = Header(default=None, convert_underscores=False, alias="X-User-Id"),
    device_id: Optional[str] = Header(default=None, convert_underscores=False, alias="X-Device-Id"),
) -> AccountRef:
    # Authentication happens upstream; these headers are set by the gateway.
    if user_id:
        return AccountRef(user_id=user_id)
    ip_address = request.client.host if request.client else None
    return AccountRef(device_id=device_id or None, ip_address=ip_address)
