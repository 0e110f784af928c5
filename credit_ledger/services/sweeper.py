from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from ..core.config import Settings, get_settings
from ..models.db import utcnow
from .idempotency import IdempotencyGuard
from .ledger import LedgerService
from .repository import LedgerRepository


logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    refunded: int = 0
    failed: int = 0


class ExpirySweeper:
    """Finds holds past ``expires_at`` and refunds them.

    Each reservation is handled in its own session and transaction, so one
    broken row only costs that row a retry on the next cycle.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        guard: Optional[IdempotencyGuard] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.guard = guard if guard is not None else IdempotencyGuard()
        self.settings = settings or get_settings()

    def _service(self, session: Session) -> LedgerService:
        return LedgerService(session, guard=self.guard, settings=self.settings)

    def _expired_ids(self, now: datetime) -> list[str]:
        with self.session_factory() as session:
            reservations = LedgerRepository(session).list_expired_reservations(
                now, self.settings.sweep_batch_size
            )
            return [reservation.reservation_id for reservation in reservations]

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        reservation_ids = self._expired_ids(now)
        report.expired = len(reservation_ids)

        for reservation_id in reservation_ids:
            with self.session_factory() as session:
                try:
                    if self._service(session).expire_reservation(reservation_id):
                        report.refunded += 1
                except Exception:
                    report.failed += 1
                    logger.exception(
                        "sweep.reservation.failed",
                        extra={"reservation_id": reservation_id},
                    )

        if reservation_ids:
            logger.info(
                "sweep.completed",
                extra={
                    "expired": report.expired,
                    "refunded": report.refunded,
                    "failed": report.failed,
                },
            )
        return report

    async def run_periodically(self, interval_seconds: Optional[int] = None) -> None:
        interval = interval_seconds or self.settings.sweep_interval_seconds
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("sweep.tick.failed")
