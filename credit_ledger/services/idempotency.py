from __future__ import annotations

import threading
from typing import Dict, Optional


class IdempotencyGuard:
    """Process-local map of job id -> live reservation id.

    Only a shortcut: the persisted reservation status stays authoritative, so a
    restart that empties the guard never lets a job reserve twice.
    """

    def __init__(self) -> None:
        self._reservations: Dict[str, str] = {}
        self._lock = threading.Lock()

    def lookup(self, job_id: str) -> Optional[str]:
        with self._lock:
            return self._reservations.get(job_id)

    def remember(self, job_id: str, reservation_id: str) -> None:
        with self._lock:
            self._reservations[job_id] = reservation_id

    def forget(self, job_id: str, reservation_id: Optional[str] = None) -> None:
        with self._lock:
            current = self._reservations.get(job_id)
            if current is None:
                return
            # A newer reservation for the same job must survive a stale forget.
            if reservation_id is not None and current != reservation_id:
                return
            del self._reservations[job_id]

    def clear(self) -> None:
        with self._lock:
            self._reservations.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._reservations)
