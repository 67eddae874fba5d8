from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .ledger import LedgerStore
from .models import NotificationKind

logger = logging.getLogger("neighbrs.notifications")

NOTIFICATIONS_TABLE = "notifications"


class Notifier(Protocol):
    def notify(self, recipient_id: str, job_id: str, kind: NotificationKind) -> None: ...


class LedgerNotifier:
    """Drops a notification row for the counterpart's inbox.

    Best effort: a failed write is logged and swallowed, the job transition
    that triggered it has already been committed.
    """

    def __init__(self, ledger: LedgerStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def notify(self, recipient_id: str, job_id: str, kind: NotificationKind) -> None:
        try:
            self._ledger.append(
                NOTIFICATIONS_TABLE,
                {
                    "recipient_id": recipient_id,
                    "job_id": job_id,
                    "kind": kind.value,
                    "created_at": self._clock().isoformat(),
                    "read": False,
                },
            )
        except Exception as e:
            logger.error(f"Notification {kind.value} to {recipient_id} for job {job_id} not delivered: {e}")
