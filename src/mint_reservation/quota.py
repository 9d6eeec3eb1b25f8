from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from mint_reservation.errors import QuotaExceeded, store_errors
from mint_reservation.models import utc_now
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation.quota")


@dataclass
class QuotaDecision:
    allowed: bool
    active: int
    limit: int


class QuotaGuard:
    """Caps how many items a wallet may hold at once (reserved, in flight or assigned)."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def evaluate(self, wallet_address: str, max_active: int, now: datetime | None = None) -> QuotaDecision:
        with store_errors("count_active_holds"):
            active = self.storage.count_active_holds(wallet_address, now or utc_now())
        return QuotaDecision(allowed=active < max_active, active=active, limit=max_active)

    def check_quota(self, wallet_address: str, max_active: int, now: datetime | None = None) -> None:
        decision = self.evaluate(wallet_address, max_active, now)
        if not decision.allowed:
            LOGGER.info(
                "quota_exceeded wallet=%s active=%s limit=%s",
                wallet_address,
                decision.active,
                decision.limit,
            )
            raise QuotaExceeded()
