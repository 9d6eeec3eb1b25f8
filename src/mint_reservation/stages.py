from __future__ import annotations

from datetime import datetime
import logging

from mint_reservation.errors import store_errors
from mint_reservation.models import Stage, utc_now
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation.stages")


class StageResolver:
    """
    Orders the whitelist stages a wallet may draw from:
      - personal stages that are open and still have capacity for the wallet
      - the open default stage, always last
    An empty list means nothing is open for this wallet.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def resolve_stages(self, wallet_address: str, now: datetime | None = None) -> list[Stage]:
        now = now or utc_now()
        with store_errors("resolve_stages"):
            stages = self.storage.open_stages_with_capacity(wallet_address, now)
            default = self.storage.open_default_stage(now)
        if default is not None:
            stages.append(default)
        LOGGER.debug(
            "stages_resolved wallet=%s stages=%s",
            wallet_address,
            ",".join(stage.code for stage in stages) or "-",
        )
        return stages


class StageCounter:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def record_draw(self, wallet_address: str, stage: Stage, amount: int) -> bool:
        """Adds ``amount`` to the wallet's reserved tally for ``stage``; False if no tally row exists."""
        with store_errors("record_draw"):
            updated = self.storage.increment_reserved_count(wallet_address, stage.id, amount)
        if updated == 0:
            LOGGER.debug("stage_counter_no_row wallet=%s stage=%s", wallet_address, stage.code)
            return False
        return True
