from __future__ import annotations

from datetime import datetime
import hashlib
import logging
from typing import Sequence

from mint_reservation.errors import NoInventory, StoreError, store_errors
from mint_reservation.models import ClaimedItem, Stage, utc_now
from mint_reservation.stages import StageCounter
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation.allocation")

_SEED_MODULUS = 2**31 - 1


def wallet_seed(wallet_address: str) -> float:
    """
    Stable per-wallet seed in roughly [-0.5, 0.5).

    The same wallet walks candidates in the same order on every attempt, while
    different wallets start from different items.
    """
    digest = hashlib.sha256(wallet_address.encode("utf-8")).hexdigest()
    shifted = (int(digest, 16) % _SEED_MODULUS) - (_SEED_MODULUS // 2)
    if shifted == 0:
        return -1.0
    return shifted / _SEED_MODULUS


class AllocationExecutor:
    def __init__(self, storage: Storage, counter: StageCounter | None = None) -> None:
        self.storage = storage
        self.counter = counter or StageCounter(storage)

    def allocate(
        self,
        wallet_address: str,
        stages: Sequence[Stage],
        count: int,
        reserved_until: datetime,
        is_mint_batch: bool = False,
        now: datetime | None = None,
    ) -> list[ClaimedItem]:
        """Claim up to ``count`` items from the first stage, in order, that has any left."""
        now = now or utc_now()
        seed = wallet_seed(wallet_address)
        LOGGER.debug("claim_seed wallet=%s seed=%s", wallet_address, seed)

        for stage in stages:
            with store_errors("claim_items"):
                rows = self.storage.claim_items(
                    wallet_address=wallet_address,
                    predicate=stage.predicate,
                    count=max(1, int(count)),
                    reserved_until=reserved_until,
                    in_mint_run=is_mint_batch,
                    seed=seed,
                    now=now,
                )
            if not rows:
                LOGGER.debug("stage_exhausted wallet=%s stage=%s", wallet_address, stage.code)
                continue

            claimed = [
                ClaimedItem(
                    id=item_id,
                    name=name,
                    metadata=metadata,
                    wallet_address=wallet_address,
                    stage_code=stage.code,
                )
                for item_id, name, metadata in rows
            ]
            LOGGER.info(
                "items_claimed wallet=%s stage=%s count=%s ids=%s mint_run=%s",
                wallet_address,
                stage.code,
                len(claimed),
                ",".join(item.id for item in claimed),
                is_mint_batch,
            )
            try:
                self.counter.record_draw(wallet_address, stage, len(claimed))
            except StoreError as exc:
                LOGGER.warning(
                    "stage_counter_failed wallet=%s stage=%s amount=%s error=%s",
                    wallet_address,
                    stage.code,
                    len(claimed),
                    exc,
                )
            return claimed

        LOGGER.info(
            "no_inventory wallet=%s stages=%s",
            wallet_address,
            ",".join(stage.code for stage in stages) or "-",
        )
        raise NoInventory()
