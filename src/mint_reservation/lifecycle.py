from __future__ import annotations

from datetime import datetime
import logging

from mint_reservation.errors import (
    AlreadyProcessed,
    NotFound,
    NotReservedToWallet,
    ValidationError,
    store_errors,
)
from mint_reservation.models import Item, TxResult, utc_now
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation.lifecycle")


class MintLifecycleTracker:
    """
    Moves claimed items through the mint lifecycle:

        Reserved -> InProcess -> Assigned
                             \\-> SubmitError -> InProcess (resubmission)

    Reservation expiry is evaluated at read time; an item carrying a submit
    error keeps its reservation past expiry so a retry is not stolen.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def record_submission(
        self,
        item_id: str,
        wallet_address: str,
        *,
        tx_hash: str | None = None,
        signed_tx: str | None = None,
        now: datetime | None = None,
    ) -> Item:
        if not tx_hash and not signed_tx:
            raise ValidationError("submission requires a tx hash or a signed transaction")
        now = now or utc_now()
        with store_errors("record_submission"):
            with self.storage.transaction():
                updated = self.storage.mark_submitted(
                    item_id=item_id,
                    wallet_address=wallet_address,
                    tx_hash=tx_hash or None,
                    signed_tx=signed_tx or None,
                    now=now,
                )
                item = self.storage.get_item(item_id)
        if item is None:
            raise NotFound(f"item {item_id} not found")
        if updated != 1:
            if item.reserved_to_wallet_address != wallet_address:
                raise NotReservedToWallet("NFT is not reserved to wallet")
            raise NotReservedToWallet("NFT is not reserved")
        LOGGER.info(
            "submission_recorded item=%s wallet=%s tx=%s signed=%s retry=%s",
            item_id,
            wallet_address,
            tx_hash or "-",
            bool(signed_tx),
            item.has_submit_error,
        )
        return item

    def apply_tx_result(self, result: TxResult) -> Item:
        with store_errors("apply_tx_result"):
            with self.storage.transaction():
                matches = self.storage.items_by_tx_hash(result.tx)
                if len(matches) != 1:
                    if matches:
                        LOGGER.warning("tx_result_ambiguous tx=%s matches=%s", result.tx, len(matches))
                    raise NotFound("TX not found")
                item = matches[0]
                if item.assigned:
                    raise AlreadyProcessed(f"TX {result.tx} already processed")
                if result.success:
                    owner = result.wallet_address or item.reserved_to_wallet_address
                    if not owner:
                        raise ValidationError("successful tx result requires an owner wallet")
                    if owner != item.reserved_to_wallet_address:
                        LOGGER.warning(
                            "tx_owner_mismatch tx=%s item=%s reserved_to=%s owner=%s",
                            result.tx,
                            item.id,
                            item.reserved_to_wallet_address,
                            owner,
                        )
                    self.storage.mark_assigned(
                        item_id=item.id,
                        wallet_address=owner,
                        token_id=result.token_id,
                        assigned_on=result.assigned_on or utc_now(),
                    )
                else:
                    if item.tx_error is not None:
                        raise AlreadyProcessed(f"TX {result.tx} failure already recorded")
                    self.storage.mark_submit_error(item_id=item.id, error=result.error or "unknown error")
                updated = self.storage.get_item(item.id)
        if updated is None:
            raise NotFound("item vanished during update")
        if result.success:
            LOGGER.info(
                "tx_confirmed tx=%s item=%s owner=%s token=%s",
                result.tx,
                updated.id,
                updated.assigned_to_wallet_address,
                updated.token_id,
            )
        else:
            LOGGER.warning(
                "tx_failed tx=%s item=%s retries=%s error=%s",
                result.tx,
                updated.id,
                updated.tx_retry_count,
                updated.tx_error,
            )
        return updated

    def assign_owner(self, wallet_address: str, token_id: str, now: datetime | None = None) -> Item:
        """Mark the wallet's reserved item named/numbered ``token_id`` as assigned."""
        with store_errors("assign_owner"):
            with self.storage.transaction():
                matches = self.storage.items_for_owner_token(wallet_address, token_id)
                open_matches = [item for item in matches if not item.assigned and item.reserved]
                if len(open_matches) != 1:
                    if not open_matches and any(
                        item.assigned and item.assigned_to_wallet_address == wallet_address for item in matches
                    ):
                        raise AlreadyProcessed(f"token {token_id} already assigned to {wallet_address}")
                    raise NotFound("token/wallet not found")
                item = open_matches[0]
                self.storage.mark_assigned(
                    item_id=item.id,
                    wallet_address=wallet_address,
                    token_id=token_id,
                    assigned_on=now or utc_now(),
                )
                updated = self.storage.get_item(item.id)
        if updated is None:
            raise NotFound("item vanished during update")
        LOGGER.info("owner_assigned item=%s wallet=%s token=%s", updated.id, wallet_address, token_id)
        return updated
