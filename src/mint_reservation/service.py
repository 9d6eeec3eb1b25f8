from __future__ import annotations

from datetime import datetime
import logging

from mint_reservation.allocation import AllocationExecutor
from mint_reservation.auth import MetadataSigner, SignatureVerifier, require_valid_address
from mint_reservation.config import ReservationConfig
from mint_reservation.errors import (
    NoInventory,
    NoStagesOpen,
    NotFound,
    NotReservedToWallet,
    SigningUnavailable,
    ValidationError,
    store_errors,
)
from mint_reservation.lifecycle import MintLifecycleTracker
from mint_reservation.models import (
    AssignHashRequest,
    AssignOwnerRequest,
    AssignSignedTxRequest,
    Item,
    ItemTally,
    Metadata,
    MetadataResponse,
    MintReservation,
    NewItemRequest,
    NewReservationRequest,
    NewReservationResponse,
    Reservation,
    StageTally,
    TxResult,
    compact_json,
    utc_now,
)
from mint_reservation.quota import QuotaGuard
from mint_reservation.stages import StageCounter, StageResolver
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation")


class ReservationService:
    """Entry points for reservation, submission and reconciliation requests."""

    def __init__(
        self,
        config: ReservationConfig,
        storage: Storage,
        verifier: SignatureVerifier,
        signer: MetadataSigner | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.verifier = verifier
        self.signer = signer
        self.quota = QuotaGuard(storage)
        self.resolver = StageResolver(storage)
        self.counter = StageCounter(storage)
        self.executor = AllocationExecutor(storage, self.counter)
        self.tracker = MintLifecycleTracker(storage)

    def _require_address(self, wallet_address: str) -> None:
        require_valid_address(wallet_address, self.config.wallet_prefix, self.config.wallet_length)

    def _metadata_response(self, wallet_address: str, metadata: Metadata) -> MetadataResponse:
        if self.signer is None:
            raise SigningUnavailable()
        return self.signer.build_metadata_response(wallet_address, metadata)

    def new_reservation(
        self,
        request: NewReservationRequest,
        signature: str | None,
        now: datetime | None = None,
    ) -> NewReservationResponse:
        self.verifier.verify(request.canonical(), signature)
        now = now or utc_now()
        if request.reserved_until > now + self.config.max_reservation_duration:
            raise ValidationError("Exceeds maximum reservation length")
        if request.reserved_until < now:
            raise ValidationError("reservation time has already expired")
        self._require_address(request.wallet_address)

        wallet = request.wallet_address
        if self.signer is None:
            raise SigningUnavailable()
        self.quota.check_quota(wallet, self.config.max_reservations, now)
        stages = self.resolver.resolve_stages(wallet, now)
        if not stages:
            LOGGER.info("no_stages_open wallet=%s", wallet)
            raise NoStagesOpen()
        claimed = self.executor.allocate(wallet, stages, 1, request.reserved_until, False, now)[0]
        return NewReservationResponse(
            item_id=claimed.id,
            metadata_response=self._metadata_response(wallet, claimed.metadata),
        )

    def signed_metadata(
        self,
        wallet_address: str,
        item_id: str,
        signature: str | None,
        now: datetime | None = None,
    ) -> NewReservationResponse:
        self._require_address(wallet_address)
        self.verifier.verify(compact_json({"nft": item_id}), signature)
        now = now or utc_now()
        item = self.item(item_id)
        if item.reserved_to_wallet_address is None:
            raise NotReservedToWallet("NFT is not reserved")
        if item.reserved_to_wallet_address != wallet_address:
            raise NotReservedToWallet("Invalid Reservation")
        if not item.reserved:
            raise NotReservedToWallet("Not Reserved")
        if not item.holds_valid_reservation(wallet_address, now):
            raise NotReservedToWallet("Reservation has expired")
        if item.has_submit_error:
            LOGGER.info("retry_reservation item=%s reserved_until=%s", item.id, item.reserved_until)
        return NewReservationResponse(
            item_id=item.id,
            metadata_response=self._metadata_response(wallet_address, item.metadata),
        )

    def assign_tx_hash(self, request: AssignHashRequest, signature: str | None, now: datetime | None = None) -> Item:
        self.verifier.verify(request.canonical(), signature)
        return self.tracker.record_submission(
            request.item_id, request.wallet_address, tx_hash=request.tx_hash, now=now
        )

    def assign_signed_tx(
        self,
        request: AssignSignedTxRequest,
        signature: str | None,
        now: datetime | None = None,
    ) -> Item:
        self.verifier.verify(request.canonical(), signature)
        return self.tracker.record_submission(
            request.item_id, request.wallet_address, signed_tx=request.signed_tx, now=now
        )

    def tx_result(self, result: TxResult, signature: str | None) -> Item:
        payload = result.canonical()
        LOGGER.info("tx_result payload=%s", payload)
        self.verifier.verify(payload, signature)
        return self.tracker.apply_tx_result(result)

    def assign_owner(self, request: AssignOwnerRequest, signature: str | None) -> Item:
        payload = request.canonical()
        LOGGER.debug("assign_owner payload=%s", payload)
        self.verifier.verify(payload, signature)
        return self.tracker.assign_owner(request.wallet_address, request.token_id)

    def add_item(self, request: NewItemRequest, signature: str | None) -> str:
        self.verifier.verify(request.canonical(), signature)
        with store_errors("insert_item"):
            item_id = self.storage.insert_item(request)
        LOGGER.info("item_added id=%s name=%s", item_id, request.name)
        return item_id

    def free_stage(self, stage_code: str, signature: str | None, now: datetime | None = None) -> list[MintReservation]:
        """Batch-reserve one item per wallet with remaining capacity in a free stage."""
        self.verifier.verify(compact_json({"stage": stage_code}), signature)
        now = now or utc_now()
        with store_errors("free_stage"):
            stage = self.storage.get_stage(stage_code)
            allocations = self.storage.allocations_for_stage(stage.id) if stage else []
        if stage is None:
            raise NotFound("stage not found")
        if not stage.stage_free:
            raise ValidationError("Stage is not free")

        reserved_until = now + self.config.max_reservation_duration
        generated: list[MintReservation] = []
        for allocation in allocations:
            if allocation.remaining <= 0:
                continue
            try:
                claimed = self.executor.allocate(
                    allocation.wallet_address, [stage], 1, reserved_until, True, now
                )
            except NoInventory:
                LOGGER.warning(
                    "free_stage_exhausted stage=%s generated=%s wallet=%s",
                    stage.code,
                    len(generated),
                    allocation.wallet_address,
                )
                break
            generated.extend(
                MintReservation(
                    wallet_address=item.wallet_address,
                    item_id=item.id,
                    name=item.name,
                    metadata=item.metadata,
                )
                for item in claimed
            )
        LOGGER.info("free_stage_done stage=%s generated=%s", stage.code, len(generated))
        return generated

    def reservations_for_wallet(self, wallet_address: str, now: datetime | None = None) -> list[Reservation]:
        self._require_address(wallet_address)
        with store_errors("reservations_for_wallet"):
            return self.storage.reservations_for_wallet(wallet_address, now or utc_now())

    def in_process(self, limit: int | None = None) -> list[str]:
        with store_errors("pending_tx_hashes"):
            return self.storage.pending_tx_hashes(limit or self.config.reconcile_limit)

    def mint_run_in_process(self, limit: int | None = None) -> list[tuple[str, str]]:
        with store_errors("mint_run_in_process"):
            return self.storage.mint_run_in_process(limit or self.config.reconcile_limit)

    def mint_run_reserved(self, limit: int | None = None, now: datetime | None = None) -> list[str]:
        with store_errors("mint_run_reserved"):
            return self.storage.mint_run_reserved(limit or self.config.reconcile_limit, now or utc_now())

    def mint_run_stuck(self, limit: int | None = None) -> list[MintReservation]:
        with store_errors("mint_run_stuck"):
            return self.storage.mint_run_stuck(limit or self.config.reconcile_limit)

    def item(self, item_id: str) -> Item:
        with store_errors("get_item"):
            item = self.storage.get_item(item_id)
        if item is None:
            raise NotFound("Not Found")
        return item

    def tally(self) -> list[ItemTally]:
        with store_errors("tally"):
            return self.storage.tally()

    def stage_stats(self) -> list[StageTally]:
        stats: list[StageTally] = []
        with store_errors("stage_stats"):
            stages = self.storage.list_stages()
        for stage in stages:
            try:
                with store_errors("predicate_tally"):
                    assigned, reserved, count = self.storage.predicate_tally(stage.predicate)
            except Exception as exc:
                LOGGER.error("stage_stats_failed stage=%s error=%s", stage.code, exc)
                assigned, reserved, count = -1, -1, -1
            stats.append(
                StageTally(
                    stage_id=stage.id,
                    stage_code=stage.code,
                    stage_name=stage.name,
                    assigned=assigned,
                    reserved=reserved,
                    count=count,
                )
            )
        return stats
