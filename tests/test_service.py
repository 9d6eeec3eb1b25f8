from __future__ import annotations

from datetime import timedelta
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from eth_account import Account

from mint_reservation.auth import MetadataSigner, SignatureVerifier, sign_payload
from mint_reservation.errors import (
    NoInventory,
    NoStagesOpen,
    NotFound,
    NotReservedToWallet,
    QuotaExceeded,
    SignatureError,
    SigningUnavailable,
    ValidationError,
)
from mint_reservation.models import (
    AssignHashRequest,
    AssignOwnerRequest,
    AssignSignedTxRequest,
    NewItemRequest,
    NewReservationRequest,
    TxResult,
    compact_json,
)
from mint_reservation.service import ReservationService
from tests.helpers import NOW, add_item, add_stage, temp_storage, test_config, wallet


class ReservationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.authority = Account.create()
        self.minter = Account.create()
        self.storage = temp_storage(self)
        self.config = test_config(verification_address=self.authority.address, max_reservations=2)
        self.service = ReservationService(
            self.config,
            self.storage,
            SignatureVerifier(self.authority.address),
            MetadataSigner(self.minter.key),
        )

    def _sign(self, payload: str) -> str:
        return sign_payload(self.authority.key, payload)

    def _reserve(self, wallet_address: str, minutes: int = 10, now=NOW):
        request = NewReservationRequest(wallet_address=wallet_address, reserved_until=now + timedelta(minutes=minutes))
        return self.service.new_reservation(request, self._sign(request.canonical()), now=now)

    def _fail_tx(self, item_id: str, wallet_address: str, tx: str) -> None:
        hashed = AssignHashRequest(wallet_address=wallet_address, item_id=item_id, tx_hash=tx)
        self.service.assign_tx_hash(hashed, self._sign(hashed.canonical()), now=NOW)
        result = TxResult(tx=tx, success=False, error="insufficient funds")
        self.service.tx_result(result, self._sign(result.canonical()))

    def test_last_item_goes_to_first_wallet(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        item_id = add_item(self.storage, "1", tier="gold")

        response = self._reserve(wallet(1))

        self.assertEqual(response.item_id, item_id)
        self.assertIn('"tier"', response.metadata_response.attributes)
        self.assertTrue(response.metadata_response.signature.startswith("0x"))
        with self.assertRaises(NoInventory) as ctx:
            self._reserve(wallet(2))
        self.assertEqual(ctx.exception.code, 444)

    def test_window_and_address_checks(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")

        with self.assertRaises(ValidationError) as ctx:
            self._reserve(wallet(1), minutes=31)
        self.assertEqual(ctx.exception.message, "Exceeds maximum reservation length")
        with self.assertRaises(ValidationError) as ctx:
            self._reserve(wallet(1), minutes=-1)
        self.assertEqual(ctx.exception.message, "reservation time has already expired")
        with self.assertRaises(ValidationError):
            self._reserve("terra-short")
        self.assertEqual(self.service.tally()[0].count, 1)
        self.assertFalse(self.service.tally()[0].reserved)

    def test_bad_signature_is_rejected_before_anything_else(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")
        request = NewReservationRequest(wallet_address=wallet(1), reserved_until=NOW + timedelta(minutes=5))

        with self.assertRaises(SignatureError):
            self.service.new_reservation(request, sign_payload(self.minter.key, request.canonical()), now=NOW)

    def test_quota_blocks_further_reservations(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        for n in range(3):
            add_item(self.storage, str(n))

        self._reserve(wallet(1))
        self._reserve(wallet(1))
        with self.assertRaises(QuotaExceeded):
            self._reserve(wallet(1))

    def test_no_open_stage(self) -> None:
        add_stage(self.storage, "public", is_default=True, opened=NOW + timedelta(hours=1))
        add_item(self.storage, "1")
        with self.assertRaises(NoStagesOpen) as ctx:
            self._reserve(wallet(1))
        self.assertEqual(ctx.exception.code, 444)

    def test_missing_signing_key_leaves_pool_untouched(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        item_id = add_item(self.storage, "1")
        service = ReservationService(self.config, self.storage, SignatureVerifier(self.authority.address), None)
        request = NewReservationRequest(wallet_address=wallet(1), reserved_until=NOW + timedelta(minutes=5))

        with self.assertRaises(SigningUnavailable) as ctx:
            service.new_reservation(request, self._sign(request.canonical()), now=NOW)

        self.assertEqual(ctx.exception.code, 503)
        item = self.storage.get_item(item_id)
        self.assertFalse(item.reserved)
        self.assertIsNone(item.reserved_to_wallet_address)
        self.assertEqual(self.service.reservations_for_wallet(wallet(1), now=NOW), [])
        self.assertEqual(self._reserve(wallet(1)).item_id, item_id)

    def test_signed_metadata_for_holder(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")
        item_id = self._reserve(wallet(1)).item_id
        payload = compact_json({"nft": item_id})

        response = self.service.signed_metadata(wallet(1), item_id, self._sign(payload), now=NOW)
        self.assertEqual(response.item_id, item_id)

        with self.assertRaises(NotReservedToWallet) as ctx:
            self.service.signed_metadata(wallet(2), item_id, self._sign(payload), now=NOW)
        self.assertEqual(ctx.exception.message, "Invalid Reservation")
        with self.assertRaises(NotReservedToWallet) as ctx:
            self.service.signed_metadata(wallet(1), item_id, self._sign(payload), now=NOW + timedelta(hours=1))
        self.assertEqual(ctx.exception.message, "Reservation has expired")
        with self.assertRaises(NotFound):
            self.service.signed_metadata(wallet(1), "missing", self._sign(compact_json({"nft": "missing"})), now=NOW)

    def test_signed_metadata_after_failed_submit_survives_expiry(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")
        item_id = self._reserve(wallet(1)).item_id
        self._fail_tx(item_id, wallet(1), "0xaa")

        payload = compact_json({"nft": item_id})
        response = self.service.signed_metadata(wallet(1), item_id, self._sign(payload), now=NOW + timedelta(hours=1))

        self.assertEqual(response.item_id, item_id)
        reservations = self.service.reservations_for_wallet(wallet(1), now=NOW + timedelta(hours=1))
        self.assertEqual(len(reservations), 1)
        self.assertTrue(reservations[0].has_submit_error)
        self.assertEqual(reservations[0].tx_retry_count, 1)

    def test_full_mint_flow(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")
        item_id = self._reserve(wallet(1)).item_id

        hashed = AssignHashRequest(wallet_address=wallet(1), item_id=item_id, tx_hash="0xaa")
        self.service.assign_tx_hash(hashed, self._sign(hashed.canonical()), now=NOW)
        self.assertEqual(self.service.in_process(), ["0xaa"])

        result = TxResult(tx="0xaa", success=True, wallet_address=wallet(1), token_id="1", assigned_on=NOW)
        item = self.service.tx_result(result, self._sign(result.canonical()))

        self.assertTrue(item.assigned)
        self.assertEqual(self.service.in_process(), [])
        tally = {(row.assigned, row.reserved): row.count for row in self.service.tally()}
        self.assertEqual(tally, {(True, False): 1})

    def test_signed_tx_submission(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "1")
        item_id = self._reserve(wallet(1)).item_id
        request = AssignSignedTxRequest(wallet_address=wallet(1), item_id=item_id, signed_tx="0xf86c0a")

        with self.assertRaises(SignatureError):
            self.service.assign_signed_tx(request, None, now=NOW)
        with self.assertRaises(SignatureError):
            self.service.assign_signed_tx(request, sign_payload(self.minter.key, request.canonical()), now=NOW)
        self.assertFalse(self.storage.get_item(item_id).in_process)

        item = self.service.assign_signed_tx(request, self._sign(request.canonical()), now=NOW)

        self.assertTrue(item.in_process)
        self.assertEqual(item.signed_tx, "0xf86c0a")
        with self.assertRaises(NotReservedToWallet):
            other = AssignSignedTxRequest(wallet_address=wallet(2), item_id=item_id, signed_tx="0xf86c0b")
            self.service.assign_signed_tx(other, self._sign(other.canonical()), now=NOW)

    def test_assign_owner_is_signed(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        add_item(self.storage, "5")
        self._reserve(wallet(1))
        request = AssignOwnerRequest(wallet_address=wallet(1), token_id="5")

        with self.assertRaises(SignatureError):
            self.service.assign_owner(request, None)
        item = self.service.assign_owner(request, self._sign(request.canonical()))
        self.assertEqual(item.assigned_to_wallet_address, wallet(1))

    def test_free_stage_batch(self) -> None:
        free = add_stage(self.storage, "airdrop", stage_free=True)
        for n in range(2):
            add_item(self.storage, str(n))
        for n, count in ((1, 1), (2, 1), (3, 0), (4, 1)):
            self.storage.upsert_allocation(wallet(n), free.id, count)

        generated = self.service.free_stage("airdrop", self._sign(compact_json({"stage": "airdrop"})), now=NOW)

        self.assertEqual([row.wallet_address for row in generated], [wallet(1), wallet(2)])
        self.assertEqual(sorted(self.service.mint_run_reserved(now=NOW)), sorted(row.item_id for row in generated))
        self.assertEqual(self.service.mint_run_reserved(now=NOW + self.config.max_reservation_duration), [])
        self.assertEqual(self.storage.get_allocation(wallet(1), free.id).remaining, 0)
        item = self.service.item(generated[0].item_id)
        self.assertEqual(item.reserved_until, NOW + self.config.max_reservation_duration)

    def test_free_stage_rejects_unknown_and_paid_stages(self) -> None:
        add_stage(self.storage, "public", is_default=True)
        with self.assertRaises(NotFound):
            self.service.free_stage("nope", self._sign(compact_json({"stage": "nope"})), now=NOW)
        with self.assertRaises(ValidationError):
            self.service.free_stage("public", self._sign(compact_json({"stage": "public"})), now=NOW)

    def test_mint_run_stuck_lists_failed_batch_items(self) -> None:
        free = add_stage(self.storage, "airdrop", stage_free=True)
        add_item(self.storage, "1")
        self.storage.upsert_allocation(wallet(1), free.id, 1)
        generated = self.service.free_stage("airdrop", self._sign(compact_json({"stage": "airdrop"})), now=NOW)
        self._fail_tx(generated[0].item_id, wallet(1), "0xaa")

        stuck = self.service.mint_run_stuck()

        self.assertEqual([row.item_id for row in stuck], [generated[0].item_id])
        self.assertEqual(stuck[0].tx_error, "insufficient funds")

    def test_add_item_and_stage_stats(self) -> None:
        add_stage(self.storage, "gold", attribute_type="tier", attribute_value="gold")
        add_stage(self.storage, "public", is_default=True)
        request = NewItemRequest(name="9", meta={"attributes": [{"trait_type": "tier", "value": "gold"}]})

        item_id = self.service.add_item(request, self._sign(request.canonical()))
        add_item(self.storage, "10", tier="silver")

        self.assertEqual(self.service.item(item_id).metadata.attributes[0].value, "gold")
        stats = {row.stage_code: (row.assigned, row.reserved, row.count) for row in self.service.stage_stats()}
        self.assertEqual(stats, {"gold": (0, 0, 1), "public": (0, 0, 2)})


if __name__ == "__main__":
    unittest.main()
