from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from mint_reservation.lifecycle import MintLifecycleTracker
from mint_reservation.reconcile import TRANSFER_TOPIC, Reconciler, parse_receipt
from tests.helpers import NOW, add_item, reserve, temp_storage, test_config, wallet

CONTRACT = "0x" + "ab" * 20
OWNER = "0x" + "cd" * 20
BLOCK_TS = 1_709_294_400


def _word(value: str | int) -> str:
    if isinstance(value, int):
        return "0x" + format(value, "064x")
    return "0x" + value.lower().removeprefix("0x").rjust(64, "0")


def _receipt(tx: str, *, status: int = 1, contract: str = CONTRACT, token: int = 7, logs=None) -> dict:
    if logs is None:
        logs = [
            {
                "address": contract,
                "topics": ["0x" + TRANSFER_TOPIC, _word(0), _word(OWNER), _word(token)],
                "data": "0x",
            }
        ]
    return {"transactionHash": tx, "status": status, "blockNumber": 100, "logs": logs}


class TransactionNotFound(Exception):
    pass


class _DummyEth:
    def __init__(self, receipts: dict[str, dict]) -> None:
        self.receipts = receipts

    def get_transaction_receipt(self, tx_hash: str):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return self.receipts[tx_hash]

    def get_block(self, block_number):
        return {"number": block_number, "timestamp": BLOCK_TS}


class _DummyWeb3:
    def __init__(self, receipts: dict[str, dict]) -> None:
        self.eth = _DummyEth(receipts)


class ParseReceiptTests(unittest.TestCase):
    def test_mint_transfer_is_success(self) -> None:
        result = parse_receipt(_receipt("0xaa"), BLOCK_TS, CONTRACT)

        self.assertTrue(result.success)
        self.assertEqual(result.tx, "0xaa")
        self.assertEqual(result.wallet_address, OWNER)
        self.assertEqual(result.token_id, "7")
        self.assertEqual(result.assigned_on, datetime.fromtimestamp(BLOCK_TS, tz=timezone.utc))

    def test_byte_topics_are_accepted(self) -> None:
        logs = [
            {
                "address": bytes.fromhex(CONTRACT[2:]),
                "topics": [
                    bytes.fromhex(TRANSFER_TOPIC),
                    bytes(32),
                    bytes.fromhex(_word(OWNER)[2:]),
                    (12).to_bytes(32, "big"),
                ],
            }
        ]
        result = parse_receipt(_receipt("0xaa", logs=logs), None, CONTRACT.upper().replace("0X", "0x"))

        self.assertTrue(result.success)
        self.assertEqual(result.token_id, "12")
        self.assertIsNone(result.assigned_on)

    def test_reverted_tx_is_failure(self) -> None:
        result = parse_receipt(_receipt("0xaa", status=0), BLOCK_TS, CONTRACT)
        self.assertFalse(result.success)
        self.assertIn("reverted", result.error)

    def test_transfer_from_other_contract(self) -> None:
        result = parse_receipt(_receipt("0xaa", contract="0x" + "ef" * 20), BLOCK_TS, CONTRACT)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "contract mismatch")

    def test_no_mint_event(self) -> None:
        result = parse_receipt(_receipt("0xaa", logs=[]), BLOCK_TS, CONTRACT)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Unable to find event")

    def test_plain_transfer_is_not_a_mint(self) -> None:
        logs = [{"address": CONTRACT, "topics": ["0x" + TRANSFER_TOPIC, _word(OWNER), _word(OWNER), _word(1)]}]
        result = parse_receipt(_receipt("0xaa", logs=logs), BLOCK_TS, CONTRACT)
        self.assertEqual(result.error, "Unable to find event")


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = temp_storage(self)
        self.tracker = MintLifecycleTracker(self.storage)
        self.config = test_config(nft_contract=CONTRACT)

    def _submitted(self, name: str, tx: str) -> str:
        item_id = add_item(self.storage, name)
        reserve(self.storage, item_id, wallet(1), NOW + timedelta(minutes=10))
        self.tracker.record_submission(item_id, wallet(1), tx_hash=tx, now=NOW)
        return item_id

    def test_run_once_applies_outcomes(self) -> None:
        minted = self._submitted("1", "0xaa")
        reverted = self._submitted("2", "0xbb")
        pending = self._submitted("3", "0xcc")
        w3 = _DummyWeb3({"0xaa": _receipt("0xaa", token=1), "0xbb": _receipt("0xbb", status=0)})

        summary = Reconciler(self.config, self.storage, self.tracker, w3=w3).run_once()

        self.assertEqual((summary.checked, summary.confirmed, summary.failed, summary.pending), (3, 1, 1, 1))
        item = self.storage.get_item(minted)
        self.assertTrue(item.assigned)
        self.assertEqual(item.assigned_to_wallet_address, OWNER)
        self.assertEqual(item.token_id, "1")
        self.assertTrue(self.storage.get_item(reverted).has_submit_error)
        self.assertTrue(self.storage.get_item(pending).in_process)
        self.assertEqual(self.storage.pending_tx_hashes(10), ["0xcc"])

    def test_duplicate_tx_hash_is_skipped(self) -> None:
        self._submitted("1", "0xaa")
        self._submitted("2", "0xaa")
        w3 = _DummyWeb3({"0xaa": _receipt("0xaa")})

        summary = Reconciler(self.config, self.storage, self.tracker, w3=w3).run_once()

        self.assertEqual(summary.skipped, ["0xaa", "0xaa"])
        self.assertEqual(summary.confirmed, 0)


if __name__ == "__main__":
    unittest.main()
