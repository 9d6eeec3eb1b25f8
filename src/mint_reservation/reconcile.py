from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from mint_reservation.config import ReservationConfig
from mint_reservation.errors import AlreadyProcessed, NotFound, store_errors
from mint_reservation.lifecycle import MintLifecycleTracker
from mint_reservation.models import TxResult
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation.reconcile")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_WORD = "0" * 64


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _hex(value: Any) -> str:
    """Lower-case hex text without the 0x prefix, for bytes, HexBytes or str."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    elif hasattr(value, "hex") and not isinstance(value, str):
        text = str(value.hex())
    else:
        text = str(value)
    text = text.lower()
    return text[2:] if text.startswith("0x") else text


def _receipt_status(receipt: Any) -> int:
    raw = _get(receipt, "status")
    if raw is None:
        return 0
    if isinstance(raw, str):
        return int(raw, 16) if raw.startswith("0x") else int(raw)
    return int(raw)


def _word_to_address(word: str) -> str:
    return "0x" + word[-40:]


def parse_receipt(receipt: Any, block_timestamp: int | None, nft_contract: str) -> TxResult:
    """
    Turn a transaction receipt into a TxResult.

    A successful mint is an ERC-721 Transfer from the zero address emitted by
    ``nft_contract``; the receiver becomes the owner and the third topic the
    token id.
    """
    tx = "0x" + _hex(_get(receipt, "transactionHash"))
    assigned_on = (
        datetime.fromtimestamp(int(block_timestamp), tz=timezone.utc) if block_timestamp is not None else None
    )
    status = _receipt_status(receipt)
    if status != 1:
        return TxResult(tx=tx, success=False, assigned_on=assigned_on, error=f"transaction reverted status={status}")

    contract = _hex(nft_contract)
    mismatched = False
    for log in _get(receipt, "logs") or []:
        topics = [_hex(topic) for topic in (_get(log, "topics") or [])]
        if len(topics) != 4 or topics[0] != TRANSFER_TOPIC:
            continue
        if topics[1] != ZERO_WORD:
            continue
        if contract and _hex(_get(log, "address")) != contract:
            mismatched = True
            continue
        return TxResult(
            tx=tx,
            success=True,
            wallet_address=_word_to_address(topics[2]),
            token_id=str(int(topics[3], 16)),
            assigned_on=assigned_on,
        )

    if mismatched:
        return TxResult(tx=tx, success=False, assigned_on=assigned_on, error="contract mismatch")
    return TxResult(tx=tx, success=False, assigned_on=assigned_on, error="Unable to find event")


@dataclass
class ReconcileSummary:
    checked: int = 0
    pending: int = 0
    confirmed: int = 0
    failed: int = 0
    skipped: list[str] = field(default_factory=list)


class Reconciler:
    """Polls receipts for in-flight submissions and feeds the outcomes to the lifecycle tracker."""

    def __init__(
        self,
        config: ReservationConfig,
        storage: Storage,
        tracker: MintLifecycleTracker | None = None,
        w3: Any = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.tracker = tracker or MintLifecycleTracker(storage)
        self._w3 = w3

    def _web3(self):
        if self._w3 is not None:
            return self._w3
        try:
            from web3 import Web3
        except Exception as exc:
            raise RuntimeError("web3 is required for reconciliation. Install with `pip install web3`.") from exc

        provider = Web3.HTTPProvider(self.config.rpc_url, request_kwargs={"timeout": 15})
        self._w3 = Web3(provider)
        return self._w3

    def _read_receipt(self, tx_hash: str) -> Any | None:
        w3 = self._web3()
        try:
            return w3.eth.get_transaction_receipt(tx_hash)
        except Exception as exc:
            text = str(exc).lower()
            if exc.__class__.__name__ == "TransactionNotFound" or "not found" in text:
                return None
            raise

    def _block_timestamp(self, receipt: Any) -> int | None:
        block_number = _get(receipt, "blockNumber")
        if block_number is None:
            return None
        block = self._web3().eth.get_block(block_number)
        timestamp = _get(block, "timestamp")
        return None if timestamp is None else int(timestamp)

    def run_once(self, limit: int | None = None) -> ReconcileSummary:
        summary = ReconcileSummary()
        with store_errors("pending_tx_hashes"):
            pending = self.storage.pending_tx_hashes(limit or self.config.reconcile_limit)
        for tx_hash in pending:
            summary.checked += 1
            receipt = self._read_receipt(tx_hash)
            if receipt is None:
                summary.pending += 1
                LOGGER.debug("receipt_pending tx=%s", tx_hash)
                continue
            result = parse_receipt(receipt, self._block_timestamp(receipt), self.config.nft_contract)
            # The stored hash is the lookup key, whatever casing the node echoes back.
            result.tx = tx_hash
            try:
                self.tracker.apply_tx_result(result)
            except (NotFound, AlreadyProcessed) as exc:
                LOGGER.warning("reconcile_skipped tx=%s reason=%s", tx_hash, exc.message)
                summary.skipped.append(tx_hash)
                continue
            if result.success:
                summary.confirmed += 1
            else:
                summary.failed += 1
        LOGGER.info(
            "reconcile_done checked=%s pending=%s confirmed=%s failed=%s skipped=%s",
            summary.checked,
            summary.pending,
            summary.confirmed,
            summary.failed,
            len(summary.skipped),
        )
        return summary
