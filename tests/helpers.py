from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
import tempfile
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from mint_reservation.config import load_config  # noqa: E402
from mint_reservation.models import NewItemRequest, Stage, format_ts  # noqa: E402
from mint_reservation.storage import Storage  # noqa: E402

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_config(**kwargs):
    cfg = load_config()
    defaults = {
        "database_path": ":memory:",
        "max_reservations": 3,
        "max_reservation_minutes": 30,
        "debug_ignore_signatures": False,
        "verification_address": "",
        "signing_key": "",
        "wallet_prefix": "terra",
        "wallet_length": 44,
        "nft_contract": "",
    }
    defaults.update(kwargs)
    return replace(cfg, **defaults)


def wallet(n: int) -> str:
    return f"terra{n:039d}"


def temp_db_path(case: unittest.TestCase) -> str:
    tmp = tempfile.TemporaryDirectory()
    case.addCleanup(tmp.cleanup)
    return str(Path(tmp.name) / "reservation.db")


def temp_storage(case: unittest.TestCase, path: str | None = None) -> Storage:
    storage = Storage(path or temp_db_path(case))
    case.addCleanup(storage.close)
    return storage


def add_item(storage: Storage, name: str, **traits: str) -> str:
    meta = {
        "name": name,
        "attributes": [{"trait_type": key, "value": value} for key, value in traits.items()],
    }
    return storage.insert_item(NewItemRequest(name=name, meta=meta))


def add_stage(
    storage: Storage,
    code: str,
    *,
    opened: datetime | None = None,
    closes: datetime | None = None,
    **kwargs,
) -> Stage:
    storage.insert_stage(
        code=code,
        name=kwargs.pop("name", code.title()),
        stage_open=opened or NOW - timedelta(hours=1),
        stage_close=closes,
        **kwargs,
    )
    stage = storage.get_stage(code)
    assert stage is not None
    return stage


def reserve(storage: Storage, item_id: str, wallet_address: str, until: datetime) -> None:
    """Put an item straight into the Reserved state, bypassing allocation."""
    storage.conn.execute(
        """
        UPDATE item SET reserved = 1, reserved_to_wallet_address = ?, reserved_until = ?
        WHERE id = ?
        """,
        (wallet_address, format_ts(until), item_id),
    )
