from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import hashlib
from pathlib import Path
import sqlite3
from typing import Any, Iterator
import uuid

from mint_reservation.models import (
    AttributeMatch,
    Item,
    ItemTally,
    Metadata,
    MintReservation,
    NameMatch,
    NewItemRequest,
    Reservation,
    Stage,
    StagePredicate,
    WalletTierAllocation,
    compact_json,
    format_ts,
    parse_ts,
)

ITEM_COLUMNS = """
    id, name, meta_data, assigned, reserved, reserved_to_wallet_address,
    reserved_until, in_process, in_mint_run, has_submit_error, tx_hash,
    signed_tx, tx_error, tx_retry_count, assigned_to_wallet_address,
    assigned_on, token_id
"""

STAGE_COLUMNS = """
    id, code, name, attribute_type, attribute_value, is_default, stage_free,
    stage_open, stage_close
"""


def claim_rank(seed: float, item_id: str) -> int:
    digest = hashlib.sha256(f"{seed!r}:{item_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:7], "big")


def _available_clause(alias: str) -> str:
    return (
        f"{alias}.assigned = 0 AND {alias}.in_process = 0 AND {alias}.has_submit_error = 0 "
        f"AND ({alias}.reserved = 0 OR {alias}.reserved_until IS NULL OR {alias}.reserved_until <= ?)"
    )


def _predicate_clause(predicate: StagePredicate, alias: str) -> tuple[str, list[Any]]:
    if isinstance(predicate, AttributeMatch):
        return (
            f"""EXISTS (
                SELECT 1 FROM json_each({alias}.meta_data, '$.attributes') AS attr
                WHERE json_extract(attr.value, '$.trait_type') = ?
                  AND CAST(json_extract(attr.value, '$.value') AS TEXT) = ?
            )""",
            [predicate.trait_type, predicate.value],
        )
    if isinstance(predicate, NameMatch):
        return f"{alias}.name = ?", [predicate.name]
    return "1 = 1", []


class Storage:
    def __init__(self, database_path: str, timeout_seconds: float = 30.0) -> None:
        self.path = database_path
        if database_path != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            database_path,
            timeout=timeout_seconds,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.create_function("claim_rank", 2, claim_rank, deterministic=True)
        if database_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS item (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              meta_data TEXT NOT NULL,
              svg TEXT,
              ipfs_image TEXT NOT NULL DEFAULT '',
              ipfs_meta TEXT NOT NULL DEFAULT '',
              image_data TEXT,
              external_url TEXT,
              description TEXT,
              background_color TEXT,
              animation_url TEXT,
              youtube_url TEXT,
              assigned INTEGER NOT NULL DEFAULT 0,
              reserved INTEGER NOT NULL DEFAULT 0,
              reserved_to_wallet_address TEXT,
              reserved_until TEXT,
              in_process INTEGER NOT NULL DEFAULT 0,
              in_mint_run INTEGER NOT NULL DEFAULT 0,
              has_submit_error INTEGER NOT NULL DEFAULT 0,
              tx_hash TEXT,
              signed_tx TEXT,
              tx_error TEXT,
              tx_retry_count INTEGER NOT NULL DEFAULT 0,
              assigned_to_wallet_address TEXT,
              assigned_on TEXT,
              token_id TEXT
            );

            CREATE INDEX IF NOT EXISTS item_reserved_to ON item (reserved_to_wallet_address);
            CREATE INDEX IF NOT EXISTS item_assigned_to ON item (assigned_to_wallet_address);
            CREATE INDEX IF NOT EXISTS item_tx_hash ON item (tx_hash);

            CREATE TABLE IF NOT EXISTS stage (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              code TEXT NOT NULL UNIQUE,
              name TEXT NOT NULL,
              attribute_type TEXT,
              attribute_value TEXT,
              is_default INTEGER NOT NULL DEFAULT 0,
              stage_free INTEGER NOT NULL DEFAULT 0,
              stage_open TEXT,
              stage_close TEXT
            );

            CREATE TABLE IF NOT EXISTS wallet_tier_allocation (
              wallet_address TEXT NOT NULL,
              stage_id INTEGER NOT NULL REFERENCES stage (id),
              allocation_count INTEGER NOT NULL,
              reserved_count INTEGER NOT NULL DEFAULT 0,
              assigned_count INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (wallet_address, stage_id)
            );
            """
        )

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Immediate (write-locked) transaction; rolls back on any exception."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        return Item(
            id=str(row["id"]),
            name=str(row["name"]),
            metadata=Metadata.from_dict(row["meta_data"]),
            assigned=bool(row["assigned"]),
            reserved=bool(row["reserved"]),
            reserved_to_wallet_address=row["reserved_to_wallet_address"],
            reserved_until=parse_ts(row["reserved_until"]),
            in_process=bool(row["in_process"]),
            in_mint_run=bool(row["in_mint_run"]),
            has_submit_error=bool(row["has_submit_error"]),
            tx_hash=row["tx_hash"],
            signed_tx=row["signed_tx"],
            tx_error=row["tx_error"],
            tx_retry_count=int(row["tx_retry_count"] or 0),
            assigned_to_wallet_address=row["assigned_to_wallet_address"],
            assigned_on=parse_ts(row["assigned_on"]),
            token_id=row["token_id"],
        )

    @staticmethod
    def _row_to_stage(row: sqlite3.Row) -> Stage:
        return Stage(
            id=int(row["id"]),
            code=str(row["code"]),
            name=str(row["name"]),
            attribute_type=row["attribute_type"],
            attribute_value=row["attribute_value"],
            is_default=bool(row["is_default"]),
            stage_free=bool(row["stage_free"]),
            stage_open=parse_ts(row["stage_open"]),
            stage_close=parse_ts(row["stage_close"]),
        )

    # -- items ---------------------------------------------------------------

    def insert_item(self, request: NewItemRequest) -> str:
        metadata = Metadata.from_dict(request.meta)
        item_id = str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO item (
              id, name, meta_data, svg, ipfs_image, ipfs_meta, image_data,
              external_url, description, background_color, animation_url,
              youtube_url
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item_id,
                request.name,
                compact_json(metadata.to_dict()),
                None if request.svg is None else compact_json(request.svg),
                request.ipfs_image,
                request.ipfs_meta,
                request.image_data,
                request.external_url,
                request.description,
                request.background_color,
                request.animation_url,
                request.youtube_url,
            ),
        )
        return item_id

    def get_item(self, item_id: str) -> Item | None:
        row = self.conn.execute(
            f"SELECT {ITEM_COLUMNS} FROM item WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_item(row) if row else None

    def items_by_tx_hash(self, tx_hash: str) -> list[Item]:
        rows = self.conn.execute(
            f"SELECT {ITEM_COLUMNS} FROM item WHERE tx_hash = ?", (tx_hash,)
        ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def items_for_owner_token(self, wallet_address: str, token_id: str) -> list[Item]:
        rows = self.conn.execute(
            f"""
            SELECT {ITEM_COLUMNS} FROM item
            WHERE reserved_to_wallet_address = ? AND (name = ? OR token_id = ?)
            """,
            (wallet_address, token_id, token_id),
        ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_active_holds(self, wallet_address: str, now: datetime) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM item
            WHERE (
                reserved_to_wallet_address = ?
                AND ((reserved = 1 AND reserved_until > ?) OR in_process = 1)
              )
              OR assigned_to_wallet_address = ?
            """,
            (wallet_address, format_ts(now), wallet_address),
        ).fetchone()
        return int(row["n"])

    # -- stages and allocations ----------------------------------------------

    def insert_stage(
        self,
        *,
        code: str,
        name: str,
        attribute_type: str | None = None,
        attribute_value: str | None = None,
        is_default: bool = False,
        stage_free: bool = False,
        stage_open: datetime | None = None,
        stage_close: datetime | None = None,
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO stage (
              code, name, attribute_type, attribute_value, is_default,
              stage_free, stage_open, stage_close
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                code,
                name,
                attribute_type,
                attribute_value,
                1 if is_default else 0,
                1 if stage_free else 0,
                format_ts(stage_open),
                format_ts(stage_close),
            ),
        )
        return int(cursor.lastrowid)

    def get_stage(self, code: str) -> Stage | None:
        row = self.conn.execute(
            f"SELECT {STAGE_COLUMNS} FROM stage WHERE code = ?", (code,)
        ).fetchone()
        return self._row_to_stage(row) if row else None

    def list_stages(self) -> list[Stage]:
        rows = self.conn.execute(f"SELECT {STAGE_COLUMNS} FROM stage ORDER BY id").fetchall()
        return [self._row_to_stage(row) for row in rows]

    def open_stages_with_capacity(self, wallet_address: str, now: datetime) -> list[Stage]:
        ts = format_ts(now)
        rows = self.conn.execute(
            f"""
            SELECT {", ".join("s." + col.strip() for col in STAGE_COLUMNS.split(","))}
            FROM stage AS s
            JOIN wallet_tier_allocation AS w ON w.stage_id = s.id
            WHERE w.wallet_address = ?
              AND w.allocation_count > w.reserved_count + w.assigned_count
              AND s.is_default = 0
              AND s.stage_free = 0
              AND s.stage_open < ?
              AND (s.stage_close IS NULL OR s.stage_close > ?)
            ORDER BY s.id
            """,
            (wallet_address, ts, ts),
        ).fetchall()
        return [self._row_to_stage(row) for row in rows]

    def open_default_stage(self, now: datetime) -> Stage | None:
        ts = format_ts(now)
        row = self.conn.execute(
            f"""
            SELECT {STAGE_COLUMNS} FROM stage
            WHERE is_default = 1
              AND stage_open < ?
              AND (stage_close IS NULL OR stage_close > ?)
            ORDER BY stage_open DESC, id DESC
            LIMIT 1
            """,
            (ts, ts),
        ).fetchone()
        return self._row_to_stage(row) if row else None

    def upsert_allocation(self, wallet_address: str, stage_id: int, allocation_count: int) -> None:
        self.conn.execute(
            """
            INSERT INTO wallet_tier_allocation (wallet_address, stage_id, allocation_count)
            VALUES (?, ?, ?)
            ON CONFLICT(wallet_address, stage_id) DO UPDATE SET
              allocation_count = excluded.allocation_count
            """,
            (wallet_address, int(stage_id), int(allocation_count)),
        )

    def get_allocation(self, wallet_address: str, stage_id: int) -> WalletTierAllocation | None:
        row = self.conn.execute(
            """
            SELECT wallet_address, stage_id, allocation_count, reserved_count, assigned_count
            FROM wallet_tier_allocation
            WHERE wallet_address = ? AND stage_id = ?
            """,
            (wallet_address, int(stage_id)),
        ).fetchone()
        return WalletTierAllocation(**dict(row)) if row else None

    def allocations_for_stage(self, stage_id: int) -> list[WalletTierAllocation]:
        rows = self.conn.execute(
            """
            SELECT wallet_address, stage_id, allocation_count, reserved_count, assigned_count
            FROM wallet_tier_allocation
            WHERE stage_id = ?
            ORDER BY wallet_address
            """,
            (int(stage_id),),
        ).fetchall()
        return [WalletTierAllocation(**dict(row)) for row in rows]

    def increment_reserved_count(self, wallet_address: str, stage_id: int, amount: int) -> int:
        cursor = self.conn.execute(
            """
            UPDATE wallet_tier_allocation
            SET reserved_count = reserved_count + ?
            WHERE wallet_address = ? AND stage_id = ?
            """,
            (int(amount), wallet_address, int(stage_id)),
        )
        return cursor.rowcount

    # -- claim ---------------------------------------------------------------

    def claim_items(
        self,
        *,
        wallet_address: str,
        predicate: StagePredicate,
        count: int,
        reserved_until: datetime,
        in_mint_run: bool,
        seed: float,
        now: datetime,
    ) -> list[tuple[str, str, Metadata]]:
        """
        Atomically claim up to ``count`` available items matching ``predicate``.

        Selection and marking happen in one UPDATE statement under an
        immediate transaction, so concurrent callers never receive the same
        row. Candidates are ordered by ``claim_rank(seed, id)``.
        """
        predicate_sql, predicate_params = _predicate_clause(predicate, "cand")
        sql = f"""
            UPDATE item
            SET reserved = 1,
                reserved_to_wallet_address = ?,
                reserved_until = ?,
                in_mint_run = ?
            WHERE id IN (
                SELECT cand.id FROM item AS cand
                WHERE {_available_clause("cand")}
                  AND {predicate_sql}
                ORDER BY claim_rank(?, cand.id)
                LIMIT ?
            )
            RETURNING id, name, meta_data
        """
        params: list[Any] = [
            wallet_address,
            format_ts(reserved_until),
            1 if in_mint_run else 0,
            format_ts(now),
            *predicate_params,
            seed,
            int(count),
        ]
        with self.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(str(row["id"]), str(row["name"]), Metadata.from_dict(row["meta_data"])) for row in rows]

    # -- lifecycle -----------------------------------------------------------

    def mark_submitted(
        self,
        *,
        item_id: str,
        wallet_address: str,
        tx_hash: str | None,
        signed_tx: str | None,
        now: datetime,
    ) -> int:
        cursor = self.conn.execute(
            """
            UPDATE item
            SET in_process = 1, tx_hash = ?, signed_tx = ?, tx_error = NULL
            WHERE id = ?
              AND assigned = 0
              AND reserved = 1
              AND reserved_to_wallet_address = ?
              AND (has_submit_error = 1 OR reserved_until > ?)
            """,
            (tx_hash, signed_tx, item_id, wallet_address, format_ts(now)),
        )
        return cursor.rowcount

    def mark_assigned(
        self,
        *,
        item_id: str,
        wallet_address: str,
        token_id: str | None,
        assigned_on: datetime,
    ) -> int:
        cursor = self.conn.execute(
            """
            UPDATE item
            SET assigned = 1,
                reserved = 0,
                in_process = 0,
                has_submit_error = 0,
                tx_error = NULL,
                assigned_to_wallet_address = ?,
                assigned_on = ?,
                token_id = ?
            WHERE id = ? AND assigned = 0
            """,
            (wallet_address, format_ts(assigned_on), token_id, item_id),
        )
        return cursor.rowcount

    def mark_submit_error(self, *, item_id: str, error: str) -> int:
        cursor = self.conn.execute(
            """
            UPDATE item
            SET has_submit_error = 1,
                tx_error = ?,
                tx_retry_count = tx_retry_count + 1
            WHERE id = ? AND assigned = 0 AND tx_error IS NULL
            """,
            (error, item_id),
        )
        return cursor.rowcount

    # -- listings ------------------------------------------------------------

    def reservations_for_wallet(self, wallet_address: str, now: datetime) -> list[Reservation]:
        rows = self.conn.execute(
            f"""
            SELECT {ITEM_COLUMNS} FROM item
            WHERE (
                reserved_to_wallet_address = ?
                AND ((reserved = 1 AND reserved_until > ?) OR in_process = 1)
              )
              OR assigned_to_wallet_address = ?
            ORDER BY reserved_until
            """,
            (wallet_address, format_ts(now), wallet_address),
        ).fetchall()
        reservations: list[Reservation] = []
        for row in rows:
            item = self._row_to_item(row)
            held = item.reserved_to_wallet_address == wallet_address
            reservations.append(
                Reservation(
                    wallet_address=wallet_address,
                    item_id=item.id,
                    reserved=item.reserved if held else False,
                    reserved_until=item.reserved_until if held else None,
                    assigned=item.assigned,
                    in_process=item.in_process,
                    assigned_on=item.assigned_on,
                    has_submit_error=item.has_submit_error,
                    tx_hash=item.tx_hash,
                    tx_error=item.tx_error,
                    tx_retry_count=item.tx_retry_count,
                    token_id=item.token_id,
                )
            )
        return reservations

    def pending_tx_hashes(self, limit: int) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT tx_hash FROM item
            WHERE in_process = 1 AND assigned = 0
              AND tx_hash IS NOT NULL AND tx_error IS NULL
            ORDER BY reserved_until
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [str(row["tx_hash"]) for row in rows]

    def mint_run_in_process(self, limit: int) -> list[tuple[str, str]]:
        rows = self.conn.execute(
            """
            SELECT id, tx_hash FROM item
            WHERE in_mint_run = 1 AND in_process = 1 AND assigned = 0
              AND tx_hash IS NOT NULL
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [(str(row["id"]), str(row["tx_hash"])) for row in rows]

    def mint_run_reserved(self, limit: int, now: datetime) -> list[str]:
        rows = self.conn.execute(
            """
            SELECT id FROM item
            WHERE in_mint_run = 1 AND reserved = 1 AND in_process = 0 AND assigned = 0
              AND reserved_until > ?
            LIMIT ?
            """,
            (format_ts(now), int(limit)),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def mint_run_stuck(self, limit: int) -> list[MintReservation]:
        rows = self.conn.execute(
            f"""
            SELECT {ITEM_COLUMNS} FROM item
            WHERE in_mint_run = 1 AND has_submit_error = 1 AND assigned = 0
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        stuck: list[MintReservation] = []
        for row in rows:
            item = self._row_to_item(row)
            stuck.append(
                MintReservation(
                    wallet_address=item.reserved_to_wallet_address or "",
                    item_id=item.id,
                    name=item.name,
                    metadata=item.metadata,
                    tx_hash=item.tx_hash,
                    tx_error=item.tx_error,
                )
            )
        return stuck

    def tally(self) -> list[ItemTally]:
        rows = self.conn.execute(
            """
            SELECT assigned, reserved, COUNT(*) AS n FROM item
            GROUP BY assigned, reserved
            ORDER BY assigned, reserved
            """
        ).fetchall()
        return [
            ItemTally(assigned=bool(row["assigned"]), reserved=bool(row["reserved"]), count=int(row["n"]))
            for row in rows
        ]

    def predicate_tally(self, predicate: StagePredicate) -> tuple[int, int, int]:
        predicate_sql, params = _predicate_clause(predicate, "cand")
        row = self.conn.execute(
            f"""
            SELECT COALESCE(SUM(cand.assigned), 0) AS assigned,
                   COALESCE(SUM(cand.reserved), 0) AS reserved,
                   COUNT(*) AS n
            FROM item AS cand
            WHERE {predicate_sql}
            """,
            params,
        ).fetchone()
        return int(row["assigned"]), int(row["reserved"]), int(row["n"])

