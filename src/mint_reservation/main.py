from __future__ import annotations

import argparse
from dataclasses import asdict, replace
from datetime import timedelta
import json
import logging
from pathlib import Path
from typing import Any, Iterable

from mint_reservation.auth import MetadataSigner, SignatureVerifier
from mint_reservation.config import ReservationConfig, load_config
from mint_reservation.errors import ReservationError, ValidationError, store_errors
from mint_reservation.models import (
    AssignOwnerRequest,
    NewItemRequest,
    NewReservationRequest,
    parse_ts,
    utc_now,
)
from mint_reservation.reconcile import Reconciler
from mint_reservation.service import ReservationService
from mint_reservation.storage import Storage

LOGGER = logging.getLogger("mint_reservation")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "urllib3", "web3"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _open_storage(config: ReservationConfig) -> Storage:
    return Storage(config.database_path, timeout_seconds=config.db_timeout_seconds)


def _build_service(config: ReservationConfig, storage: Storage) -> ReservationService:
    verifier = SignatureVerifier.from_config(config)
    signer = MetadataSigner(config.signing_key) if config.signing_key else None
    return ReservationService(config, storage, verifier, signer)


def _load_items_file(path: Path) -> list[dict[str, Any]]:
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    if not all(isinstance(row, dict) for row in rows):
        raise ValidationError("item file must hold JSON objects")
    return rows


def _init_db_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    storage = _open_storage(config)
    storage.close()
    LOGGER.info("database_ready path=%s", config.database_path)
    return 0


def _load_items_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    rows = _load_items_file(Path(args.file))
    requests = [NewItemRequest.from_dict(row) for row in rows]
    storage = _open_storage(config)
    try:
        with store_errors("load_items"):
            with storage.transaction():
                ids = [storage.insert_item(request) for request in requests]
    finally:
        storage.close()
    LOGGER.info("items_loaded count=%s file=%s", len(ids), args.file)
    _print({"loaded": len(ids), "ids": ids})
    return 0


def _add_stage_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    if bool(args.attribute_type) != (args.attribute_value is not None):
        raise ValidationError("--attribute-type and --attribute-value go together")
    storage = _open_storage(config)
    try:
        with store_errors("add_stage"):
            stage_id = storage.insert_stage(
                code=args.code,
                name=args.name or args.code,
                attribute_type=args.attribute_type,
                attribute_value=args.attribute_value,
                is_default=args.default,
                stage_free=args.free,
                stage_open=parse_ts(args.open) or utc_now(),
                stage_close=parse_ts(args.close),
            )
    finally:
        storage.close()
    _print({"stage_id": stage_id, "code": args.code})
    return 0


def _allocate_wallet_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    if args.count < 0:
        raise ValidationError("--count must be >= 0")
    storage = _open_storage(config)
    try:
        with store_errors("allocate_wallet"):
            stage = storage.get_stage(args.stage)
            if stage is None:
                raise ValidationError(f"unknown stage {args.stage!r}")
            storage.upsert_allocation(args.wallet, stage.id, args.count)
            allocation = storage.get_allocation(args.wallet, stage.id)
    finally:
        storage.close()
    _print(asdict(allocation) if allocation else {})
    return 0


def _reserve_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    minutes = args.minutes if args.minutes is not None else config.max_reservation_minutes
    request = NewReservationRequest(
        wallet_address=args.wallet,
        reserved_until=utc_now() + timedelta(minutes=minutes),
    )
    storage = _open_storage(config)
    try:
        response = _build_service(config, storage).new_reservation(request, args.signature)
    finally:
        storage.close()
    _print(response.to_dict())
    return 0


def _status_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    storage = _open_storage(config)
    try:
        service = _build_service(config, storage)
        if args.wallet:
            _print([reservation.to_dict() for reservation in service.reservations_for_wallet(args.wallet)])
        elif args.item:
            _print(asdict(service.item(args.item)))
        else:
            _print(
                {
                    "tally": [asdict(row) for row in service.tally()],
                    "stages": [asdict(row) for row in service.stage_stats()],
                }
            )
    finally:
        storage.close()
    return 0


def _in_process_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    storage = _open_storage(config)
    try:
        service = _build_service(config, storage)
        if args.mint_run == "in-process":
            _print([{"item_id": item_id, "tx_hash": tx} for item_id, tx in service.mint_run_in_process(args.limit)])
        elif args.mint_run == "reserved":
            _print(service.mint_run_reserved(args.limit))
        elif args.mint_run == "stuck":
            _print([row.to_dict() for row in service.mint_run_stuck(args.limit)])
        else:
            _print(service.in_process(args.limit))
    finally:
        storage.close()
    return 0


def _reconcile_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    if not config.nft_contract:
        LOGGER.warning("NFT_CONTRACT not set, accepting Transfer events from any contract")
    storage = _open_storage(config)
    try:
        summary = Reconciler(config, storage).run_once(args.limit)
    finally:
        storage.close()
    _print(asdict(summary))
    return 0


def _free_stage_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    storage = _open_storage(config)
    try:
        generated = _build_service(config, storage).free_stage(args.stage, args.signature)
    finally:
        storage.close()
    _print([row.to_dict() for row in generated])
    return 0


def _assign_owner_command(args: argparse.Namespace, config: ReservationConfig) -> int:
    request = AssignOwnerRequest(wallet_address=args.wallet, token_id=args.token)
    storage = _open_storage(config)
    try:
        item = _build_service(config, storage).assign_owner(request, args.signature)
    finally:
        storage.close()
    _print(asdict(item))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mint_reservation", description="NFT reservation and mint lifecycle engine"
    )
    parser.add_argument("--db", default=None, help="SQLite path (overrides RESERVATION_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create the database schema")
    init_db.set_defaults(func=_init_db_command)

    load_items = sub.add_parser("load-items", help="Insert items from a JSON array or JSON-lines file")
    load_items.add_argument("file")
    load_items.set_defaults(func=_load_items_command)

    add_stage = sub.add_parser("add-stage", help="Create a whitelist stage")
    add_stage.add_argument("--code", required=True)
    add_stage.add_argument("--name", default=None)
    add_stage.add_argument("--attribute-type", default=None)
    add_stage.add_argument("--attribute-value", default=None)
    add_stage.add_argument("--default", action="store_true", help="Open to every wallet")
    add_stage.add_argument("--free", action="store_true", help="Only drawn through free-stage batches")
    add_stage.add_argument("--open", default=None, help="ISO-8601 opening time (default: now)")
    add_stage.add_argument("--close", default=None, help="ISO-8601 closing time")
    add_stage.set_defaults(func=_add_stage_command)

    allocate = sub.add_parser("allocate-wallet", help="Set a wallet's allocation in a stage")
    allocate.add_argument("--wallet", required=True)
    allocate.add_argument("--stage", required=True, help="Stage code")
    allocate.add_argument("--count", type=int, required=True)
    allocate.set_defaults(func=_allocate_wallet_command)

    reserve = sub.add_parser("reserve", help="Reserve one item for a wallet")
    reserve.add_argument("--wallet", required=True)
    reserve.add_argument("--minutes", type=int, default=None)
    reserve.add_argument("--signature", default=None)
    reserve.set_defaults(func=_reserve_command)

    status = sub.add_parser("status", help="Print tallies, a wallet's reservations, or one item")
    target = status.add_mutually_exclusive_group()
    target.add_argument("--wallet", default=None)
    target.add_argument("--item", default=None)
    status.set_defaults(func=_status_command)

    in_process = sub.add_parser("in-process", help="List submissions awaiting reconciliation")
    in_process.add_argument("--mint-run", choices=("in-process", "reserved", "stuck"), default=None)
    in_process.add_argument("--limit", type=int, default=None)
    in_process.set_defaults(func=_in_process_command)

    reconcile = sub.add_parser("reconcile", help="Check receipts of pending submissions once")
    reconcile.add_argument("--limit", type=int, default=None)
    reconcile.set_defaults(func=_reconcile_command)

    free_stage = sub.add_parser("free-stage", help="Batch-reserve a free stage for its allocated wallets")
    free_stage.add_argument("stage", help="Stage code")
    free_stage.add_argument("--signature", default=None)
    free_stage.set_defaults(func=_free_stage_command)

    assign_owner = sub.add_parser("assign-owner", help="Record an owner for a reserved token")
    assign_owner.add_argument("--wallet", required=True)
    assign_owner.add_argument("--token", required=True)
    assign_owner.add_argument("--signature", default=None)
    assign_owner.set_defaults(func=_assign_owner_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    config = load_config()
    if args.db:
        config = replace(config, database_path=args.db)
    _setup_logging(config.log_level)
    try:
        return int(args.func(args, config))
    except ReservationError as exc:
        LOGGER.error("%s failed code=%s: %s", args.command, exc.code, exc.message)
        _print(exc.to_dict())
        return 2
    except (ValueError, RuntimeError, OSError) as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 2


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
