from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import os

from dotenv import load_dotenv

DEFAULT_WALLET_PREFIX = "terra"
DEFAULT_WALLET_LENGTH = 44


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ReservationConfig:
    database_path: str
    db_timeout_seconds: float

    max_reservations: int
    max_reservation_minutes: int
    reconcile_limit: int

    debug_ignore_signatures: bool
    verification_address: str
    signing_key: str

    wallet_prefix: str
    wallet_length: int

    rpc_url: str
    chain_id: int
    nft_contract: str

    log_level: str

    @property
    def max_reservation_duration(self) -> timedelta:
        return timedelta(minutes=self.max_reservation_minutes)


def load_config() -> ReservationConfig:
    load_dotenv(override=False)
    return ReservationConfig(
        database_path=os.getenv("RESERVATION_DB_PATH", "data/reservation.db"),
        db_timeout_seconds=float(_env_int("DB_TIMEOUT_SECONDS", 30)),
        max_reservations=max(1, _env_int("MAX_RESERVATIONS", 3)),
        max_reservation_minutes=max(1, _env_int("MAX_RESERVATION_DURATION", 30)),
        reconcile_limit=max(1, _env_int("RECONCILE_LIMIT", 100)),
        debug_ignore_signatures=_env_flag("DEBUG_IGNORE_SIG"),
        verification_address=os.getenv("RESERVATION_AUTH_ADDRESS", "").strip(),
        signing_key=os.getenv("RESERVATION_SIGNING_KEY", "").strip(),
        wallet_prefix=os.getenv("WALLET_PREFIX", DEFAULT_WALLET_PREFIX).strip(),
        wallet_length=_env_int("WALLET_LENGTH", DEFAULT_WALLET_LENGTH),
        rpc_url=os.getenv("RPC_URL", "http://127.0.0.1:8545").strip(),
        chain_id=_env_int("CHAIN_ID", 1),
        nft_contract=os.getenv("NFT_CONTRACT", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
