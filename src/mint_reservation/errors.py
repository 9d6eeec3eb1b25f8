from __future__ import annotations

from contextlib import contextmanager
import logging
import sqlite3
from typing import Any, Iterator

LOGGER = logging.getLogger("mint_reservation.errors")

NO_INVENTORY_CODE = 444


class ReservationError(Exception):
    status = 500
    code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(ReservationError):
    status = 400
    code = 400


class SignatureError(ReservationError):
    status = 403
    code = 403


class QuotaExceeded(ReservationError):
    status = 403
    code = 403

    def __init__(self, message: str = "Reservation limit exceeded") -> None:
        super().__init__(message)


class NoStagesOpen(ReservationError):
    code = NO_INVENTORY_CODE

    def __init__(self, message: str = "No NFTs available for reservation at this time (no stage open)") -> None:
        super().__init__(message)


class NoInventory(ReservationError):
    code = NO_INVENTORY_CODE

    def __init__(self, message: str = "No NFTs available for reservation at this time") -> None:
        super().__init__(message)


class NotReservedToWallet(ReservationError):
    status = 401
    code = 401


class NotFound(ReservationError):
    status = 404
    code = 404


class AlreadyProcessed(ReservationError):
    status = 409
    code = 409


class StoreError(ReservationError):
    status = 500
    code = 500


class SigningUnavailable(ReservationError):
    status = 503
    code = 503

    def __init__(self, message: str = "RESERVATION_SIGNING_KEY is required to sign metadata") -> None:
        super().__init__(message)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        LOGGER.error("store_error op=%s error=%s", operation, exc)
        raise StoreError(str(exc)) from exc
