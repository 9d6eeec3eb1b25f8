from __future__ import annotations

import logging

from eth_account import Account
from eth_account.messages import encode_defunct

from mint_reservation.config import ReservationConfig
from mint_reservation.errors import SignatureError, ValidationError
from mint_reservation.models import Metadata, MetadataResponse, compact_json

LOGGER = logging.getLogger("mint_reservation.auth")


def is_valid_address(wallet_address: str, prefix: str, length: int) -> bool:
    return len(wallet_address) == length and wallet_address.startswith(prefix)


def require_valid_address(wallet_address: str, prefix: str, length: int) -> None:
    if not is_valid_address(wallet_address, prefix, length):
        raise ValidationError(f"Expecting wallet address '{prefix}....'")


def _normalize_address(value: str) -> str:
    return value.strip().lower()


class SignatureVerifier:
    """
    Checks request signatures against the configured signer address.

    Built once at startup and handed to whatever needs it; holds no global
    state. With ``ignore_signatures`` every check passes with a warning.
    """

    def __init__(self, expected_address: str, ignore_signatures: bool = False) -> None:
        self.expected_address = expected_address
        self.ignore_signatures = ignore_signatures

    @classmethod
    def from_config(cls, config: ReservationConfig) -> "SignatureVerifier":
        if config.debug_ignore_signatures:
            LOGGER.error("RUNNING IN DEBUG MODE: signature verification omitted")
        elif not config.verification_address:
            LOGGER.warning("RESERVATION_AUTH_ADDRESS not set, signed requests will be rejected")
        return cls(config.verification_address, ignore_signatures=config.debug_ignore_signatures)

    def verify(self, payload: str, signature: str | None) -> None:
        if self.ignore_signatures:
            LOGGER.warning("IGNORING SIGNATURES")
            return
        if not self.expected_address:
            raise SignatureError("no verification address configured")
        if not signature:
            raise SignatureError("missing signature")
        try:
            signer = Account.recover_message(encode_defunct(text=payload), signature=signature)
        except Exception as exc:
            LOGGER.warning("signature_invalid error=%s", exc)
            raise SignatureError(f"invalid signature: {exc}") from exc
        if _normalize_address(signer) != _normalize_address(self.expected_address):
            LOGGER.warning("signature_failed payload=%s signer=%s", payload, signer)
            raise SignatureError("signature does not match verification key")


def sign_payload(private_key: str, payload: str) -> str:
    signed = Account.sign_message(encode_defunct(text=payload), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


class MetadataSigner:
    """Signs ``{wallet}/{attributes}`` so the mint contract can trust the metadata."""

    def __init__(self, private_key: str) -> None:
        if not private_key:
            raise ValueError("RESERVATION_SIGNING_KEY is required to sign metadata")
        self._private_key = private_key
        self.address = Account.from_key(private_key).address

    def build_metadata_response(self, wallet_address: str, metadata: Metadata) -> MetadataResponse:
        attributes = compact_json(metadata.to_dict())
        signature = sign_payload(self._private_key, f"{wallet_address}/{attributes}")
        return MetadataResponse(attributes=attributes, signature=signature)
