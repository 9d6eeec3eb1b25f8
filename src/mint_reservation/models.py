from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, TypeAlias

from mint_reservation.errors import ValidationError

PROMO_STAGE_CODE = "bagel"
PROMO_ITEM_NAME = "bagel"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_ts(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so stored timestamps compare lexicographically.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def compact_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


class ItemState(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    IN_PROCESS = "in_process"
    SUBMIT_ERROR = "submit_error"
    ASSIGNED = "assigned"


@dataclass(frozen=True)
class Trait:
    trait_type: str
    value: str

    @staticmethod
    def from_dict(raw: Any) -> "Trait":
        if not isinstance(raw, dict):
            raise ValidationError(f"attribute must be an object, got {type(raw).__name__}")
        trait_type = raw.get("trait_type")
        value = raw.get("value")
        if not isinstance(trait_type, str) or value is None:
            raise ValidationError("attribute requires trait_type and value")
        return Trait(trait_type=trait_type, value=str(value))


@dataclass
class Metadata:
    """Typed view of an item's ``meta_data`` JSON column."""

    name: str | None = None
    description: str | None = None
    image: str | None = None
    external_url: str | None = None
    attributes: list[Trait] = field(default_factory=list)

    @staticmethod
    def from_dict(raw: Any) -> "Metadata":
        if raw is None:
            return Metadata()
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"metadata is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValidationError("metadata must be a JSON object")
        attributes_raw = raw.get("attributes") or []
        if not isinstance(attributes_raw, list):
            raise ValidationError("metadata attributes must be a list")

        def _opt(key: str) -> str | None:
            value = raw.get(key)
            return None if value is None else str(value)

        return Metadata(
            name=_opt("name"),
            description=_opt("description"),
            image=_opt("image"),
            external_url=_opt("external_url"),
            attributes=[Trait.from_dict(attr) for attr in attributes_raw],
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in ("name", "description", "image", "external_url"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload["attributes"] = [asdict(attr) for attr in self.attributes]
        return payload


@dataclass
class Item:
    id: str
    name: str
    metadata: Metadata
    assigned: bool = False
    reserved: bool = False
    reserved_to_wallet_address: str | None = None
    reserved_until: datetime | None = None
    in_process: bool = False
    in_mint_run: bool = False
    has_submit_error: bool = False
    tx_hash: str | None = None
    signed_tx: str | None = None
    tx_error: str | None = None
    tx_retry_count: int = 0
    assigned_to_wallet_address: str | None = None
    assigned_on: datetime | None = None
    token_id: str | None = None

    def reservation_expired(self, now: datetime) -> bool:
        return self.reserved_until is None or self.reserved_until <= now

    def is_available(self, now: datetime) -> bool:
        if self.assigned or self.in_process or self.has_submit_error:
            return False
        return not self.reserved or self.reservation_expired(now)

    def holds_valid_reservation(self, wallet_address: str, now: datetime) -> bool:
        """A reservation under retry stays valid for its holder after expiry."""
        if self.assigned or not self.reserved:
            return False
        if self.reserved_to_wallet_address != wallet_address:
            return False
        return self.has_submit_error or not self.reservation_expired(now)

    def state(self, now: datetime) -> ItemState:
        if self.assigned:
            return ItemState.ASSIGNED
        if self.tx_error is not None:
            return ItemState.SUBMIT_ERROR
        if self.in_process:
            return ItemState.IN_PROCESS
        if self.reserved and not self.reservation_expired(now):
            return ItemState.RESERVED
        return ItemState.AVAILABLE


@dataclass(frozen=True)
class AttributeMatch:
    trait_type: str
    value: str


@dataclass(frozen=True)
class NameMatch:
    name: str


@dataclass(frozen=True)
class Unrestricted:
    pass


StagePredicate: TypeAlias = AttributeMatch | NameMatch | Unrestricted


@dataclass
class Stage:
    id: int
    code: str
    name: str
    attribute_type: str | None = None
    attribute_value: str | None = None
    is_default: bool = False
    stage_free: bool = False
    stage_open: datetime | None = None
    stage_close: datetime | None = None

    def is_open(self, now: datetime) -> bool:
        if self.stage_open is None or self.stage_open >= now:
            return False
        return self.stage_close is None or self.stage_close > now

    @property
    def predicate(self) -> StagePredicate:
        if self.code == PROMO_STAGE_CODE:
            return NameMatch(PROMO_ITEM_NAME)
        if self.attribute_type and self.attribute_value is not None:
            return AttributeMatch(self.attribute_type, self.attribute_value)
        return Unrestricted()


@dataclass
class WalletTierAllocation:
    wallet_address: str
    stage_id: int
    allocation_count: int
    reserved_count: int = 0
    assigned_count: int = 0

    @property
    def remaining(self) -> int:
        return self.allocation_count - self.reserved_count - self.assigned_count


@dataclass
class ClaimedItem:
    id: str
    name: str
    metadata: Metadata
    wallet_address: str
    stage_code: str


@dataclass
class TxResult:
    """One outcome of the transaction reconciliation feed."""

    tx: str
    success: bool
    wallet_address: str | None = None
    token_id: str | None = None
    assigned_on: datetime | None = None
    error: str | None = None

    def canonical(self) -> str:
        return compact_json(
            {
                "wallet_address": self.wallet_address,
                "assigned_on": format_ts(self.assigned_on),
                "tx": self.tx,
                "token_id": self.token_id,
                "success": self.success,
                "error": self.error,
            }
        )

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "TxResult":
        tx = raw.get("tx")
        if not isinstance(tx, str) or not tx:
            raise ValidationError("tx result requires a tx hash")
        token_id = raw.get("token_id")
        return TxResult(
            tx=tx,
            success=bool(raw.get("success")),
            wallet_address=raw.get("wallet_address"),
            token_id=None if token_id is None else str(token_id),
            assigned_on=parse_ts(raw.get("assigned_on")),
            error=raw.get("error"),
        )


@dataclass
class Reservation:
    wallet_address: str
    item_id: str
    reserved: bool
    reserved_until: datetime | None
    assigned: bool
    in_process: bool
    assigned_on: datetime | None
    has_submit_error: bool
    tx_hash: str | None
    tx_error: str | None
    tx_retry_count: int
    token_id: str | None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["reserved_until"] = format_ts(self.reserved_until)
        payload["assigned_on"] = format_ts(self.assigned_on)
        return payload


@dataclass
class MintReservation:
    wallet_address: str
    item_id: str
    name: str
    metadata: Metadata
    tx_hash: str | None = None
    tx_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["metadata"] = self.metadata.to_dict()
        return payload


@dataclass
class ItemTally:
    assigned: bool
    reserved: bool
    count: int


@dataclass
class StageTally:
    stage_id: int
    stage_code: str
    stage_name: str
    assigned: int
    reserved: int
    count: int


@dataclass
class NewItemRequest:
    name: str
    meta: dict[str, Any]
    svg: Any = None
    ipfs_image: str = ""
    ipfs_meta: str = ""
    image_data: str | None = None
    external_url: str | None = None
    description: str | None = None
    background_color: str | None = None
    animation_url: str | None = None
    youtube_url: str | None = None

    def canonical(self) -> str:
        return compact_json(asdict(self))

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "NewItemRequest":
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("item requires a name")
        meta = raw.get("meta") or {}
        if isinstance(meta, str):
            meta = Metadata.from_dict(meta).to_dict()
        known = {key: raw[key] for key in _NEW_ITEM_OPTIONAL if key in raw}
        return NewItemRequest(name=name, meta=meta, **known)


_NEW_ITEM_OPTIONAL = (
    "svg",
    "ipfs_image",
    "ipfs_meta",
    "image_data",
    "external_url",
    "description",
    "background_color",
    "animation_url",
    "youtube_url",
)


@dataclass
class NewReservationRequest:
    wallet_address: str
    reserved_until: datetime
    signed_tx: str | None = None

    def canonical(self) -> str:
        return compact_json(
            {
                "wallet_address": self.wallet_address,
                "reserved_until": format_ts(self.reserved_until),
                "signed_tx": self.signed_tx,
            }
        )


@dataclass
class MetadataResponse:
    attributes: str
    signature: str


@dataclass
class NewReservationResponse:
    item_id: str
    metadata_response: MetadataResponse

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AssignHashRequest:
    wallet_address: str
    item_id: str
    tx_hash: str

    def canonical(self) -> str:
        return compact_json(asdict(self))


@dataclass
class AssignSignedTxRequest:
    wallet_address: str
    item_id: str
    signed_tx: str

    def canonical(self) -> str:
        return compact_json(asdict(self))


@dataclass
class AssignOwnerRequest:
    wallet_address: str
    token_id: str

    def canonical(self) -> str:
        return compact_json(asdict(self))
