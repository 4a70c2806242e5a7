"""
Relay-owned order records and the value types that travel with them.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from optionrelay.common.config import MAX_LIST_LIMIT
from optionrelay.common.errors import ValidationError
from optionrelay.execution.order_lifecycle import OrderState, parse_state
from optionrelay.protocol.signatures import SignatureBundle
from optionrelay.trading.builder import OrderBundle
from optionrelay.trading.intents import OptionTerms, OrderIntent, normalize_address, require_uint256


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    raise ValidationError(f"expected a timestamp, got {value!r}")


def _normalize_tx_hash(value: Any) -> str:
    s = str(value or "").strip().lower()
    h = s[2:] if s.startswith("0x") else s
    if len(h) != 64:
        raise ValidationError("tx_hash must be a 32-byte hex string", field="tx_hash")
    try:
        bytes.fromhex(h)
    except ValueError as e:
        raise ValidationError("tx_hash is not valid hex", field="tx_hash") from e
    return "0x" + h


@dataclass(frozen=True, slots=True)
class FillReceipt:
    """
    External evidence that the settlement contract executed the fill.
    """

    tx_hash: str
    filled_making: int
    filled_taking: int
    order_hash: Optional[str] = None
    taker: Optional[str] = None
    block_number: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tx_hash", _normalize_tx_hash(self.tx_hash))
        object.__setattr__(self, "filled_making", require_uint256(self.filled_making, field="filled_making"))
        object.__setattr__(self, "filled_taking", require_uint256(self.filled_taking, field="filled_taking"))
        if self.taker is not None:
            object.__setattr__(self, "taker", normalize_address(self.taker, field="taker"))
        if self.block_number is not None and int(self.block_number) < 0:
            raise ValidationError("block_number must be non-negative", field="block_number")

    def same_receipt(self, other: "FillReceipt") -> bool:
        return self.tx_hash == other.tx_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "filled_making": str(self.filled_making),
            "filled_taking": str(self.filled_taking),
            "order_hash": self.order_hash,
            "taker": self.taker,
            "block_number": self.block_number,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "FillReceipt":
        return cls(
            tx_hash=d["tx_hash"],
            filled_making=require_uint256(d["filled_making"], field="filled_making"),
            filled_taking=require_uint256(d["filled_taking"], field="filled_taking"),
            order_hash=d.get("order_hash"),
            taker=d.get("taker"),
            block_number=None if d.get("block_number") is None else int(d["block_number"]),
        )


@dataclass(frozen=True, slots=True)
class OrderRecord:
    """
    Stored state of one relayed order.

    The bundle is immutable once stored; only state, timestamps, receipt and
    cancelling identity ever change.
    """

    order_id: str
    bundle: OrderBundle
    state: OrderState
    created_at: datetime
    updated_at: datetime
    fill_receipt: Optional[FillReceipt] = None
    cancelled_by: Optional[str] = None

    @classmethod
    def open(cls, bundle: OrderBundle, *, now: datetime | None = None) -> "OrderRecord":
        ts = now or _utc_now()
        return cls(
            order_id=bundle.order_id,
            bundle=bundle,
            state=OrderState.OPEN,
            created_at=ts,
            updated_at=ts,
        )

    @property
    def order(self) -> OrderIntent:
        return self.bundle.order

    @property
    def order_signature(self) -> SignatureBundle:
        return self.bundle.order_signature

    @property
    def option_terms(self) -> Optional[OptionTerms]:
        return self.bundle.option_terms

    @property
    def terms_signature(self) -> Optional[SignatureBundle]:
        return self.bundle.terms_signature

    @property
    def interaction(self) -> Optional[bytes]:
        return self.bundle.interaction

    @property
    def maker(self) -> str:
        return self.bundle.order.maker

    @property
    def expiry(self) -> Optional[int]:
        """
        Earliest of the option expiry and the traits expiration; None if neither is set.
        """
        candidates = []
        if self.bundle.option_terms is not None:
            candidates.append(self.bundle.option_terms.expiry)
        if self.bundle.order.expiration:
            candidates.append(self.bundle.order.expiration)
        return min(candidates) if candidates else None

    def is_expired(self, now_ts: int) -> bool:
        expiry = self.expiry
        return expiry is not None and now_ts > expiry

    def with_changes(self, **changes: Any) -> "OrderRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "bundle": self.bundle.to_dict(),
            "state": self.state.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "fill_receipt": None if self.fill_receipt is None else self.fill_receipt.to_dict(),
            "cancelled_by": self.cancelled_by,
            # Flat copies for store-side filtering.
            "maker": self.maker,
            "maker_asset": self.order.maker_asset,
            "taker_asset": self.order.taker_asset,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "OrderRecord":
        receipt = d.get("fill_receipt")
        return cls(
            order_id=str(d["order_id"]),
            bundle=OrderBundle.from_dict(d["bundle"]),
            state=parse_state(d["state"]),
            created_at=_as_datetime(d["created_at"]),
            updated_at=_as_datetime(d["updated_at"]),
            fill_receipt=None if receipt is None else FillReceipt.from_dict(receipt),
            cancelled_by=d.get("cancelled_by"),
        )


@dataclass(frozen=True, slots=True)
class ListFilters:
    maker: Optional[str] = None
    maker_asset: Optional[str] = None
    taker_asset: Optional[str] = None
    state: OrderState = OrderState.OPEN
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("maker", "maker_asset", "taker_asset"):
            v = getattr(self, name)
            if v is not None:
                object.__setattr__(self, name, normalize_address(v, field=name))
        object.__setattr__(self, "state", parse_state(self.state))
        if self.limit is not None and not (1 <= int(self.limit) <= MAX_LIST_LIMIT):
            raise ValidationError(f"limit must be within [1, {MAX_LIST_LIMIT}]", field="limit")

    def matches(self, record: OrderRecord) -> bool:
        if record.state != self.state:
            return False
        if self.maker is not None and record.maker != self.maker:
            return False
        if self.maker_asset is not None and record.order.maker_asset != self.maker_asset:
            return False
        if self.taker_asset is not None and record.order.taker_asset != self.taker_asset:
            return False
        return True


def sort_records(records: Iterable[OrderRecord]) -> list[OrderRecord]:
    """
    Newest first; equal `created_at` values fall back to ascending order_id.
    """
    by_id = sorted(records, key=lambda r: r.order_id)
    return sorted(by_id, key=lambda r: r.created_at, reverse=True)
