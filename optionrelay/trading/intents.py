from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Mapping, Union

from eth_utils import is_address, to_checksum_address

from optionrelay.common.errors import ValidationError
from optionrelay.protocol.eip712 import OPTION_SCHEMA, ORDER_SCHEMA, Eip712Schema, abi_hash
from optionrelay.protocol.signatures import ZERO_ADDRESS
from optionrelay.protocol.traits import MakerTraitsFields, decode_maker_traits, traits_counter, traits_expiration

UINT256_BOUND = 1 << 256

ORDER_TUPLE_TYPES: tuple[str, ...] = (
    "uint256",
    "address",
    "address",
    "address",
    "address",
    "uint256",
    "uint256",
    "uint256",
)


def normalize_address(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"{field} must be a 20-byte hex address", field=field)
    return to_checksum_address(value)


def require_uint256(value: Any, *, field: str, positive: bool = False) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    if isinstance(value, str):
        try:
            value = int(value, 0)
        except ValueError as e:
            raise ValidationError(f"{field} must be an integer", field=field) from e
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    if value < 0 or value >= UINT256_BOUND:
        raise ValidationError(f"{field} must fit uint256", field=field)
    if positive and value == 0:
        raise ValidationError(f"{field} must be positive", field=field)
    return value


@dataclass(frozen=True, slots=True)
class OrderIntent:
    """
    Maker's limit order, exactly as the settlement contract hashes it.

    Constraints:
    - Addresses are stored checksummed; receiver defaults to maker (zero address too).
    - Amounts, salt and traits are uint256.
    - The traits counter field is the order's sequence counter.
    """

    SCHEMA: ClassVar[Eip712Schema] = ORDER_SCHEMA

    maker: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int
    salt: int
    receiver: str | None = None

    def __post_init__(self) -> None:
        maker = normalize_address(self.maker, field="maker")
        object.__setattr__(self, "maker", maker)
        object.__setattr__(self, "maker_asset", normalize_address(self.maker_asset, field="maker_asset"))
        object.__setattr__(self, "taker_asset", normalize_address(self.taker_asset, field="taker_asset"))

        receiver = self.receiver
        if receiver is None or (isinstance(receiver, str) and receiver.lower() == ZERO_ADDRESS):
            receiver = maker
        object.__setattr__(self, "receiver", normalize_address(receiver, field="receiver"))

        for name in ("making_amount", "taking_amount", "maker_traits", "salt"):
            object.__setattr__(self, name, require_uint256(getattr(self, name), field=name))

    @property
    def sequence_counter(self) -> int:
        return traits_counter(self.maker_traits)

    @property
    def expiration(self) -> int:
        return traits_expiration(self.maker_traits)

    @property
    def traits(self) -> MakerTraitsFields:
        return decode_maker_traits(self.maker_traits)

    def eip712_message(self) -> dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "receiver": self.receiver,
            "makerAsset": self.maker_asset,
            "takerAsset": self.taker_asset,
            "makingAmount": self.making_amount,
            "takingAmount": self.taking_amount,
            "makerTraits": self.maker_traits,
        }

    def as_tuple(self) -> tuple[Any, ...]:
        return (
            self.salt,
            self.maker,
            self.receiver,
            self.maker_asset,
            self.taker_asset,
            self.making_amount,
            self.taking_amount,
            self.maker_traits,
        )

    def order_id(self) -> str:
        """
        keccak256(abi.encode(order tuple)), 0x-prefixed. Any field change yields a new id.
        """
        return "0x" + abi_hash(ORDER_TUPLE_TYPES, self.as_tuple()).hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "salt": str(self.salt),
            "maker": self.maker,
            "receiver": self.receiver,
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "making_amount": str(self.making_amount),
            "taking_amount": str(self.taking_amount),
            "maker_traits": str(self.maker_traits),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "OrderIntent":
        return cls(
            maker=d["maker"],
            receiver=d.get("receiver"),
            maker_asset=d["maker_asset"],
            taker_asset=d["taker_asset"],
            making_amount=require_uint256(d["making_amount"], field="making_amount"),
            taking_amount=require_uint256(d["taking_amount"], field="taking_amount"),
            maker_traits=require_uint256(d["maker_traits"], field="maker_traits"),
            salt=require_uint256(d["salt"], field="salt"),
        )

    def with_changes(self, **changes: Any) -> "OrderIntent":
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class OptionTerms:
    """
    Economic terms of the option grant, signed under the option contract's domain.

    `amount` is the notional of underlying covered by the option.
    """

    SCHEMA: ClassVar[Eip712Schema] = OPTION_SCHEMA

    underlying_asset: str
    strike_asset: str
    maker: str
    strike_price: int
    expiry: int
    amount: int
    salt: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "underlying_asset", normalize_address(self.underlying_asset, field="underlying_asset"))
        object.__setattr__(self, "strike_asset", normalize_address(self.strike_asset, field="strike_asset"))
        object.__setattr__(self, "maker", normalize_address(self.maker, field="maker"))
        for name in ("strike_price", "expiry", "amount", "salt"):
            object.__setattr__(self, name, require_uint256(getattr(self, name), field=name))

    def eip712_message(self) -> dict[str, Any]:
        return {
            "underlyingAsset": self.underlying_asset,
            "strikeAsset": self.strike_asset,
            "maker": self.maker,
            "strikePrice": self.strike_price,
            "expiry": self.expiry,
            "amount": self.amount,
            "salt": self.salt,
        }

    def content_fields(self) -> tuple[int, ...]:
        """
        Fields mixed into salt derivation (everything except the salt itself).
        """
        return (
            int(self.underlying_asset, 16),
            int(self.strike_asset, 16),
            self.strike_price,
            self.expiry,
            self.amount,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "underlying_asset": self.underlying_asset,
            "strike_asset": self.strike_asset,
            "maker": self.maker,
            "strike_price": str(self.strike_price),
            "expiry": str(self.expiry),
            "amount": str(self.amount),
            "salt": str(self.salt),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "OptionTerms":
        return cls(
            underlying_asset=d["underlying_asset"],
            strike_asset=d["strike_asset"],
            maker=d["maker"],
            strike_price=require_uint256(d["strike_price"], field="strike_price"),
            expiry=require_uint256(d["expiry"], field="expiry"),
            amount=require_uint256(d["amount"], field="amount"),
            salt=require_uint256(d["salt"], field="salt"),
        )


# Closed sum of everything this package signs.
SignedStruct = Union[OrderIntent, OptionTerms]
