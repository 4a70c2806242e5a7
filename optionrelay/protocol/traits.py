"""
Maker / taker traits bitfields.

Maker traits layout (uint256, bit 0 = least significant):

    bits   0..119   reserved (carried through untouched as `extra_bits`)
    bits 120..159   sequence counter (40 bits)
    bits 160..191   absolute expiration, unix seconds (32 bits, 0 = none)
    bit  247        unwrap native asset
    bit  248        alternate approval mode (Permit2)
    bit  249        extension present
    bit  251        post-interaction enabled
    bit  252        pre-interaction enabled
    bit  254        multiple fills disabled
    bit  255        no partial fills

Policy: an oversized counter or expiration is rejected, never truncated.
Bits that belong to no known field round-trip through `extra_bits`.

Taker traits carry the interaction length in bits 200..223.
"""

from __future__ import annotations

from dataclasses import dataclass

from optionrelay.common.errors import ValidationError

UINT256_MAX = (1 << 256) - 1

COUNTER_OFFSET = 120
COUNTER_BITS = 40
EXPIRATION_OFFSET = 160
EXPIRATION_BITS = 32

COUNTER_MASK = (1 << COUNTER_BITS) - 1
EXPIRATION_MASK = (1 << EXPIRATION_BITS) - 1

# Flag name -> bit position. Closed set; unknown flags are not representable.
FLAG_BITS: dict[str, int] = {
    "no_partial_fills": 255,
    "multiple_fills_disabled": 254,
    "pre_interaction": 252,
    "post_interaction": 251,
    "has_extension": 249,
    "use_permit2": 248,
    "unwrap_native": 247,
}

_KNOWN_MASK = (COUNTER_MASK << COUNTER_OFFSET) | (EXPIRATION_MASK << EXPIRATION_OFFSET)
for _bit in FLAG_BITS.values():
    _KNOWN_MASK |= 1 << _bit
KNOWN_FIELDS_MASK = _KNOWN_MASK
del _bit, _KNOWN_MASK

TAKER_INTERACTION_LENGTH_OFFSET = 200
TAKER_INTERACTION_LENGTH_BITS = 24
TAKER_INTERACTION_LENGTH_MASK = (1 << TAKER_INTERACTION_LENGTH_BITS) - 1


@dataclass(frozen=True, slots=True)
class MakerTraitsFields:
    counter: int = 0
    expiration: int = 0
    no_partial_fills: bool = False
    multiple_fills_disabled: bool = False
    pre_interaction: bool = False
    post_interaction: bool = False
    has_extension: bool = False
    use_permit2: bool = False
    unwrap_native: bool = False
    extra_bits: int = 0

    @classmethod
    def single_shot(cls, *, counter: int, expiration: int = 0) -> "MakerTraitsFields":
        """
        One fill, all-or-nothing. The only order shape this protocol version issues.
        """
        return cls(
            counter=counter,
            expiration=expiration,
            no_partial_fills=True,
            multiple_fills_disabled=True,
        )

    def flags(self) -> dict[str, bool]:
        return {name: bool(getattr(self, name)) for name in FLAG_BITS}

    @property
    def is_single_shot(self) -> bool:
        return self.no_partial_fills and self.multiple_fills_disabled


def _require_uint(name: str, value: int, bits: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", field=name)
    if value < 0:
        raise ValidationError(f"{name} must be non-negative", field=name)
    if value >> bits:
        raise ValidationError(f"{name} does not fit in {bits} bits", field=name, value=str(value))
    return value


def encode_maker_traits(fields: MakerTraitsFields) -> int:
    counter = _require_uint("counter", fields.counter, COUNTER_BITS)
    expiration = _require_uint("expiration", fields.expiration, EXPIRATION_BITS)
    extra = _require_uint("extra_bits", fields.extra_bits, 256)
    if extra & KNOWN_FIELDS_MASK:
        raise ValidationError("extra_bits overlap a known traits field", field="extra_bits")

    traits = extra
    traits |= (counter & COUNTER_MASK) << COUNTER_OFFSET
    traits |= (expiration & EXPIRATION_MASK) << EXPIRATION_OFFSET
    for name, bit in FLAG_BITS.items():
        if getattr(fields, name):
            traits |= 1 << bit
    return traits


def decode_maker_traits(traits: int) -> MakerTraitsFields:
    value = _require_uint("maker_traits", traits, 256)
    flags = {name: bool((value >> bit) & 1) for name, bit in FLAG_BITS.items()}
    return MakerTraitsFields(
        counter=(value >> COUNTER_OFFSET) & COUNTER_MASK,
        expiration=(value >> EXPIRATION_OFFSET) & EXPIRATION_MASK,
        extra_bits=value & ~KNOWN_FIELDS_MASK & UINT256_MAX,
        **flags,
    )


def traits_counter(traits: int) -> int:
    return (int(traits) >> COUNTER_OFFSET) & COUNTER_MASK


def traits_expiration(traits: int) -> int:
    return (int(traits) >> EXPIRATION_OFFSET) & EXPIRATION_MASK


def build_taker_traits(interaction_length: int) -> int:
    length = _require_uint("interaction_length", interaction_length, TAKER_INTERACTION_LENGTH_BITS)
    return (length & TAKER_INTERACTION_LENGTH_MASK) << TAKER_INTERACTION_LENGTH_OFFSET


def taker_traits_for(interaction: bytes | str | None) -> int:
    """
    Taker traits for a fill that forwards `interaction` as the args payload.

    Accepts raw bytes or a 0x-prefixed hex string.
    """
    if interaction is None:
        return 0
    if isinstance(interaction, str):
        s = interaction[2:] if interaction.startswith(("0x", "0X")) else interaction
        if len(s) % 2:
            raise ValidationError("interaction hex must have an even number of digits")
        return build_taker_traits(len(s) // 2)
    return build_taker_traits(len(interaction))


def interaction_length_from_taker_traits(taker_traits: int) -> int:
    return (int(taker_traits) >> TAKER_INTERACTION_LENGTH_OFFSET) & TAKER_INTERACTION_LENGTH_MASK
