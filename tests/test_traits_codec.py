from __future__ import annotations

import pytest

from optionrelay.common.errors import ValidationError
from optionrelay.protocol.traits import (
    UINT256_MAX,
    MakerTraitsFields,
    build_taker_traits,
    decode_maker_traits,
    encode_maker_traits,
    interaction_length_from_taker_traits,
    taker_traits_for,
    traits_counter,
    traits_expiration,
)


def test_single_shot_sets_fill_flags_counter_and_expiration():
    fields = MakerTraitsFields.single_shot(counter=7, expiration=1_767_614_400)
    value = encode_maker_traits(fields)

    assert (value >> 255) & 1 == 1
    assert (value >> 254) & 1 == 1
    assert (value >> 251) & 1 == 0
    assert traits_counter(value) == 7
    assert traits_expiration(value) == 1_767_614_400
    assert decode_maker_traits(value) == fields
    assert decode_maker_traits(value).is_single_shot


@pytest.mark.parametrize(
    "fields",
    [
        MakerTraitsFields(),
        MakerTraitsFields(counter=(1 << 40) - 1, expiration=(1 << 32) - 1),
        MakerTraitsFields(pre_interaction=True, post_interaction=True, has_extension=True),
        MakerTraitsFields(use_permit2=True, unwrap_native=True, no_partial_fills=True),
        MakerTraitsFields(counter=123, multiple_fills_disabled=True, extra_bits=(1 << 119) | 5),
    ],
)
def test_decode_inverts_encode(fields: MakerTraitsFields):
    assert decode_maker_traits(encode_maker_traits(fields)) == fields


@pytest.mark.parametrize("value", [0, 1, 1 << 253, 1 << 250, 1 << 246, UINT256_MAX, (1 << 200) | (1 << 119)])
def test_encode_inverts_decode_over_raw_values(value: int):
    assert encode_maker_traits(decode_maker_traits(value)) == value


def test_unknown_bits_pass_through_as_extra():
    decoded = decode_maker_traits((1 << 253) | (1 << 250) | 3)
    assert decoded.extra_bits == (1 << 253) | (1 << 250) | 3
    assert not any(decoded.flags().values())


def test_each_flag_lands_on_its_own_bit():
    expected = {
        "no_partial_fills": 255,
        "multiple_fills_disabled": 254,
        "pre_interaction": 252,
        "post_interaction": 251,
        "has_extension": 249,
        "use_permit2": 248,
        "unwrap_native": 247,
    }
    for name, bit in expected.items():
        assert encode_maker_traits(MakerTraitsFields(**{name: True})) == 1 << bit


@pytest.mark.parametrize(
    "fields",
    [
        MakerTraitsFields(counter=1 << 40),
        MakerTraitsFields(expiration=1 << 32),
        MakerTraitsFields(counter=-1),
        MakerTraitsFields(extra_bits=1 << 255),
        MakerTraitsFields(extra_bits=1 << 120),
        MakerTraitsFields(extra_bits=1 << 256),
    ],
)
def test_out_of_range_fields_are_rejected_not_truncated(fields: MakerTraitsFields):
    with pytest.raises(ValidationError):
        encode_maker_traits(fields)


def test_decode_rejects_values_wider_than_256_bits():
    with pytest.raises(ValidationError):
        decode_maker_traits(1 << 256)


def test_taker_traits_carry_interaction_length():
    assert build_taker_traits(340) == 340 << 200
    assert interaction_length_from_taker_traits(build_taker_traits(340)) == 340
    assert taker_traits_for(b"\x00" * 340) == 340 << 200
    assert taker_traits_for("0x" + "ab" * 3) == 3 << 200
    assert taker_traits_for(None) == 0
    assert taker_traits_for(b"") == 0


def test_taker_traits_reject_bad_lengths():
    with pytest.raises(ValidationError):
        build_taker_traits(1 << 24)
    with pytest.raises(ValidationError):
        taker_traits_for("0xabc")
