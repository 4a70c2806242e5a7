"""
`fillOrderArgs` calldata for the limit-order settlement contract.

    fillOrderArgs(Order order, bytes32 r, bytes32 vs, uint256 amount, TakerTraits takerTraits, bytes args)
        returns (uint256 makingAmount, uint256 takingAmount, bytes32 orderHash)

The contract's `Order` struct types addresses as `Address` (a uint256 wrapper),
so the tuple is eight uint256 words.
"""

from __future__ import annotations

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

from optionrelay.common.errors import ValidationError
from optionrelay.protocol.signatures import CompactSignature
from optionrelay.protocol.traits import interaction_length_from_taker_traits
from optionrelay.trading.intents import OrderIntent, require_uint256

ORDER_TUPLE_ABI = "(uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256)"
FILL_ORDER_ARGS_SIGNATURE = f"fillOrderArgs({ORDER_TUPLE_ABI},bytes32,bytes32,uint256,uint256,bytes)"
FILL_ORDER_ARGS_SELECTOR: bytes = function_signature_to_4byte_selector(FILL_ORDER_ARGS_SIGNATURE)

_FILL_ARG_TYPES = [ORDER_TUPLE_ABI, "bytes32", "bytes32", "uint256", "uint256", "bytes"]
_FILL_RESULT_TYPES = ["uint256", "uint256", "bytes32"]


def order_tuple(order: OrderIntent) -> tuple[int, ...]:
    return (
        order.salt,
        int(order.maker, 16),
        int(order.receiver, 16),
        int(order.maker_asset, 16),
        int(order.taker_asset, 16),
        order.making_amount,
        order.taking_amount,
        order.maker_traits,
    )


def encode_fill_order_args(
    order: OrderIntent,
    compact: CompactSignature,
    fill_amount: int,
    taker_traits: int,
    interaction: bytes = b"",
) -> bytes:
    amount = require_uint256(fill_amount, field="fill_amount", positive=True)
    traits = require_uint256(taker_traits, field="taker_traits")
    args = bytes(interaction or b"")
    if interaction_length_from_taker_traits(traits) != len(args):
        raise ValidationError(
            "taker traits interaction length does not match the args payload",
            declared=interaction_length_from_taker_traits(traits),
            actual=len(args),
        )
    body = abi_encode(
        _FILL_ARG_TYPES,
        [order_tuple(order), compact.r_bytes, compact.vs_bytes, amount, traits, args],
    )
    return FILL_ORDER_ARGS_SELECTOR + body


def decode_fill_result(data: bytes | str) -> tuple[int, int, bytes]:
    """
    Decode the (makingAmount, takingAmount, orderHash) return data of a fill.
    """
    if isinstance(data, str):
        h = data[2:] if data.startswith(("0x", "0X")) else data
        try:
            data = bytes.fromhex(h)
        except ValueError as e:
            raise ValidationError("fill result is not valid hex") from e
    try:
        making, taking, order_hash = abi_decode(_FILL_RESULT_TYPES, bytes(data))
    except DecodingError as e:
        raise ValidationError("fill result does not decode") from e
    return making, taking, order_hash
