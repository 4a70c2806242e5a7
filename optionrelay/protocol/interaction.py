"""
Post-interaction payload for the option-grant contract.

Layout consumed by the settlement contract:

    target (20 bytes) ‖ abi.encode(
        address maker, address underlyingAsset, address strikeAsset,
        uint256 strikePrice, uint256 expiry, uint256 amount, uint256 salt,
        uint8 v, bytes32 r, bytes32 s,
    )

Every field is a static ABI type, so the encoded body is exactly 10 words.
"""

from __future__ import annotations

from typing import Any, Sequence

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import is_address, to_canonical_address, to_checksum_address

from optionrelay.common.errors import ValidationError
from optionrelay.protocol.signatures import SignatureBundle, from_rsv
from optionrelay.trading.intents import OptionTerms

TARGET_LENGTH = 20

OPTION_INTERACTION_TYPES: tuple[str, ...] = (
    "address",
    "address",
    "address",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint8",
    "bytes32",
    "bytes32",
)

OPTION_INTERACTION_LENGTH = TARGET_LENGTH + 32 * len(OPTION_INTERACTION_TYPES)


def encode_interaction(target: str, types: Sequence[str], values: Sequence[Any]) -> bytes:
    if not isinstance(target, str) or not is_address(target):
        raise ValidationError("interaction target must be an address", field="target")
    if len(types) != len(values):
        raise ValidationError("interaction types and values differ in length")
    return to_canonical_address(target) + abi_encode(list(types), list(values))


def encode_option_interaction(target: str, terms: OptionTerms, signature: SignatureBundle) -> bytes:
    """
    Pack the signed option terms for the grant contract at `target`.

    `v` goes out in its 27/28 form.
    """
    values = (
        terms.maker,
        terms.underlying_asset,
        terms.strike_asset,
        terms.strike_price,
        terms.expiry,
        terms.amount,
        terms.salt,
        signature.v,
        signature.r.to_bytes(32, "big"),
        signature.s.to_bytes(32, "big"),
    )
    return encode_interaction(target, OPTION_INTERACTION_TYPES, values)


def decode_option_interaction(payload: bytes | str) -> tuple[str, OptionTerms, SignatureBundle]:
    if isinstance(payload, str):
        h = payload[2:] if payload.startswith(("0x", "0X")) else payload
        try:
            payload = bytes.fromhex(h)
        except ValueError as e:
            raise ValidationError("interaction is not valid hex") from e
    if len(payload) != OPTION_INTERACTION_LENGTH:
        raise ValidationError(
            f"option interaction must be {OPTION_INTERACTION_LENGTH} bytes, got {len(payload)}",
            length=len(payload),
        )
    target = to_checksum_address(payload[:TARGET_LENGTH])
    try:
        (
            maker,
            underlying_asset,
            strike_asset,
            strike_price,
            expiry,
            amount,
            salt,
            v,
            r,
            s,
        ) = abi_decode(list(OPTION_INTERACTION_TYPES), payload[TARGET_LENGTH:])
    except DecodingError as e:
        raise ValidationError("option interaction body does not decode") from e

    terms = OptionTerms(
        underlying_asset=underlying_asset,
        strike_asset=strike_asset,
        maker=maker,
        strike_price=strike_price,
        expiry=expiry,
        amount=amount,
        salt=salt,
    )
    return target, terms, from_rsv(r, s, v)
