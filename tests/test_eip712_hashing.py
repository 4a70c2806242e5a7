from __future__ import annotations

import pytest
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from optionrelay.common.errors import ValidationError
from optionrelay.protocol.eip712 import (
    DOMAIN_SCHEMA,
    OPTION_SCHEMA,
    ORDER_SCHEMA,
    Eip712Domain,
    Eip712Schema,
    domain_separator,
    hash_signed_struct,
    signing_hash,
    struct_hash,
    typed_data,
)
from optionrelay.trading.intents import OptionTerms, OrderIntent
from tests.support import CHAIN_ID, EXPIRY, LOP, NFT, USDC, WETH

MAKER = "0x19e7e376e7c213b7e7e7e46cc70a5dd086daff2a"


def _order(**overrides) -> OrderIntent:
    params = dict(
        maker=MAKER,
        maker_asset=WETH,
        taker_asset=USDC,
        making_amount=10**18,
        taking_amount=2_000 * 10**6,
        maker_traits=(3 << 254) | (9 << 120),
        salt=123456789,
    )
    params.update(overrides)
    return OrderIntent(**params)


def _terms(**overrides) -> OptionTerms:
    params = dict(
        underlying_asset=WETH,
        strike_asset=USDC,
        maker=MAKER,
        strike_price=2_500 * 10**6,
        expiry=EXPIRY,
        amount=10**18,
        salt=42,
    )
    params.update(overrides)
    return OptionTerms(**params)


def test_domain_typehash_golden():
    assert DOMAIN_SCHEMA.type_hash.hex() == "8b73c3c69bb8fe3d512ecc4cf759cc79239f7b179b0ffacaa9a75d522b39400f"


def test_ether_mail_domain_separator_golden():
    sep = domain_separator("Ether Mail", "1", 1, "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC")
    assert sep.hex() == "f2cee375fa42b42143804025fc449deafd50cc031ca257e0b194a650a912090f"


def test_pinned_type_strings():
    assert ORDER_SCHEMA.encode_type() == (
        "Order(uint256 salt,address maker,address receiver,address makerAsset,address takerAsset,"
        "uint256 makingAmount,uint256 takingAmount,uint256 makerTraits)"
    )
    assert OPTION_SCHEMA.encode_type() == (
        "Option(address underlyingAsset,address strikeAsset,address maker,uint256 strikePrice,"
        "uint256 expiry,uint256 amount,uint256 salt)"
    )
    assert ORDER_SCHEMA.type_hash == keccak(text=ORDER_SCHEMA.encode_type())


@pytest.mark.parametrize(
    "domain,value",
    [
        (Eip712Domain("1inch Limit Order Protocol", "4", CHAIN_ID, LOP), _order()),
        (Eip712Domain("OptionNFT", "1", CHAIN_ID, NFT), _terms()),
        (Eip712Domain("1inch Limit Order Protocol", "4", 1, LOP), _order(receiver=USDC)),
    ],
)
def test_agrees_with_eth_account(domain, value):
    signable = encode_typed_data(full_message=typed_data(domain, value))

    assert bytes(signable.header) == domain.separator
    assert bytes(signable.body) == struct_hash(value.SCHEMA, value.eip712_message())
    expected = keccak(b"\x19" + bytes(signable.version) + bytes(signable.header) + bytes(signable.body))
    assert hash_signed_struct(domain, value) == expected


def test_atomic_types_agree_with_eth_account():
    schema = Eip712Schema.of(
        "Probe",
        ("flag", "bool"),
        ("note", "string"),
        ("tag", "bytes32"),
        ("small", "uint8"),
        ("who", "address"),
    )

    class _Probe:
        SCHEMA = schema

        def eip712_message(self):
            return {"flag": True, "note": "hello", "tag": b"\x07" * 32, "small": 200, "who": WETH}

    domain = Eip712Domain("Probe", "1", CHAIN_ID, LOP)
    signable = encode_typed_data(full_message=typed_data(domain, _Probe()))
    assert bytes(signable.body) == struct_hash(schema, _Probe().eip712_message())


def test_identical_inputs_hash_identically_and_any_change_moves_the_hash():
    domain = Eip712Domain("1inch Limit Order Protocol", "4", CHAIN_ID, LOP)
    base = hash_signed_struct(domain, _order())
    assert hash_signed_struct(domain, _order()) == base
    assert hash_signed_struct(domain, _order(salt=123456790)) != base
    assert hash_signed_struct(Eip712Domain("1inch Limit Order Protocol", "4", 1, LOP), _order()) != base
    assert hash_signed_struct(Eip712Domain("1inch Limit Order Protocol", "4", CHAIN_ID, NFT), _order()) != base


def test_signing_hash_layout():
    sep = b"\x01" * 32
    sh = b"\x02" * 32
    assert signing_hash(sep, sh) == keccak(b"\x19\x01" + sep + sh)
    with pytest.raises(ValidationError):
        signing_hash(b"\x01" * 31, sh)


def test_struct_hash_rejects_missing_and_out_of_range_fields():
    message = _order().eip712_message()
    del message["salt"]
    with pytest.raises(ValidationError):
        struct_hash(ORDER_SCHEMA, message)

    message = _order().eip712_message()
    message["makingAmount"] = 1 << 256
    with pytest.raises(ValidationError):
        struct_hash(ORDER_SCHEMA, message)

    message = _order().eip712_message()
    message["maker"] = "not-an-address"
    with pytest.raises(ValidationError):
        struct_hash(ORDER_SCHEMA, message)


def test_domain_rejects_bad_contract_and_chain():
    with pytest.raises(ValidationError):
        Eip712Domain("x", "1", CHAIN_ID, "0x1234")
    with pytest.raises(ValidationError):
        Eip712Domain("x", "1", 0, LOP)
