"""
EIP-712 structured-data hashing.

    domain_separator = keccak(typeHash(EIP712Domain) ‖ keccak(name) ‖ keccak(version) ‖ chainId ‖ verifyingContract)
    struct_hash      = keccak(typeHash(primaryType) ‖ enc(field_1) ‖ … ‖ enc(field_n))
    signing_hash     = keccak(0x19 0x01 ‖ domain_separator ‖ struct_hash)

The two schemas the settlement side verifies are pinned below. Their field order
and type strings are part of the contract: changing either changes every hash.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from eth_abi import encode as abi_encode
from eth_utils import is_address, keccak, to_checksum_address

from optionrelay.common.errors import ValidationError

_UINT_RE = re.compile(r"^uint(\d{1,3})$")
_INT_RE = re.compile(r"^int(\d{1,3})$")
_BYTES_N_RE = re.compile(r"^bytes(\d{1,2})$")


@dataclass(frozen=True, slots=True)
class Eip712Field:
    name: str
    type: str


@dataclass(frozen=True, slots=True)
class Eip712Schema:
    primary_type: str
    fields: tuple[Eip712Field, ...]

    @classmethod
    def of(cls, primary_type: str, *fields: tuple[str, str]) -> "Eip712Schema":
        return cls(primary_type=primary_type, fields=tuple(Eip712Field(n, t) for n, t in fields))

    def encode_type(self) -> str:
        return f"{self.primary_type}(" + ",".join(f"{f.type} {f.name}" for f in self.fields) + ")"

    @property
    def type_hash(self) -> bytes:
        return keccak(text=self.encode_type())

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def types_json(self) -> list[dict[str, str]]:
        return [{"name": f.name, "type": f.type} for f in self.fields]


DOMAIN_SCHEMA = Eip712Schema.of(
    "EIP712Domain",
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
)

ORDER_SCHEMA = Eip712Schema.of(
    "Order",
    ("salt", "uint256"),
    ("maker", "address"),
    ("receiver", "address"),
    ("makerAsset", "address"),
    ("takerAsset", "address"),
    ("makingAmount", "uint256"),
    ("takingAmount", "uint256"),
    ("makerTraits", "uint256"),
)

OPTION_SCHEMA = Eip712Schema.of(
    "Option",
    ("underlyingAsset", "address"),
    ("strikeAsset", "address"),
    ("maker", "address"),
    ("strikePrice", "uint256"),
    ("expiry", "uint256"),
    ("amount", "uint256"),
    ("salt", "uint256"),
)


@dataclass(frozen=True, slots=True)
class Eip712Domain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self) -> None:
        if not is_address(self.verifying_contract):
            raise ValidationError("verifying_contract is not a valid address", field="verifying_contract")
        object.__setattr__(self, "verifying_contract", to_checksum_address(self.verifying_contract))
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ValidationError("chain_id must be a positive integer", field="chain_id")

    def as_message(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    @property
    def separator(self) -> bytes:
        return domain_separator(self.name, self.version, self.chain_id, self.verifying_contract)


@runtime_checkable
class SignedStructLike(Protocol):
    """
    A value that hashes under one of the pinned schemas.
    """

    SCHEMA: Eip712Schema

    def eip712_message(self) -> dict[str, Any]: ...


def _encode_field(field: Eip712Field, value: Any) -> tuple[str, Any]:
    t = field.type
    if t == "string":
        if not isinstance(value, str):
            raise ValidationError(f"{field.name} must be a string", field=field.name)
        return "bytes32", keccak(text=value)
    if t == "bytes":
        if not isinstance(value, (bytes, bytearray)):
            raise ValidationError(f"{field.name} must be bytes", field=field.name)
        return "bytes32", keccak(bytes(value))
    if t == "address":
        if not isinstance(value, str) or not is_address(value):
            raise ValidationError(f"{field.name} must be an address", field=field.name)
        return "address", to_checksum_address(value)
    if t == "bool":
        if not isinstance(value, bool):
            raise ValidationError(f"{field.name} must be a bool", field=field.name)
        return "bool", value
    m = _UINT_RE.match(t)
    if m:
        bits = int(m.group(1))
        if isinstance(value, bool) or not isinstance(value, int) or value < 0 or value >> bits:
            raise ValidationError(f"{field.name} must fit {t}", field=field.name)
        return t, value
    m = _INT_RE.match(t)
    if m:
        bits = int(m.group(1))
        bound = 1 << (bits - 1)
        if isinstance(value, bool) or not isinstance(value, int) or not (-bound <= value < bound):
            raise ValidationError(f"{field.name} must fit {t}", field=field.name)
        return t, value
    m = _BYTES_N_RE.match(t)
    if m:
        size = int(m.group(1))
        if not isinstance(value, (bytes, bytearray)) or len(value) != size:
            raise ValidationError(f"{field.name} must be {size} bytes", field=field.name)
        return t, bytes(value)
    raise ValidationError(f"unsupported EIP-712 type {t!r}", field=field.name)


def struct_hash(schema: Eip712Schema, values: Mapping[str, Any]) -> bytes:
    missing = [n for n in schema.field_names if n not in values]
    if missing:
        raise ValidationError(f"{schema.primary_type} is missing fields: {', '.join(missing)}", missing=missing)
    abi_types: list[str] = ["bytes32"]
    abi_values: list[Any] = [schema.type_hash]
    for field in schema.fields:
        abi_type, abi_value = _encode_field(field, values[field.name])
        abi_types.append(abi_type)
        abi_values.append(abi_value)
    return keccak(abi_encode(abi_types, abi_values))


def domain_separator(name: str, version: str, chain_id: int, verifying_contract: str) -> bytes:
    return struct_hash(
        DOMAIN_SCHEMA,
        {"name": name, "version": version, "chainId": chain_id, "verifyingContract": verifying_contract},
    )


def signing_hash(separator: bytes, struct_digest: bytes) -> bytes:
    if len(separator) != 32 or len(struct_digest) != 32:
        raise ValidationError("domain separator and struct hash must both be 32 bytes")
    return keccak(b"\x19\x01" + bytes(separator) + bytes(struct_digest))


def hash_signed_struct(domain: Eip712Domain, value: SignedStructLike) -> bytes:
    """
    Signing hash for an order intent or option terms under `domain`.
    """
    return signing_hash(domain.separator, struct_hash(value.SCHEMA, value.eip712_message()))


def typed_data(domain: Eip712Domain, value: SignedStructLike) -> dict[str, Any]:
    """
    `full_message` shape accepted by eth_account / eth_signTypedData_v4 wallets.
    """
    schema = value.SCHEMA
    return {
        "types": {
            DOMAIN_SCHEMA.primary_type: DOMAIN_SCHEMA.types_json(),
            schema.primary_type: schema.types_json(),
        },
        "primaryType": schema.primary_type,
        "domain": domain.as_message(),
        "message": value.eip712_message(),
    }


def abi_hash(types: Sequence[str], values: Sequence[Any]) -> bytes:
    return keccak(abi_encode(list(types), list(values)))
