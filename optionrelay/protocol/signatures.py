"""
secp256k1 signature codec: sign, recover, and standard <-> compact (EIP-2098).

Compact form packs the recovery id into the top bit of `s`:

    vs = s | (recovery_id << 255)

which is lossless because canonical (low-s) signatures never use bit 255.
`recover()` is the only authenticity gate in this package; every consumer checks
the recovered address against the expected signer before trusting a struct.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError
from eth_utils import to_checksum_address

from optionrelay.common.errors import InvalidSignature, SignerMismatch, ValidationError

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_VS_TOP_BIT = 1 << 255
_S_MASK = _VS_TOP_BIT - 1


@dataclass(frozen=True, slots=True)
class SignatureBundle:
    r: int
    s: int
    recovery_id: int

    @property
    def v(self) -> int:
        return 27 + self.recovery_id

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "r": "0x" + self.r.to_bytes(32, "big").hex(),
            "s": "0x" + self.s.to_bytes(32, "big").hex(),
            "v": self.v,
        }


@dataclass(frozen=True, slots=True)
class CompactSignature:
    r: int
    vs: int

    @property
    def r_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big")

    @property
    def vs_bytes(self) -> bytes:
        return self.vs.to_bytes(32, "big")

    def to_dict(self) -> dict[str, str]:
        return {"r": "0x" + self.r_bytes.hex(), "vs": "0x" + self.vs_bytes.hex()}


def _check_components(r: int, s: int, recovery_id: int) -> None:
    if not (1 <= r < SECP256K1_N):
        raise InvalidSignature("signature r out of range")
    if not (1 <= s <= SECP256K1_HALF_N):
        # Upper-half s values are malleable twins; the settlement side rejects them.
        raise InvalidSignature("signature s out of range")
    if recovery_id not in (0, 1):
        raise InvalidSignature("signature recovery id must be 0 or 1")


def _as_int(value: int | bytes | str, *, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer, bytes or hex string")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValidationError(f"{name} must be 32 bytes")
        return int.from_bytes(bytes(value), "big")
    if isinstance(value, str):
        s = value[2:] if value.startswith(("0x", "0X")) else value
        if len(s) != 64:
            raise ValidationError(f"{name} must be a 32-byte hex string")
        try:
            return int(s, 16)
        except ValueError as e:
            raise ValidationError(f"{name} is not valid hex") from e
    raise ValidationError(f"{name} must be an integer, bytes or hex string")


def from_rsv(r: int | bytes | str, s: int | bytes | str, v: int) -> SignatureBundle:
    """
    Normalize wallet output. Accepts v in {0, 1, 27, 28}.
    """
    if isinstance(v, bool) or not isinstance(v, int):
        raise InvalidSignature("signature v must be an integer")
    recovery_id = v - 27 if v >= 27 else v
    r_i = _as_int(r, name="r")
    s_i = _as_int(s, name="s")
    _check_components(r_i, s_i, recovery_id)
    return SignatureBundle(r=r_i, s=s_i, recovery_id=recovery_id)


def from_bytes(signature: bytes | str) -> SignatureBundle:
    if isinstance(signature, str):
        h = signature[2:] if signature.startswith(("0x", "0X")) else signature
        try:
            signature = bytes.fromhex(h)
        except ValueError as e:
            raise InvalidSignature("signature is not valid hex") from e
    if len(signature) != 65:
        raise InvalidSignature(f"invalid signature length: {len(signature)} (expected 65)")
    return from_rsv(signature[:32], signature[32:64], signature[64])


def _private_key(key: Any) -> keys.PrivateKey:
    if isinstance(key, keys.PrivateKey):
        return key
    if isinstance(key, str):
        h = key[2:] if key.startswith(("0x", "0X")) else key
        key = bytes.fromhex(h)
    if not isinstance(key, (bytes, bytearray)) or len(key) != 32:
        raise ValidationError("private key must be 32 bytes")
    return keys.PrivateKey(bytes(key))


def address_of(key: Any) -> str:
    return _private_key(key).public_key.to_checksum_address()


def sign(digest: bytes, key: Any) -> SignatureBundle:
    if len(digest) != 32:
        raise ValidationError("signing hash must be 32 bytes")
    sig = _private_key(key).sign_msg_hash(bytes(digest))
    bundle = SignatureBundle(r=sig.r, s=sig.s, recovery_id=sig.v)
    _check_components(bundle.r, bundle.s, bundle.recovery_id)
    return bundle


def recover(digest: bytes, bundle: SignatureBundle) -> str:
    if len(digest) != 32:
        raise ValidationError("signing hash must be 32 bytes")
    _check_components(bundle.r, bundle.s, bundle.recovery_id)
    try:
        public_key = keys.Signature(vrs=(bundle.recovery_id, bundle.r, bundle.s)).recover_public_key_from_msg_hash(
            bytes(digest)
        )
    except (BadSignature, EthKeysValidationError) as e:
        raise InvalidSignature("signature recovery failed") from e
    address = public_key.to_checksum_address()
    if address == ZERO_ADDRESS:
        raise InvalidSignature("signature recovers to the zero address")
    return address


def verify_signer(digest: bytes, bundle: SignatureBundle, expected: str) -> str:
    recovered = recover(digest, bundle)
    if recovered.lower() != str(expected).lower():
        raise SignerMismatch(
            "signature does not match the expected signer",
            expected=to_checksum_address(expected),
            recovered=recovered,
        )
    return recovered


def to_compact(bundle: SignatureBundle) -> CompactSignature:
    _check_components(bundle.r, bundle.s, bundle.recovery_id)
    vs = bundle.s | (_VS_TOP_BIT if bundle.recovery_id == 1 else 0)
    return CompactSignature(r=bundle.r, vs=vs)


def from_compact(compact: CompactSignature) -> SignatureBundle:
    recovery_id = 1 if compact.vs & _VS_TOP_BIT else 0
    s = compact.vs & _S_MASK
    _check_components(compact.r, s, recovery_id)
    return SignatureBundle(r=compact.r, s=s, recovery_id=recovery_id)
