"""
Uniqueness tokens.

- `SaltGenerator`: option-terms salts. keccak over (maker, content, entropy,
  attempt), reduced mod 2^bits. The in-process `used_salts` set is a collision
  heuristic only; the option contract rejects a reused (maker, terms, salt) at
  settlement and stays the source of truth.
- `RandomCounterSource`: random 40-bit order sequence counters, for makers that
  do not use the store-backed monotonic counter.

Collision math: with k-bit salts and m salts per maker, the birthday bound is
roughly m^2 / 2^(k+1). The 64-bit default keeps a million salts per maker below
1e-7.
"""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Sequence

from eth_abi import encode as abi_encode
from eth_utils import is_address, keccak, to_checksum_address

from optionrelay.common.errors import DuplicateSalt, ValidationError
from optionrelay.protocol.traits import COUNTER_BITS

logger = logging.getLogger(__name__)

MIN_SALT_BITS = 40


class SaltGenerator:
    def __init__(self, *, bits: int = 64, max_attempts: int = 16) -> None:
        if not (MIN_SALT_BITS <= int(bits) <= 256):
            raise ValidationError(f"salt bits must be within [{MIN_SALT_BITS}, 256]")
        if int(max_attempts) < 1:
            raise ValidationError("max_attempts must be >= 1")
        self.bits = int(bits)
        self.max_attempts = int(max_attempts)
        self._modulus = 1 << self.bits
        self._lock = threading.Lock()
        self._used: dict[str, set[int]] = {}

    def _derive(self, maker: str, content: Sequence[int], entropy: int, attempt: int) -> int:
        digest = keccak(
            abi_encode(
                ["address", "uint256[]", "uint256", "uint256"],
                [maker, list(content), entropy, attempt],
            )
        )
        return int.from_bytes(digest, "big") % self._modulus

    def generate(self, maker: str, content_fields: Sequence[int], extra_entropy: int | None = None) -> int:
        """
        Return a salt not yet handed out for `maker` in this process.

        `content_fields` are the uint256 economic fields of the terms being salted.
        On collision the attempt counter is bumped and the hash recomputed; after
        `max_attempts` a DuplicateSalt is raised.
        """
        if not is_address(maker):
            raise ValidationError("maker must be an address", field="maker")
        maker_cs = to_checksum_address(maker)
        content = [int(v) for v in content_fields]
        if any(v < 0 or v >> 256 for v in content):
            raise ValidationError("salt content fields must be uint256")
        entropy = secrets.randbits(128) if extra_entropy is None else int(extra_entropy)
        if entropy < 0 or entropy >> 256:
            raise ValidationError("extra_entropy must be uint256")

        with self._lock:
            used = self._used.setdefault(maker_cs, set())
            for attempt in range(self.max_attempts):
                salt = self._derive(maker_cs, content, entropy, attempt)
                if salt not in used:
                    used.add(salt)
                    if attempt:
                        logger.debug("salt collision resolved maker=%s attempts=%d", maker_cs, attempt + 1)
                    return salt
        raise DuplicateSalt(
            f"no unused salt after {self.max_attempts} attempts",
            maker=maker_cs,
        )

    def reserve(self, maker: str, salt: int) -> None:
        """
        Mark an externally chosen salt as used. Raises DuplicateSalt if already taken.
        """
        maker_cs = to_checksum_address(maker)
        with self._lock:
            used = self._used.setdefault(maker_cs, set())
            if salt in used:
                raise DuplicateSalt("salt already used for maker", maker=maker_cs, salt=str(salt))
            used.add(int(salt))

    def release(self, maker: str, salt: int) -> None:
        maker_cs = to_checksum_address(maker)
        with self._lock:
            self._used.get(maker_cs, set()).discard(int(salt))

    def is_used(self, maker: str, salt: int) -> bool:
        with self._lock:
            return int(salt) in self._used.get(to_checksum_address(maker), set())

    def used_count(self, maker: str) -> int:
        with self._lock:
            return len(self._used.get(to_checksum_address(maker), set()))


class RandomCounterSource:
    """
    Random 40-bit sequence counters with negligible collision probability.
    """

    def next(self, maker: str) -> int:  # noqa: ARG002
        return secrets.randbits(COUNTER_BITS)
