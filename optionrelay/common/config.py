"""
Relay / builder configuration.

Environment-driven and read at call time (`load_config()`), never at import time.

Env:
    CHAIN_ID                   (default: 31337)
    LOP_ADDRESS                limit-order settlement contract
    OPTIONS_NFT_ADDRESS        option-grant contract invoked via the interaction
    LOP_DOMAIN_NAME / LOP_DOMAIN_VERSION        (default: "1inch Limit Order Protocol" / "4")
    OPTION_DOMAIN_NAME / OPTION_DOMAIN_VERSION  (default: "OptionNFT" / "1")
    SALT_BITS                  (default: 64, min 40, max 256)
    SALT_MAX_ATTEMPTS          (default: 16)
    SIGNER_RETRY_ATTEMPTS      (default: 3)
    LIST_DEFAULT_LIMIT         (default: 50, max 100)
    ORDER_STORE                memory | firestore (default: memory)
    ENFORCE_SINGLE_SHOT_FILL   (default: true)
    ENV                        production requires both contract addresses
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from eth_utils import is_address, to_checksum_address

from optionrelay.common.errors import ValidationError

DEFAULT_CHAIN_ID = 31337
DEFAULT_LOP_DOMAIN_NAME = "1inch Limit Order Protocol"
DEFAULT_LOP_DOMAIN_VERSION = "4"
DEFAULT_OPTION_DOMAIN_NAME = "OptionNFT"
DEFAULT_OPTION_DOMAIN_VERSION = "1"
DEFAULT_SALT_BITS = 64
MIN_SALT_BITS = 40
MAX_LIST_LIMIT = 100

_STORE_BACKENDS = {"memory", "firestore"}


def _parse_bool(raw: str | None, *, default: bool) -> bool:
    s = (raw or "").strip().lower()
    if not s:
        return default
    if s in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValidationError(f"invalid boolean value: {raw!r}")


def _parse_int_env(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        v = int(raw, 0)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer", field=name) from e
    if lo is not None and v < lo:
        raise ValidationError(f"{name} must be >= {lo}", field=name)
    if hi is not None and v > hi:
        raise ValidationError(f"{name} must be <= {hi}", field=name)
    return v


def _parse_address_env(name: str) -> Optional[str]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    if not is_address(raw):
        raise ValidationError(f"{name} is not a valid address", field=name)
    return to_checksum_address(raw)


@dataclass(frozen=True, slots=True)
class RelayConfig:
    chain_id: int = DEFAULT_CHAIN_ID
    lop_address: Optional[str] = None
    options_nft_address: Optional[str] = None
    lop_domain_name: str = DEFAULT_LOP_DOMAIN_NAME
    lop_domain_version: str = DEFAULT_LOP_DOMAIN_VERSION
    option_domain_name: str = DEFAULT_OPTION_DOMAIN_NAME
    option_domain_version: str = DEFAULT_OPTION_DOMAIN_VERSION
    salt_bits: int = DEFAULT_SALT_BITS
    salt_max_attempts: int = 16
    signer_retry_attempts: int = 3
    list_default_limit: int = 50
    order_store: str = "memory"
    enforce_single_shot_fill: bool = True
    env: str = "dev"

    def __post_init__(self) -> None:
        if self.chain_id <= 0:
            raise ValidationError("chain_id must be positive")
        if not (MIN_SALT_BITS <= self.salt_bits <= 256):
            raise ValidationError(f"salt_bits must be within [{MIN_SALT_BITS}, 256]")
        if self.salt_max_attempts < 1:
            raise ValidationError("salt_max_attempts must be >= 1")
        if self.signer_retry_attempts < 1:
            raise ValidationError("signer_retry_attempts must be >= 1")
        if not (1 <= self.list_default_limit <= MAX_LIST_LIMIT):
            raise ValidationError(f"list_default_limit must be within [1, {MAX_LIST_LIMIT}]")
        if self.order_store not in _STORE_BACKENDS:
            raise ValidationError(f"order_store must be one of {sorted(_STORE_BACKENDS)}")
        for name in ("lop_address", "options_nft_address"):
            v = getattr(self, name)
            if v is None:
                continue
            if not is_address(v):
                raise ValidationError(f"{name} is not a valid address", field=name)
            object.__setattr__(self, name, to_checksum_address(v))

    @property
    def is_production(self) -> bool:
        return self.env in {"prod", "production"}


def load_config() -> RelayConfig:
    """
    Build a RelayConfig from the environment.

    Raises ValidationError for malformed values, and in production when either
    contract address is missing.
    """
    env = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "dev").strip().lower()
    cfg = RelayConfig(
        chain_id=_parse_int_env("CHAIN_ID", DEFAULT_CHAIN_ID, lo=1),
        lop_address=_parse_address_env("LOP_ADDRESS"),
        options_nft_address=_parse_address_env("OPTIONS_NFT_ADDRESS"),
        lop_domain_name=(os.getenv("LOP_DOMAIN_NAME") or DEFAULT_LOP_DOMAIN_NAME).strip(),
        lop_domain_version=(os.getenv("LOP_DOMAIN_VERSION") or DEFAULT_LOP_DOMAIN_VERSION).strip(),
        option_domain_name=(os.getenv("OPTION_DOMAIN_NAME") or DEFAULT_OPTION_DOMAIN_NAME).strip(),
        option_domain_version=(os.getenv("OPTION_DOMAIN_VERSION") or DEFAULT_OPTION_DOMAIN_VERSION).strip(),
        salt_bits=_parse_int_env("SALT_BITS", DEFAULT_SALT_BITS, lo=MIN_SALT_BITS, hi=256),
        salt_max_attempts=_parse_int_env("SALT_MAX_ATTEMPTS", 16, lo=1),
        signer_retry_attempts=_parse_int_env("SIGNER_RETRY_ATTEMPTS", 3, lo=1),
        list_default_limit=_parse_int_env("LIST_DEFAULT_LIMIT", 50, lo=1, hi=MAX_LIST_LIMIT),
        order_store=(os.getenv("ORDER_STORE") or "memory").strip().lower(),
        enforce_single_shot_fill=_parse_bool(os.getenv("ENFORCE_SINGLE_SHOT_FILL"), default=True),
        env=env,
    )
    if cfg.is_production:
        missing = [n for n in ("LOP_ADDRESS", "OPTIONS_NFT_ADDRESS") if not (os.getenv(n) or "").strip()]
        if missing:
            raise ValidationError("missing required environment variables: " + ", ".join(missing), missing=missing)
    return cfg
