"""
Wallet / identity provider interface.

The builder never touches key material directly. It asks a wallet for its
address and for eth_signTypedData_v4-style signatures over a `full_message`
document (see `optionrelay.protocol.eip712.typed_data`).
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, runtime_checkable

from eth_account import Account
from eth_account.messages import encode_typed_data

from optionrelay.protocol.signatures import SignatureBundle, from_rsv

logger = logging.getLogger(__name__)


@runtime_checkable
class WalletProvider(Protocol):
    """
    Async signer interface.

    Implementations:
    - raise `SigningRejected` when the holder refuses to sign
    - raise `SignerUnavailable` for transient failures (the builder retries those)
    - may change identity between calls (account switch); the builder re-checks
    """

    async def get_address(self) -> str:
        """
        Current checksummed signer address.
        """

    async def sign_typed_data(self, full_message: Mapping[str, Any]) -> SignatureBundle:
        """
        Sign an EIP-712 document and return the normalized signature.
        """


class LocalKeyWallet:
    """
    In-process wallet backed by a raw private key (dev, tests, bots).
    """

    def __init__(self, private_key: bytes | str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def get_address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, full_message: Mapping[str, Any]) -> SignatureBundle:
        signable = encode_typed_data(full_message=dict(full_message))
        signed = self._account.sign_message(signable)
        logger.debug("local wallet signed typed data primary_type=%s", full_message.get("primaryType"))
        return from_rsv(signed.r, signed.s, signed.v)
