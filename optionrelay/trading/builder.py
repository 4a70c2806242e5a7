"""
Dual-signature order builder.

One build produces a single-shot limit order plus the option grant it pays for:

1. sequence counter (explicit -> store monotonic counter -> random 40-bit)
2. maker traits: no partial fills + multiple fills disabled (+ optional expiration)
3. hash + sign the `Order` under the limit-order domain
4. terms salt
5. hash + sign the `Option` terms under the option contract's domain
6. pack the post-interaction payload

Safety:
- All input validation happens before the wallet is asked for anything.
- After every signature the signer is recovered from our own hash and compared
  with the address captured at build start; the wallet's current address is
  re-read too. Any drift aborts the build and drops collected signatures.
- Only `SignerUnavailable` is retried (tenacity, bounded, exponential backoff).
- Cancellation propagates; a partial bundle is never returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from optionrelay.common.config import RelayConfig
from optionrelay.common.errors import (
    IdentityMismatch,
    OptionRelayError,
    SignerMismatch,
    SignerUnavailable,
    ValidationError,
)
from optionrelay.common.logging import bind_correlation_id, log_event
from optionrelay.protocol.eip712 import Eip712Domain, hash_signed_struct, typed_data
from optionrelay.protocol.interaction import encode_option_interaction
from optionrelay.protocol.salt import RandomCounterSource, SaltGenerator
from optionrelay.protocol.signatures import SignatureBundle, from_rsv, verify_signer
from optionrelay.protocol.traits import COUNTER_BITS, MakerTraitsFields, encode_maker_traits
from optionrelay.trading.intents import OptionTerms, OrderIntent, SignedStruct, normalize_address, require_uint256
from optionrelay.trading.wallet import WalletProvider

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SequenceSource(Protocol):
    async def next_sequence(self, maker: str) -> int: ...


@dataclass(frozen=True, slots=True)
class OrderParams:
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    receiver: Optional[str] = None
    # Absolute unix seconds; 0 = no traits-level expiration.
    expiration: int = 0


@dataclass(frozen=True, slots=True)
class OptionParams:
    underlying_asset: str
    strike_asset: str
    strike_price: int
    expiry: int
    amount: int


@dataclass(frozen=True, slots=True)
class OrderBundle:
    order: OrderIntent
    order_signature: SignatureBundle
    lop_address: str
    chain_id: int
    option_terms: Optional[OptionTerms] = None
    terms_signature: Optional[SignatureBundle] = None
    interaction: Optional[bytes] = None
    options_nft_address: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "lop_address", normalize_address(self.lop_address, field="lop_address"))
        if self.options_nft_address is not None:
            object.__setattr__(
                self,
                "options_nft_address",
                normalize_address(self.options_nft_address, field="options_nft_address"),
            )
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ValidationError("chain_id must be a positive integer", field="chain_id")
        if (self.option_terms is None) != (self.terms_signature is None):
            raise ValidationError("option_terms and terms_signature must be provided together")
        if self.interaction is not None and self.option_terms is None:
            raise ValidationError("interaction requires option terms")

    @property
    def order_id(self) -> str:
        return self.order.order_id()

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "order_signature": self.order_signature.to_dict(),
            "option_terms": None if self.option_terms is None else self.option_terms.to_dict(),
            "terms_signature": None if self.terms_signature is None else self.terms_signature.to_dict(),
            "interaction": None if self.interaction is None else "0x" + self.interaction.hex(),
            "lop_address": self.lop_address,
            "options_nft_address": self.options_nft_address,
            "chain_id": self.chain_id,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "OrderBundle":
        def _sig(raw: Any) -> Optional[SignatureBundle]:
            if raw is None:
                return None
            return from_rsv(raw["r"], raw["s"], int(raw["v"]))

        interaction = d.get("interaction")
        if isinstance(interaction, str):
            h = interaction[2:] if interaction.startswith(("0x", "0X")) else interaction
            try:
                interaction = bytes.fromhex(h)
            except ValueError as e:
                raise ValidationError("interaction is not valid hex", field="interaction") from e

        terms = d.get("option_terms")
        return cls(
            order=OrderIntent.from_dict(d["order"]),
            order_signature=_sig(d["order_signature"]),  # type: ignore[arg-type]
            option_terms=None if terms is None else OptionTerms.from_dict(terms),
            terms_signature=_sig(d.get("terms_signature")),
            interaction=interaction,
            lop_address=d["lop_address"],
            options_nft_address=d.get("options_nft_address"),
            chain_id=int(d["chain_id"]),
        )


def order_domain(config: RelayConfig, chain_id: int, lop_address: str) -> Eip712Domain:
    return Eip712Domain(
        name=config.lop_domain_name,
        version=config.lop_domain_version,
        chain_id=chain_id,
        verifying_contract=lop_address,
    )


def option_domain(config: RelayConfig, chain_id: int, options_nft_address: str) -> Eip712Domain:
    return Eip712Domain(
        name=config.option_domain_name,
        version=config.option_domain_version,
        chain_id=chain_id,
        verifying_contract=options_nft_address,
    )


def verify_bundle(bundle: OrderBundle, *, chain_id: int, config: RelayConfig | None = None) -> None:
    """
    Recompute both signing hashes and check both signatures against the order maker.

    Also checks that a present interaction payload is exactly the one the terms
    and terms signature produce.
    """
    cfg = config or RelayConfig(chain_id=chain_id)
    if bundle.chain_id != chain_id:
        raise ValidationError(
            "bundle chain_id does not match",
            order_id=bundle.order_id,
            expected=chain_id,
            actual=bundle.chain_id,
        )

    maker = bundle.order.maker
    order_hash = hash_signed_struct(order_domain(cfg, chain_id, bundle.lop_address), bundle.order)
    verify_signer(order_hash, bundle.order_signature, maker)

    terms = bundle.option_terms
    if terms is None:
        return
    if bundle.options_nft_address is None:
        raise ValidationError("option terms require options_nft_address", order_id=bundle.order_id)
    if terms.maker != maker:
        raise ValidationError("option terms maker differs from order maker", order_id=bundle.order_id)
    assert bundle.terms_signature is not None
    terms_hash = hash_signed_struct(option_domain(cfg, chain_id, bundle.options_nft_address), terms)
    verify_signer(terms_hash, bundle.terms_signature, maker)

    if bundle.interaction is not None:
        expected = encode_option_interaction(bundle.options_nft_address, terms, bundle.terms_signature)
        if bundle.interaction != expected:
            raise ValidationError("interaction payload does not match the signed terms", order_id=bundle.order_id)


class DualSignatureOrderBuilder:
    def __init__(
        self,
        *,
        config: RelayConfig | None = None,
        salt_generator: SaltGenerator | None = None,
        sequence_source: SequenceSource | None = None,
        random_counters: RandomCounterSource | None = None,
        retry_wait: Any = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config or RelayConfig()
        self._salts = salt_generator or SaltGenerator(
            bits=self._config.salt_bits,
            max_attempts=self._config.salt_max_attempts,
        )
        self._sequence_source = sequence_source
        self._random_counters = random_counters or RandomCounterSource()
        self._retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.2, max=2)
        self._now_fn = now_fn

    @property
    def salt_generator(self) -> SaltGenerator:
        return self._salts

    async def _next_counter(self, maker: str, explicit: int | None) -> int:
        if explicit is not None:
            counter = explicit
        elif self._sequence_source is not None:
            counter = await self._sequence_source.next_sequence(maker)
        else:
            counter = self._random_counters.next(maker)
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0 or counter >> COUNTER_BITS:
            raise ValidationError(f"sequence counter must fit {COUNTER_BITS} bits", field="sequence_counter")
        return counter

    def _validate(
        self,
        order_params: OrderParams,
        option_params: OptionParams | None,
        now_ts: int,
    ) -> None:
        require_uint256(order_params.making_amount, field="making_amount", positive=True)
        require_uint256(order_params.taking_amount, field="taking_amount", positive=True)
        if order_params.expiration and order_params.expiration <= now_ts:
            raise ValidationError("order expiration must be in the future", field="expiration")
        if option_params is None:
            return
        require_uint256(option_params.strike_price, field="strike_price", positive=True)
        require_uint256(option_params.amount, field="amount", positive=True)
        expiry = require_uint256(option_params.expiry, field="expiry")
        if expiry <= now_ts:
            raise ValidationError("option expiry must be in the future", field="expiry")

    async def _sign(
        self,
        wallet: WalletProvider,
        domain: Eip712Domain,
        value: SignedStruct,
        *,
        expected_signer: str,
    ) -> SignatureBundle:
        digest = hash_signed_struct(domain, value)
        message = typed_data(domain, value)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.signer_retry_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(SignerUnavailable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log_event(
                        logger,
                        "builder.signer_retry",
                        severity="WARNING",
                        attempt=attempt.retry_state.attempt_number,
                        primary_type=value.SCHEMA.primary_type,
                    )
                signature = await wallet.sign_typed_data(message)

        try:
            verify_signer(digest, signature, expected_signer)
        except SignerMismatch as e:
            raise IdentityMismatch(
                "signature was produced by a different identity than the build started with",
                expected=expected_signer,
                recovered=e.detail.get("recovered"),
            ) from e

        current = normalize_address(await wallet.get_address(), field="wallet_address")
        if current != expected_signer:
            raise IdentityMismatch(
                "wallet identity changed during build",
                expected=expected_signer,
                current=current,
            )
        return signature

    async def build(
        self,
        wallet: WalletProvider,
        order_params: OrderParams,
        option_params: OptionParams | None,
        lop_address: str,
        options_nft_address: str | None,
        *,
        sequence_counter: int | None = None,
    ) -> OrderBundle:
        cfg = self._config
        lop = normalize_address(lop_address, field="lop_address")
        nft = None if options_nft_address is None else normalize_address(options_nft_address, field="options_nft_address")
        if option_params is not None and nft is None:
            raise ValidationError("options_nft_address is required with option params", field="options_nft_address")

        now_ts = int(self._now_fn().timestamp())
        self._validate(order_params, option_params, now_ts)

        with bind_correlation_id():
            maker = normalize_address(await wallet.get_address(), field="maker")
            counter = await self._next_counter(maker, sequence_counter)
            traits = encode_maker_traits(
                MakerTraitsFields.single_shot(counter=counter, expiration=int(order_params.expiration or 0))
            )
            # Salts are zero until reserved; constructing the drafts validates every field up front.
            draft_order = OrderIntent(
                maker=maker,
                receiver=order_params.receiver,
                maker_asset=order_params.maker_asset,
                taker_asset=order_params.taker_asset,
                making_amount=order_params.making_amount,
                taking_amount=order_params.taking_amount,
                maker_traits=traits,
                salt=0,
            )
            draft_terms = None
            if option_params is not None:
                draft_terms = OptionTerms(
                    underlying_asset=option_params.underlying_asset,
                    strike_asset=option_params.strike_asset,
                    maker=maker,
                    strike_price=option_params.strike_price,
                    expiry=option_params.expiry,
                    amount=option_params.amount,
                    salt=0,
                )

            salts_taken: list[int] = []
            try:
                order_content = [
                    int(draft_order.maker_asset, 16),
                    int(draft_order.taker_asset, 16),
                    draft_order.making_amount,
                    draft_order.taking_amount,
                    counter,
                ]
                order_salt = self._salts.generate(maker, order_content)
                salts_taken.append(order_salt)
                order = draft_order.with_changes(salt=order_salt)
                order_signature = await self._sign(
                    wallet,
                    order_domain(cfg, cfg.chain_id, lop),
                    order,
                    expected_signer=maker,
                )
                log_event(logger, "builder.order_signed", order_id=order.order_id(), maker=maker, counter=counter)

                terms = terms_signature = interaction = None
                if draft_terms is not None:
                    assert nft is not None
                    terms_salt = self._salts.generate(maker, draft_terms.content_fields())
                    salts_taken.append(terms_salt)
                    terms = replace(draft_terms, salt=terms_salt)
                    terms_signature = await self._sign(
                        wallet,
                        option_domain(cfg, cfg.chain_id, nft),
                        terms,
                        expected_signer=maker,
                    )
                    interaction = encode_option_interaction(nft, terms, terms_signature)
            except BaseException as e:
                # Collected signatures are dropped with this frame; reserved salts go back.
                for salt in salts_taken:
                    self._salts.release(maker, salt)
                if isinstance(e, OptionRelayError):
                    log_event(
                        logger,
                        "builder.build_aborted",
                        severity="WARNING",
                        maker=maker,
                        error=e.code,
                        reason=e.message,
                    )
                raise

            bundle = OrderBundle(
                order=order,
                order_signature=order_signature,
                option_terms=terms,
                terms_signature=terms_signature,
                interaction=interaction,
                lop_address=lop,
                options_nft_address=nft if terms is not None else None,
                chain_id=cfg.chain_id,
            )
            log_event(
                logger,
                "builder.bundle_built",
                order_id=bundle.order_id,
                maker=maker,
                has_option=terms is not None,
                interaction_length=len(interaction or b""),
            )
            return bundle
