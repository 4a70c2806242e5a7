from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from optionrelay.common.errors import (
    AlreadyFinalized,
    DuplicateOrder,
    OrderExpired,
    OrderNotFound,
    OrderUnavailable,
    SignatureError,
    Unauthorized,
    ValidationError,
)
from optionrelay.execution.order_lifecycle import OrderState
from optionrelay.execution.records import FillReceipt, ListFilters
from optionrelay.execution.relay import OrderRelay
from optionrelay.protocol.calldata import FILL_ORDER_ARGS_SELECTOR, encode_fill_order_args
from optionrelay.protocol.eip712 import Eip712Domain, hash_signed_struct
from optionrelay.protocol.signatures import to_compact
from optionrelay.protocol.traits import taker_traits_for
from tests.support import CHAIN_ID, LOP, NFT, make_builder, option_params, order_params, relay_config

TAKER = "0x" + "77" * 20
TX_A = "0x" + "a1" * 32
TX_B = "0x" + "b2" * 32


def _receipt(bundle, tx_hash: str = TX_A, **overrides) -> FillReceipt:
    params = dict(
        tx_hash=tx_hash,
        filled_making=bundle.order.making_amount,
        filled_taking=bundle.order.taking_amount,
        taker=TAKER,
        block_number=100,
    )
    params.update(overrides)
    return FillReceipt(**params)


@pytest.mark.asyncio
async def test_submit_stores_open_record(relay, bundle):
    record = await relay.submit(bundle)

    assert record.state == OrderState.OPEN
    assert record.order_id == bundle.order_id
    assert record.maker == bundle.order.maker
    assert (await relay.get(bundle.order_id)) == record
    assert [r.order_id for r in await relay.list_open()] == [bundle.order_id]


@pytest.mark.asyncio
async def test_duplicate_submit_keeps_a_single_record(relay, bundle):
    await relay.submit(bundle)
    with pytest.raises(DuplicateOrder):
        await relay.submit(bundle)
    assert len(await relay.list_open()) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_submits(relay, bundle):
    results = await asyncio.gather(*(relay.submit(bundle) for _ in range(5)), return_exceptions=True)
    assert sum(1 for r in results if isinstance(r, DuplicateOrder)) == 4
    assert len(await relay.list_open()) == 1


@pytest.mark.asyncio
async def test_submit_rejects_tampered_order(relay, bundle):
    tampered = replace(bundle, order=bundle.order.with_changes(making_amount=bundle.order.making_amount + 1))
    with pytest.raises(SignatureError):
        await relay.submit(tampered)
    assert await relay.list_open() == []


@pytest.mark.asyncio
async def test_submit_rejects_swapped_interaction(relay, bundle):
    payload = bytearray(bundle.interaction)
    payload[-1] ^= 0x01
    with pytest.raises((ValidationError, SignatureError)):
        await relay.submit(replace(bundle, interaction=bytes(payload)))


@pytest.mark.asyncio
async def test_submit_rejects_foreign_targets(store, clock, bundle):
    other_chain = OrderRelay(store=store, config=relay_config(chain_id=1), now_fn=clock)
    with pytest.raises(ValidationError):
        await other_chain.submit(bundle)

    other_lop = OrderRelay(store=store, config=relay_config(lop_address="0x" + "99" * 20), now_fn=clock)
    with pytest.raises(ValidationError):
        await other_lop.submit(bundle)


@pytest.mark.asyncio
async def test_submit_rejects_already_expired_bundle(relay, bundle, clock):
    clock.advance(days=8)
    with pytest.raises(OrderExpired):
        await relay.submit(bundle)


@pytest.mark.asyncio
async def test_get_unknown_order(relay):
    with pytest.raises(OrderNotFound):
        await relay.get("0x" + "00" * 32)


@pytest.mark.asyncio
async def test_prepare_fill_rebuilds_exact_calldata(relay, bundle):
    await relay.submit(bundle)
    prep = await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)

    compact = to_compact(bundle.order_signature)
    assert prep.to == bundle.lop_address
    assert prep.calldata[:4] == FILL_ORDER_ARGS_SELECTOR
    assert prep.taker_traits == len(bundle.interaction) << 200
    assert prep.taker_traits == taker_traits_for(bundle.interaction)
    assert prep.r == compact.r_bytes
    assert prep.vs == compact.vs_bytes
    assert prep.interaction == bundle.interaction
    assert prep.calldata == encode_fill_order_args(
        bundle.order, compact, bundle.order.taking_amount, prep.taker_traits, bundle.interaction
    )
    assert (await relay.get(bundle.order_id)).state == OrderState.OPEN


@pytest.mark.asyncio
async def test_prepare_fill_requires_full_amount_for_single_shot(relay, bundle):
    await relay.submit(bundle)
    with pytest.raises(ValidationError):
        await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount - 1, TAKER)


@pytest.mark.asyncio
async def test_prepare_fill_on_expired_order(relay, bundle, clock):
    await relay.submit(bundle)
    clock.advance(days=7, seconds=1)
    with pytest.raises(OrderExpired):
        await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)


@pytest.mark.asyncio
async def test_prepare_fill_on_expired_and_cancelled_order_reports_expiry(relay, bundle, clock):
    await relay.submit(bundle)
    await relay.cancel(bundle.order_id, bundle.order.maker)
    clock.advance(days=30)
    with pytest.raises(OrderExpired):
        await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)


@pytest.mark.asyncio
async def test_prepare_fill_on_cancelled_order(relay, bundle):
    await relay.submit(bundle)
    await relay.cancel(bundle.order_id, bundle.order.maker)
    with pytest.raises(OrderUnavailable):
        await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)


@pytest.mark.asyncio
async def test_traits_expiration_tightens_expiry(relay, builder, maker_wallet, clock):
    early = int((clock.now + timedelta(hours=1)).timestamp())
    bundle = await builder.build(maker_wallet, order_params(expiration=early), option_params(), LOP, NFT)
    record = await relay.submit(bundle)
    assert record.expiry == early

    clock.advance(hours=2)
    with pytest.raises(OrderExpired):
        await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)


@pytest.mark.asyncio
async def test_confirm_filled_is_idempotent_for_same_receipt(relay, bundle):
    await relay.submit(bundle)
    first = await relay.confirm_filled(bundle.order_id, _receipt(bundle))
    again = await relay.confirm_filled(bundle.order_id, _receipt(bundle))

    assert first.state == OrderState.FILLED
    assert again == first
    assert first.fill_receipt.tx_hash == TX_A
    with pytest.raises(AlreadyFinalized):
        await relay.confirm_filled(bundle.order_id, _receipt(bundle, TX_B))


@pytest.mark.asyncio
async def test_confirm_filled_checks_order_hash(relay, bundle):
    await relay.submit(bundle)
    with pytest.raises(ValidationError):
        await relay.confirm_filled(bundle.order_id, _receipt(bundle, order_hash="0x" + "00" * 32))

    order_hash = hash_signed_struct(Eip712Domain("1inch Limit Order Protocol", "4", CHAIN_ID, LOP), bundle.order)
    record = await relay.confirm_filled(bundle.order_id, _receipt(bundle, order_hash="0x" + order_hash.hex()))
    assert record.state == OrderState.FILLED


@pytest.mark.asyncio
async def test_non_maker_cannot_cancel(relay, bundle, other_wallet):
    await relay.submit(bundle)
    with pytest.raises(Unauthorized):
        await relay.cancel(bundle.order_id, other_wallet.address)
    assert (await relay.get(bundle.order_id)).state == OrderState.OPEN


@pytest.mark.asyncio
async def test_maker_cancel_is_final(relay, bundle):
    await relay.submit(bundle)
    record = await relay.cancel(bundle.order_id, bundle.order.maker.lower())

    assert record.state == OrderState.CANCELLED
    assert record.cancelled_by == bundle.order.maker
    with pytest.raises(AlreadyFinalized):
        await relay.cancel(bundle.order_id, bundle.order.maker)
    with pytest.raises(AlreadyFinalized):
        await relay.confirm_filled(bundle.order_id, _receipt(bundle))


@pytest.mark.asyncio
async def test_concurrent_confirm_and_cancel_have_one_winner(relay, bundle):
    await relay.submit(bundle)
    results = await asyncio.gather(
        relay.confirm_filled(bundle.order_id, _receipt(bundle)),
        relay.cancel(bundle.order_id, bundle.order.maker),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AlreadyFinalized)
    assert (await relay.get(bundle.order_id)).state == winners[0].state


@pytest.mark.asyncio
async def test_expire_stale_sweeps_only_past_expiry(relay, builder, maker_wallet, bundle, clock):
    await relay.submit(bundle)
    later = await builder.build(
        maker_wallet,
        order_params(),
        option_params(expiry=int((clock.now + timedelta(days=30)).timestamp())),
        LOP,
        NFT,
    )
    await relay.submit(later)

    clock.advance(days=8)
    expired = await relay.expire_stale()

    assert expired == [bundle.order_id]
    assert (await relay.get(bundle.order_id)).state == OrderState.EXPIRED
    assert (await relay.get(later.order_id)).state == OrderState.OPEN
    assert await relay.expire_stale() == []


@pytest.mark.asyncio
async def test_list_open_orders_newest_first_with_filters(relay, builder, maker_wallet, other_wallet, clock):
    bundles = []
    for _ in range(3):
        b = await builder.build(maker_wallet, order_params(), option_params(), LOP, NFT)
        await relay.submit(b)
        bundles.append(b)
        clock.advance(seconds=10)
    foreign = await builder.build(other_wallet, order_params(), option_params(), LOP, NFT)
    await relay.submit(foreign)

    mine = await relay.list_open(ListFilters(maker=maker_wallet.address))
    assert [r.order_id for r in mine] == [b.order_id for b in reversed(bundles)]

    assert len(await relay.list_open(ListFilters(limit=2))) == 2
    assert [r.order_id for r in await relay.list_open(ListFilters(maker=other_wallet.address))] == [foreign.order_id]
    assert await relay.list_open(ListFilters(maker_asset=NFT)) == []

    await relay.cancel(bundles[0].order_id, maker_wallet.address)
    cancelled = await relay.list_open(ListFilters(state=OrderState.CANCELLED))
    assert [r.order_id for r in cancelled] == [bundles[0].order_id]


@pytest.mark.asyncio
async def test_list_ties_break_on_order_id(relay, builder, maker_wallet):
    ids = []
    for _ in range(3):
        b = await builder.build(maker_wallet, order_params(), option_params(), LOP, NFT)
        await relay.submit(b)
        ids.append(b.order_id)
    assert [r.order_id for r in await relay.list_open()] == sorted(ids)


def test_list_limit_bounds():
    with pytest.raises(ValidationError):
        ListFilters(limit=0)
    with pytest.raises(ValidationError):
        ListFilters(limit=101)


@pytest.mark.asyncio
async def test_end_to_end_flow(store, clock, maker_wallet):
    config = relay_config()
    builder = make_builder(clock=clock, config=config, sequence_source=store)
    relay = OrderRelay(store=store, config=config, now_fn=clock)

    bundle = await builder.build(maker_wallet, order_params(), option_params(), LOP, NFT)
    await relay.submit(bundle)

    listed = await relay.list_open()
    assert [r.order_id for r in listed] == [bundle.order_id]
    assert listed[0].order.sequence_counter == 0

    prep = await relay.prepare_fill(bundle.order_id, bundle.order.taking_amount, TAKER)
    assert prep.fill_amount == bundle.order.taking_amount
    assert prep.taker == TAKER

    filled = await relay.confirm_filled(bundle.order_id, _receipt(bundle))
    assert filled.state == OrderState.FILLED
    assert (await relay.get(bundle.order_id)).state == OrderState.FILLED
    assert await relay.list_open() == []
