"""
Order relay: accepts signed bundles, tracks their lifecycle and rebuilds fill calldata.

Concurrency:
- submit / confirm_filled / cancel / expire are serialised per order_id with an
  in-process asyncio.Lock (created on demand, dropped once nobody holds or waits on it).
- The store additionally enforces create-only inserts and compare-and-swap state
  updates, so two relay processes sharing a store cannot double-finalize an order.
- Distinct order ids never contend.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

from optionrelay.common.config import RelayConfig
from optionrelay.common.errors import (
    AlreadyFinalized,
    DuplicateKey,
    DuplicateOrder,
    InvalidTransition,
    OrderExpired,
    OrderNotFound,
    OrderUnavailable,
    Unauthorized,
    ValidationError,
)
from optionrelay.common.logging import bind_correlation_id, log_event
from optionrelay.execution.order_lifecycle import OrderState
from optionrelay.execution.records import FillReceipt, ListFilters, OrderRecord
from optionrelay.persistence.order_store import OrderStore
from optionrelay.protocol.calldata import encode_fill_order_args, order_tuple
from optionrelay.protocol.eip712 import hash_signed_struct
from optionrelay.protocol.signatures import to_compact
from optionrelay.protocol.traits import taker_traits_for
from optionrelay.trading.builder import OrderBundle, order_domain, verify_bundle
from optionrelay.trading.intents import normalize_address, require_uint256

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FillPreparation:
    """
    Everything a taker needs to submit `fillOrderArgs` for one order.
    """

    order_id: str
    to: str
    calldata: bytes
    order_tuple: tuple[int, ...]
    r: bytes
    vs: bytes
    fill_amount: int
    taker_traits: int
    interaction: bytes
    taker: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "to": self.to,
            "calldata": "0x" + self.calldata.hex(),
            "order_tuple": [str(v) for v in self.order_tuple],
            "r": "0x" + self.r.hex(),
            "vs": "0x" + self.vs.hex(),
            "fill_amount": str(self.fill_amount),
            "taker_traits": str(self.taker_traits),
            "interaction": "0x" + self.interaction.hex(),
            "taker": self.taker,
        }


class OrderRelay:
    def __init__(
        self,
        *,
        store: OrderStore,
        config: RelayConfig | None = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._config = config or RelayConfig()
        self._now_fn = now_fn
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def store(self) -> OrderStore:
        return self._store

    def _now_ts(self) -> int:
        return int(self._now_fn().timestamp())

    @asynccontextmanager
    async def _order_lock(self, order_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks[order_id] = asyncio.Lock()
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[order_id] - 1
            if remaining:
                self._lock_users[order_id] = remaining
            else:
                del self._lock_users[order_id]
                del self._locks[order_id]

    async def _require(self, order_id: str) -> OrderRecord:
        record = await self._store.get(order_id)
        if record is None:
            raise OrderNotFound("no such order", order_id=order_id)
        return record

    def _check_targets(self, bundle: OrderBundle) -> None:
        cfg = self._config
        if bundle.chain_id != cfg.chain_id:
            raise ValidationError(
                "bundle targets a different chain",
                order_id=bundle.order_id,
                expected=cfg.chain_id,
                actual=bundle.chain_id,
            )
        if cfg.lop_address is not None and bundle.lop_address != cfg.lop_address:
            raise ValidationError("bundle targets a different settlement contract", order_id=bundle.order_id)
        if (
            cfg.options_nft_address is not None
            and bundle.options_nft_address is not None
            and bundle.options_nft_address != cfg.options_nft_address
        ):
            raise ValidationError("bundle targets a different option contract", order_id=bundle.order_id)
        if cfg.enforce_single_shot_fill and not bundle.order.traits.is_single_shot:
            raise ValidationError("only single-shot orders are accepted", order_id=bundle.order_id)

    async def submit(self, bundle: OrderBundle) -> OrderRecord:
        order_id = bundle.order_id
        with bind_correlation_id():
            self._check_targets(bundle)
            verify_bundle(bundle, chain_id=self._config.chain_id, config=self._config)

            now = self._now_fn()
            record = OrderRecord.open(bundle, now=now)
            if record.is_expired(int(now.timestamp())):
                raise OrderExpired("order is already past expiry", order_id=order_id, expiry=record.expiry)

            async with self._order_lock(order_id):
                if await self._store.get(order_id) is not None:
                    raise DuplicateOrder("order already submitted", order_id=order_id)
                try:
                    await self._store.insert(record)
                except DuplicateKey as e:
                    raise DuplicateOrder("order already submitted", order_id=order_id) from e

            log_event(
                logger,
                "relay.order_submitted",
                order_id=order_id,
                maker=record.maker,
                expiry=record.expiry,
                has_option=bundle.option_terms is not None,
            )
            return record

    async def get(self, order_id: str) -> OrderRecord:
        return await self._require(order_id)

    async def list_open(self, filters: ListFilters | None = None) -> list[OrderRecord]:
        """
        Records matching `filters`, newest first (ties by ascending order_id).
        """
        f = filters or ListFilters()
        if f.limit is None:
            f = replace(f, limit=self._config.list_default_limit)
        return await self._store.list(f)

    async def prepare_fill(self, order_id: str, fill_amount: int, taker: str) -> FillPreparation:
        record = await self._require(order_id)
        if record.is_expired(self._now_ts()):
            raise OrderExpired("order is past expiry", order_id=order_id, expiry=record.expiry)
        if record.state != OrderState.OPEN:
            raise OrderUnavailable(f"order is {record.state.value}", order_id=order_id, state=record.state.value)

        taker_cs = normalize_address(taker, field="taker")
        amount = require_uint256(fill_amount, field="fill_amount", positive=True)
        order = record.order
        if order.traits.is_single_shot:
            if amount != order.taking_amount:
                raise ValidationError(
                    "single-shot orders must be filled for the full taking amount",
                    order_id=order_id,
                    fill_amount=str(amount),
                    taking_amount=str(order.taking_amount),
                )
        elif amount > order.taking_amount:
            raise ValidationError("fill amount exceeds the order's taking amount", order_id=order_id)

        interaction = record.interaction or b""
        taker_traits = taker_traits_for(interaction)
        compact = to_compact(record.order_signature)
        calldata = encode_fill_order_args(order, compact, amount, taker_traits, interaction)

        log_event(
            logger,
            "relay.fill_prepared",
            severity="DEBUG",
            order_id=order_id,
            taker=taker_cs,
            fill_amount=str(amount),
        )
        return FillPreparation(
            order_id=order_id,
            to=record.bundle.lop_address,
            calldata=calldata,
            order_tuple=order_tuple(order),
            r=compact.r_bytes,
            vs=compact.vs_bytes,
            fill_amount=amount,
            taker_traits=taker_traits,
            interaction=interaction,
            taker=taker_cs,
        )

    def _check_receipt(self, record: OrderRecord, receipt: FillReceipt) -> None:
        if receipt.order_hash is None:
            return
        bundle = record.bundle
        expected = hash_signed_struct(order_domain(self._config, bundle.chain_id, bundle.lop_address), bundle.order)
        if receipt.order_hash.lower() != "0x" + expected.hex():
            raise ValidationError("receipt order hash does not match this order", order_id=record.order_id)

    async def confirm_filled(self, order_id: str, receipt: FillReceipt) -> OrderRecord:
        """
        OPEN -> FILLED. Re-confirming with the same receipt returns the stored record.
        """
        with bind_correlation_id():
            async with self._order_lock(order_id):
                record = await self._require(order_id)
                self._check_receipt(record, receipt)
                if record.state == OrderState.FILLED and record.fill_receipt is not None:
                    if record.fill_receipt.same_receipt(receipt):
                        return record
                if record.state != OrderState.OPEN:
                    raise AlreadyFinalized(
                        f"order is {record.state.value}",
                        order_id=order_id,
                        state=record.state.value,
                    )
                try:
                    updated = await self._store.update_state(
                        order_id,
                        OrderState.FILLED,
                        expected=OrderState.OPEN,
                        patch={"fill_receipt": receipt},
                    )
                except InvalidTransition as e:
                    # Another relay process finalized it between our read and the CAS.
                    current = await self._require(order_id)
                    if current.fill_receipt is not None and current.fill_receipt.same_receipt(receipt):
                        return current
                    raise AlreadyFinalized(
                        f"order is {current.state.value}",
                        order_id=order_id,
                        state=current.state.value,
                    ) from e

            log_event(logger, "relay.order_filled", order_id=order_id, tx_hash=receipt.tx_hash)
            return updated

    async def cancel(self, order_id: str, requester: str) -> OrderRecord:
        with bind_correlation_id():
            requester_cs = normalize_address(requester, field="requester")
            async with self._order_lock(order_id):
                record = await self._require(order_id)
                if requester_cs != record.maker:
                    log_event(
                        logger,
                        "relay.cancel_refused",
                        severity="WARNING",
                        order_id=order_id,
                        requester=requester_cs,
                    )
                    raise Unauthorized("only the maker may cancel", order_id=order_id)
                if record.state != OrderState.OPEN:
                    raise AlreadyFinalized(
                        f"order is {record.state.value}",
                        order_id=order_id,
                        state=record.state.value,
                    )
                try:
                    updated = await self._store.update_state(
                        order_id,
                        OrderState.CANCELLED,
                        expected=OrderState.OPEN,
                        patch={"cancelled_by": requester_cs},
                    )
                except InvalidTransition as e:
                    current = await self._require(order_id)
                    raise AlreadyFinalized(
                        f"order is {current.state.value}",
                        order_id=order_id,
                        state=current.state.value,
                    ) from e

            log_event(logger, "relay.order_cancelled", order_id=order_id, maker=record.maker)
            return updated

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """
        Move every OPEN record past its expiry to EXPIRED. Returns the expired ids.
        """
        now_ts = int((now or self._now_fn()).timestamp())
        candidates = await self._store.list(ListFilters(state=OrderState.OPEN))
        expired: list[str] = []
        for record in candidates:
            if not record.is_expired(now_ts):
                continue
            async with self._order_lock(record.order_id):
                try:
                    await self._store.update_state(record.order_id, OrderState.EXPIRED, expected=OrderState.OPEN)
                except InvalidTransition:
                    logger.debug("expire skipped; order finalized concurrently order_id=%s", record.order_id)
                    continue
            expired.append(record.order_id)
        if expired:
            log_event(logger, "relay.orders_expired", count=len(expired), order_ids=expired)
        return expired
