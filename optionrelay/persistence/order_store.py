"""
Order store interface and the in-process implementation.

Semantics every implementation honours:
- `insert` is create-only; a second insert of the same order_id raises DuplicateKey.
- `update_state` is a compare-and-swap on the current state (`expected`).
- `next_sequence` hands out a per-maker monotonic counter starting at 0.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from eth_utils import to_checksum_address

from optionrelay.common.config import RelayConfig
from optionrelay.common.errors import DuplicateKey, InvalidTransition, RecordNotFound
from optionrelay.execution.order_lifecycle import OrderState, require_transition
from optionrelay.execution.records import ListFilters, OrderRecord, sort_records

# Record fields `update_state(..., patch=...)` may touch.
PATCHABLE_FIELDS: frozenset[str] = frozenset({"fill_receipt", "cancelled_by"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def check_patch(patch: Mapping[str, Any] | None) -> dict[str, Any]:
    out = dict(patch or {})
    unknown = sorted(set(out) - PATCHABLE_FIELDS)
    if unknown:
        raise ValueError(f"unpatchable record fields: {', '.join(unknown)}")
    return out


@runtime_checkable
class OrderStore(Protocol):
    async def insert(self, record: OrderRecord) -> str: ...

    async def get(self, order_id: str) -> Optional[OrderRecord]: ...

    async def list(self, filters: ListFilters) -> list[OrderRecord]: ...

    async def update_state(
        self,
        order_id: str,
        new_state: OrderState,
        *,
        expected: OrderState = OrderState.OPEN,
        patch: Mapping[str, Any] | None = None,
    ) -> OrderRecord: ...

    async def next_sequence(self, maker: str) -> int: ...


class InMemoryOrderStore:
    """
    Dict-backed store for tests and single-process deployments.

    Nothing here awaits while holding the lock, so the threading lock is safe
    to take from coroutines.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, OrderRecord] = {}
        self._sequences: dict[str, int] = {}

    async def insert(self, record: OrderRecord) -> str:
        with self._lock:
            if record.order_id in self._records:
                raise DuplicateKey("order already stored", order_id=record.order_id)
            self._records[record.order_id] = record
        return record.order_id

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        with self._lock:
            return self._records.get(order_id)

    async def list(self, filters: ListFilters) -> list[OrderRecord]:
        with self._lock:
            matched = [r for r in self._records.values() if filters.matches(r)]
        out = sort_records(matched)
        return out[: filters.limit] if filters.limit is not None else out

    async def update_state(
        self,
        order_id: str,
        new_state: OrderState,
        *,
        expected: OrderState = OrderState.OPEN,
        patch: Mapping[str, Any] | None = None,
    ) -> OrderRecord:
        changes = check_patch(patch)
        with self._lock:
            current = self._records.get(order_id)
            if current is None:
                raise RecordNotFound("no such order", order_id=order_id)
            if current.state != expected:
                raise InvalidTransition(
                    f"expected state {expected.value}, found {current.state.value}",
                    order_id=order_id,
                    expected=expected.value,
                    current=current.state.value,
                )
            require_transition(prev=current.state, nxt=new_state, order_id=order_id)
            updated = replace(current, state=new_state, updated_at=_utc_now(), **changes)
            self._records[order_id] = updated
            return updated

    async def next_sequence(self, maker: str) -> int:
        key = to_checksum_address(maker)
        with self._lock:
            value = self._sequences.get(key, 0)
            self._sequences[key] = value + 1
            return value


def create_order_store(config: RelayConfig, *, project_id: str | None = None) -> OrderStore:
    """
    Store backend selected by `RelayConfig.order_store`.
    """
    if config.order_store == "firestore":
        from optionrelay.persistence.firestore_order_store import FirestoreOrderStore

        return FirestoreOrderStore(project_id=project_id)
    return InMemoryOrderStore()
