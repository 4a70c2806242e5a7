"""
Firestore-backed order store.

Storage:
  {orders_collection}/{order_id}          one document per OrderRecord
  {sequences_collection}/{maker_lower}    {"next": int}

Semantics:
- `insert` uses Firestore `create()` so exactly one writer wins per order_id.
- `update_state` and `next_sequence` run inside a Firestore transaction
  (read, check, write), so concurrent relays cannot both move an order out of OPEN.
- The google client is synchronous; calls are pushed to a worker thread.

Needs the `firestore` extra (firebase-admin, google-cloud-firestore) unless a
client and `transactional` decorator are passed in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from google.api_core import exceptions as gexc

from optionrelay.common.errors import DuplicateKey, InvalidTransition, RecordNotFound
from optionrelay.execution.order_lifecycle import OrderState, require_transition
from optionrelay.execution.records import ListFilters, OrderRecord, sort_records
from optionrelay.persistence.firestore_retry import with_firestore_retry
from optionrelay.persistence.order_store import check_patch

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FirestoreOrderStore:
    def __init__(
        self,
        *,
        db: Any = None,
        project_id: str | None = None,
        orders_collection: str = "relay_orders",
        sequences_collection: str = "relay_sequences",
        transactional: Callable[..., Any] | None = None,
        retry: Callable[..., Any] = with_firestore_retry,
    ) -> None:
        if db is None:
            # Lazy imports so the in-memory path works without Firebase deps.
            from optionrelay.persistence.firebase_client import get_firestore_client

            db = get_firestore_client(project_id=project_id)
        if transactional is None:
            from firebase_admin import firestore as admin_firestore

            transactional = admin_firestore.transactional
        self._db = db
        self._orders = str(orders_collection).strip() or "relay_orders"
        self._sequences = str(sequences_collection).strip() or "relay_sequences"
        self._transactional = transactional
        self._retry = retry

    def _order_ref(self, order_id: str):
        return self._db.collection(self._orders).document(str(order_id))

    def _sequence_ref(self, maker: str):
        return self._db.collection(self._sequences).document(str(maker).strip().lower())

    async def insert(self, record: OrderRecord) -> str:
        ref = self._order_ref(record.order_id)
        doc = record.to_dict()
        try:
            await asyncio.to_thread(self._retry, lambda: ref.create(doc))
        except gexc.AlreadyExists as e:
            raise DuplicateKey("order already stored", order_id=record.order_id) from e
        return record.order_id

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        ref = self._order_ref(order_id)
        snap = await asyncio.to_thread(self._retry, lambda: ref.get())
        if not snap.exists:
            return None
        return OrderRecord.from_dict(snap.to_dict() or {})

    async def list(self, filters: ListFilters) -> list[OrderRecord]:
        # Only the state predicate runs server-side; the rest is filtered here so
        # no composite index is needed.
        from google.cloud.firestore_v1.base_query import FieldFilter

        query = self._db.collection(self._orders).where(filter=FieldFilter("state", "==", filters.state.value))
        snaps = await asyncio.to_thread(self._retry, lambda: list(query.stream()))
        records = [OrderRecord.from_dict(s.to_dict() or {}) for s in snaps]
        out = sort_records(r for r in records if filters.matches(r))
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
        ref = self._order_ref(order_id)

        def _run() -> OrderRecord:
            transaction = self._db.transaction()

            @self._transactional
            def _txn_body(txn):  # type: ignore[no-untyped-def]
                snap = ref.get(transaction=txn)
                if not snap.exists:
                    raise RecordNotFound("no such order", order_id=order_id)
                current = OrderRecord.from_dict(snap.to_dict() or {})
                if current.state != expected:
                    raise InvalidTransition(
                        f"expected state {expected.value}, found {current.state.value}",
                        order_id=order_id,
                        expected=expected.value,
                        current=current.state.value,
                    )
                require_transition(prev=current.state, nxt=new_state, order_id=order_id)
                updated = replace(current, state=new_state, updated_at=_utc_now(), **changes)
                txn.set(ref, updated.to_dict())
                return updated

            return _txn_body(transaction)

        updated = await asyncio.to_thread(self._retry, _run)
        logger.info("order_store.state_updated order_id=%s state=%s", order_id, updated.state.value)
        return updated

    async def next_sequence(self, maker: str) -> int:
        ref = self._sequence_ref(maker)

        def _run() -> int:
            transaction = self._db.transaction()

            @self._transactional
            def _txn_body(txn):  # type: ignore[no-untyped-def]
                snap = ref.get(transaction=txn)
                value = int((snap.to_dict() or {}).get("next") or 0) if snap.exists else 0
                txn.set(ref, {"maker": str(maker).strip().lower(), "next": value + 1, "updated_at": _utc_now()})
                return value

            return _txn_body(transaction)

        return await asyncio.to_thread(self._retry, _run)
