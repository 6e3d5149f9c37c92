"""
In-memory stores for user operations, settlement events and bundling
transactions.

Each call runs under one ``asyncio.Lock`` so conditional and bulk writes
apply all-or-nothing. Records are copied in and out; callers never hold a
reference to stored state.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.lifecycle.models import (
    BundlingTransaction,
    TransactionStatus,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
)
from ..core.lifecycle.store import RecordRef


Slot = Tuple[int, str, int, int]


def _copy(record: UserOperationRecord) -> UserOperationRecord:
    return record.model_copy(deep=True)


class InMemoryOperationStore:
    """OperationStore backed by dicts, with a unique index on the nonce slot."""

    def __init__(self):
        self._records: Dict[str, UserOperationRecord] = {}
        self._slots: Dict[Slot, str] = {}
        self._lock = asyncio.Lock()

    def _matching(self, chain_id: int, status: UserOperationStatus) -> List[UserOperationRecord]:
        return [
            r for r in self._records.values()
            if r.chain_id == chain_id and r.status == status
        ]

    async def find_by_slot(
        self, chain_id: int, sender: str, nonce_key: int, nonce_value: int
    ) -> Optional[UserOperationRecord]:
        async with self._lock:
            record_id = self._slots.get((chain_id, sender, nonce_key, nonce_value))
            if record_id is None:
                return None
            return _copy(self._records[record_id])

    async def find_by_hash(self, chain_id: int, user_op_hash: str) -> Optional[UserOperationRecord]:
        async with self._lock:
            for record in self._records.values():
                if record.chain_id == chain_id and record.user_op_hash == user_op_hash:
                    return _copy(record)
            return None

    async def find_by_hashes(
        self, chain_id: int, user_op_hashes: Iterable[str]
    ) -> List[UserOperationRecord]:
        wanted = set(user_op_hashes)
        async with self._lock:
            return [
                _copy(r) for r in self._records.values()
                if r.chain_id == chain_id and r.user_op_hash in wanted
            ]

    async def find_local_in_window(
        self, chain_id: int, start_at: datetime, end_at: datetime
    ) -> List[UserOperationRecord]:
        async with self._lock:
            return [
                _copy(r) for r in self._matching(chain_id, UserOperationStatus.LOCAL)
                if start_at < r.created_at <= end_at
            ]

    async def find_local(self, limit: int) -> List[UserOperationRecord]:
        async with self._lock:
            local = [r for r in self._records.values() if r.status == UserOperationStatus.LOCAL]
            return [_copy(r) for r in local[:limit]]

    async def find_local_by_entry_point(
        self, chain_id: int, entry_point: str, limit: int
    ) -> List[UserOperationRecord]:
        async with self._lock:
            local = [
                r for r in self._matching(chain_id, UserOperationStatus.LOCAL)
                if r.entry_point == entry_point
            ]
            local.sort(key=lambda r: r.created_at)
            return [_copy(r) for r in local[:limit]]

    async def find_highest_done(
        self, chain_id: int, sender: str, nonce_key: int
    ) -> Optional[UserOperationRecord]:
        async with self._lock:
            done = [
                r for r in self._matching(chain_id, UserOperationStatus.DONE)
                if r.sender == sender and r.nonce_key == nonce_key
            ]
            if not done:
                return None
            return _copy(max(done, key=lambda r: r.nonce_value))

    async def insert_if_absent(self, record: UserOperationRecord) -> bool:
        async with self._lock:
            if record.slot in self._slots or record.id in self._records:
                return False
            self._records[record.id] = _copy(record)
            self._slots[record.slot] = record.id
            return True

    async def reset_to_local(
        self,
        record_id: str,
        expected_revision: int,
        *,
        user_op_hash: str,
        entry_point: str,
        origin: Dict[str, Any],
        created_at: datetime,
    ) -> Optional[UserOperationRecord]:
        async with self._lock:
            record = self._records.get(record_id)
            if (
                record is None
                or record.revision != expected_revision
                or record.status != UserOperationStatus.DONE
            ):
                return None

            updated = record.model_copy(
                update={
                    "user_op_hash": user_op_hash,
                    "entry_point": entry_point,
                    "origin": dict(origin),
                    "status": UserOperationStatus.LOCAL,
                    "tx_hash": None,
                    "block_number": None,
                    "block_hash": None,
                    "created_at": created_at,
                    "revision": record.revision + 1,
                },
                deep=True,
            )
            self._records[record_id] = updated
            return _copy(updated)

    async def mark_pending(self, refs: Sequence[RecordRef], tx_hash: str) -> int:
        async with self._lock:
            matched = 0
            for record_id, revision in refs:
                record = self._records.get(record_id)
                if (
                    record is None
                    or record.revision != revision
                    or record.status != UserOperationStatus.LOCAL
                ):
                    continue
                self._records[record_id] = record.model_copy(
                    update={
                        "status": UserOperationStatus.PENDING,
                        "tx_hash": tx_hash,
                        "revision": record.revision + 1,
                    }
                )
                matched += 1
            return matched

    async def mark_done(
        self,
        chain_id: int,
        user_op_hashes: Iterable[str],
        tx_hash: str,
        block_number: int,
        block_hash: str,
    ) -> int:
        wanted = set(user_op_hashes)
        async with self._lock:
            matched = 0
            for record in self._matching(chain_id, UserOperationStatus.PENDING):
                if record.user_op_hash not in wanted:
                    continue
                self._records[record.id] = record.model_copy(
                    update={
                        "status": UserOperationStatus.DONE,
                        "tx_hash": tx_hash,
                        "block_number": block_number,
                        "block_hash": block_hash,
                        "revision": record.revision + 1,
                    }
                )
                matched += 1
            return matched

    async def delete_by_status(
        self, chain_id: int, statuses: Sequence[UserOperationStatus]
    ) -> int:
        targets = set(statuses)
        async with self._lock:
            doomed = [
                r for r in self._records.values()
                if r.chain_id == chain_id and r.status in targets
            ]
            for record in doomed:
                del self._records[record.id]
                self._slots.pop(record.slot, None)
            return len(doomed)

    def size(self) -> int:
        return len(self._records)


class InMemoryEventStore:
    """EventStore keyed by ``(chain_id, user_operation_hash)``."""

    def __init__(self):
        self._events: Dict[Tuple[int, str], UserOperationEvent] = {}
        self._lock = asyncio.Lock()

    async def find(self, chain_id: int, user_operation_hash: str) -> Optional[UserOperationEvent]:
        async with self._lock:
            event = self._events.get((chain_id, user_operation_hash))
            return event.model_copy(deep=True) if event else None

    async def insert_if_absent(self, event: UserOperationEvent) -> UserOperationEvent:
        key = (event.chain_id, event.user_operation_hash)
        async with self._lock:
            stored = self._events.setdefault(key, event.model_copy(deep=True))
            return stored.model_copy(deep=True)

    def size(self) -> int:
        return len(self._events)


class InMemoryTransactionView:
    """BundlingTransactionView fed by the submission pipeline (or tests)."""

    def __init__(self):
        self._transactions: Dict[Tuple[int, str], BundlingTransaction] = {}

    def put(
        self,
        chain_id: int,
        tx_hash: str,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> BundlingTransaction:
        transaction = BundlingTransaction(chain_id=chain_id, tx_hash=tx_hash, status=status)
        self._transactions[(chain_id, tx_hash)] = transaction
        return transaction

    async def find_by_chain_and_hash(
        self, chain_id: int, tx_hash: str
    ) -> Optional[BundlingTransaction]:
        return self._transactions.get((chain_id, tx_hash))
