"""
Store contracts for the lifecycle core.

Backends (``userops.db``) implement these protocols. Every write is a
conditional write scoped to one record or one well-defined record set;
the manager never holds a lock across an await.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import (
    BundlingTransaction,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
)


# (record id, revision observed by the caller)
RecordRef = Tuple[str, int]


class OperationStore(Protocol):
    """Persistent collection of user operation records.

    Owns slot uniqueness: ``insert_if_absent`` must fail when any record
    already holds ``(chain_id, sender, nonce_key, nonce_value)``.
    """

    async def find_by_slot(
        self, chain_id: int, sender: str, nonce_key: int, nonce_value: int
    ) -> Optional[UserOperationRecord]:
        ...

    async def find_by_hash(self, chain_id: int, user_op_hash: str) -> Optional[UserOperationRecord]:
        ...

    async def find_by_hashes(
        self, chain_id: int, user_op_hashes: Iterable[str]
    ) -> List[UserOperationRecord]:
        ...

    async def find_local_in_window(
        self, chain_id: int, start_at: datetime, end_at: datetime
    ) -> List[UserOperationRecord]:
        """LOCAL records with ``start_at < created_at <= end_at``."""
        ...

    async def find_local(self, limit: int) -> List[UserOperationRecord]:
        ...

    async def find_local_by_entry_point(
        self, chain_id: int, entry_point: str, limit: int
    ) -> List[UserOperationRecord]:
        """LOCAL records for one entry point, oldest first."""
        ...

    async def find_highest_done(
        self, chain_id: int, sender: str, nonce_key: int
    ) -> Optional[UserOperationRecord]:
        """DONE record with the numerically greatest nonce value."""
        ...

    async def insert_if_absent(self, record: UserOperationRecord) -> bool:
        """Insert ``record`` unless its slot is taken. Returns False on conflict."""
        ...

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
        """Overwrite a DONE record in place when its revision still matches.

        Clears ``tx_hash`` and block coordinates. Returns the updated record,
        or None when the guard did not match.
        """
        ...

    async def mark_pending(self, refs: Sequence[RecordRef], tx_hash: str) -> int:
        """LOCAL -> PENDING for refs whose revision still matches."""
        ...

    async def mark_done(
        self,
        chain_id: int,
        user_op_hashes: Iterable[str],
        tx_hash: str,
        block_number: int,
        block_hash: str,
    ) -> int:
        """PENDING -> DONE for the given hashes."""
        ...

    async def delete_by_status(
        self, chain_id: int, statuses: Sequence[UserOperationStatus]
    ) -> int:
        ...


class EventStore(Protocol):
    """Settlement events, at most one per ``(chain_id, user_operation_hash)``."""

    async def find(self, chain_id: int, user_operation_hash: str) -> Optional[UserOperationEvent]:
        ...

    async def insert_if_absent(self, event: UserOperationEvent) -> UserOperationEvent:
        """Insert ``event`` or return the record already stored for its hash."""
        ...


class BundlingTransactionView(Protocol):
    """Read-only access to bundling transactions."""

    async def find_by_chain_and_hash(
        self, chain_id: int, tx_hash: str
    ) -> Optional[BundlingTransaction]:
        ...
