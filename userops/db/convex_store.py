"""
Convex-backed lifecycle stores.

Documents use the camelCase field names of the ``userOperations``,
``userOperationEvents`` and ``transactions`` tables. Conditional writes are
Convex mutations, each executed as one server-side transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.lifecycle.errors import PersistenceUnavailable
from ..core.lifecycle.models import (
    BundlingTransaction,
    TransactionStatus,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
)
from ..core.lifecycle.nonce import format_nonce_key
from ..core.lifecycle.store import RecordRef
from .convex_client import ConvexClient, ConvexError


logger = logging.getLogger(__name__)

# Nonce values are stored as decimal strings; the zero-padded copy sorts numerically.
NONCE_SORT_WIDTH = 30


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> datetime:
    if value is None:
        raise PersistenceUnavailable("Stored document is missing createdAt")
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def record_to_convex(record: UserOperationRecord) -> Dict[str, Any]:
    nonce_value = str(record.nonce_value)
    return {
        "recordId": record.id,
        "chainId": record.chain_id,
        "userOpSender": record.sender,
        "userOpNonceKey": format_nonce_key(record.nonce_key),
        "userOpNonce": nonce_value,
        "userOpNonceSort": nonce_value.zfill(NONCE_SORT_WIDTH),
        "userOpHash": record.user_op_hash,
        "entryPoint": record.entry_point,
        "origin": record.origin,
        "status": record.status.value,
        "txHash": record.tx_hash,
        "blockNumber": record.block_number,
        "blockHash": record.block_hash,
        "createdAt": _to_ms(record.created_at),
        "revision": record.revision,
    }


def record_from_convex(doc: Dict[str, Any]) -> UserOperationRecord:
    return UserOperationRecord(
        id=doc["recordId"],
        chain_id=int(doc["chainId"]),
        sender=doc["userOpSender"],
        nonce_key=int(doc["userOpNonceKey"], 16),
        nonce_value=int(doc["userOpNonce"]),
        user_op_hash=doc["userOpHash"],
        entry_point=doc["entryPoint"],
        origin=doc.get("origin") or {},
        status=UserOperationStatus(doc["status"]),
        tx_hash=doc.get("txHash"),
        block_number=doc.get("blockNumber"),
        block_hash=doc.get("blockHash"),
        created_at=_from_ms(doc.get("createdAt")),
        revision=int(doc.get("revision", 0)),
    )


def event_to_convex(event: UserOperationEvent) -> Dict[str, Any]:
    return {
        "eventId": event.id,
        "chainId": event.chain_id,
        "userOperationHash": event.user_operation_hash,
        "txHash": event.tx_hash,
        "contractAddress": event.contract_address,
        "topic": event.topic,
        "args": event.args,
        "createdAt": _to_ms(event.created_at),
    }


def event_from_convex(doc: Dict[str, Any]) -> UserOperationEvent:
    return UserOperationEvent(
        id=doc["eventId"],
        chain_id=int(doc["chainId"]),
        user_operation_hash=doc["userOperationHash"],
        tx_hash=doc["txHash"],
        contract_address=doc["contractAddress"],
        topic=doc["topic"],
        args=doc.get("args") or {},
        created_at=_from_ms(doc.get("createdAt")),
    )


class _ConvexStore:
    def __init__(self, convex_client: ConvexClient):
        self.convex = convex_client

    async def _query(self, function_name: str, args: Dict[str, Any]) -> Any:
        try:
            return await self.convex.query(function_name, args)
        except ConvexError as e:
            logger.error(f"Convex query {function_name} failed: {e}")
            raise PersistenceUnavailable(f"Query {function_name} failed: {e}") from e

    async def _mutation(self, function_name: str, args: Dict[str, Any]) -> Any:
        try:
            return await self.convex.mutation(function_name, args)
        except ConvexError as e:
            logger.error(f"Convex mutation {function_name} failed: {e}")
            raise PersistenceUnavailable(f"Mutation {function_name} failed: {e}") from e


class ConvexOperationStore(_ConvexStore):
    """OperationStore over the ``userOperations`` table.

    The table carries a unique index on
    ``(chainId, userOpSender, userOpNonceKey, userOpNonce)``.
    """

    async def find_by_slot(
        self, chain_id: int, sender: str, nonce_key: int, nonce_value: int
    ) -> Optional[UserOperationRecord]:
        doc = await self._query(
            "userOperations:getBySlot",
            {
                "chainId": chain_id,
                "userOpSender": sender,
                "userOpNonceKey": format_nonce_key(nonce_key),
                "userOpNonce": str(nonce_value),
            },
        )
        return record_from_convex(doc) if doc else None

    async def find_by_hash(self, chain_id: int, user_op_hash: str) -> Optional[UserOperationRecord]:
        doc = await self._query(
            "userOperations:getByHash",
            {"chainId": chain_id, "userOpHash": user_op_hash},
        )
        return record_from_convex(doc) if doc else None

    async def find_by_hashes(
        self, chain_id: int, user_op_hashes: Iterable[str]
    ) -> List[UserOperationRecord]:
        docs = await self._query(
            "userOperations:listByHashes",
            {"chainId": chain_id, "userOpHashes": list(user_op_hashes)},
        )
        return [record_from_convex(d) for d in docs or []]

    async def find_local_in_window(
        self, chain_id: int, start_at: datetime, end_at: datetime
    ) -> List[UserOperationRecord]:
        docs = await self._query(
            "userOperations:listLocalInWindow",
            {"chainId": chain_id, "startAt": _to_ms(start_at), "endAt": _to_ms(end_at)},
        )
        return [record_from_convex(d) for d in docs or []]

    async def find_local(self, limit: int) -> List[UserOperationRecord]:
        docs = await self._query("userOperations:listLocal", {"limit": limit})
        return [record_from_convex(d) for d in docs or []]

    async def find_local_by_entry_point(
        self, chain_id: int, entry_point: str, limit: int
    ) -> List[UserOperationRecord]:
        docs = await self._query(
            "userOperations:listLocalByEntryPoint",
            {"chainId": chain_id, "entryPoint": entry_point, "limit": limit},
        )
        return [record_from_convex(d) for d in docs or []]

    async def find_highest_done(
        self, chain_id: int, sender: str, nonce_key: int
    ) -> Optional[UserOperationRecord]:
        doc = await self._query(
            "userOperations:getHighestDone",
            {
                "chainId": chain_id,
                "userOpSender": sender,
                "userOpNonceKey": format_nonce_key(nonce_key),
            },
        )
        return record_from_convex(doc) if doc else None

    async def insert_if_absent(self, record: UserOperationRecord) -> bool:
        inserted = await self._mutation(
            "userOperations:insertIfAbsent",
            {"doc": record_to_convex(record)},
        )
        return bool(inserted)

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
        doc = await self._mutation(
            "userOperations:resetToLocal",
            {
                "recordId": record_id,
                "expectedRevision": expected_revision,
                "expectedStatus": UserOperationStatus.DONE.value,
                "userOpHash": user_op_hash,
                "entryPoint": entry_point,
                "origin": origin,
                "createdAt": _to_ms(created_at),
            },
        )
        return record_from_convex(doc) if doc else None

    async def mark_pending(self, refs: Sequence[RecordRef], tx_hash: str) -> int:
        matched = await self._mutation(
            "userOperations:markPending",
            {
                "refs": [{"recordId": rid, "revision": rev} for rid, rev in refs],
                "expectedStatus": UserOperationStatus.LOCAL.value,
                "txHash": tx_hash,
            },
        )
        return int(matched or 0)

    async def mark_done(
        self,
        chain_id: int,
        user_op_hashes: Iterable[str],
        tx_hash: str,
        block_number: int,
        block_hash: str,
    ) -> int:
        matched = await self._mutation(
            "userOperations:markDone",
            {
                "chainId": chain_id,
                "userOpHashes": list(user_op_hashes),
                "expectedStatus": UserOperationStatus.PENDING.value,
                "txHash": tx_hash,
                "blockNumber": block_number,
                "blockHash": block_hash,
            },
        )
        return int(matched or 0)

    async def delete_by_status(
        self, chain_id: int, statuses: Sequence[UserOperationStatus]
    ) -> int:
        deleted = await self._mutation(
            "userOperations:deleteByStatus",
            {"chainId": chain_id, "statuses": [s.value for s in statuses]},
        )
        return int(deleted or 0)


class ConvexEventStore(_ConvexStore):
    """EventStore over the ``userOperationEvents`` table."""

    async def find(self, chain_id: int, user_operation_hash: str) -> Optional[UserOperationEvent]:
        doc = await self._query(
            "userOperationEvents:get",
            {"chainId": chain_id, "userOperationHash": user_operation_hash},
        )
        return event_from_convex(doc) if doc else None

    async def insert_if_absent(self, event: UserOperationEvent) -> UserOperationEvent:
        """Insert unless an event exists for the hash.

        The ``userOperationEvents:insertIfAbsent`` mutation returns the stored
        document in both cases: the new one, or the one that was already there.
        """
        doc = await self._mutation(
            "userOperationEvents:insertIfAbsent",
            {"doc": event_to_convex(event)},
        )
        if not doc:
            raise PersistenceUnavailable(
                f"Event insert for {event.user_operation_hash} returned no document"
            )
        return event_from_convex(doc)


class ConvexTransactionView(_ConvexStore):
    """Read-only view over the ``transactions`` table."""

    async def find_by_chain_and_hash(
        self, chain_id: int, tx_hash: str
    ) -> Optional[BundlingTransaction]:
        doc = await self._query(
            "transactions:getByChainAndHash",
            {"chainId": chain_id, "txHash": tx_hash},
        )
        if not doc:
            return None
        return BundlingTransaction(
            chain_id=int(doc["chainId"]),
            tx_hash=doc["txHash"],
            status=TransactionStatus(doc["status"]),
        )
