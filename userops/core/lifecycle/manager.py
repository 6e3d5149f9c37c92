"""
User Operation Lifecycle Manager

Admission, replacement, batch transitions and settlement event recording
for user operations. All coordination with concurrent callers is expressed
as conditional writes in the stores.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from ...config import BundlerConfig, Settings, load_bundler_config
from ...logging_config import lifecycle_log_context
from .errors import EntryPointNotSupported, OperationNotReplaceable, ReplacementTooSoon
from .models import (
    AdmissionResult,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
    utc_now,
)
from .nonce import NonceCodec, normalize_address, split_nonce, validate_nonce_value
from .store import BundlingTransactionView, EventStore, OperationStore


logger = logging.getLogger(__name__)

Timestamp = Union[datetime, int, float]

ABANDONED_STATUSES = (UserOperationStatus.LOCAL, UserOperationStatus.TO_BE_REPLACE)


@dataclass(frozen=True)
class LifecyclePolicy:
    """Admission and batching limits, resolved once from settings."""

    replacement_window: timedelta = timedelta(minutes=60)
    max_nonce_value_digits: int = 30
    local_batch_limit: int = 1000
    entry_point_batch_limit: int = 100
    wait_durable: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "LifecyclePolicy":
        return cls(
            replacement_window=timedelta(minutes=settings.replacement_window_minutes),
            max_nonce_value_digits=settings.max_nonce_value_digits,
            local_batch_limit=settings.local_batch_limit,
            entry_point_batch_limit=settings.entry_point_batch_limit,
            wait_durable=settings.admission_wait_durable,
        )


def _to_datetime(value: Timestamp) -> datetime:
    """Accept aware datetimes or epoch milliseconds."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class LifecycleManager:
    """
    Tracks user operations from admission to settlement.

    Slot states:
    - (none) -> LOCAL on first admission
    - LOCAL -> PENDING when included in a bundling transaction
    - PENDING -> DONE when the bundling transaction confirms
    - DONE -> LOCAL when a stale or failed settlement is replaced
    """

    MAX_ADMIT_ATTEMPTS = 3

    def __init__(
        self,
        operations: OperationStore,
        events: EventStore,
        transactions: BundlingTransactionView,
        policy: Optional[LifecyclePolicy] = None,
        bundler_config: Optional[BundlerConfig] = None,
        nonce_codec: NonceCodec = split_nonce,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.operations = operations
        self.events = events
        self.transactions = transactions
        self.policy = policy or LifecyclePolicy()
        self.bundler_config = bundler_config or load_bundler_config()
        self._split_nonce = nonce_codec
        self._clock = clock
        self._pending_writes: Set[asyncio.Future] = set()

    # =========================================================================
    # Admission
    # =========================================================================

    async def admit_operation(
        self,
        chain_id: int,
        user_op: Dict[str, Any],
        user_op_hash: str,
        entry_point: str,
        existing: Optional[UserOperationRecord] = None,
    ) -> AdmissionResult:
        """
        Admit a user operation into its nonce slot.

        Creates a LOCAL record when the slot is free, or resets a settled
        record in place when it is old enough or its bundling transaction
        failed.

        The entry point must be listed in the chain's ``supported_entry_points``.
        The default table only lists ``DEFAULT_ENTRY_POINT_ADDRESS``; configure
        an empty list for a chain to accept any entry point.

        Raises:
            InvalidNonce: nonce value too long for storage
            EntryPointNotSupported: entry point not configured for the chain
            OperationNotReplaceable: slot held by a LOCAL/PENDING operation
            ReplacementTooSoon: slot held by a recent, not-failed settlement
        """
        with lifecycle_log_context(chain_id, user_op_hash=user_op_hash):
            return await self._admit(chain_id, user_op, user_op_hash, entry_point, existing)

    async def _admit(
        self,
        chain_id: int,
        user_op: Dict[str, Any],
        user_op_hash: str,
        entry_point: str,
        existing: Optional[UserOperationRecord],
    ) -> AdmissionResult:
        sender = normalize_address(user_op["sender"])
        nonce_key, nonce_value = self._split_nonce(user_op["nonce"])
        validate_nonce_value(nonce_value, self.policy.max_nonce_value_digits)

        if not self.bundler_config.for_chain(chain_id).supports_entry_point(entry_point):
            raise EntryPointNotSupported(chain_id, entry_point)

        record = existing
        for _ in range(self.MAX_ADMIT_ATTEMPTS):
            if record is None:
                record = await self.operations.find_by_slot(chain_id, sender, nonce_key, nonce_value)
            if record is not None:
                return await self._replace(record, user_op, user_op_hash, entry_point)

            candidate = UserOperationRecord(
                chain_id=chain_id,
                sender=sender,
                nonce_key=nonce_key,
                nonce_value=nonce_value,
                user_op_hash=user_op_hash,
                entry_point=entry_point,
                origin=dict(user_op),
                status=UserOperationStatus.LOCAL,
                created_at=self._clock(),
            )

            if not self.policy.wait_durable:
                return AdmissionResult(candidate, write=self._schedule_insert(candidate))

            if await self.operations.insert_if_absent(candidate):
                logger.info(
                    f"Admitted user operation {user_op_hash} "
                    f"(chain={chain_id} sender={sender} nonce={nonce_key}:{nonce_value})"
                )
                return AdmissionResult(candidate)

            # Lost the slot to a concurrent admission; re-read the winner
            logger.info(f"Slot conflict admitting {user_op_hash} on chain {chain_id}, re-reading")

        raise OperationNotReplaceable(
            user_op_hash,
            "contended",
            message=f"Nonce slot for {user_op_hash} kept changing during admission",
        )

    async def _replace(
        self,
        record: UserOperationRecord,
        user_op: Dict[str, Any],
        user_op_hash: str,
        entry_point: str,
    ) -> AdmissionResult:
        if record.status != UserOperationStatus.DONE:
            logger.info(
                f"Rejected {user_op_hash}: slot held by {record.user_op_hash} ({record.status.value})"
            )
            raise OperationNotReplaceable(record.user_op_hash, record.status.value)

        transaction = None
        if record.tx_hash:
            transaction = await self.transactions.find_by_chain_and_hash(record.chain_id, record.tx_hash)

        now = self._clock()
        age = now - record.created_at
        tx_failed = transaction is not None and transaction.failed
        if age < self.policy.replacement_window and not tx_failed:
            raise ReplacementTooSoon(
                record.user_op_hash,
                age.total_seconds(),
                self.policy.replacement_window.total_seconds(),
            )

        updated = await self.operations.reset_to_local(
            record.id,
            record.revision,
            user_op_hash=user_op_hash,
            entry_point=entry_point,
            origin=dict(user_op),
            created_at=now,
        )
        if updated is None:
            raise OperationNotReplaceable(
                record.user_op_hash,
                record.status.value,
                message=f"User operation {record.user_op_hash} was replaced concurrently",
            )

        logger.info(
            f"Replaced user operation {record.user_op_hash} with {user_op_hash} "
            f"(chain={record.chain_id} tx_failed={tx_failed} age={int(age.total_seconds())}s)"
        )
        return AdmissionResult(updated, replaced=True)

    def _schedule_insert(self, record: UserOperationRecord) -> asyncio.Future:
        write = asyncio.ensure_future(self._insert_or_raise(record))
        self._pending_writes.add(write)
        write.add_done_callback(self._on_write_done)
        return write

    async def _insert_or_raise(self, record: UserOperationRecord) -> None:
        if not await self.operations.insert_if_absent(record):
            raise OperationNotReplaceable(
                record.user_op_hash,
                "contended",
                message=f"Nonce slot for {record.user_op_hash} was taken before the insert landed",
            )
        logger.info(f"Admitted user operation {record.user_op_hash} (chain={record.chain_id}, background)")

    def _on_write_done(self, write: asyncio.Future) -> None:
        self._pending_writes.discard(write)
        if write.cancelled():
            return
        error = write.exception()
        if error is not None:
            logger.error(f"Background insert failed: {error}")

    async def flush(self) -> None:
        """Wait for every background insert scheduled so far."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # =========================================================================
    # Batch transitions
    # =========================================================================

    async def mark_batch_pending(self, records: Sequence[UserOperationRecord], tx_hash: str) -> int:
        """
        Move LOCAL records selected for one bundling transaction to PENDING.

        Only records still LOCAL and unchanged since they were read are
        moved. Returns the number moved; fewer than ``len(records)`` means
        some were replaced or moved concurrently and should be re-verified.
        """
        if not records:
            return 0

        refs = [(record.id, record.revision) for record in records]
        matched = await self.operations.mark_pending(refs, tx_hash)
        if matched != len(refs):
            logger.warning(
                f"Partial pending transition for tx {tx_hash}: {matched}/{len(refs)} records matched"
            )
        return matched

    async def mark_batch_done(
        self,
        chain_id: int,
        user_op_hashes: Iterable[str],
        tx_hash: str,
        block_number: int,
        block_hash: str,
    ) -> int:
        """Move PENDING records of a confirmed bundling transaction to DONE."""
        hashes = list(dict.fromkeys(user_op_hashes))
        if not hashes:
            return 0

        matched = await self.operations.mark_done(chain_id, hashes, tx_hash, block_number, block_hash)
        if matched != len(hashes):
            logger.debug(f"Done transition for tx {tx_hash} matched {matched}/{len(hashes)} records")
        return matched

    async def delete_abandoned(self, chain_id: int) -> int:
        """Drop LOCAL and TO_BE_REPLACE records of one chain."""
        deleted = await self.operations.delete_by_status(chain_id, ABANDONED_STATUSES)
        if deleted:
            logger.info(f"Deleted {deleted} abandoned user operations on chain {chain_id}")
        return deleted

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_by_slot(
        self, chain_id: int, sender: str, nonce_key: int, nonce_value: int
    ) -> Optional[UserOperationRecord]:
        return await self.operations.find_by_slot(
            chain_id, normalize_address(sender), nonce_key, nonce_value
        )

    async def get_by_hash(self, chain_id: int, user_op_hash: str) -> Optional[UserOperationRecord]:
        return await self.operations.find_by_hash(chain_id, user_op_hash)

    async def get_by_hashes(self, chain_id: int, user_op_hashes: Iterable[str]) -> List[UserOperationRecord]:
        hashes = list(user_op_hashes)
        if not hashes:
            return []
        return await self.operations.find_by_hashes(chain_id, hashes)

    async def get_local_in_window(
        self, chain_id: int, start_at: Timestamp, end_at: Timestamp
    ) -> List[UserOperationRecord]:
        """LOCAL records created in ``(start_at, end_at]``; ints are epoch millis."""
        return await self.operations.find_local_in_window(
            chain_id, _to_datetime(start_at), _to_datetime(end_at)
        )

    async def get_local_batch(self, limit: Optional[int] = None) -> List[UserOperationRecord]:
        if limit is None:
            limit = self.policy.local_batch_limit
        return await self.operations.find_local(limit)

    async def get_local_batch_for_entry_point(
        self, chain_id: int, entry_point: str, limit: Optional[int] = None
    ) -> List[UserOperationRecord]:
        """Oldest-first LOCAL records for one chain and entry point."""
        if limit is None:
            limit = self.policy.entry_point_batch_limit
        return await self.operations.find_local_by_entry_point(chain_id, entry_point, limit)

    async def get_highest_settled_nonce(
        self, chain_id: int, sender: str, nonce_key: int
    ) -> Optional[UserOperationRecord]:
        """
        Highest DONE record for a nonce channel, trusted only when its
        settlement event has been recorded.
        """
        record = await self.operations.find_highest_done(chain_id, normalize_address(sender), nonce_key)
        if record is None:
            return None

        event = await self.events.find(chain_id, record.user_op_hash)
        if event is None:
            logger.debug(f"DONE record {record.user_op_hash} has no settlement event yet")
            return None
        return record

    # =========================================================================
    # Settlement events
    # =========================================================================

    async def get_event(self, chain_id: int, user_operation_hash: str) -> Optional[UserOperationEvent]:
        return await self.events.find(chain_id, user_operation_hash)

    async def record_event_once(
        self,
        chain_id: int,
        user_operation_hash: str,
        tx_hash: str,
        contract_address: str,
        topic: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> UserOperationEvent:
        """Store the settlement event for a hash, or return the one already stored."""
        event = await self.events.find(chain_id, user_operation_hash)
        if event is not None:
            return event

        return await self.events.insert_if_absent(
            UserOperationEvent(
                chain_id=chain_id,
                user_operation_hash=user_operation_hash,
                tx_hash=tx_hash,
                contract_address=contract_address,
                topic=topic,
                args=dict(args or {}),
            )
        )
