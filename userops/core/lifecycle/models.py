"""
User Operation Lifecycle Models

Records, statuses and results for user operations moving from submission
to settlement.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserOperationStatus(str, Enum):
    """States of a nonce slot."""

    LOCAL = "local"                    # Admitted, waiting for a bundle
    PENDING = "pending"                # Included in a bundling transaction
    DONE = "done"                      # Bundling transaction confirmed
    TO_BE_REPLACE = "to_be_replace"    # Marked for replacement, cleaned up with LOCAL


class TransactionStatus(str, Enum):
    """Status of a bundling transaction as seen by the submission pipeline."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class UserOperationRecord(BaseModel):
    """One user operation occupying a ``(chain, sender, nonce key, nonce value)`` slot."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    chain_id: int
    sender: str
    nonce_key: int = Field(ge=0)
    nonce_value: int = Field(ge=0)

    user_op_hash: str
    entry_point: str
    origin: Dict[str, Any] = Field(default_factory=dict)
    status: UserOperationStatus = UserOperationStatus.LOCAL

    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    revision: int = 0

    @property
    def slot(self) -> tuple[int, str, int, int]:
        return (self.chain_id, self.sender, self.nonce_key, self.nonce_value)


class UserOperationEvent(BaseModel):
    """Settlement event (``UserOperationEvent`` log) of one user operation."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    chain_id: int
    user_operation_hash: str
    tx_hash: str
    contract_address: str
    topic: str
    args: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class BundlingTransaction(BaseModel):
    """Read-only view of the transaction that bundled a set of user operations."""

    chain_id: int
    tx_hash: str
    status: TransactionStatus = TransactionStatus.PENDING

    @property
    def failed(self) -> bool:
        return self.status == TransactionStatus.FAILED


class AdmissionResult:
    """
    Outcome of admitting a user operation.

    ``record`` is usable immediately. When the insert was scheduled in the
    background, ``wait_durable()`` resolves once it has landed and re-raises
    the write's error if it did not.
    """

    def __init__(
        self,
        record: UserOperationRecord,
        replaced: bool = False,
        write: Optional[asyncio.Future] = None,
    ):
        self.record = record
        self.replaced = replaced
        self._write = write

    @property
    def durable(self) -> bool:
        return self._write is None or self._write.done()

    async def wait_durable(self) -> UserOperationRecord:
        if self._write is not None:
            await asyncio.shield(self._write)
        return self.record

    def __repr__(self) -> str:
        return (
            f"AdmissionResult(hash={self.record.user_op_hash!r}, "
            f"status={self.record.status.value!r}, replaced={self.replaced})"
        )
